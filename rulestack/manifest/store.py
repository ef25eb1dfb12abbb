"""Project manifest and lockfile persistence, plus install reconciliation.

For every desired dependency the store decides, without touching the
network, whether it must be installed, updated, or left alone::

    store = ManifestStore(".")
    for item in store.plan():
        print(item.name, item.action)
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rulestack.config.settings import LOCKFILE, PROJECT_MANIFEST, RULES_DIR, STAGING_DIR, WORK_DIR
from rulestack.errors import InvalidFormat, RulestackError
from rulestack.manifest.models import (
    LockedPackage,
    Lockfile,
    ProjectManifest,
    lockfile_from_dict,
    lockfile_to_dict,
)
from rulestack.versioning import compare, is_valid, parse

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = '/\\:*?"<>|'

_EXAMPLE_RULE = """# Example Rule

Rules are plain Markdown. Package them with `rulestack pack`.

## Rule

- Prefer small, focused functions.
- Name things after what they do.
"""


class Action(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    SKIP_CURRENT = "skip-current"
    SKIP_NEWER = "skip-newer"


@dataclass
class PlannedAction:
    """What to do for one dependency. ``error`` is set instead of ``action``
    when the entry cannot be evaluated (e.g. a malformed version)."""

    name: str
    desired: str
    installed: str = ""
    action: Action | None = None
    error: str = ""

    @property
    def needs_fetch(self) -> bool:
        return self.action in (Action.INSTALL, Action.UPDATE)

    @property
    def detail(self) -> str:
        if self.error:
            return self.error
        if self.action == Action.INSTALL:
            return f"install {self.desired}"
        if self.action == Action.UPDATE:
            return f"update {self.installed} -> {self.desired}"
        if self.action == Action.SKIP_CURRENT:
            return f"{self.installed} already installed"
        return f"installed {self.installed} is newer than {self.desired}; not downgrading"


@dataclass
class InstalledPackage:
    """A package version unpacked under the project's work directory."""

    name: str
    version: str
    directory: Path
    files: list[str] = field(default_factory=list)


def safe_package_name(name: str) -> str:
    """Filesystem-safe form of a (possibly scoped) package name.

    The scope separator becomes ``+``, which valid names never contain, so
    ``@acme/rules`` (``acme+rules``) and ``acme-rules`` stay distinct.
    """
    safe = name.lstrip("@").replace("/", "+")
    for ch in _UNSAFE_NAME_CHARS:
        safe = safe.replace(ch, "-")
    return safe


def reconcile(desired: dict[str, str], installed: dict[str, LockedPackage]) -> list[PlannedAction]:
    """Compute one action per desired dependency, sorted by name.

    A bad version on one entry is reported on that entry only.
    """
    plan = []
    for name in sorted(desired):
        want = desired[name]
        entry = installed.get(name)
        item = PlannedAction(name=name, desired=want, installed=entry.version if entry else "")
        try:
            parse(want)
            if entry is None:
                item.action = Action.INSTALL
            else:
                order = compare(want, entry.version)
                if order > 0:
                    item.action = Action.UPDATE
                elif order == 0:
                    item.action = Action.SKIP_CURRENT
                else:
                    item.action = Action.SKIP_NEWER
        except InvalidFormat as exc:
            item.error = str(exc)
        plan.append(item)
    return plan


def write_json_atomic(path: Path, data: dict) -> None:
    """Write JSON through a temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> dict:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise InvalidFormat(f"{path} is not valid JSON: {exc}") from exc


class ManifestStore:
    """Owns a project's manifest, lockfile and ``.rulestack`` work directory."""

    def __init__(self, project_root: str | Path = "."):
        self.project_root = Path(project_root).resolve()
        self.manifest_path = self.project_root / PROJECT_MANIFEST
        self.lockfile_path = self.project_root / LOCKFILE
        self.work_dir = self.project_root / WORK_DIR
        self.staging_dir = self.work_dir / STAGING_DIR

    # -- Project manifest ------------------------------------------------

    def load_project_manifest(self) -> ProjectManifest:
        if not self.manifest_path.exists():
            return ProjectManifest()
        manifest = ProjectManifest.from_dict(_read_json(self.manifest_path))
        manifest.validate()
        return manifest

    def save_project_manifest(self, manifest: ProjectManifest) -> None:
        write_json_atomic(self.manifest_path, manifest.to_dict())

    def init_project(self, name: str = "", description: str = "", force: bool = False) -> bool:
        """Create ``rulestack.json``, ``rules/`` and the work directory.

        Returns False, touching nothing, when the project already has a
        manifest and ``force`` is not set. With ``force`` the existing
        dependencies are kept.
        """
        if self.manifest_path.exists() and not force:
            return False
        manifest = ProjectManifest(name=name, version="1.0.0" if name else "", description=description)
        if self.manifest_path.exists():
            manifest.dependencies = self.load_project_manifest().dependencies
        manifest.validate()

        rules_dir = self.project_root / RULES_DIR
        rules_dir.mkdir(parents=True, exist_ok=True)
        example = rules_dir / "example-rule.md"
        if not example.exists():
            example.write_text(_EXAMPLE_RULE)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.save_project_manifest(manifest)
        logger.info("initialized project at %s", self.project_root)
        return True

    # -- Lockfile ----------------------------------------------------------

    def load_lockfile(self) -> Lockfile:
        if not self.lockfile_path.exists():
            return Lockfile(project_root=str(self.project_root))
        lock = lockfile_from_dict(_read_json(self.lockfile_path))
        if not lock.project_root:
            lock.project_root = str(self.project_root)
        return lock

    def save_lockfile(self, lock: Lockfile) -> None:
        write_json_atomic(self.lockfile_path, lockfile_to_dict(lock))

    # -- Reconciliation ----------------------------------------------------

    def plan(self) -> list[PlannedAction]:
        """Decide an action for every desired dependency before any I/O."""
        manifest = self.load_project_manifest()
        lock = self.load_lockfile()
        return reconcile(manifest.dependencies, lock.packages)

    def record_install(
        self,
        name: str,
        version: str,
        sha256: str,
        install_path: str | Path,
        registry: str = "",
        targets: list[str] | None = None,
    ) -> None:
        """Persist a successful install/update in the lockfile and manifest."""
        if not is_valid(version):
            raise InvalidFormat(f"invalid version {version!r}", package=name)

        install_path = Path(install_path)
        if install_path.is_absolute() and install_path.is_relative_to(self.project_root):
            install_path = install_path.relative_to(self.project_root)

        lock = self.load_lockfile()
        lock.packages[name] = LockedPackage(
            version=version,
            sha256=sha256,
            install_path=install_path.as_posix(),
            registry=registry,
            targets=list(targets or []),
        )
        lock.dependencies[name] = version
        self.save_lockfile(lock)

        manifest = self.load_project_manifest()
        if manifest.dependencies.get(name) != version:
            manifest.dependencies[name] = version
            self.save_project_manifest(manifest)
        logger.debug("recorded %s@%s at %s", name, version, install_path)

    # -- Installed packages ----------------------------------------------

    def package_dir(self, name: str, version: str) -> Path:
        return self.work_dir / f"{safe_package_name(name)}.{version}"

    def installed_package(self, name: str) -> InstalledPackage | None:
        """Find the newest locally known version of ``name``.

        Candidates are the lockfile entry and every ``<name>.<version>``
        directory under the work dir (packs land there before they are
        published or locked).
        """
        candidates: list[tuple] = []

        entry = self.load_lockfile().packages.get(name)
        if entry is not None and is_valid(entry.version):
            if entry.install_path:
                directory = self.project_root / entry.install_path
            else:
                directory = self.package_dir(name, entry.version)
            candidates.append((parse(entry.version), directory))

        prefix = f"{safe_package_name(name)}."
        if self.work_dir.is_dir():
            for child in self.work_dir.iterdir():
                if child.is_dir() and child.name.startswith(prefix):
                    version = child.name[len(prefix):]
                    if is_valid(version):
                        candidates.append((parse(version), child))
        if not candidates:
            return None
        version, directory = max(candidates, key=lambda c: c[0])
        return InstalledPackage(name, str(version), directory, _list_files(directory))

    def remove_package_dir(self, name: str, version: str) -> None:
        directory = self.package_dir(name, version)
        if directory.exists():
            shutil.rmtree(directory)

    def require_manifest(self) -> ProjectManifest:
        if not self.manifest_path.exists():
            raise RulestackError(f"no {PROJECT_MANIFEST} found in {self.project_root}")
        return self.load_project_manifest()


def _list_files(directory: Path) -> list[str]:
    """Relative paths of the rule files in an installed package directory."""
    if not directory.is_dir():
        return []
    files = []
    for path in sorted(directory.rglob("*")):
        if path.is_file():
            rel = path.relative_to(directory).as_posix()
            if rel != PROJECT_MANIFEST:
                files.append(rel)
    return files
