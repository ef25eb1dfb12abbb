"""Archive builder: stage a versioned file set as a content-addressed tarball.

Archives are gzip-compressed tars with root-relative entries and the
package manifest (``rulestack.json``) at the root. Entries are written in
sorted order with zeroed timestamps and ownership so the same inputs
always hash to the same sha256.
"""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from rulestack.config.settings import PROJECT_MANIFEST
from rulestack.errors import FileConflict, InvalidFormat
from rulestack.manifest.models import PackageManifest, validate_package_name
from rulestack.manifest.store import ManifestStore, safe_package_name
from rulestack.packaging import security
from rulestack.packaging.security import SecurityLimits
from rulestack.versioning import Version, increment_patch, is_valid, parse, validate_increase

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tgz"
DEFAULT_VERSION = "1.0.0"
_CHUNK = 64 * 1024


@dataclass(frozen=True)
class StagedArchive:
    """A packed, not-yet-published package version."""

    package_name: str
    version: str
    sha256: str
    size_bytes: int
    file_paths: frozenset[str]
    archive_path: Path


def sha256_file(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def staged_archive_name(package_name: str, version: str | Version) -> str:
    return f"{safe_package_name(package_name)}-{version}{ARCHIVE_SUFFIX}"


def build_tarball(entries: dict[str, bytes]) -> bytes:
    """Canonical gzip tar of ``{arcname: content}``."""
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name in sorted(entries):
            data = entries[name]
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            tar.addfile(info, io.BytesIO(data))

    compressed = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=compressed, mtime=0) as gz:
        gz.write(raw.getvalue())
    return compressed.getvalue()


def _open_tar(archive_path: str | Path) -> tarfile.TarFile:
    try:
        return tarfile.open(archive_path, mode="r:gz")
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise InvalidFormat(f"{archive_path} is not a gzip tar archive: {exc}") from exc


def read_embedded_manifest(archive_path: str | Path) -> PackageManifest:
    """Return the manifest stored at the root of a package archive."""
    with _open_tar(archive_path) as tar:
        try:
            member = tar.getmember(PROJECT_MANIFEST)
        except KeyError:
            raise InvalidFormat(f"{archive_path} has no {PROJECT_MANIFEST} at its root") from None
        fileobj = tar.extractfile(member)
        if fileobj is None:
            raise InvalidFormat(f"{PROJECT_MANIFEST} in {archive_path} is not a regular file")
        try:
            data = json.loads(fileobj.read().decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidFormat(f"invalid {PROJECT_MANIFEST} in {archive_path}: {exc}") from exc
    manifest = PackageManifest.from_dict(data)
    manifest.validate()
    return manifest


def validate_archive(archive_path: str | Path, limits: SecurityLimits | None = None) -> None:
    """Run the security filter over every entry. Raises ``UnsafeContent``."""
    with _open_tar(archive_path) as tar:
        issues = security.check_tar(tar, limits)
    security.raise_for_issues(issues)


def unpack(archive_path: str | Path, dest: str | Path, limits: SecurityLimits | None = None) -> list[str]:
    """Validate, then extract an archive into ``dest``. Returns the file names."""
    validate_archive(archive_path, limits)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    extracted = []
    with _open_tar(archive_path) as tar:
        for member in tar:
            target = (root / member.name).resolve()
            if not target.is_relative_to(root):
                security.raise_for_issues([f"{member.name}: path escapes extraction directory"])
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            with open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            extracted.append(member.name)
    return extracted


def describe_staged(archive_path: str | Path) -> StagedArchive:
    """Rebuild the ``StagedArchive`` record for an archive on disk."""
    path = Path(archive_path)
    manifest = read_embedded_manifest(path)
    with _open_tar(path) as tar:
        names = frozenset(m.name for m in tar.getmembers() if m.isfile() and m.name != PROJECT_MANIFEST)
    return StagedArchive(
        package_name=manifest.name,
        version=manifest.version,
        sha256=sha256_file(path),
        size_bytes=path.stat().st_size,
        file_paths=names,
        archive_path=path,
    )


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class ArchiveBuilder:
    """Stages packages into ``.rulestack/staged`` for a project."""

    def __init__(self, store: ManifestStore, limits: SecurityLimits | None = None):
        self.store = store
        self.limits = limits or SecurityLimits()

    @property
    def staging_dir(self) -> Path:
        return self.store.staging_dir

    def build(
        self,
        package_name: str,
        files: list[str | Path],
        version: str | None = None,
        description: str = "",
        targets: list[str] | tuple = (),
        tags: list[str] | tuple = (),
        license: str = "MIT",
    ) -> StagedArchive:
        """Pack ``files`` as a new version of ``package_name``.

        Without a locally known prior version the package starts at
        ``1.0.0`` (or ``version``). With one, an omitted ``version`` means
        the next patch release, and an explicit one must be greater.
        Adding a file whose name the prior version already has is only
        allowed together with an explicit version bump.

        Raises:
            InvalidFormat, VersionRegression, FileConflict, UnsafeContent
        """
        validate_package_name(package_name)
        if not files:
            raise InvalidFormat("no files to pack", package=package_name)
        if version is not None and not is_valid(version):
            raise InvalidFormat(f"invalid version {version!r}", package=package_name)

        new_files = self._collect(package_name, files)
        prior = self.store.installed_package(package_name)

        if prior is None:
            resolved = parse(version) if version else parse(DEFAULT_VERSION)
            contents: dict[str, bytes] = {}
        else:
            if version:
                validate_increase(prior.version, version, package=package_name)
                resolved = parse(version)
            else:
                resolved = increment_patch(prior.version)
            clashes = sorted(set(new_files) & set(prior.files))
            if clashes and not version:
                raise FileConflict(
                    f"files already exist in {package_name}@{prior.version}: {', '.join(clashes)}; "
                    "pass an explicit higher version to replace them",
                    files=clashes,
                    package=package_name,
                    version=prior.version,
                )
            contents = {name: (prior.directory / name).read_bytes() for name in prior.files}

        for name, path in new_files.items():
            contents[name] = path.read_bytes()

        security.raise_for_issues(
            security.check_totals([len(data) for data in contents.values()], self.limits),
            package=package_name,
        )

        manifest = PackageManifest(
            name=package_name,
            version=str(resolved),
            description=description,
            targets=list(targets),
            tags=list(tags),
            files=sorted(contents),
            license=license,
        )
        manifest.validate()

        package_dir = self.store.package_dir(package_name, manifest.version)
        created_dir = not package_dir.exists()
        try:
            self._write_package_dir(package_dir, contents, manifest)
            staged = self._stage(manifest, contents)
        except Exception:
            if created_dir and package_dir.exists():
                shutil.rmtree(package_dir)
            raise

        self._remove_other_staged(package_name, manifest.version)
        logger.info("staged %s@%s (%s)", package_name, manifest.version, staged.sha256[:12])
        return staged

    # -- Steps -----------------------------------------------------------

    def _collect(self, package_name: str, files: list[str | Path]) -> dict[str, Path]:
        """Map archive names (base names) to source paths, after security checks."""
        collected: dict[str, Path] = {}
        issues: list[str] = []
        for item in files:
            path = Path(item)
            name = PurePosixPath(path.name).as_posix()
            if name == PROJECT_MANIFEST:
                issues.append(f"{name}: reserved for the package manifest")
                continue
            if name in collected:
                raise InvalidFormat(f"duplicate file name in pack: {name}", package=package_name)
            issues.extend(security.check_local_file(name, path, self.limits))
            collected[name] = path
        security.raise_for_issues(issues, package=package_name)
        return collected

    def _write_package_dir(self, package_dir: Path, contents: dict[str, bytes], manifest: PackageManifest) -> None:
        package_dir.mkdir(parents=True, exist_ok=True)
        for name, data in contents.items():
            (package_dir / name).write_bytes(data)
        (package_dir / PROJECT_MANIFEST).write_text(json.dumps(manifest.to_dict(), indent=2) + "\n")

    def _stage(self, manifest: PackageManifest, contents: dict[str, bytes]) -> StagedArchive:
        entries = dict(contents)
        entries[PROJECT_MANIFEST] = (json.dumps(manifest.to_dict(), indent=2) + "\n").encode("utf-8")
        data = build_tarball(entries)

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        target = self.staging_dir / staged_archive_name(manifest.name, manifest.version)
        fd, tmp_name = tempfile.mkstemp(prefix=".staging-", suffix=ARCHIVE_SUFFIX, dir=self.staging_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        return StagedArchive(
            package_name=manifest.name,
            version=manifest.version,
            sha256=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            file_paths=frozenset(contents),
            archive_path=target,
        )

    def _remove_other_staged(self, package_name: str, version: str) -> None:
        """Keep at most one pending archive per package."""
        prefix = f"{safe_package_name(package_name)}-"
        for path in self.staging_dir.glob(f"{prefix}*{ARCHIVE_SUFFIX}"):
            candidate = path.name[len(prefix):-len(ARCHIVE_SUFFIX)]
            if candidate != version and is_valid(candidate):
                logger.info("removing superseded staged archive %s", path.name)
                path.unlink(missing_ok=True)

