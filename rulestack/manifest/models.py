"""Manifest and lockfile models.

- ``PackageManifest``: the ``rulestack.json`` embedded at an archive root.
- ``ProjectManifest``: the user-edited ``rulestack.json`` at a project root,
  which adds the desired ``dependencies``.
- ``Lockfile``: the machine-written record of what is actually installed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from rulestack.errors import InvalidFormat
from rulestack.versioning import is_valid

NAME_PATTERN = re.compile(r"^(@[a-z0-9][a-z0-9\-_]*/)?[a-z0-9][a-z0-9\-_]*$")

VALID_TARGETS = ("cursor", "claude-code", "windsurf", "copilot")

LOCKFILE_SCHEMA_VERSION = "1.0"


def validate_package_name(name: str) -> None:
    if not name:
        raise InvalidFormat("package name is required")
    if not NAME_PATTERN.match(name):
        raise InvalidFormat(
            f"invalid package name {name!r}: use lowercase letters, digits, '-' and '_', "
            "optionally scoped as @scope/name",
            package=name,
        )


@dataclass
class PackageManifest:
    """Identity and contents of one packed ruleset version."""

    name: str
    version: str
    description: str = ""
    targets: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    license: str = "MIT"

    def validate(self) -> None:
        """Raise ``InvalidFormat`` describing the first problem found."""
        validate_package_name(self.name)
        if not is_valid(self.version):
            raise InvalidFormat(f"invalid version {self.version!r}", package=self.name)
        if not self.files:
            raise InvalidFormat("manifest must list at least one file", package=self.name, version=self.version)
        for target in self.targets:
            if target not in VALID_TARGETS:
                raise InvalidFormat(
                    f"invalid target {target!r} (valid: {', '.join(VALID_TARGETS)})",
                    package=self.name,
                )

    def to_dict(self) -> dict:
        data = {"name": self.name, "version": self.version}
        if self.description:
            data["description"] = self.description
        if self.targets:
            data["targets"] = list(self.targets)
        if self.tags:
            data["tags"] = list(self.tags)
        data["files"] = list(self.files)
        if self.license:
            data["license"] = self.license
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PackageManifest":
        if not isinstance(data, dict):
            raise InvalidFormat("manifest must be a JSON object")
        return cls(
            name=data.get("name", ""),
            version=data.get("version", ""),
            description=data.get("description", ""),
            targets=list(data.get("targets", []) or []),
            tags=list(data.get("tags", []) or []),
            files=list(data.get("files", []) or []),
            license=data.get("license", ""),
        )


@dataclass
class ProjectManifest:
    """The project-level manifest: package identity plus desired dependencies.

    A project that only consumes packages has no name or version of its own,
    so both are optional here.
    """

    name: str = ""
    version: str = ""
    description: str = ""
    targets: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    license: str = ""
    dependencies: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if self.name:
            validate_package_name(self.name)
        if self.version and not is_valid(self.version):
            raise InvalidFormat(f"invalid version {self.version!r}", package=self.name)
        for dep_name in self.dependencies:
            validate_package_name(dep_name)

    def to_dict(self) -> dict:
        data: dict = {}
        for key in ("name", "version", "description"):
            value = getattr(self, key)
            if value:
                data[key] = value
        for key in ("targets", "tags", "files"):
            value = getattr(self, key)
            if value:
                data[key] = list(value)
        if self.license:
            data["license"] = self.license
        data["dependencies"] = dict(sorted(self.dependencies.items()))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectManifest":
        if not isinstance(data, dict):
            raise InvalidFormat("project manifest must be a JSON object")
        deps = data.get("dependencies", {}) or {}
        if not isinstance(deps, dict):
            raise InvalidFormat("'dependencies' must map package names to versions")
        return cls(
            name=data.get("name", ""),
            version=data.get("version", ""),
            description=data.get("description", ""),
            targets=list(data.get("targets", []) or []),
            tags=list(data.get("tags", []) or []),
            files=list(data.get("files", []) or []),
            license=data.get("license", ""),
            dependencies={str(k): str(v) for k, v in deps.items()},
        )


@dataclass
class LockedPackage:
    """One installed package as recorded in the lockfile."""

    version: str
    sha256: str = ""
    install_path: str = ""
    registry: str = ""
    targets: list[str] = field(default_factory=list)


@dataclass
class Lockfile:
    """Installed package versions, rewritten after every install/update."""

    version: str = LOCKFILE_SCHEMA_VERSION
    project_root: str = ""
    dependencies: dict[str, str] = field(default_factory=dict)
    packages: dict[str, LockedPackage] = field(default_factory=dict)


def _locked_to_dict(entry: LockedPackage) -> dict:
    data = {
        "version": entry.version,
        "sha256": entry.sha256,
        "installPath": entry.install_path,
    }
    if entry.registry:
        data["registry"] = entry.registry
    if entry.targets:
        data["targets"] = list(entry.targets)
    return data


def _dict_to_locked(data: dict) -> LockedPackage:
    return LockedPackage(
        version=data.get("version", ""),
        sha256=data.get("sha256", ""),
        install_path=data.get("installPath", data.get("install_path", "")),
        registry=data.get("registry", ""),
        targets=list(data.get("targets", []) or []),
    )


def lockfile_to_dict(lock: Lockfile) -> dict:
    return {
        "version": lock.version,
        "projectRoot": lock.project_root,
        "dependencies": dict(sorted(lock.dependencies.items())),
        "packages": {name: _locked_to_dict(lock.packages[name]) for name in sorted(lock.packages)},
    }


def lockfile_from_dict(data: dict) -> Lockfile:
    if not isinstance(data, dict):
        raise InvalidFormat("lockfile must be a JSON object")
    packages = data.get("packages", {}) or {}
    if not isinstance(packages, dict):
        raise InvalidFormat("lockfile 'packages' must be an object")
    return Lockfile(
        version=data.get("version", LOCKFILE_SCHEMA_VERSION),
        project_root=data.get("projectRoot", ""),
        dependencies={str(k): str(v) for k, v in (data.get("dependencies", {}) or {}).items()},
        packages={name: _dict_to_locked(entry) for name, entry in packages.items()},
    )
