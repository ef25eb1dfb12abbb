"""In-memory registry used by orchestrator, installer and CLI tests."""

import hashlib
import json
from pathlib import Path

from rulestack.errors import Conflict, NotFound, ServerError
from rulestack.registry.blobs import write_verified
from rulestack.registry.models import (
    PackageInfo,
    PackageSummary,
    PublishResult,
    RegistryType,
    VersionInfo,
)


class FakeRegistry:
    """Implements the RegistryClient protocol over dicts."""

    def __init__(self, fail_on: set[str] | None = None, healthy: bool = True):
        self.fail_on = fail_on or set()
        self.healthy = healthy
        self.versions: dict[tuple[str, str], VersionInfo] = {}
        self.blobs: dict[str, bytes] = {}
        self.published: list[str] = []
        self.closed = False

    @property
    def type(self) -> RegistryType:
        return RegistryType.HTTP

    def health(self) -> None:
        if not self.healthy:
            raise ServerError("registry down", status_code=503)

    def search(self, query="", tag="", target="", limit=0):
        names = sorted({name for name, _ in self.versions if query in name})
        return [PackageSummary(name=name) for name in names]

    def get_package(self, name):
        versions = [v for (n, _), v in sorted(self.versions.items()) if n == name]
        if not versions:
            raise NotFound(f"package {name} not found", package=name)
        return PackageInfo(name=name, versions=versions, latest=versions[-1].version)

    def get_version(self, name, version):
        try:
            return self.versions[(name, version)]
        except KeyError:
            raise NotFound(f"{name}@{version} not found", package=name, version=version) from None

    def publish(self, manifest_path, archive_path):
        manifest = json.loads(Path(manifest_path).read_text())
        name, version = manifest["name"], manifest["version"]
        if name in self.fail_on:
            raise ServerError("boom", status_code=500)
        if (name, version) in self.versions:
            raise Conflict("exists", package=name, version=version)
        data = Path(archive_path).read_bytes()
        sha256 = hashlib.sha256(data).hexdigest()
        self.add(name, version, data, targets=manifest.get("targets", []))
        self.published.append(f"{name}@{version}")
        return PublishResult(package_name=name, version=version, sha256=sha256, message=f"Published {name}@{version}")

    def download_blob(self, sha256, dest_path):
        if sha256 not in self.blobs:
            raise NotFound(f"blob {sha256} not found")
        write_verified([self.blobs[sha256]], dest_path, sha256)

    def close(self) -> None:
        self.closed = True

    def add(self, name: str, version: str, data: bytes, targets=()) -> str:
        sha256 = hashlib.sha256(data).hexdigest()
        self.blobs[sha256] = data
        self.versions[(name, version)] = VersionInfo(
            name=name, version=version, sha256=sha256, size=len(data), targets=list(targets)
        )
        return sha256
