"""The registry client contract.

Every backend exposes the same capability set and raises only the
``rulestack.errors`` taxonomy, so callers never need to know whether
they are talking to a REST server or a git repository.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from rulestack.registry.models import (
    PackageInfo,
    PackageSummary,
    PublishResult,
    RegistryType,
    VersionInfo,
)


@runtime_checkable
class RegistryClient(Protocol):
    """Capabilities a registry backend provides.

    Each call is bounded by the client's configured timeout; running past
    it raises ``Timeout``.
    """

    @property
    def type(self) -> RegistryType: ...

    def search(self, query: str = "", tag: str = "", target: str = "", limit: int = 0) -> list[PackageSummary]:
        """Packages whose name or description contains ``query`` (case-insensitive)."""
        ...

    def get_package(self, name: str) -> PackageInfo:
        """Raises ``NotFound`` for an unknown package."""
        ...

    def get_version(self, name: str, version: str) -> VersionInfo:
        """Raises ``NotFound`` for an unknown package or version."""
        ...

    def publish(self, manifest_path: str | Path, archive_path: str | Path) -> PublishResult: ...

    def download_blob(self, sha256: str, dest_path: str | Path) -> None:
        """Write the blob to ``dest_path`` and verify its hash.

        A mismatch raises ``IntegrityMismatch`` and leaves no file behind.
        """
        ...

    def health(self) -> None:
        """Return quietly when the registry is reachable and well-formed."""
        ...

    def close(self) -> None: ...
