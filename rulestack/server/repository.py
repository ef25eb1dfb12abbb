"""Package store behind the registry server.

The server only talks to the narrow ``PackageRepository`` interface; the
bundled implementation keeps a JSON index and a blob directory on disk,
in the same spirit as a local file-based registry.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from rulestack.server.resilience import TransientWriteConflict
from rulestack.versioning import compare, parse


class VersionExists(Exception):
    """The package already has this version."""


class PackageRepository(Protocol):
    def get_package(self, name: str) -> dict | None: ...

    def create_package(self, name: str, description: str = "", tags: list[str] | None = None) -> dict: ...

    def get_version(self, name: str, version: str) -> dict | None: ...

    def create_version(self, name: str, record: dict, blob: bytes) -> dict: ...

    def search(self, query: str = "", tag: str = "", target: str = "", limit: int = 0) -> list[dict]: ...

    def blob_path(self, sha256: str) -> Path | None: ...

    def validate_token(self, token: str) -> bool: ...


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class FileSystemRepository:
    """JSON index plus content-addressed blobs under ``data_dir``.

    Writes are serialized by a lock acquired with a short timeout; a writer
    that cannot get it raises ``TransientWriteConflict`` so the caller can
    back off and retry. Writers never mutate a published package dict: they
    copy it and swap in a new index, so readers need no lock.
    """

    INDEX_FILE = "index.json"
    BLOBS_DIR = "blobs"

    def __init__(self, data_dir: str | Path, tokens: list[str] | None = None, write_lock_timeout: float = 0.5):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / self.BLOBS_DIR).mkdir(exist_ok=True)
        self.index_path = self.data_dir / self.INDEX_FILE
        self._token_hashes = {hash_token(t) for t in tokens or []}
        self._write_lock = threading.Lock()
        self._write_lock_timeout = write_lock_timeout
        self._index: dict[str, dict] = self._load_index()

    # -- Index persistence -------------------------------------------------

    def _load_index(self) -> dict[str, dict]:
        if self.index_path.exists():
            with open(self.index_path) as f:
                return json.load(f).get("packages", {})
        return {}

    def _save_index(self) -> None:
        data = {"updated_at": _now(), "packages": self._index}
        fd, tmp_name = tempfile.mkstemp(prefix=".index.", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.index_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._write_lock.acquire(timeout=self._write_lock_timeout):
            raise TransientWriteConflict("package store is busy")
        try:
            yield
        finally:
            self._write_lock.release()

    # -- PackageRepository ---------------------------------------------

    def get_package(self, name: str) -> dict | None:
        pkg = self._index.get(name)
        return _package_view(pkg) if pkg else None

    def create_package(self, name: str, description: str = "", tags: list[str] | None = None) -> dict:
        with self._locked():
            if name not in self._index:
                entry = {
                    "name": name,
                    "description": description,
                    "tags": list(tags or []),
                    "targets": [],
                    "latest": "",
                    "created_at": _now(),
                    "updated_at": _now(),
                    "versions": {},
                }
                self._index = {**self._index, name: entry}
                self._save_index()
            return _package_view(self._index[name])

    def get_version(self, name: str, version: str) -> dict | None:
        pkg = self._index.get(name)
        if not pkg:
            return None
        record = pkg["versions"].get(version)
        return dict(record) if record else None

    def create_version(self, name: str, record: dict, blob: bytes) -> dict:
        version = record["version"]
        with self._locked():
            current = self._index.get(name)
            if current is None:
                raise KeyError(name)
            if version in current["versions"]:
                raise VersionExists(f"{name}@{version} already exists")
            pkg = {**current, "versions": dict(current["versions"])}

            sha256 = hashlib.sha256(blob).hexdigest()
            blob_path = self.data_dir / self.BLOBS_DIR / f"{sha256}.tgz"
            if not blob_path.exists():
                blob_path.write_bytes(blob)

            stored = {**record, "name": name, "sha256": sha256, "size": len(blob), "published_at": _now()}
            pkg["versions"][version] = stored
            if not pkg["latest"] or compare(version, pkg["latest"]) > 0:
                pkg["latest"] = version
                pkg["description"] = record.get("description", pkg["description"])
                pkg["tags"] = list(record.get("tags", pkg["tags"]))
                pkg["targets"] = list(record.get("targets", pkg["targets"]))
            pkg["updated_at"] = _now()
            self._index = {**self._index, name: pkg}
            self._save_index()
            return dict(stored)

    def search(self, query: str = "", tag: str = "", target: str = "", limit: int = 0) -> list[dict]:
        index = self._index
        needle = query.lower()
        results = []
        for name in sorted(index):
            pkg = index[name]
            if needle and needle not in name.lower() and needle not in pkg.get("description", "").lower():
                continue
            if tag and tag not in pkg.get("tags", []):
                continue
            if target and target not in pkg.get("targets", []):
                continue
            results.append(
                {
                    "name": name,
                    "description": pkg.get("description", ""),
                    "latest": pkg.get("latest", ""),
                    "tags": list(pkg.get("tags", [])),
                    "targets": list(pkg.get("targets", [])),
                    "updated_at": pkg.get("updated_at", ""),
                }
            )
            if limit and len(results) >= limit:
                break
        return results

    def blob_path(self, sha256: str) -> Path | None:
        if len(sha256) != 64 or any(c not in "0123456789abcdef" for c in sha256):
            return None
        path = self.data_dir / self.BLOBS_DIR / f"{sha256}.tgz"
        return path if path.is_file() else None

    def validate_token(self, token: str) -> bool:
        candidate = hash_token(token)
        return any(hmac.compare_digest(candidate, known) for known in self._token_hashes)


def _package_view(pkg: dict) -> dict:
    versions = sorted(pkg["versions"].values(), key=lambda v: parse(v["version"]))
    return {
        "name": pkg["name"],
        "description": pkg.get("description", ""),
        "latest": pkg.get("latest", ""),
        "tags": list(pkg.get("tags", [])),
        "created_at": pkg.get("created_at", ""),
        "updated_at": pkg.get("updated_at", ""),
        "versions": [dict(v) for v in versions],
    }

