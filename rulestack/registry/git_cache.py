"""Local clones of git registries, one per normalized repository URL.

The arena hands out a clone together with a per-repository lock, so two
publishes to the same registry take turns on the working tree while
publishes to different registries run independently.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from rulestack.config.settings import default_git_cache_dir
from rulestack.errors import Timeout

_arenas: dict[Path, "GitCacheArena"] = {}
_arenas_guard = threading.Lock()


def normalize_repo_url(url: str) -> str:
    """Canonical form used as the cache key: no trailing ``/``, ``.git`` suffix."""
    normalized = url.strip().rstrip("/")
    if not normalized.endswith(".git"):
        normalized += ".git"
    return normalized


def cache_dir_name(url: str) -> str:
    normalized = normalize_repo_url(url)
    repo_name = normalized.rsplit("/", 1)[-1].rsplit(":", 1)[-1][: -len(".git")] or "repo"
    repo_name = re.sub(r"[^A-Za-z0-9._-]", "-", repo_name)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:8]
    return f"{repo_name}-{digest}"


@dataclass
class GitCacheEntry:
    """A cached clone. ``last_fetched_at`` is a wall-clock timestamp."""

    repo_url: str
    local_path: Path
    last_fetched_at: float | None = None

    @property
    def exists(self) -> bool:
        return (self.local_path / ".git").is_dir()


class GitCacheArena:
    """Owns every clone under one cache root."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._entries: dict[str, GitCacheEntry] = {}

    def entry(self, url: str) -> GitCacheEntry:
        key = normalize_repo_url(url)
        with self._guard:
            if key not in self._entries:
                self._entries[key] = GitCacheEntry(key, self.root / cache_dir_name(key))
            return self._entries[key]

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def checkout(self, url: str, timeout: float | None = None) -> Iterator[GitCacheEntry]:
        """Hold the repository's lock for the duration of the block.

        Raises ``Timeout`` if the lock is not acquired within ``timeout``.
        """
        key = normalize_repo_url(url)
        lock = self._lock_for(key)
        acquired = lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        if not acquired:
            raise Timeout(f"timed out waiting for the local clone of {key}")
        try:
            yield self.entry(key)
        finally:
            lock.release()

    def clean(self, url: str) -> bool:
        """Delete the clone for ``url``. Returns False if there was none."""
        key = normalize_repo_url(url)
        with self.checkout(key):
            entry = self.entry(key)
            if not entry.local_path.exists():
                return False
            shutil.rmtree(entry.local_path)
            entry.last_fetched_at = None
            return True


def shared_arena(root: str | Path | None = None) -> GitCacheArena:
    """Process-wide arena for ``root`` so every client shares the same locks."""
    path = Path(root or default_git_cache_dir()).expanduser().resolve()
    with _arenas_guard:
        if path not in _arenas:
            _arenas[path] = GitCacheArena(path)
        return _arenas[path]
