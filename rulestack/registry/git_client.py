"""Git repository registry backend.

Layout of a registry repository::

    index.json                                   search index
    packages/<name>/metadata.json                versions, sha256s, tags
    packages/<name>/versions/<version>/manifest.json
    packages/<name>/versions/<version>/archive.tgz

Publishing is an explicit sequence of steps on a cached clone:

    access check -> sync -> branch -> stage files -> update index
    -> commit -> push -> pull request (or fallback compare URL)

Every step before the push raises; once the branch is pushed the publish
has succeeded, and a failed pull request only changes the locator to a
compare URL the user can open by hand.

Credentials are scoped to the client instance: the token is only placed
in the URL handed to ``git fetch``/``git push`` and never written to the
clone's configured remote.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

import httpx
from git import Actor, GitCommandError, InvalidGitRepositoryError, Repo

from rulestack.errors import (
    Conflict,
    InvalidFormat,
    InvalidRegistryStructure,
    NotFound,
    PushFailed,
    RegistryError,
    RulestackError,
    Timeout,
    Unauthorized,
)
from rulestack.manifest.models import PackageManifest
from rulestack.packaging.archive import sha256_file
from rulestack.registry.blobs import write_verified
from rulestack.registry.git_cache import GitCacheArena, GitCacheEntry, normalize_repo_url, shared_arena
from rulestack.registry.github_api import HostAPI, RepoRef, default_api_url, parse_repo_url
from rulestack.registry.models import (
    PackageInfo,
    PackageSummary,
    PublishResult,
    RegistryConfig,
    RegistryType,
    VersionInfo,
    package_info_from_dict,
    version_info_from_dict,
)
from rulestack.utils.deadline import Deadline
from rulestack.versioning import is_valid, parse

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
PACKAGES_DIR = "packages"
METADATA_FILE = "metadata.json"
MANIFEST_FILE = "manifest.json"
ARCHIVE_FILE = "archive.tgz"
INDEX_SCHEMA_VERSION = "1.0"

DEFAULT_AUTHOR_NAME = "RuleStack Publisher"
DEFAULT_AUTHOR_EMAIL = "publisher@rulestack.dev"
FALLBACK_BRANCH = "main"
_CHUNK = 64 * 1024


class PublishStep(str, Enum):
    ACCESS_CHECK = "access-check"
    SYNC = "sync"
    BRANCH = "branch"
    STAGE_FILES = "stage-files"
    UPDATE_INDEX = "update-index"
    COMMIT = "commit"
    PUSH = "push"
    PULL_REQUEST = "pull-request"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def publish_branch(name: str, version: str) -> str:
    return f"publish/{name.lstrip('@')}/{version}"


def token_username(url: str) -> str:
    """Basic-auth user name the host expects alongside a token."""
    host = (urlsplit(url).hostname or "").lower()
    if "gitlab" in host:
        return "oauth2"
    if "bitbucket" in host:
        return "x-token-auth"
    return "token"


def with_credentials(url: str, token: str) -> str:
    """``url`` with ``token`` embedded as basic auth (http(s) remotes only)."""
    parts = urlsplit(url)
    if not token or parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(token_username(url), safe='')}:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def empty_index() -> dict:
    return {"version": INDEX_SCHEMA_VERSION, "updated_at": _now(), "package_count": 0, "packages": {}}


def _read_json(path: Path) -> dict:
    with open(path) as f:
        return json.load(f)


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")


class GitRegistryClient:
    """Registry client backed by a git repository on a GitHub-compatible host."""

    def __init__(
        self,
        config: RegistryConfig,
        arena: GitCacheArena | None = None,
        host_api: HostAPI | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.repo_url = config.url.strip()
        self.arena = arena or shared_arena(config.cache_dir or None)
        self._auth_url = with_credentials(self.repo_url, config.token)
        self._repo_ref: RepoRef | None = parse_repo_url(self.repo_url)
        self._host_api = host_api
        if self._host_api is None and self._repo_ref is not None:
            api_url = config.api_url or default_api_url(self._repo_ref)
            if api_url:
                self._host_api = HostAPI(
                    self._repo_ref,
                    config.token,
                    api_url=api_url,
                    http_client=http_client,
                    sleep=sleep,
                    registry=config.name,
                )
        self._env = {"GIT_TERMINAL_PROMPT": "0"}

    @property
    def type(self) -> RegistryType:
        return RegistryType.GIT

    def close(self) -> None:
        if self._host_api is not None:
            self._host_api.close()

    def _deadline(self) -> Deadline:
        return Deadline(self.config.timeout)

    def _mask(self, text: str) -> str:
        if self.config.token:
            text = text.replace(self._auth_url, self.repo_url)
            text = text.replace(quote(self.config.token, safe=""), "***").replace(self.config.token, "***")
        return text

    # -- Git plumbing ------------------------------------------------------

    def _git(self, repo: Repo, command: str, *args, deadline: Deadline, step: PublishStep, **context) -> str:
        """Run one git command bounded by the deadline, mapping failures."""
        deadline.check(f"git {command}", registry=self.config.name, **context)
        try:
            return getattr(repo.git, command)(
                *args,
                kill_after_timeout=deadline.timeout_for(),
                env=self._env,
            )
        except GitCommandError as exc:
            if deadline.expired:
                raise Timeout(
                    f"git {command} exceeded the deadline during {step.value}",
                    registry=self.config.name,
                    **context,
                ) from None
            message = self._mask(str(exc.stderr or exc).strip())
            if step == PublishStep.PUSH:
                raise PushFailed(f"push rejected: {message}", registry=self.config.name, **context) from None
            if any(s in message.lower() for s in ("authentication failed", "permission denied", "could not read username")):
                raise Unauthorized(f"git {command} was denied: {message}", registry=self.config.name, **context) from None
            raise RegistryError(f"git {command} failed during {step.value}: {message}", registry=self.config.name, **context) from None

    def _open(self, entry: GitCacheEntry) -> Repo:
        if entry.exists:
            try:
                return Repo(entry.local_path)
            except InvalidGitRepositoryError:
                shutil.rmtree(entry.local_path, ignore_errors=True)
        entry.local_path.mkdir(parents=True, exist_ok=True)
        repo = Repo.init(entry.local_path)
        repo.create_remote("origin", self.repo_url)
        return repo

    def _remote_default_branch(self, repo: Repo, deadline: Deadline) -> str | None:
        """Default branch from ``ls-remote --symref``; None for an empty remote."""
        output = self._git(repo, "ls_remote", "--symref", self._auth_url, "HEAD", deadline=deadline, step=PublishStep.SYNC)
        lines = output.splitlines()
        # a symref without a resolved HEAD line points at an unborn branch
        if any(line.endswith("\tHEAD") and not line.startswith("ref: ") for line in lines):
            for line in lines:
                if line.startswith("ref: refs/heads/") and line.endswith("\tHEAD"):
                    return line[len("ref: refs/heads/"):-len("\tHEAD")]

        # HEAD may be dangling on bare repositories seeded by a push
        output = self._git(repo, "ls_remote", "--heads", self._auth_url, deadline=deadline, step=PublishStep.SYNC)
        heads = [line.split("\trefs/heads/", 1)[1] for line in output.splitlines() if "\trefs/heads/" in line]
        if not heads:
            return None
        for candidate in (FALLBACK_BRANCH, "master"):
            if candidate in heads:
                return candidate
        return sorted(heads)[0]

    def _sync(self, entry: GitCacheEntry, deadline: Deadline) -> tuple[Repo, str | None]:
        """Clone or fetch, then reset the working tree to the remote default branch."""
        repo = self._open(entry)
        default = self._remote_default_branch(repo, deadline)
        if default is None:
            entry.last_fetched_at = time.time()
            return repo, None
        self._git(
            repo,
            "fetch",
            "--prune",
            self._auth_url,
            f"+refs/heads/{default}:refs/remotes/origin/{default}",
            deadline=deadline,
            step=PublishStep.SYNC,
        )
        self._git(repo, "checkout", "-f", "-B", default, f"origin/{default}", deadline=deadline, step=PublishStep.SYNC)
        self._git(repo, "clean", "-fdx", deadline=deadline, step=PublishStep.SYNC)
        entry.last_fetched_at = time.time()
        logger.debug("synced %s (%s) into %s", self.repo_url, default, entry.local_path)
        return repo, default

    @contextmanager
    def _synced(self, deadline: Deadline) -> Iterator[tuple[Path, str | None]]:
        """Hold the clone's lock and yield (working tree, default branch) after a sync.

        The default branch is None for a remote with no branches yet.
        """
        with self.arena.checkout(self.repo_url, timeout=deadline.remaining()) as entry:
            repo, default = self._sync(entry, deadline)
            yield Path(repo.working_tree_dir), default

    # -- Registry layout ---------------------------------------------------

    @staticmethod
    def _package_dir(root: Path, name: str) -> Path:
        return root / PACKAGES_DIR / name

    def _require_structure(self, root: Path, default: str | None) -> None:
        if default is None or not ((root / PACKAGES_DIR).is_dir() or (root / INDEX_FILE).is_file()):
            raise InvalidRegistryStructure(
                f"{self.repo_url} is not a package registry (missing {PACKAGES_DIR}/ and {INDEX_FILE})",
                registry=self.config.name,
            )

    def _load_metadata(self, root: Path, name: str) -> dict | None:
        path = self._package_dir(root, name) / METADATA_FILE
        if not path.is_file():
            return None
        try:
            return _read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidRegistryStructure(f"corrupt {path.relative_to(root)}: {exc}", registry=self.config.name) from exc

    def _load_index(self, root: Path) -> dict:
        """Read ``index.json``; rebuild it from package metadata when missing or corrupt."""
        path = root / INDEX_FILE
        if path.is_file():
            try:
                index = _read_json(path)
                if isinstance(index.get("packages"), dict):
                    return index
            except (OSError, json.JSONDecodeError):
                pass
            logger.warning("index.json in %s is corrupt; rebuilding", self.config.name or self.repo_url)
        return self._rebuild_index(root)

    def _rebuild_index(self, root: Path) -> dict:
        index = empty_index()
        packages_dir = root / PACKAGES_DIR
        if packages_dir.is_dir():
            for metadata_path in sorted(packages_dir.rglob(METADATA_FILE)):
                try:
                    metadata = _read_json(metadata_path)
                except (OSError, json.JSONDecodeError):
                    logger.warning("skipping unreadable %s", metadata_path)
                    continue
                if metadata.get("name"):
                    index["packages"][metadata["name"]] = _index_entry(metadata)
        index["package_count"] = len(index["packages"])
        return index

    # -- Publish steps -----------------------------------------------------

    def _check_access(self, deadline: Deadline) -> None:
        if self._host_api is None:
            return
        try:
            self._host_api.wait_for_rate_limit(deadline)
            self._host_api.check_push_access(deadline)
        except Unauthorized:
            raise
        except RegistryError as exc:
            logger.warning("could not verify write access to %s: %s", self.repo_url, exc)

    def _create_branch(self, repo: Repo, default: str, branch: str, deadline: Deadline, **context) -> None:
        self._git(repo, "checkout", "-f", "-B", branch, f"origin/{default}", deadline=deadline, step=PublishStep.BRANCH, **context)

    def _stage_files(
        self, root: Path, manifest: PackageManifest, archive_path: Path, sha256: str, size: int
    ) -> list[str]:
        version_dir = self._package_dir(root, manifest.name) / "versions" / manifest.version
        if version_dir.exists():
            raise Conflict(
                "version already exists in the registry",
                package=manifest.name,
                version=manifest.version,
                registry=self.config.name,
            )
        version_dir.mkdir(parents=True)
        shutil.copyfile(archive_path, version_dir / ARCHIVE_FILE)
        _write_json(version_dir / MANIFEST_FILE, manifest.to_dict())

        metadata_path = self._package_dir(root, manifest.name) / METADATA_FILE
        metadata = self._load_metadata(root, manifest.name) or {
            "name": manifest.name,
            "created_at": _now(),
            "versions": [],
        }
        metadata["versions"] = [v for v in metadata.get("versions", []) if v.get("version") != manifest.version]
        metadata["versions"].append(
            {
                "version": manifest.version,
                "sha256": sha256,
                "size": size,
                "targets": list(manifest.targets),
                "tags": list(manifest.tags),
                "published_at": _now(),
            }
        )
        metadata["versions"].sort(key=lambda v: parse(v["version"]))
        latest = metadata["versions"][-1]["version"]
        metadata["latest"] = latest
        if latest == manifest.version:
            metadata["description"] = manifest.description
            metadata["tags"] = list(manifest.tags)
            metadata["targets"] = list(manifest.targets)
        metadata["updated_at"] = _now()
        _write_json(metadata_path, metadata)

        return [
            (version_dir / ARCHIVE_FILE).relative_to(root).as_posix(),
            (version_dir / MANIFEST_FILE).relative_to(root).as_posix(),
            metadata_path.relative_to(root).as_posix(),
        ]

    def _update_index(self, root: Path, name: str) -> str:
        index = self._load_index(root)
        metadata = self._load_metadata(root, name) or {"name": name}
        index["packages"][name] = _index_entry(metadata)
        index["package_count"] = len(index["packages"])
        index["updated_at"] = _now()
        index.setdefault("version", INDEX_SCHEMA_VERSION)
        _write_json(root / INDEX_FILE, index)
        return INDEX_FILE

    def _author(self) -> Actor:
        name = self.config.author_name or os.environ.get("GIT_AUTHOR_NAME") or DEFAULT_AUTHOR_NAME
        email = self.config.author_email or os.environ.get("GIT_AUTHOR_EMAIL") or DEFAULT_AUTHOR_EMAIL
        return Actor(name, email)

    def _commit(self, repo: Repo, paths: list[str], message: str) -> str:
        index = repo.index
        index.add(paths)
        author = self._author()
        commit = index.commit(message, author=author, committer=author)
        return commit.hexsha

    def _push(self, repo: Repo, branch: str, deadline: Deadline, **context) -> None:
        self._git(
            repo,
            "push",
            "--atomic",
            "--force",
            self._auth_url,
            f"refs/heads/{branch}:refs/heads/{branch}",
            deadline=deadline,
            step=PublishStep.PUSH,
            **context,
        )

    def _fallback_url(self, default: str, branch: str) -> str:
        ref = self._repo_ref or (self._host_api.repo if self._host_api is not None else None)
        base = ref.web_url if ref else normalize_repo_url(self.repo_url)[: -len(".git")]
        return f"{base}/compare/{default}...{branch}"

    def _request_pull_request(
        self, manifest: PackageManifest, default: str, branch: str, sha256: str, size: int, deadline: Deadline
    ) -> tuple[str, bool, str]:
        """Open the PR. Returns (locator, created, message); never raises."""
        title = f"Publish {manifest.name}@{manifest.version}"
        if self._host_api is None:
            url = self._fallback_url(default, branch)
            return url, False, f"Branch pushed. Create PR manually: {url}"
        body = _pr_body(manifest, sha256, size, self._author().name)
        try:
            self._host_api.wait_for_rate_limit(deadline)
            url = self._host_api.create_pull_request(branch, default, title, body, deadline)
        except RulestackError as exc:
            url = self._fallback_url(default, branch)
            reason = str(exc)
            if "already exists" in reason.lower():
                reason = "a pull request for this branch already exists"
            elif "no commits between" in reason.lower():
                reason = "no changes between the publish branch and the default branch"
            logger.warning("pull request for %s failed: %s", branch, reason)
            return url, False, f"Branch pushed but the pull request could not be opened ({reason}). Create PR manually: {url}"
        return url, True, f"Pull request opened: {url}"

    # -- RegistryClient ----------------------------------------------------

    def publish(self, manifest_path: str | Path, archive_path: str | Path) -> PublishResult:
        manifest_path = Path(manifest_path)
        archive_path = Path(archive_path)
        try:
            manifest = PackageManifest.from_dict(_read_json(manifest_path))
        except json.JSONDecodeError as exc:
            raise InvalidFormat(f"invalid manifest {manifest_path}: {exc}") from exc
        manifest.validate()
        context = {"package": manifest.name, "version": manifest.version}
        sha256 = sha256_file(archive_path)
        size = archive_path.stat().st_size
        branch = publish_branch(manifest.name, manifest.version)

        deadline = self._deadline()
        self._check_access(deadline)

        with self._synced(deadline) as (root, default):
            self._require_structure(root, default)
            repo = Repo(root)
            self._create_branch(repo, default, branch, deadline, **context)
            paths = self._stage_files(root, manifest, archive_path, sha256, size)
            paths.append(self._update_index(root, manifest.name))
            self._commit(repo, paths, _commit_message(manifest, sha256, size))
            self._push(repo, branch, deadline, **context)
            logger.info("pushed %s to %s", branch, self.config.name or self.repo_url)

        locator, created, message = self._request_pull_request(manifest, default, branch, sha256, size, deadline)
        return PublishResult(
            package_name=manifest.name,
            version=manifest.version,
            sha256=sha256,
            locator=locator,
            message=message,
            pr_created=created,
            branch=branch,
        )

    def search(self, query: str = "", tag: str = "", target: str = "", limit: int = 0) -> list[PackageSummary]:
        with self._synced(self._deadline()) as (root, default):
            self._require_structure(root, default)
            index = self._load_index(root)

        needle = query.lower()
        results = []
        for name in sorted(index["packages"]):
            entry = index["packages"][name]
            if needle and needle not in name.lower() and needle not in entry.get("description", "").lower():
                continue
            if tag and tag not in entry.get("tags", []):
                continue
            if target and target not in entry.get("targets", []) and target not in entry.get("tags", []):
                continue
            results.append(
                PackageSummary(
                    name=name,
                    description=entry.get("description", ""),
                    latest=entry.get("latest", ""),
                    tags=list(entry.get("tags", [])),
                    targets=list(entry.get("targets", [])),
                    updated_at=entry.get("updated_at", ""),
                )
            )
            if limit and len(results) >= limit:
                break
        return results

    def get_package(self, name: str) -> PackageInfo:
        with self._synced(self._deadline()) as (root, default):
            self._require_structure(root, default)
            metadata = self._load_metadata(root, name)
        if metadata is None:
            raise NotFound("package not found", package=name, registry=self.config.name)
        return package_info_from_dict(metadata)

    def get_version(self, name: str, version: str) -> VersionInfo:
        with self._synced(self._deadline()) as (root, default):
            self._require_structure(root, default)
            metadata = self._load_metadata(root, name)
            manifest_path = self._package_dir(root, name) / "versions" / version / MANIFEST_FILE
            manifest = _read_json(manifest_path) if manifest_path.is_file() else None
        entry = next((v for v in (metadata or {}).get("versions", []) if v.get("version") == version), None)
        if entry is None or manifest is None:
            raise NotFound("version not found", package=name, version=version, registry=self.config.name)
        return version_info_from_dict(name, {**manifest, **entry})

    def download_blob(self, sha256: str, dest_path: str | Path) -> None:
        with self._synced(self._deadline()) as (root, default):
            self._require_structure(root, default)
            archive = self._find_blob(root, sha256)
            if archive is None:
                raise NotFound(f"blob {sha256} not found", registry=self.config.name)
            with open(archive, "rb") as f:
                write_verified(iter(lambda: f.read(_CHUNK), b""), dest_path, sha256, registry=self.config.name)

    def _find_blob(self, root: Path, sha256: str) -> Path | None:
        packages_dir = root / PACKAGES_DIR
        if not packages_dir.is_dir():
            return None
        for metadata_path in packages_dir.rglob(METADATA_FILE):
            try:
                metadata = _read_json(metadata_path)
            except (OSError, json.JSONDecodeError):
                continue
            for entry in metadata.get("versions", []):
                if entry.get("sha256") == sha256:
                    return metadata_path.parent / "versions" / entry["version"] / ARCHIVE_FILE
        return None

    def health(self) -> None:
        with self._synced(self._deadline()) as (root, default):
            self._require_structure(root, default)

    def initialize(self) -> bool:
        """Seed an empty repository with the registry layout and push it.

        Returns False when the repository is already a registry.
        """
        deadline = self._deadline()
        with self._synced(deadline) as (root, default):
            if default is not None and ((root / PACKAGES_DIR).is_dir() or (root / INDEX_FILE).is_file()):
                return False
            branch = default or FALLBACK_BRANCH
            repo = Repo(root)
            if default is None:
                self._git(repo, "symbolic_ref", "HEAD", f"refs/heads/{branch}", deadline=deadline, step=PublishStep.BRANCH)
            (root / PACKAGES_DIR).mkdir(exist_ok=True)
            (root / PACKAGES_DIR / ".gitkeep").touch()
            _write_json(root / INDEX_FILE, empty_index())
            (root / "README.md").write_text(
                "# RuleStack registry\n\nPackages live under `packages/<name>/versions/<version>/`.\n"
            )
            self._commit(repo, [f"{PACKAGES_DIR}/.gitkeep", INDEX_FILE, "README.md"], "Initialize RuleStack registry")
            self._push(repo, branch, deadline)
        return True

    def clean(self) -> bool:
        """Delete the local clone of this registry."""
        return self.arena.clean(self.repo_url)


def _index_entry(metadata: dict) -> dict:
    return {
        "name": metadata.get("name", ""),
        "description": metadata.get("description", ""),
        "latest": metadata.get("latest", ""),
        "updated_at": metadata.get("updated_at", ""),
        "tags": list(metadata.get("tags", [])),
        "targets": list(metadata.get("targets", [])),
        "versions": [
            {"version": v.get("version", ""), "sha256": v.get("sha256", "")}
            for v in metadata.get("versions", [])
            if is_valid(v.get("version", ""))
        ],
    }


def _commit_message(manifest: PackageManifest, sha256: str, size: int) -> str:
    return (
        f"Publish {manifest.name}@{manifest.version}\n\n"
        f"- Package: {manifest.name}\n"
        f"- Version: {manifest.version}\n"
        f"- Description: {manifest.description}\n"
        f"- SHA256: {sha256}\n"
        f"- Size: {size} bytes\n"
    )


def _pr_body(manifest: PackageManifest, sha256: str, size: int, publisher: str) -> str:
    lines = [
        f"## Publish {manifest.name}@{manifest.version}",
        "",
        f"**Package:** {manifest.name}",
        f"**Version:** {manifest.version}",
        f"**Description:** {manifest.description or '-'}",
        f"**SHA256:** `{sha256}`",
        f"**Size:** {size} bytes",
        f"**Publisher:** {publisher}",
    ]
    if manifest.targets:
        lines.append(f"**Targets:** {', '.join(manifest.targets)}")
    if manifest.tags:
        lines.append(f"**Tags:** {', '.join(manifest.tags)}")
    lines += [
        "",
        "### Changes",
        f"- Added `packages/{manifest.name}/versions/{manifest.version}/{ARCHIVE_FILE}`",
        f"- Added `packages/{manifest.name}/versions/{manifest.version}/{MANIFEST_FILE}`",
        f"- Updated `packages/{manifest.name}/{METADATA_FILE}`",
        f"- Updated `{INDEX_FILE}`",
    ]
    return "\n".join(lines) + "\n"
