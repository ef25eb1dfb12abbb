"""Registry data models: configuration, search rows, package details, results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from rulestack.errors import InvalidFormat


class RegistryType(str, Enum):
    """Backend kind a registry entry declares."""

    HTTP = "http"
    GIT = "git"

    @classmethod
    def parse(cls, value: str | None) -> "RegistryType":
        """Map a persisted ``type`` value to a RegistryType.

        Entries written before typed registries existed carry no type and
        are treated as HTTP. ``remote-http`` is accepted as an alias.
        """
        if isinstance(value, RegistryType):
            return value
        if not value:
            return cls.HTTP
        normalized = str(value).strip().lower()
        if normalized in ("http", "https", "remote-http"):
            return cls.HTTP
        if normalized == "git":
            return cls.GIT
        raise InvalidFormat(f"unknown registry type: {value!r}")


@dataclass
class RegistryConfig:
    """One named registry destination and the credential scoped to it."""

    name: str
    url: str
    type: RegistryType = RegistryType.HTTP
    token: str = field(default="", repr=False)
    cache_dir: str = ""  # git only; defaults to ~/.rulestack/cache/git
    api_url: str = ""  # git only; host API base, derived from url when empty
    author_name: str = ""
    author_email: str = ""
    timeout: float = 30.0

    def to_dict(self) -> dict:
        data = {"url": self.url, "type": self.type.value}
        for key in ("token", "cache_dir", "api_url", "author_name", "author_email"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.timeout != 30.0:
            data["timeout"] = self.timeout
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "RegistryConfig":
        # git_token / jwt_token are older spellings of the single credential
        token = data.get("token") or data.get("git_token") or data.get("jwt_token") or ""
        return cls(
            name=name,
            url=data.get("url", ""),
            type=RegistryType.parse(data.get("type")),
            token=token,
            cache_dir=data.get("cache_dir", ""),
            api_url=data.get("api_url", ""),
            author_name=data.get("author_name", ""),
            author_email=data.get("author_email", ""),
            timeout=float(data.get("timeout", 30.0)),
        )


@dataclass
class PackageSummary:
    """A search result row."""

    name: str
    description: str = ""
    latest: str = ""
    tags: list[str] = field(default_factory=list)
    targets: list[str] = field(default_factory=list)
    updated_at: str = ""


@dataclass
class VersionInfo:
    """Details of one published version."""

    name: str
    version: str
    sha256: str = ""
    size: int = 0
    description: str = ""
    targets: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    dependencies: dict[str, str] = field(default_factory=dict)
    published_at: str = ""


@dataclass
class PackageInfo:
    """A package and every version the registry holds for it."""

    name: str
    description: str = ""
    latest: str = ""
    versions: list[VersionInfo] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    @property
    def version_numbers(self) -> list[str]:
        return [v.version for v in self.versions]


@dataclass
class PublishResult:
    """Outcome of a successful publish.

    ``locator`` is a download URL for HTTP registries and a pull-request
    (or compare) URL for git registries. ``pr_created`` is False when the
    git branch was pushed but the pull request has to be opened by hand.
    """

    package_name: str
    version: str
    sha256: str
    locator: str = ""
    message: str = ""
    pr_created: bool = False
    branch: str = ""


def version_info_from_dict(name: str, data: dict) -> VersionInfo:
    return VersionInfo(
        name=data.get("name", name),
        version=data.get("version", ""),
        sha256=data.get("sha256", ""),
        size=int(data.get("size", 0) or 0),
        description=data.get("description", ""),
        targets=list(data.get("targets", []) or []),
        tags=list(data.get("tags", []) or []),
        files=list(data.get("files", []) or []),
        dependencies=dict(data.get("dependencies", {}) or {}),
        published_at=data.get("published_at", ""),
    )


def package_info_from_dict(data: dict) -> PackageInfo:
    name = data.get("name", "")
    return PackageInfo(
        name=name,
        description=data.get("description", ""),
        latest=data.get("latest", ""),
        versions=[version_info_from_dict(name, v) for v in data.get("versions", []) or []],
        tags=list(data.get("tags", []) or []),
        created_at=data.get("created_at", ""),
        updated_at=data.get("updated_at", ""),
    )


def summary_from_dict(data: dict) -> PackageSummary:
    return PackageSummary(
        name=data.get("name", ""),
        description=data.get("description", ""),
        latest=data.get("latest", ""),
        tags=list(data.get("tags", []) or []),
        targets=list(data.get("targets", []) or []),
        updated_at=data.get("updated_at", ""),
    )
