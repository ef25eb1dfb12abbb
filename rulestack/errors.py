"""Error taxonomy shared by every RuleStack component.

Local validation errors (versions, manifests, archives) are raised before
any network call. Registry clients translate transport failures into the
``RegistryError`` subclasses so callers never branch on HTTP status codes
or git stderr.
"""

from __future__ import annotations


class RulestackError(Exception):
    """Base class for all RuleStack errors.

    Carries optional ``package``, ``version`` and ``registry`` context so
    the message tells the user exactly what to retry.
    """

    def __init__(
        self,
        message: str,
        *,
        package: str = "",
        version: str = "",
        registry: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.package = package
        self.version = version
        self.registry = registry

    def __str__(self) -> str:
        context = []
        if self.package:
            target = self.package
            if self.version:
                target += f"@{self.version}"
            context.append(f"package {target}")
        elif self.version:
            context.append(f"version {self.version}")
        if self.registry:
            context.append(f"registry {self.registry}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


# ---------------------------------------------------------------------------
# Local validation
# ---------------------------------------------------------------------------

class InvalidFormat(RulestackError):
    """Malformed version string, manifest or lockfile."""


class VersionRegression(RulestackError):
    """Proposed version is not greater than the current one."""


class FileConflict(RulestackError):
    """A file name collides with the prior version without a version bump."""

    def __init__(self, message: str, *, files: list[str] | None = None, **context):
        super().__init__(message, **context)
        self.files = list(files or [])


class UnsafeContent(RulestackError):
    """Archive content rejected by the security filter."""


# ---------------------------------------------------------------------------
# Registry boundary
# ---------------------------------------------------------------------------

class RegistryError(RulestackError):
    """Any failure reported by (or while talking to) a registry."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, **context):
        super().__init__(message, **context)
        self.status_code = status_code


class NotFound(RegistryError):
    """Package, version or blob does not exist."""


class Unauthorized(RegistryError):
    """Credential missing or rejected."""


class InsufficientAccess(Unauthorized):
    """Credential is valid but lacks write/collaborator access."""


class Conflict(RegistryError):
    """The registry already has this version."""


class ConnectionFailed(RegistryError):
    """Network-level failure reaching the registry."""

    retryable = True


class Timeout(RegistryError):
    """The operation ran past its deadline."""

    retryable = True


class RateLimited(RegistryError):
    """Host API quota exhausted."""

    retryable = True

    def __init__(self, message: str, *, reset_at: float | None = None, **context):
        super().__init__(message, **context)
        self.reset_at = reset_at


class ServerError(RegistryError):
    """5xx from the registry; eligible for caller-level retry."""

    retryable = True


class InvalidRegistryStructure(RegistryError):
    """A git repository that does not look like a package registry."""


class IntegrityMismatch(RegistryError):
    """Downloaded content does not hash to the requested sha256."""

    def __init__(self, message: str, *, expected: str = "", actual: str = "", **context):
        super().__init__(message, **context)
        self.expected = expected
        self.actual = actual


class PushFailed(RegistryError):
    """``git push`` was rejected; git's own message is kept verbatim."""


class PullRequestFailed(RegistryError):
    """Host API refused to open the pull request."""
