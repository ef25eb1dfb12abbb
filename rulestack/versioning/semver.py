"""Semantic versions: parse, compare, increment.

Grammar is ``major.minor.patch[-prerelease][+build]``. Build metadata is
kept for display but never affects ordering. A release sorts after any
pre-release of the same ``major.minor.patch``; two pre-release tags
compare as plain ASCII strings.
"""

from __future__ import annotations

from dataclasses import dataclass

from rulestack.errors import InvalidFormat, VersionRegression


@dataclass(frozen=True)
class Version:
    """An immutable semantic version.

    ``==`` is structural (build metadata included). Use :func:`compare`
    or the ordering operators for precedence.
    """

    major: int
    minor: int
    patch: int
    prerelease: str = ""
    build: str = ""

    def __post_init__(self) -> None:
        for part in (self.major, self.minor, self.patch):
            if not isinstance(part, int) or isinstance(part, bool) or part < 0:
                raise InvalidFormat(f"version components must be non-negative integers: {part!r}")

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build:
            text += f"+{self.build}"
        return text

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) < 0

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) <= 0

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) > 0

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) >= 0

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def increment_patch(self) -> "Version":
        return Version(self.major, self.minor, self.patch + 1)

    def increment_minor(self) -> "Version":
        return Version(self.major, self.minor + 1, 0)

    def increment_major(self) -> "Version":
        return Version(self.major + 1, 0, 0)


def parse(text: str) -> Version:
    """Parse a version string.

    Raises:
        InvalidFormat: If ``text`` does not match the grammar.
    """
    if not isinstance(text, str):
        raise InvalidFormat(f"version must be a string, got {type(text).__name__}")
    raw = text.strip()
    if not raw:
        raise InvalidFormat("version string is empty")

    core, plus, build = raw.partition("+")
    if plus and not build:
        raise InvalidFormat(f"empty build metadata in version {text!r}")
    core, dash, prerelease = core.partition("-")
    if dash and not prerelease:
        raise InvalidFormat(f"empty pre-release tag in version {text!r}")

    parts = core.split(".")
    if len(parts) != 3:
        raise InvalidFormat(f"version {text!r} must have the form major.minor.patch")
    numbers = []
    for part in parts:
        if not part.isdigit() or not part.isascii():
            raise InvalidFormat(f"invalid numeric component {part!r} in version {text!r}")
        numbers.append(int(part))

    return Version(numbers[0], numbers[1], numbers[2], prerelease, build)


def is_valid(text: str) -> bool:
    try:
        parse(text)
    except InvalidFormat:
        return False
    return True


def _coerce(value: Version | str) -> Version:
    return value if isinstance(value, Version) else parse(value)


def compare(a: Version | str, b: Version | str) -> int:
    """Return -1, 0 or 1 as ``a`` sorts before, equal to, or after ``b``."""
    va, vb = _coerce(a), _coerce(b)

    left = (va.major, va.minor, va.patch)
    right = (vb.major, vb.minor, vb.patch)
    if left != right:
        return -1 if left < right else 1

    # release > pre-release
    if va.prerelease == vb.prerelease:
        return 0
    if not va.prerelease:
        return 1
    if not vb.prerelease:
        return -1
    return -1 if va.prerelease < vb.prerelease else 1


def increment_patch(value: Version | str) -> Version:
    return _coerce(value).increment_patch()


def increment_minor(value: Version | str) -> Version:
    return _coerce(value).increment_minor()


def increment_major(value: Version | str) -> Version:
    return _coerce(value).increment_major()


def next_versions(value: Version | str) -> tuple[Version, Version, Version]:
    """Return the (patch, minor, major) successors of ``value``."""
    current = _coerce(value)
    return current.increment_patch(), current.increment_minor(), current.increment_major()


def validate_increase(current: Version | str, proposed: Version | str, **context) -> None:
    """Require ``proposed`` to be strictly greater than ``current``.

    Raises:
        VersionRegression: If ``proposed <= current``.
    """
    if compare(proposed, current) <= 0:
        raise VersionRegression(
            f"version {proposed} must be greater than current version {current}",
            **context,
        )
