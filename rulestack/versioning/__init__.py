"""Version engine: semantic version parsing, ordering and increments."""

from rulestack.versioning.semver import (
    Version,
    compare,
    increment_major,
    increment_minor,
    increment_patch,
    is_valid,
    next_versions,
    parse,
    validate_increase,
)

__all__ = [
    "Version",
    "compare",
    "increment_major",
    "increment_minor",
    "increment_patch",
    "is_valid",
    "next_versions",
    "parse",
    "validate_increase",
]
