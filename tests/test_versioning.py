"""Tests for version parsing, ordering and increments."""

import pytest

from rulestack.errors import InvalidFormat, VersionRegression
from rulestack.versioning import (
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


def test_parse_full_version():
    v = parse("1.2.3-beta.1+build.5")
    assert v == Version(1, 2, 3, "beta.1", "build.5")
    assert v.is_prerelease
    assert str(v) == "1.2.3-beta.1+build.5"


def test_parse_round_trips_through_str():
    for text in ["0.0.0", "1.2.3", "10.20.30-rc1", "1.0.0+abc", "2.0.0-alpha+exp.sha"]:
        assert parse(str(parse(text))) == parse(text)


def test_parse_rejects_malformed():
    for text in ["", "1", "1.2", "1.2.3.4", "a.b.c", "1.-2.3", "1.2.3-", "1.2.3+", "v1.2.3", "1.2.x"]:
        with pytest.raises(InvalidFormat):
            parse(text)
        assert not is_valid(text)


def test_parse_rejects_non_string():
    with pytest.raises(InvalidFormat):
        parse(123)


def test_version_rejects_negative_components():
    with pytest.raises(InvalidFormat):
        Version(1, -1, 0)


def test_compare_numeric_components():
    assert compare("1.0.0", "2.0.0") == -1
    assert compare("1.10.0", "1.9.0") == 1
    assert compare("1.0.10", "1.0.9") == 1
    assert compare("3.1.4", "3.1.4") == 0


def test_prerelease_sorts_before_release():
    assert compare("1.0.0-alpha", "1.0.0") < 0
    assert compare("1.0.0", "1.0.0-rc1") > 0
    assert compare("1.0.0-alpha", "1.0.0-beta") < 0


def test_build_metadata_ignored_for_ordering():
    assert compare("1.0.0", "1.0.0+build1") == 0
    assert parse("1.0.0") != parse("1.0.0+build1")


def test_ordering_operators():
    versions = [parse(v) for v in ["1.0.0", "0.9.0", "1.0.0-rc1", "1.1.0"]]
    assert [str(v) for v in sorted(versions)] == ["0.9.0", "1.0.0-rc1", "1.0.0", "1.1.0"]
    assert parse("1.0.0") >= parse("1.0.0+meta")
    assert parse("1.0.0") <= parse("1.0.0+meta")


def test_increments():
    base = parse("1.2.3-rc1+b7")
    assert increment_patch(base) == Version(1, 2, 4)
    assert increment_minor(base) == Version(1, 3, 0)
    assert increment_major(base) == Version(2, 0, 0)
    assert compare(base, increment_patch(base)) < 0
    assert increment_patch("1.2.3") == Version(1, 2, 4)


def test_next_versions():
    patch, minor, major = next_versions("0.4.9")
    assert (str(patch), str(minor), str(major)) == ("0.4.10", "0.5.0", "1.0.0")


def test_validate_increase():
    validate_increase("1.0.0", "1.0.1")
    validate_increase("1.0.0-rc1", "1.0.0")

    with pytest.raises(VersionRegression):
        validate_increase("2.0.0", "1.5.0")
    with pytest.raises(VersionRegression):
        validate_increase("1.0.0", "1.0.0+rebuild")


def test_validate_increase_carries_context():
    with pytest.raises(VersionRegression) as excinfo:
        validate_increase("2.0.0", "1.0.0", package="@acme/rules")
    assert excinfo.value.package == "@acme/rules"
    assert "@acme/rules" in str(excinfo.value)
