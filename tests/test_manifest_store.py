"""Tests for the project manifest, lockfile and install reconciliation."""

import json
import tempfile
from pathlib import Path

import pytest

from rulestack.errors import InvalidFormat, RulestackError
from rulestack.manifest.models import (
    LockedPackage,
    PackageManifest,
    ProjectManifest,
    validate_package_name,
)
from rulestack.manifest.store import Action, ManifestStore, reconcile, safe_package_name


def _write_manifest(root: Path, dependencies: dict) -> None:
    (root / "rulestack.json").write_text(json.dumps({"dependencies": dependencies}))


def test_reconcile_actions():
    installed = {
        "current": LockedPackage(version="1.0.0"),
        "older": LockedPackage(version="1.0.0"),
        "newer": LockedPackage(version="2.0.0"),
    }
    desired = {"fresh": "0.1.0", "current": "1.0.0", "older": "1.2.0", "newer": "1.5.0"}

    plan = {item.name: item for item in reconcile(desired, installed)}

    assert plan["fresh"].action == Action.INSTALL
    assert plan["current"].action == Action.SKIP_CURRENT
    assert plan["older"].action == Action.UPDATE
    assert plan["older"].installed == "1.0.0"
    assert plan["newer"].action == Action.SKIP_NEWER
    assert [item.name for item in reconcile(desired, installed)] == sorted(desired)


def test_reconcile_bad_version_only_affects_its_entry():
    plan = reconcile({"bad": "one.two", "good": "1.0.0"}, {})
    by_name = {item.name: item for item in plan}

    assert by_name["bad"].action is None
    assert by_name["bad"].error
    assert not by_name["bad"].needs_fetch
    assert by_name["good"].action == Action.INSTALL
    assert by_name["good"].needs_fetch


def test_plan_reads_manifest_and_lockfile():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write_manifest(root, {"@acme/rules": "1.1.0"})
        store = ManifestStore(root)
        store.record_install("@acme/rules", "1.0.0", "ab" * 32, store.package_dir("@acme/rules", "1.0.0"))

        # record_install pins the manifest too; restore the wanted version
        manifest = store.load_project_manifest()
        manifest.dependencies["@acme/rules"] = "1.1.0"
        store.save_project_manifest(manifest)

        [item] = store.plan()
        assert item.action == Action.UPDATE
        assert item.detail == "update 1.0.0 -> 1.1.0"


def test_record_install_writes_lockfile():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        store = ManifestStore(root)
        dest = store.package_dir("@acme/rules", "1.0.0")
        store.record_install("@acme/rules", "1.0.0", "cd" * 32, dest, registry="team", targets=["cursor"])

        data = json.loads((root / "rulestack.lock.json").read_text())
        entry = data["packages"]["@acme/rules"]
        assert entry["version"] == "1.0.0"
        assert entry["sha256"] == "cd" * 32
        assert entry["installPath"] == ".rulestack/acme+rules.1.0.0"
        assert entry["registry"] == "team"
        assert entry["targets"] == ["cursor"]
        assert data["dependencies"] == {"@acme/rules": "1.0.0"}
        assert data["projectRoot"] == str(root.resolve())

        assert store.load_project_manifest().dependencies == {"@acme/rules": "1.0.0"}
        # no temp files left behind
        assert sorted(p.name for p in root.iterdir()) == ["rulestack.json", "rulestack.lock.json"]


def test_record_install_rejects_bad_version():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ManifestStore(tmpdir)
        with pytest.raises(InvalidFormat):
            store.record_install("rules", "latest", "", Path(tmpdir) / "x")


def test_corrupt_lockfile_is_invalid_format():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "rulestack.lock.json").write_text("{not json")
        with pytest.raises(InvalidFormat):
            ManifestStore(root).load_lockfile()


def test_missing_files_are_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ManifestStore(tmpdir)
        assert store.load_project_manifest().dependencies == {}
        assert store.load_lockfile().packages == {}
        assert store.plan() == []
        with pytest.raises(RulestackError):
            store.require_manifest()


def test_installed_package_prefers_newest_directory():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ManifestStore(tmpdir)
        for version in ("1.0.0", "1.2.0", "1.10.0"):
            directory = store.package_dir("rules", version)
            directory.mkdir(parents=True)
            (directory / "a.md").write_text(version)
            (directory / "rulestack.json").write_text("{}")
        (store.work_dir / "rules.garbage").mkdir()
        (store.work_dir / "rules-other.9.9.9").mkdir()

        found = store.installed_package("rules")
        assert found.version == "1.10.0"
        assert found.files == ["a.md"]
        assert store.installed_package("missing") is None


def test_safe_package_name():
    assert safe_package_name("@acme/rules") == "acme+rules"
    assert safe_package_name("plain") == "plain"


def test_package_name_validation():
    validate_package_name("@acme/my-rules")
    validate_package_name("rules_2")
    for bad in ["", "Upper", "@acme", "a/b", "-lead", "has space"]:
        with pytest.raises(InvalidFormat):
            validate_package_name(bad)


def test_package_manifest_validation():
    PackageManifest(name="rules", version="1.0.0", files=["a.md"], targets=["cursor"]).validate()
    with pytest.raises(InvalidFormat):
        PackageManifest(name="rules", version="1.0", files=["a.md"]).validate()
    with pytest.raises(InvalidFormat):
        PackageManifest(name="rules", version="1.0.0", files=[]).validate()
    with pytest.raises(InvalidFormat):
        PackageManifest(name="rules", version="1.0.0", files=["a.md"], targets=["emacs"]).validate()


def test_project_manifest_round_trip():
    manifest = ProjectManifest(dependencies={"b": "2.0.0", "a": "1.0.0"})
    data = manifest.to_dict()
    assert list(data["dependencies"]) == ["a", "b"]
    assert ProjectManifest.from_dict(data).dependencies == {"a": "1.0.0", "b": "2.0.0"}
    with pytest.raises(InvalidFormat):
        ProjectManifest.from_dict({"dependencies": ["a"]})
