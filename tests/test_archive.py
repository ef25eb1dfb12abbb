"""Tests for staging packages into archives."""

import hashlib
import io
import tarfile
import tempfile
from pathlib import Path

import pytest

from rulestack.errors import FileConflict, InvalidFormat, UnsafeContent, VersionRegression
from rulestack.manifest.store import ManifestStore
from rulestack.packaging.archive import (
    ArchiveBuilder,
    build_tarball,
    describe_staged,
    read_embedded_manifest,
    sha256_file,
    unpack,
    validate_archive,
)


def _rule(root: Path, name: str, text: str = "# Rule\n\nUse tabs.\n") -> Path:
    path = root / "src" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_first_pack_defaults_to_1_0_0():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        staged = builder.build("@acme/style", [_rule(root, "style.md")], description="House style", tags=["style"])

        assert staged.version == "1.0.0"
        assert staged.file_paths == frozenset({"style.md"})
        assert staged.archive_path == root.resolve() / ".rulestack" / "staged" / "acme+style-1.0.0.tgz"
        assert staged.sha256 == sha256_file(staged.archive_path)
        assert staged.size_bytes == staged.archive_path.stat().st_size

        manifest = read_embedded_manifest(staged.archive_path)
        assert manifest.name == "@acme/style"
        assert manifest.files == ["style.md"]
        assert manifest.description == "House style"
        assert (root / ".rulestack" / "acme+style.1.0.0" / "style.md").exists()


def test_second_pack_bumps_patch_and_keeps_prior_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        builder.build("style", [_rule(root, "a.md")])
        staged = builder.build("style", [_rule(root, "b.md")])

        assert staged.version == "1.0.1"
        assert staged.file_paths == frozenset({"a.md", "b.md"})
        # only the newest pending archive is kept
        assert [p.name for p in builder.staging_dir.iterdir()] == ["style-1.0.1.tgz"]


def test_scoped_and_dashed_names_stay_apart():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        builder.build("@acme/style", [_rule(root, "a.md")], version="1.0.0")
        builder.build("acme-style", [_rule(root, "b.md")], version="2.0.0")

        staged = sorted(p.name for p in builder.staging_dir.iterdir())
        assert staged == ["acme+style-1.0.0.tgz", "acme-style-2.0.0.tgz"]
        assert builder.store.installed_package("@acme/style").version == "1.0.0"
        assert builder.store.installed_package("acme-style").files == ["b.md"]


def test_file_conflict_without_explicit_version():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        builder.build("style", [_rule(root, "a.md")])

        with pytest.raises(FileConflict) as excinfo:
            builder.build("style", [_rule(root, "a.md", "# Changed\n")])
        assert excinfo.value.files == ["a.md"]
        assert not (root / ".rulestack" / "style.1.0.1").exists()


def test_explicit_higher_version_replaces_conflicting_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        builder.build("style", [_rule(root, "a.md"), _rule(root, "b.md")])
        staged = builder.build("style", [_rule(root, "a.md", "# New rule\n")], version="2.0.0")

        assert staged.version == "2.0.0"
        assert staged.file_paths == frozenset({"a.md", "b.md"})
        with tempfile.TemporaryDirectory() as out:
            unpack(staged.archive_path, out)
            assert (Path(out) / "a.md").read_text() == "# New rule\n"


def test_explicit_version_must_increase():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        builder.build("style", [_rule(root, "a.md")], version="1.5.0")
        with pytest.raises(VersionRegression):
            builder.build("style", [_rule(root, "b.md")], version="1.5.0")
        with pytest.raises(VersionRegression):
            builder.build("style", [_rule(root, "b.md")], version="1.0.0")


def test_invalid_inputs():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        with pytest.raises(InvalidFormat):
            builder.build("Bad Name", [_rule(root, "a.md")])
        with pytest.raises(InvalidFormat):
            builder.build("style", [])
        with pytest.raises(InvalidFormat):
            builder.build("style", [_rule(root, "a.md")], version="latest")


def test_unsafe_files_are_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        builder = ArchiveBuilder(ManifestStore(root))
        with pytest.raises(UnsafeContent):
            builder.build("style", [_rule(root, "run.sh", "echo hi\n")])
        with pytest.raises(UnsafeContent):
            builder.build("style", [_rule(root, "x.md", "<script>alert(1)</script>")])
        with pytest.raises(UnsafeContent):
            builder.build("style", [_rule(root, "rulestack.json", "{}")])
        assert not (root / ".rulestack" / "staged").exists()


def test_archive_bytes_are_deterministic():
    entries = {"b.md": b"second", "a.md": b"first", "rulestack.json": b"{}"}
    first = build_tarball(entries)
    second = build_tarball(dict(reversed(list(entries.items()))))
    assert hashlib.sha256(first).digest() == hashlib.sha256(second).digest()

    with tarfile.open(fileobj=io.BytesIO(first), mode="r:gz") as tar:
        members = tar.getmembers()
    assert [m.name for m in members] == ["a.md", "b.md", "rulestack.json"]
    assert all(m.mtime == 0 and m.mode == 0o644 for m in members)


def test_validate_archive_rejects_traversal():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "evil.tgz"
        path.write_bytes(build_tarball({"../escape.md": b"x", "rulestack.json": b"{}"}))
        with pytest.raises(UnsafeContent):
            validate_archive(path)
        with pytest.raises(UnsafeContent):
            unpack(path, Path(tmpdir) / "out")
        assert not (Path(tmpdir) / "escape.md").exists()


def test_read_embedded_manifest_requires_manifest():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bare.tgz"
        path.write_bytes(build_tarball({"a.md": b"x"}))
        with pytest.raises(InvalidFormat):
            read_embedded_manifest(path)

        junk = Path(tmpdir) / "junk.tgz"
        junk.write_bytes(b"not a tarball")
        with pytest.raises(InvalidFormat):
            read_embedded_manifest(junk)


def test_describe_staged_matches_build():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        staged = ArchiveBuilder(ManifestStore(root)).build("style", [_rule(root, "a.md")])
        assert describe_staged(staged.archive_path) == staged
