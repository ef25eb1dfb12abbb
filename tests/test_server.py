"""Tests for the registry server, driven through the REST client."""

import json
import threading
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from rulestack.errors import Conflict, NotFound, RegistryError, Unauthorized
from rulestack.manifest.store import ManifestStore
from rulestack.packaging.archive import ArchiveBuilder, read_embedded_manifest
from rulestack.registry.http_client import HTTPRegistryClient
from rulestack.registry.models import RegistryConfig
from rulestack.server.app import ServerSettings, create_app
from rulestack.server.repository import FileSystemRepository
from rulestack.server.resilience import BackoffConfig
from rulestack.utils.deadline import Deadline

TOKEN = "publish-secret"


def _stage(root: Path, name: str = "@acme/style", version: str | None = None, text: str = "# Style\n"):
    src = root / "src" / f"{name.split('/')[-1]}.md"
    src.parent.mkdir(parents=True, exist_ok=True)
    src.write_text(text)
    staged = ArchiveBuilder(ManifestStore(root / "project")).build(name, [src], version=version, tags=["style"])
    manifest = root / f"{staged.version}.manifest.json"
    manifest.write_text(json.dumps(read_embedded_manifest(staged.archive_path).to_dict()))
    return staged, manifest


def _registry(app, token: str = TOKEN) -> HTTPRegistryClient:
    config = RegistryConfig(name="local", url="http://testserver", token=token)
    return HTTPRegistryClient(config, http_client=TestClient(app))


def _app(tmpdir: str, **settings):
    return create_app(settings=ServerSettings(data_dir=str(Path(tmpdir) / "data"), tokens=[TOKEN], **settings))


def test_publish_fetch_and_download():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        client = _registry(_app(tmpdir))
        staged, manifest = _stage(root)

        client.health()
        result = client.publish(manifest, staged.archive_path)
        assert result.sha256 == staged.sha256
        assert result.locator == "http://testserver/packages/@acme/style/versions/1.0.0"

        info = client.get_version("@acme/style", "1.0.0")
        assert info.sha256 == staged.sha256
        assert info.size == staged.size_bytes
        assert info.files == ["style.md"]

        package = client.get_package("@acme/style")
        assert package.latest == "1.0.0"
        assert package.version_numbers == ["1.0.0"]

        dest = root / "download.tgz"
        client.download_blob(staged.sha256, dest)
        assert dest.read_bytes() == staged.archive_path.read_bytes()


def test_latest_tracks_highest_version():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        client = _registry(_app(tmpdir))
        for version in ("1.0.0", "1.10.0"):
            staged, manifest = _stage(root, version=version, text=f"# {version}\n")
            client.publish(manifest, staged.archive_path)

        assert client.get_package("@acme/style").version_numbers == ["1.0.0", "1.10.0"]
        [row] = client.search("style")
        assert row.latest == "1.10.0"
        assert client.search(tag="style")[0].name == "@acme/style"
        assert client.search(tag="other") == []
        assert client.search("nothing-like-this") == []


def test_duplicate_version_conflicts():
    with tempfile.TemporaryDirectory() as tmpdir:
        client = _registry(_app(tmpdir))
        staged, manifest = _stage(Path(tmpdir))
        client.publish(manifest, staged.archive_path)
        with pytest.raises(Conflict):
            client.publish(manifest, staged.archive_path)


def test_publish_requires_valid_token():
    with tempfile.TemporaryDirectory() as tmpdir:
        app = _app(tmpdir)
        staged, manifest = _stage(Path(tmpdir))
        with pytest.raises(Unauthorized):
            _registry(app, token="").publish(manifest, staged.archive_path)
        with pytest.raises(Unauthorized):
            _registry(app, token="wrong").publish(manifest, staged.archive_path)


def test_manifest_must_match_archive():
    with tempfile.TemporaryDirectory() as tmpdir:
        client = _registry(_app(tmpdir))
        staged, manifest = _stage(Path(tmpdir))
        data = json.loads(manifest.read_text())
        data["version"] = "9.9.9"
        manifest.write_text(json.dumps(data))

        with pytest.raises(RegistryError) as excinfo:
            client.publish(manifest, staged.archive_path)
        assert excinfo.value.status_code == 400


def test_unknown_package_and_blob():
    with tempfile.TemporaryDirectory() as tmpdir:
        client = _registry(_app(tmpdir))
        with pytest.raises(NotFound):
            client.get_package("missing")
        with pytest.raises(NotFound):
            client.get_version("missing", "1.0.0")
        with pytest.raises(NotFound):
            client.download_blob("f" * 64, Path(tmpdir) / "x.tgz")

        http = TestClient(_app(tmpdir))
        assert http.get("/blobs/not-a-hash").status_code == 404


def test_exhausted_pool_returns_503():
    with tempfile.TemporaryDirectory() as tmpdir:
        app = _app(tmpdir, pool_size=1, request_timeout=0.1)
        http = TestClient(app)
        with app.state.pool.acquire(Deadline(5)):
            response = http.get("/packages")
        assert response.status_code == 503
        assert http.get("/packages").status_code == 200


def test_persistent_write_conflict_returns_503():
    with tempfile.TemporaryDirectory() as tmpdir:
        repository = FileSystemRepository(Path(tmpdir) / "data", tokens=[TOKEN], write_lock_timeout=0.01)
        settings = ServerSettings(tokens=[TOKEN], backoff=BackoffConfig(base_delay=0.001, max_retries=2))
        app = create_app(repository=repository, settings=settings)
        staged, manifest = _stage(Path(tmpdir))

        repository._write_lock.acquire()
        try:
            with pytest.raises(RegistryError) as excinfo:
                _registry(app).publish(manifest, staged.archive_path)
        finally:
            repository._write_lock.release()
        assert excinfo.value.status_code == 503

        _registry(app).publish(manifest, staged.archive_path)


def test_repository_persists_index():
    with tempfile.TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir) / "data"
        repo = FileSystemRepository(data_dir)
        repo.create_package("style")
        repo.create_version("style", {"version": "1.0.0", "files": ["a.md"]}, b"blob")

        reopened = FileSystemRepository(data_dir)
        assert reopened.get_version("style", "1.0.0")["size"] == 4
        assert reopened.blob_path(reopened.get_version("style", "1.0.0")["sha256"]).read_bytes() == b"blob"
        assert not reopened.validate_token("anything")


def test_readers_never_see_a_package_mid_write():
    with tempfile.TemporaryDirectory() as tmpdir:
        repo = FileSystemRepository(Path(tmpdir) / "data")
        repo.create_package("style")
        repo.create_version("style", {"version": "1.0.0", "files": ["a.md"]}, b"v0")
        published = repo._index["style"]

        errors = []
        done = threading.Event()

        def read():
            while not done.is_set():
                try:
                    repo.search("sty")
                    repo.get_package("style")
                    repo.get_version("style", "1.0.0")
                except Exception as exc:
                    errors.append(exc)
                    return

        readers = [threading.Thread(target=read) for _ in range(4)]
        for thread in readers:
            thread.start()
        try:
            for patch in range(1, 150):
                repo.create_version("style", {"version": f"1.0.{patch}", "files": ["a.md"]}, f"v{patch}".encode())
        finally:
            done.set()
            for thread in readers:
                thread.join()

        assert errors == []
        # a package dict handed out earlier is never mutated in place
        assert list(published["versions"]) == ["1.0.0"]
        assert repo.get_package("style")["latest"] == "1.0.149"
