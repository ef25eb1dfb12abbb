"""Tests for the rulestack command line."""

import json
import logging
import tempfile
from pathlib import Path

from click.testing import CliRunner
from fakes import FakeRegistry
from git import Repo

from rulestack.cli import main
from rulestack.packaging.archive import build_tarball


def _invoke(args: list[str], config_dir: Path):
    result = CliRunner().invoke(main, args, env={"RULESTACK_CONFIG": str(config_dir), "RULESTACK_TOKEN": ""})
    # the CLI installs a handler bound to the runner's stderr
    logger = logging.getLogger("rulestack")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    return result


def _rule(root: Path, name: str = "style.md") -> Path:
    path = root / "src" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# Style\n\nPrefer small functions.\n")
    return path


def test_version_option():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = _invoke(["--version"], Path(tmpdir))
        assert result.exit_code == 0
        assert "0.1.0" in result.output


def test_registry_add_list_use():
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = Path(tmpdir) / "cfg"
        assert _invoke(["registry", "add", "public", "https://r.example.com"], cfg).exit_code == 0
        assert _invoke(["registry", "add", "team", "https://github.com/acme/rules", "--type", "git"], cfg).exit_code == 0

        listed = _invoke(["registry", "list"], cfg)
        assert listed.exit_code == 0
        assert "public" in listed.output
        assert "team" in listed.output

        assert _invoke(["registry", "use", "team"], cfg).exit_code == 0
        assert "current: team" in (cfg / "config.yaml").read_text()

        missing = _invoke(["registry", "use", "nope"], cfg)
        assert missing.exit_code == 1
        assert "not configured" in missing.output


def test_pack_and_status():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        project = root / "project"
        project.mkdir()
        result = _invoke(["-C", str(project), "pack", str(_rule(root)), "-p", "style", "--tag", "go"], root / "cfg")
        assert result.exit_code == 0, result.output
        assert "style@1.0.0" in result.output
        assert (project / ".rulestack" / "staged" / "style-1.0.0.tgz").exists()

        conflict = _invoke(["-C", str(project), "pack", str(_rule(root)), "-p", "style"], root / "cfg")
        assert conflict.exit_code == 1
        assert "already exist" in conflict.output

        (project / "rulestack.json").write_text(json.dumps({"dependencies": {"other": "2.0.0"}}))
        status = _invoke(["-C", str(project), "status"], root / "cfg")
        assert status.exit_code == 0
        assert "install" in status.output
        assert "Staged for publishing" in status.output
        assert "1.0.0" in status.output


def test_git_registry_workflow():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        cfg = root / "cfg"
        project = root / "project"
        project.mkdir()
        bare = Repo.init(root / "remote.git", bare=True)

        assert _invoke(["registry", "add", "team", str(root / "remote.git"), "--type", "git"], cfg).exit_code == 0
        init = _invoke(["registry", "init"], cfg)
        assert init.exit_code == 0, init.output
        assert _invoke(["registry", "health"], cfg).exit_code == 0

        assert _invoke(["-C", str(project), "pack", str(_rule(root)), "-p", "@acme/style"], cfg).exit_code == 0
        published = _invoke(["-C", str(project), "publish"], cfg)
        assert published.exit_code == 0, published.output
        assert "Branch pushed" in published.output
        assert "publish/acme/style/1.0.0" in [head.name for head in bare.heads]
        assert list((project / ".rulestack" / "staged").glob("*.tgz")) == []

        nothing = _invoke(["-C", str(project), "publish"], cfg)
        assert nothing.exit_code == 0
        assert "Nothing staged" in nothing.output


def test_publish_partial_failure_exits_non_zero(monkeypatch):
    fake = FakeRegistry(fail_on={"beta"})
    monkeypatch.setattr("rulestack.registry.factory.create_client", lambda cfg: fake)
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        cfg = root / "cfg"
        project = root / "project"
        project.mkdir()
        _invoke(["registry", "add", "web", "https://r.example.com"], cfg)
        for name in ("alpha", "beta", "gamma"):
            _invoke(["-C", str(project), "pack", str(_rule(root, f"{name}.md")), "-p", name], cfg)

        result = _invoke(["-C", str(project), "publish", "--no-health-check"], cfg)

        assert result.exit_code == 1
        assert fake.published == ["alpha@1.0.0", "gamma@1.0.0"]
        assert "2 published, 1 failed" in result.output
        assert fake.closed


def test_install_adds_dependency(monkeypatch):
    fake = FakeRegistry()
    manifest = {"name": "style", "version": "1.0.0", "files": ["a.md"]}
    fake.add("style", "1.0.0", build_tarball({"a.md": b"# a\n", "rulestack.json": json.dumps(manifest).encode()}))
    monkeypatch.setattr("rulestack.registry.factory.create_client", lambda cfg: fake)
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        cfg = root / "cfg"
        project = root / "project"
        project.mkdir()
        _invoke(["registry", "add", "web", "https://r.example.com"], cfg)

        result = _invoke(["-C", str(project), "install", "style@1.0.0"], cfg)

        assert result.exit_code == 0, result.output
        assert (project / ".rulestack" / "style.1.0.0" / "a.md").exists()
        lock = json.loads((project / "rulestack.lock.json").read_text())
        assert lock["packages"]["style"]["version"] == "1.0.0"

        listed = _invoke(["-C", str(project), "list"], cfg)
        assert listed.exit_code == 0
        assert "style" in listed.output
        assert "web" in listed.output

        missing = _invoke(["-C", str(project), "install", "ghost@1.0.0"], cfg)
        assert missing.exit_code == 1


def test_install_without_manifest_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        result = _invoke(["-C", str(root), "install"], root / "cfg")
        assert result.exit_code == 1
        assert "rulestack.json" in result.output


def test_search_lists_results(monkeypatch):
    fake = FakeRegistry()
    fake.add("style", "1.0.0", b"x")
    monkeypatch.setattr("rulestack.registry.factory.create_client", lambda cfg: fake)
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = Path(tmpdir) / "cfg"
        _invoke(["registry", "add", "web", "https://r.example.com"], cfg)
        found = _invoke(["search", "sty"], cfg)
        assert found.exit_code == 0
        assert "style" in found.output
        empty = _invoke(["search", "zzz"], cfg)
        assert "No matching packages" in empty.output


def test_init_creates_project_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        project = root / "project"
        project.mkdir()

        result = _invoke(["-C", str(project), "init"], root / "cfg")
        assert result.exit_code == 0, result.output
        assert json.loads((project / "rulestack.json").read_text()) == {"dependencies": {}}
        assert (project / "rules" / "example-rule.md").exists()
        assert (project / ".rulestack").is_dir()

        (project / "rulestack.json").write_text(json.dumps({"dependencies": {"style": "1.0.0"}}))
        again = _invoke(["-C", str(project), "init"], root / "cfg")
        assert again.exit_code == 0
        assert "already initialized" in again.output
        assert "style" in (project / "rulestack.json").read_text()

        forced = _invoke(["-C", str(project), "init", "--force", "--name", "@acme/style"], root / "cfg")
        assert forced.exit_code == 0, forced.output
        manifest = json.loads((project / "rulestack.json").read_text())
        assert manifest["name"] == "@acme/style"
        assert manifest["dependencies"] == {"style": "1.0.0"}


def test_list_without_lockfile():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        result = _invoke(["-C", str(root), "list"], root / "cfg")
        assert result.exit_code == 0
        assert "No packages installed" in result.output


def test_status_without_staged_archives():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        result = _invoke(["-C", str(root), "status"], root / "cfg")
        assert result.exit_code == 0
        assert "No dependencies declared" in result.output
        assert "No staged packages" in result.output


def test_registry_remove_clears_active():
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = Path(tmpdir) / "cfg"
        _invoke(["registry", "add", "public", "https://r.example.com"], cfg)
        _invoke(["registry", "add", "team", "https://github.com/acme/rules", "--type", "git"], cfg)

        other = _invoke(["registry", "remove", "team"], cfg)
        assert other.exit_code == 0, other.output
        assert "https://github.com/acme/rules" in other.output
        assert "current: public" in (cfg / "config.yaml").read_text()

        active = _invoke(["registry", "remove", "public"], cfg)
        assert active.exit_code == 0
        assert "active registry" in active.output
        text = (cfg / "config.yaml").read_text()
        assert "public" not in text
        assert "current: ''" in text

        missing = _invoke(["registry", "remove", "public"], cfg)
        assert missing.exit_code == 1
        assert "not configured" in missing.output
