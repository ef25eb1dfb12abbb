"""RuleStack CLI — pack, publish and install ruleset packages."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from rulestack import __version__
from rulestack.errors import RulestackError

console = Console()


@contextmanager
def _reported():
    """Print ``RulestackError`` without a traceback and exit non-zero."""
    try:
        yield
    except RulestackError as exc:
        console.print(f"[red]Error:[/] {escape(str(exc))}")
        raise SystemExit(1) from exc


def _store(ctx: click.Context):
    from rulestack.manifest.store import ManifestStore

    return ManifestStore(ctx.obj["project_dir"])


def _registry_config(registry_name: str | None):
    from rulestack.config.settings import load_cli_config

    cfg = load_cli_config()
    if registry_name:
        return cfg.registry(registry_name)
    return cfg.active_registry()


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", is_flag=True, help="Log debug output to stderr")
@click.option("--project-dir", "-C", default=".", type=click.Path(file_okay=False), help="Project root")
@click.pass_context
def main(ctx: click.Context, verbose: bool, project_dir: str):
    """RuleStack — a package registry for AI-assistant rulesets.

    Stage rule files into versioned archives, publish them to an HTTP or
    git-backed registry, and install them into projects.
    """
    from rulestack.logging_config import setup_logging

    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["project_dir"] = project_dir


# ── Project ──────────────────────────────────────────────────────────


@main.command()
@click.option("--name", default="", help="Package name for this project, optionally @scope/name")
@click.option("--description", default="", help="Project description")
@click.option("--force", is_flag=True, help="Rewrite an existing rulestack.json")
@click.pass_context
def init(ctx, name, description, force):
    """Create rulestack.json, rules/ and the .rulestack work directory."""
    store = _store(ctx)
    with _reported():
        created = store.init_project(name=name, description=description, force=force)

    if not created:
        console.print(f"[yellow]Project already initialized in {store.project_root}. Use --force to reinitialize.[/]")
        return
    console.print(f"[green]Initialized[/] RuleStack project in {store.project_root}")
    console.print("  rulestack.json")
    console.print("  rules/example-rule.md")
    console.print("  .rulestack/")


@main.command(name="list")
@click.pass_context
def list_installed(ctx):
    """List the packages recorded in the lockfile."""
    with _reported():
        lock = _store(ctx).load_lockfile()

    if not lock.packages:
        console.print("[yellow]No packages installed.[/]")
        return

    table = Table(title=f"Installed packages ({len(lock.packages)})")
    table.add_column("Package", style="cyan")
    table.add_column("Version")
    table.add_column("Path")
    table.add_column("Registry")
    table.add_column("SHA256")
    for name, entry in sorted(lock.packages.items()):
        table.add_row(name, entry.version, entry.install_path, entry.registry or "-", entry.sha256[:12])
    console.print(table)


# ── Pack ─────────────────────────────────────────────────────────────


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--package", "-p", "package_name", required=True, help="Package name, optionally @scope/name")
@click.option("--version", "-v", "version", default=None, help="Explicit version (default: bump patch)")
@click.option("--description", default="", help="Package description")
@click.option("--tag", multiple=True, help="Tag (repeatable)")
@click.option("--target", multiple=True, help="Target assistant, e.g. cursor (repeatable)")
@click.pass_context
def pack(ctx, files, package_name, version, description, tag, target):
    """Stage FILES as a new version of a package."""
    from rulestack.packaging.archive import ArchiveBuilder

    with _reported():
        staged = ArchiveBuilder(_store(ctx)).build(
            package_name,
            list(files),
            version=version,
            description=description,
            targets=list(target),
            tags=list(tag),
        )

    console.print(f"[green]Staged[/] {staged.package_name}@{staged.version}")
    console.print(f"  Archive: {staged.archive_path}")
    console.print(f"  SHA256:  {staged.sha256}")
    console.print(f"  Files:   {', '.join(sorted(staged.file_paths))}")


# ── Publish ──────────────────────────────────────────────────────────


@main.command()
@click.option("--registry", "-r", "registry_name", default=None, help="Registry name (default: active)")
@click.option("--health-check/--no-health-check", default=True, help="Check the registry before publishing")
@click.pass_context
def publish(ctx, registry_name, health_check):
    """Publish every staged archive to a registry."""
    from rulestack.publish.orchestrator import PublishOrchestrator
    from rulestack.registry.factory import create_client

    with _reported():
        reg = _registry_config(registry_name)
        client = create_client(reg)
        try:
            report = PublishOrchestrator(client, _store(ctx).staging_dir, reg, health_check).publish_all()
        finally:
            client.close()

    if not report.outcomes:
        console.print("[yellow]Nothing staged. Run 'rulestack pack' first.[/]")
        return

    for outcome in report.outcomes:
        label = f"{outcome.package_name}@{outcome.version}" if outcome.package_name else outcome.archive_path.name
        if outcome.ok:
            result = outcome.result
            console.print(f"  [green]OK[/] {label}")
            console.print(f"     {escape(result.message)}")
            if result.locator:
                console.print(f"     {result.locator}")
        else:
            console.print(f"  [red]FAIL[/] {label}: {escape(str(outcome.error))}")

    console.print(
        Panel(
            f"{len(report.succeeded)} published, {len(report.failed)} failed",
            title=f"Publish to {reg.name}",
        )
    )
    if not report.ok:
        raise SystemExit(1)


# ── Install ──────────────────────────────────────────────────────────


@main.command()
@click.argument("packages", nargs=-1)
@click.option("--registry", "-r", "registry_name", default=None, help="Registry name (default: active)")
@click.pass_context
def install(ctx, packages, registry_name):
    """Install the project's dependencies.

    PACKAGES given as NAME@VERSION are added to rulestack.json first.
    """
    from rulestack.install.installer import Installer
    from rulestack.manifest.models import validate_package_name
    from rulestack.registry.factory import create_client
    from rulestack.versioning import parse

    store = _store(ctx)
    with _reported():
        if packages:
            manifest = store.load_project_manifest()
            for requirement in packages:
                name, sep, version = requirement.rpartition("@")
                if not sep or not name:
                    raise click.BadParameter(f"{requirement!r} is not NAME@VERSION", param_hint="PACKAGES")
                validate_package_name(name)
                parse(version)
                manifest.dependencies[name] = version
            store.save_project_manifest(manifest)
        else:
            store.require_manifest()

        reg = _registry_config(registry_name)
        client = create_client(reg)
        try:
            report = Installer(store, client, reg.name).install()
        finally:
            client.close()

    table = Table(title=f"Install from {reg.name}")
    table.add_column("Package", style="cyan")
    table.add_column("Version")
    table.add_column("Result")
    for outcome in report.outcomes:
        if outcome.error:
            result = f"[red]{escape(str(outcome.error))}[/]"
        elif outcome.install_path:
            result = f"[green]{outcome.action.value}[/] {outcome.install_path}"
        else:
            result = f"[dim]{outcome.action.value}[/]"
        table.add_row(outcome.name, outcome.version, result)
    console.print(table)

    if not report.ok:
        raise SystemExit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show what 'install' would do and which archives await publishing."""
    from rulestack.packaging.archive import describe_staged
    from rulestack.publish.orchestrator import PublishOrchestrator

    store = _store(ctx)
    with _reported():
        plan = store.plan()

    if plan:
        table = Table(title="Dependencies")
        table.add_column("Package", style="cyan")
        table.add_column("Wanted")
        table.add_column("Installed")
        table.add_column("Action")
        for item in plan:
            action = f"[red]{escape(item.error)}[/]" if item.error else item.action.value
            table.add_row(item.name, item.desired, item.installed or "-", action)
        console.print(table)
    else:
        console.print("[yellow]No dependencies declared.[/]")

    archives = PublishOrchestrator(None, store.staging_dir).discover()
    if not archives:
        console.print("[dim]No staged packages.[/]")
        return

    staged = Table(title="Staged for publishing")
    staged.add_column("Package", style="cyan")
    staged.add_column("Version")
    staged.add_column("Files", justify="right")
    staged.add_column("Size", justify="right")
    staged.add_column("SHA256")
    for path in archives:
        try:
            info = describe_staged(path)
        except RulestackError as exc:
            staged.add_row(path.name, "-", "-", "-", f"[red]{escape(str(exc))}[/]")
            continue
        staged.add_row(
            info.package_name, info.version, str(len(info.file_paths)), f"{info.size_bytes} B", info.sha256[:12]
        )
    console.print(staged)


# ── Search ───────────────────────────────────────────────────────────


@main.command()
@click.argument("query", required=False, default="")
@click.option("--tag", default="", help="Filter by tag")
@click.option("--target", default="", help="Filter by target")
@click.option("--limit", default=20, show_default=True, help="Maximum results")
@click.option("--registry", "-r", "registry_name", default=None, help="Registry name (default: active)")
def search(query, tag, target, limit, registry_name):
    """Search a registry for packages."""
    from rulestack.registry.factory import create_client

    with _reported():
        reg = _registry_config(registry_name)
        client = create_client(reg)
        try:
            results = client.search(query, tag=tag, target=target, limit=limit)
        finally:
            client.close()

    if not results:
        console.print("[yellow]No matching packages found.[/]")
        return

    table = Table(title=f"Packages ({len(results)} found)")
    table.add_column("Name", style="cyan")
    table.add_column("Latest")
    table.add_column("Tags")
    table.add_column("Description")
    for row in results:
        table.add_row(row.name, row.latest, ", ".join(row.tags), row.description[:60])
    console.print(table)


# ── Registry ─────────────────────────────────────────────────────────


@main.group()
def registry():
    """Manage configured registries."""


@registry.command(name="add")
@click.argument("name")
@click.argument("url")
@click.option("--type", "registry_type", default="http", type=click.Choice(["http", "git"]))
@click.option("--token", default="", help="Bearer token (http) or access token (git)")
@click.option("--api-url", default="", help="Host API base URL (git registries off github.com)")
@click.option("--use", "make_current", is_flag=True, help="Make this the active registry")
def registry_add(name, url, registry_type, token, api_url, make_current):
    """Add or replace a registry."""
    from rulestack.config.settings import load_cli_config, save_cli_config
    from rulestack.registry.models import RegistryConfig, RegistryType

    with _reported():
        cfg = load_cli_config()
        cfg.add(
            RegistryConfig(name=name, url=url, type=RegistryType.parse(registry_type), token=token, api_url=api_url),
            make_current=make_current,
        )
        path = save_cli_config(cfg)

    active = " (active)" if cfg.current == name else ""
    console.print(f"[green]Added[/] registry {name}{active} -> {path}")


@registry.command(name="list")
def registry_list():
    """List configured registries."""
    from rulestack.config.settings import load_cli_config

    with _reported():
        cfg = load_cli_config()

    if not cfg.registries:
        console.print("[yellow]No registries configured.[/]")
        return

    table = Table(title="Registries")
    table.add_column("", width=1)
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("URL")
    table.add_column("Token")
    for name, reg in sorted(cfg.registries.items()):
        marker = "[green]*[/]" if name == cfg.current else ""
        table.add_row(marker, name, reg.type.value, reg.url, "set" if reg.token else "-")
    console.print(table)


@registry.command(name="use")
@click.argument("name")
def registry_use(name):
    """Make NAME the active registry."""
    from rulestack.config.settings import load_cli_config, save_cli_config

    with _reported():
        cfg = load_cli_config()
        cfg.use(name)
        save_cli_config(cfg)
    console.print(f"Active registry: [cyan]{name}[/]")


@registry.command(name="remove")
@click.argument("name")
def registry_remove(name):
    """Remove the registry NAME from the configuration."""
    from rulestack.config.settings import load_cli_config, save_cli_config

    with _reported():
        cfg = load_cli_config()
        was_active = cfg.current == name
        removed = cfg.remove(name)
        save_cli_config(cfg)

    console.print(f"[green]Removed[/] registry {name} ({removed.url})")
    if was_active:
        console.print("[yellow]It was the active registry; run 'rulestack registry use' to pick another.[/]")


@registry.command(name="health")
@click.argument("name", required=False)
def registry_health(name):
    """Check that a registry is reachable and well-formed."""
    from rulestack.registry.factory import create_client

    with _reported():
        reg = _registry_config(name)
        client = create_client(reg)
        try:
            client.health()
        finally:
            client.close()
    console.print(f"[green]OK[/] {reg.name} ({reg.url})")


@registry.command(name="init")
@click.argument("name", required=False)
def registry_init(name):
    """Seed an empty git repository with the registry layout."""
    from rulestack.registry.git_client import GitRegistryClient
    from rulestack.registry.models import RegistryType

    with _reported():
        reg = _registry_config(name)
        if reg.type != RegistryType.GIT:
            raise RulestackError("only git registries can be initialized", registry=reg.name)
        client = GitRegistryClient(reg)
        try:
            created = client.initialize()
        finally:
            client.close()

    if created:
        console.print(f"[green]Initialized[/] registry {reg.name} at {reg.url}")
    else:
        console.print(f"[yellow]{reg.name} is already a registry.[/]")


# ── Serve ────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.option("--data-dir", default=None, help="Package store directory (default: $RULESTACK_SERVER_DATA)")
@click.option("--token", "tokens", multiple=True, help="Accepted publish token (repeatable)")
@click.option("--pool-size", default=8, show_default=True, type=int)
def serve(host, port, data_dir, tokens, pool_size):
    """Run the reference HTTP registry server."""
    import uvicorn

    from rulestack.server.app import ServerSettings, create_app

    settings = ServerSettings.from_env()
    if data_dir:
        settings.data_dir = data_dir
    if tokens:
        settings.tokens = list(tokens)
    settings.pool_size = pool_size

    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    console.print(f"\n[bold blue]RuleStack[/] — serving {settings.data_dir} on http://{host}:{port}\n")
    uvicorn.run(create_app(settings=settings), host=host, port=port)


if __name__ == "__main__":
    main()
