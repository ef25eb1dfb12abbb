"""CLI configuration: named registries, the active one, and project paths.

The registries file lives at ``~/.rulestack/config.yaml`` (the directory can
be moved with ``RULESTACK_CONFIG``)::

    current: team
    registries:
      team:
        url: https://github.com/acme/rules-registry
        type: git
        token: ghp_...
      public:
        url: https://registry.rulestack.dev
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from rulestack.errors import InvalidFormat, RulestackError
from rulestack.registry.models import RegistryConfig

logger = logging.getLogger(__name__)

CONFIG_ENV = "RULESTACK_CONFIG"
TOKEN_ENV = "RULESTACK_TOKEN"
CONFIG_FILE = "config.yaml"

# Project layout
PROJECT_MANIFEST = "rulestack.json"
LOCKFILE = "rulestack.lock.json"
WORK_DIR = ".rulestack"
STAGING_DIR = "staged"
RULES_DIR = "rules"


def config_dir() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".rulestack"


def config_path() -> Path:
    return config_dir() / CONFIG_FILE


def default_git_cache_dir() -> Path:
    return config_dir() / "cache" / "git"


@dataclass
class CLIConfig:
    """Every configured registry plus the name of the active one."""

    current: str = ""
    registries: dict[str, RegistryConfig] = field(default_factory=dict)

    def registry(self, name: str) -> RegistryConfig:
        try:
            return self.registries[name]
        except KeyError:
            raise RulestackError(f"registry '{name}' is not configured", registry=name) from None

    def active_registry(self) -> RegistryConfig:
        """Return the active registry, filling the token from the environment.

        ``RULESTACK_TOKEN`` only applies when the entry has no token of its
        own, so one registry's override never leaks into another.
        """
        if not self.current:
            raise RulestackError("no active registry; run 'rulestack registry add' first")
        cfg = self.registry(self.current)
        if not cfg.token and os.environ.get(TOKEN_ENV):
            cfg = replace(cfg, token=os.environ[TOKEN_ENV])
        return cfg

    def add(self, cfg: RegistryConfig, make_current: bool = False) -> None:
        self.registries[cfg.name] = cfg
        if make_current or not self.current:
            self.current = cfg.name

    def use(self, name: str) -> None:
        self.registry(name)
        self.current = name

    def remove(self, name: str) -> RegistryConfig:
        """Drop ``name``; removing the active registry leaves none active."""
        removed = self.registry(name)
        del self.registries[name]
        if self.current == name:
            self.current = ""
        return removed


def load_cli_config(path: str | Path | None = None) -> CLIConfig:
    """Load the registries file; a missing file is an empty config."""
    path = Path(path) if path else config_path()
    if not path.exists():
        return CLIConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise InvalidFormat(f"cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidFormat(f"{path} must contain a mapping")

    registries = {}
    for name, entry in (data.get("registries") or {}).items():
        registries[name] = RegistryConfig.from_dict(name, entry or {})

    current = data.get("current", "")
    if current and current not in registries:
        logger.warning("active registry '%s' is not configured; ignoring", current)
        current = ""
    return CLIConfig(current=current, registries=registries)


def save_cli_config(cfg: CLIConfig, path: str | Path | None = None) -> Path:
    """Write the registries file with owner-only permissions (it holds tokens)."""
    path = Path(path) if path else config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "current": cfg.current,
        "registries": {name: reg.to_dict() for name, reg in sorted(cfg.registries.items())},
    }
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    os.chmod(path, 0o600)
    return path
