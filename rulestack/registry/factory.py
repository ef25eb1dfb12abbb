"""Build the client for a registry from its declared type."""

from __future__ import annotations

from rulestack.registry.base import RegistryClient
from rulestack.registry.git_client import GitRegistryClient
from rulestack.registry.http_client import HTTPRegistryClient
from rulestack.registry.models import RegistryConfig, RegistryType

_BUILDERS = {
    RegistryType.HTTP: HTTPRegistryClient,
    RegistryType.GIT: GitRegistryClient,
}


def create_client(config: RegistryConfig, **kwargs) -> RegistryClient:
    """Return a client for ``config``.

    Extra keyword arguments go to the backend constructor (tests use this
    to inject transports and fake host APIs).
    """
    return _BUILDERS[RegistryType.parse(config.type)](config, **kwargs)
