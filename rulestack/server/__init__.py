"""Reference registry server for the REST registry backend."""

from rulestack.server.app import ServerSettings, create_app

__all__ = ["ServerSettings", "create_app"]
