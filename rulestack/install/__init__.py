"""Installing locked dependencies from a registry."""
