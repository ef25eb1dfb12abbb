"""Manifests, lockfile and install reconciliation."""
