"""Batch publishing of staged archives.

Archives are published one at a time in discovery order. A failure is
recorded against its archive and the batch moves on; only archives that
published successfully are removed from the staging area.
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from rulestack.errors import RulestackError
from rulestack.packaging.archive import ARCHIVE_SUFFIX, read_embedded_manifest
from rulestack.registry.base import RegistryClient
from rulestack.registry.models import PublishResult, RegistryConfig

logger = logging.getLogger(__name__)


@dataclass
class PublishOutcome:
    """Result of publishing one staged archive."""

    archive_path: Path
    package_name: str = ""
    version: str = ""
    result: PublishResult | None = None
    error: RulestackError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


@dataclass
class PublishReport:
    outcomes: list[PublishOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[PublishOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[PublishOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        """False if any archive failed (an empty batch is a success)."""
        return not self.failed


class PublishOrchestrator:
    """Publishes every pending archive in ``staging_dir`` to one registry."""

    def __init__(
        self,
        client: RegistryClient,
        staging_dir: str | Path,
        registry: RegistryConfig | None = None,
        health_check: bool = True,
    ):
        self.client = client
        self.staging_dir = Path(staging_dir)
        self.registry = registry
        self.health_check = health_check

    @property
    def registry_name(self) -> str:
        return self.registry.name if self.registry else ""

    def discover(self) -> list[Path]:
        if not self.staging_dir.is_dir():
            return []
        return sorted(p for p in self.staging_dir.glob(f"*{ARCHIVE_SUFFIX}") if p.is_file())

    def publish_all(self) -> PublishReport:
        report = PublishReport()
        archives = self.discover()
        if not archives:
            return report

        if self.health_check:
            try:
                self.client.health()
            except RulestackError as exc:
                logger.error("registry %s failed its health check: %s", self.registry_name, exc)
                report.outcomes = [PublishOutcome(archive_path=path, error=exc) for path in archives]
                return report

        for path in archives:
            report.outcomes.append(self.publish_one(path))
        return report

    def publish_one(self, archive_path: Path) -> PublishOutcome:
        """Publish a single archive; errors are captured on the outcome."""
        outcome = PublishOutcome(archive_path=archive_path)
        try:
            manifest = read_embedded_manifest(archive_path)
            outcome.package_name = manifest.name
            outcome.version = manifest.version
            with tempfile.TemporaryDirectory(prefix="rulestack-publish-") as tmpdir:
                manifest_path = Path(tmpdir) / "manifest.json"
                manifest_path.write_text(json.dumps(manifest.to_dict(), indent=2))
                outcome.result = self.client.publish(manifest_path, archive_path)
        except OSError as exc:
            outcome.error = RulestackError(
                f"cannot publish {archive_path.name}: {exc}",
                package=outcome.package_name,
                version=outcome.version,
                registry=self.registry_name,
            )
            logger.error("publishing %s failed: %s", archive_path.name, exc)
            return outcome
        except RulestackError as exc:
            if not exc.package and outcome.package_name:
                exc.package, exc.version = outcome.package_name, outcome.version
            if not exc.registry:
                exc.registry = self.registry_name
            outcome.error = exc
            logger.error("publishing %s failed: %s", archive_path.name, exc)
            return outcome
        except Exception as exc:
            # one archive never ends the batch
            outcome.error = RulestackError(
                f"unexpected error publishing {archive_path.name}: {type(exc).__name__}: {exc}",
                package=outcome.package_name,
                version=outcome.version,
                registry=self.registry_name,
            )
            logger.exception("publishing %s failed unexpectedly", archive_path.name)
            return outcome

        archive_path.unlink(missing_ok=True)
        logger.info("published %s@%s; removed %s", outcome.package_name, outcome.version, archive_path.name)
        return outcome
