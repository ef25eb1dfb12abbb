"""Install and update project dependencies from a registry.

The plan is computed up front by the manifest store; each entry is then
fetched independently, so one broken package never blocks the rest.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from rulestack.errors import IntegrityMismatch, InvalidFormat, RulestackError
from rulestack.manifest.store import Action, ManifestStore, PlannedAction
from rulestack.packaging.archive import read_embedded_manifest, unpack
from rulestack.registry.base import RegistryClient

logger = logging.getLogger(__name__)


@dataclass
class InstallOutcome:
    name: str
    version: str
    action: Action | None = None
    install_path: Path | None = None
    error: RulestackError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class InstallReport:
    outcomes: list[InstallOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def installed(self) -> list[InstallOutcome]:
        return [o for o in self.outcomes if o.ok and o.action in (Action.INSTALL, Action.UPDATE)]


class Installer:
    """Executes the reconciliation plan against one registry."""

    def __init__(self, store: ManifestStore, client: RegistryClient, registry_name: str = ""):
        self.store = store
        self.client = client
        self.registry_name = registry_name

    def install(self) -> InstallReport:
        report = InstallReport()
        for item in self.store.plan():
            outcome = InstallOutcome(name=item.name, version=item.desired, action=item.action)
            if item.error:
                outcome.error = InvalidFormat(item.error, package=item.name)
            elif item.needs_fetch:
                try:
                    outcome.install_path = self._install_one(item)
                except RulestackError as exc:
                    outcome.error = exc
                    logger.error("installing %s@%s failed: %s", item.name, item.desired, exc)
                except Exception as exc:
                    outcome.error = RulestackError(
                        f"unexpected error: {type(exc).__name__}: {exc}",
                        package=item.name,
                        version=item.desired,
                        registry=self.registry_name,
                    )
                    logger.exception("installing %s@%s failed unexpectedly", item.name, item.desired)
            report.outcomes.append(outcome)
        return report

    def _install_one(self, item: PlannedAction) -> Path:
        info = self.client.get_version(item.name, item.desired)
        if not info.sha256:
            raise InvalidFormat("registry returned no sha256", package=item.name, version=item.desired)

        dest = self.store.package_dir(item.name, item.desired)
        with tempfile.TemporaryDirectory(prefix="rulestack-install-") as tmpdir:
            blob = Path(tmpdir) / "package.tgz"
            self.client.download_blob(info.sha256, blob)
            manifest = read_embedded_manifest(blob)
            if manifest.name != item.name or manifest.version != item.desired:
                raise IntegrityMismatch(
                    f"archive contains {manifest.name}@{manifest.version}",
                    package=item.name,
                    version=item.desired,
                    registry=self.registry_name,
                )
            if dest.exists():
                shutil.rmtree(dest)
            unpack(blob, dest)

        if item.action == Action.UPDATE and item.installed and item.installed != item.desired:
            self.store.remove_package_dir(item.name, item.installed)

        self.store.record_install(
            item.name,
            item.desired,
            info.sha256,
            dest,
            registry=self.registry_name,
            targets=info.targets,
        )
        logger.info("installed %s@%s into %s", item.name, item.desired, dest)
        return dest
