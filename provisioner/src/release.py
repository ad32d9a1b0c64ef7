from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Protocol

from provisioner.src.api import (
    REASON_INSTALL_FAILED,
    REASON_RECONCILE_FAILED,
    REASON_UPGRADE_FAILED,
)
from provisioner.src.chart import Chart
from provisioner.src.errors import (
    ReleaseApplyError,
    ReleaseBackendError,
    ReleaseNotFound,
    ReleaseStateError,
)
from provisioner.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ReleaseStatus(str, Enum):
    UNKNOWN = "unknown"
    DEPLOYED = "deployed"
    UNINSTALLED = "uninstalled"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    UNINSTALLING = "uninstalling"
    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"


# A release in one of these states is upgraded even when its manifest matches.
UNHEALTHY_STATUSES = frozenset({ReleaseStatus.FAILED, ReleaseStatus.SUPERSEDED})


@dataclass
class Release:
    """A versioned record of the manifest applied under a release name."""

    name: str
    namespace: str
    version: int
    status: ReleaseStatus
    manifest: str
    description: str = ""
    first_deployed: str = ""
    last_deployed: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Release:
        return cls(
            name=str(raw["name"]),
            namespace=str(raw.get("namespace") or ""),
            version=int(raw["version"]),
            status=ReleaseStatus(raw.get("status") or ReleaseStatus.UNKNOWN.value),
            manifest=str(raw.get("manifest") or ""),
            description=str(raw.get("description") or ""),
            first_deployed=str(raw.get("first_deployed") or ""),
            last_deployed=str(raw.get("last_deployed") or ""),
        )


class ActionClient(Protocol):
    """Release backend bound to one InstallationRequest."""

    def get(self, name: str) -> Release: ...

    def install(
        self, name: str, namespace: str, chart: Chart, *, create_namespace: bool = False
    ) -> Release: ...

    def upgrade(
        self, name: str, namespace: str, chart: Chart, *, dry_run: bool = False
    ) -> Release: ...

    def reconcile(self, release: Release) -> None: ...


class ReleaseState(str, Enum):
    NEEDS_INSTALL = "NeedsInstall"
    NEEDS_UPGRADE = "NeedsUpgrade"
    UNCHANGED = "Unchanged"
    ERROR = "Error"


def get_release_state(
    client: ActionClient,
    name: str,
    namespace: str,
    chart: Chart,
) -> tuple[Release | None, ReleaseState]:
    """Decide whether *chart* needs an install, an upgrade or nothing at all.

    The decision is a byte comparison between the manifest a dry-run
    upgrade would produce and the manifest recorded on the current release.
    A ``failed`` or ``superseded`` current release is always upgraded so a
    previous partial failure heals even when the content did not change.

    Any backend failure other than "release not found" is raised as
    :class:`ReleaseStateError`; the state is re-derived on every call and
    never cached.
    """
    try:
        current = client.get(name)
    except ReleaseNotFound:
        return None, ReleaseState.NEEDS_INSTALL
    except ReleaseBackendError as exc:
        raise ReleaseStateError(f"get release {name!r}: {exc}") from exc

    try:
        desired = client.upgrade(name, namespace, chart, dry_run=True)
    except ReleaseBackendError as exc:
        raise ReleaseStateError(f"dry-run upgrade of release {name!r}: {exc}") from exc

    if desired.manifest != current.manifest:
        LOGGER.info("Release %s manifest drifted from desired content", name)
        return current, ReleaseState.NEEDS_UPGRADE
    if current.status in UNHEALTHY_STATUSES:
        LOGGER.info("Release %s is %s; forcing corrective upgrade", name, current.status.value)
        return current, ReleaseState.NEEDS_UPGRADE
    return current, ReleaseState.UNCHANGED


def apply_release_state(
    client: ActionClient,
    name: str,
    namespace: str,
    chart: Chart,
    state: ReleaseState,
    current: Release | None,
) -> Release | None:
    """Execute the operation matching *state* exactly once.

    Failures are raised as :class:`ReleaseApplyError` carrying the
    state-specific condition reason.
    """
    if state is ReleaseState.NEEDS_INSTALL:
        try:
            release = client.install(name, namespace, chart, create_namespace=False)
        except ReleaseBackendError as exc:
            METRICS.release_operations_total.labels(operation="install", result="error").inc()
            raise ReleaseApplyError(REASON_INSTALL_FAILED, str(exc)) from exc
        METRICS.release_operations_total.labels(operation="install", result="success").inc()
        LOGGER.info("Installed release %s (version %d)", name, release.version)
        return release

    if state is ReleaseState.NEEDS_UPGRADE:
        try:
            release = client.upgrade(name, namespace, chart, dry_run=False)
        except ReleaseBackendError as exc:
            METRICS.release_operations_total.labels(operation="upgrade", result="error").inc()
            raise ReleaseApplyError(REASON_UPGRADE_FAILED, str(exc)) from exc
        METRICS.release_operations_total.labels(operation="upgrade", result="success").inc()
        LOGGER.info("Upgraded release %s to version %d", name, release.version)
        return release

    if state is ReleaseState.UNCHANGED:
        if current is None:
            raise ReleaseApplyError(
                REASON_RECONCILE_FAILED, f"release {name!r} is unchanged but was not loaded"
            )
        try:
            client.reconcile(current)
        except ReleaseBackendError as exc:
            METRICS.release_operations_total.labels(operation="reconcile", result="error").inc()
            raise ReleaseApplyError(REASON_RECONCILE_FAILED, str(exc)) from exc
        METRICS.release_operations_total.labels(operation="reconcile", result="success").inc()
        LOGGER.debug("Reconciled unchanged release %s", name)
        return current

    raise ReleaseStateError(f"unexpected release state {state.value!r}")
