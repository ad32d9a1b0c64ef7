from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

GROUP = "core.provisioner.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

BUNDLE_KIND = "Bundle"
BUNDLE_PLURAL = "bundles"
INSTALLATION_KIND = "InstallationRequest"
INSTALLATION_PLURAL = "installationrequests"

PLAIN_PROVISIONER_ID = "core.provisioner.io/plain"

OWNER_KIND_LABEL = "core.provisioner.io/owner-kind"
OWNER_NAME_LABEL = "core.provisioner.io/owner-name"

PHASE_PENDING = "Pending"
PHASE_UNPACKING = "Unpacking"
PHASE_FAILING = "Failing"
PHASE_UNPACKED = "Unpacked"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

TYPE_HAS_VALID_BUNDLE = "HasValidBundle"
TYPE_INVALID_BUNDLE_CONTENT = "InvalidBundleContent"
TYPE_INSTALLED = "Installed"

REASON_BUNDLE_LOOKUP_FAILED = "BundleLookupFailed"
REASON_BUNDLE_LOAD_FAILED = "BundleLoadFailed"
REASON_READING_CONTENT_FAILED = "ReadingContentFailed"
REASON_ERROR_GETTING_CLIENT = "ErrorGettingClient"
REASON_ERROR_GETTING_RELEASE_STATE = "ErrorGettingReleaseState"
REASON_INSTALL_FAILED = "InstallFailed"
REASON_UPGRADE_FAILED = "UpgradeFailed"
REASON_RECONCILE_FAILED = "ReconcileFailed"
REASON_CREATE_DYNAMIC_WATCH_FAILED = "CreateDynamicWatchFailed"
REASON_INSTALLATION_SUCCEEDED = "InstallationSucceeded"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def unpack_reason(phase: str) -> str:
    """Return the ``Installed`` reason used while a Bundle waits in *phase*.

    ``Unpacking`` is reported as ``BundleUnpackRunning``; every other phase
    is reported verbatim, e.g. ``BundleUnpackPending``.
    """
    if phase == PHASE_UNPACKING:
        return "BundleUnpackRunning"
    return f"BundleUnpack{phase}"


@dataclass(frozen=True, order=True)
class GroupVersionKind:
    """Type identifier of a manifest object, used as the dynamic watch key."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> GroupVersionKind:
        api_version = str(obj.get("apiVersion") or "")
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=str(obj.get("kind") or ""))

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str = ""
    observed_generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type") or ""),
            status=str(raw.get("status") or CONDITION_UNKNOWN),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
            last_transition_time=str(raw.get("lastTransitionTime") or ""),
            observed_generation=int(raw.get("observedGeneration") or 0),
        )


def set_status_condition(
    conditions: list[Condition],
    new_condition: Condition,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> list[Condition]:
    """Upsert *new_condition* into *conditions* by type, in place.

    Conditions of other types are preserved.  The transition timestamp is
    refreshed only when the status value changes, so repeated passes that
    keep reporting the same state do not churn the object.
    """
    for index, existing in enumerate(conditions):
        if existing.type != new_condition.type:
            continue
        transition_time = existing.last_transition_time
        if existing.status != new_condition.status or not transition_time:
            transition_time = new_condition.last_transition_time or now_fn()
        conditions[index] = replace(new_condition, last_transition_time=transition_time)
        return conditions

    if not new_condition.last_transition_time:
        new_condition = replace(new_condition, last_transition_time=now_fn())
    conditions.append(new_condition)
    return conditions


def find_status_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


@dataclass
class Bundle:
    """Read-only view of a Bundle; the unpacking subsystem owns its status."""

    name: str
    phase: str = ""
    provisioner_class_name: str = ""
    source: dict[str, Any] = field(default_factory=dict)
    digest: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Bundle:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            phase=str(status.get("phase") or ""),
            provisioner_class_name=str(spec.get("provisionerClassName") or ""),
            source=dict(spec.get("source") or {}),
            digest=str(status.get("digest") or ""),
        )


@dataclass
class InstallationRequest:
    """Desired installation of exactly one Bundle.

    Only ``conditions`` and ``installed_bundle_name`` are written back by
    this controller; every other field is owned by users or automation.
    """

    name: str
    bundle_name: str
    uid: str = ""
    generation: int = 0
    provisioner_class_name: str = ""
    conditions: list[Condition] = field(default_factory=list)
    installed_bundle_name: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InstallationRequest:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            generation=int(metadata.get("generation") or 0),
            bundle_name=str(spec.get("bundleName") or ""),
            provisioner_class_name=str(spec.get("provisionerClassName") or ""),
            conditions=[
                Condition.from_dict(item)
                for item in status.get("conditions") or []
                if isinstance(item, dict)
            ],
            installed_bundle_name=str(status.get("installedBundleName") or ""),
        )

    def set_condition(
        self,
        condition_type: str,
        status: str,
        reason: str,
        message: str = "",
    ) -> None:
        set_status_condition(
            self.conditions,
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=self.generation,
            ),
        )

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": INSTALLATION_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def status_body(self) -> dict[str, Any]:
        """Return the status fields owned by this controller, as a patch body."""
        return {
            "status": {
                "conditions": [condition.to_dict() for condition in self.conditions],
                "installedBundleName": self.installed_bundle_name,
            }
        }
