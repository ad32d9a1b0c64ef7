from __future__ import annotations

import pytest

from provisioner.src.api import (
    Condition,
    GroupVersionKind,
    InstallationRequest,
    find_status_condition,
    set_status_condition,
    unpack_reason,
)


def _clock(*stamps: str):
    remaining = list(stamps)
    return lambda: remaining.pop(0)


def test_set_condition_appends_new_type_with_timestamp() -> None:
    conditions: list[Condition] = []

    set_status_condition(
        conditions, Condition("Installed", "True", "InstallationSucceeded"), _clock("t1")
    )

    assert conditions == [
        Condition("Installed", "True", "InstallationSucceeded", last_transition_time="t1")
    ]


def test_set_condition_keeps_transition_time_when_status_is_unchanged() -> None:
    conditions = [Condition("Installed", "False", "InstallFailed", "old", "t1")]

    set_status_condition(
        conditions, Condition("Installed", "False", "UpgradeFailed", "new"), _clock("t2")
    )

    assert conditions[0].reason == "UpgradeFailed"
    assert conditions[0].message == "new"
    assert conditions[0].last_transition_time == "t1"


def test_set_condition_refreshes_transition_time_on_status_change() -> None:
    conditions = [Condition("Installed", "False", "InstallFailed", "", "t1")]

    set_status_condition(
        conditions, Condition("Installed", "True", "InstallationSucceeded"), _clock("t2")
    )

    assert conditions[0].last_transition_time == "t2"


def test_set_condition_preserves_other_types() -> None:
    conditions = [
        Condition("HasValidBundle", "False", "BundleLoadFailed", "", "t0"),
        Condition("Installed", "False", "InstallFailed", "", "t1"),
    ]

    set_status_condition(
        conditions, Condition("Installed", "True", "InstallationSucceeded"), _clock("t2")
    )

    assert [c.type for c in conditions] == ["HasValidBundle", "Installed"]
    assert find_status_condition(conditions, "HasValidBundle").reason == "BundleLoadFailed"
    assert find_status_condition(conditions, "InvalidBundleContent") is None


def test_condition_round_trips_camel_case() -> None:
    raw = {
        "type": "Installed",
        "status": "True",
        "reason": "InstallationSucceeded",
        "message": "",
        "lastTransitionTime": "2024-01-15T08:30:00Z",
        "observedGeneration": 4,
    }

    assert Condition.from_dict(raw).to_dict() == raw


@pytest.mark.parametrize(
    ("phase", "reason"),
    [
        ("Pending", "BundleUnpackPending"),
        ("Unpacking", "BundleUnpackRunning"),
        ("Failing", "BundleUnpackFailing"),
    ],
)
def test_unpack_reason(phase: str, reason: str) -> None:
    assert unpack_reason(phase) == reason


@pytest.mark.parametrize(
    ("obj", "expected", "api_version"),
    [
        ({"apiVersion": "v1", "kind": "ConfigMap"}, GroupVersionKind("", "v1", "ConfigMap"), "v1"),
        (
            {"apiVersion": "apps/v1", "kind": "Deployment"},
            GroupVersionKind("apps", "v1", "Deployment"),
            "apps/v1",
        ),
    ],
)
def test_group_version_kind_from_object(
    obj: dict[str, str], expected: GroupVersionKind, api_version: str
) -> None:
    gvk = GroupVersionKind.from_object(obj)

    assert gvk == expected
    assert gvk.api_version == api_version


def test_installation_request_from_dict_tolerates_missing_status() -> None:
    request = InstallationRequest.from_dict(
        {"metadata": {"name": "inst-a", "uid": "u1"}, "spec": {"bundleName": "pkg-a"}}
    )

    assert request.conditions == []
    assert request.installed_bundle_name == ""
    assert request.owner_reference() == {
        "apiVersion": "core.provisioner.io/v1alpha1",
        "kind": "InstallationRequest",
        "name": "inst-a",
        "uid": "u1",
        "controller": True,
        "blockOwnerDeletion": True,
    }
