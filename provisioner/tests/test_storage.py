from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import yaml
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError

from provisioner.src.api import Bundle
from provisioner.src.errors import ContentNotFound, ContentReadError
from provisioner.src.storage import BUNDLE_NAME_LABEL, ConfigMapStorage


def _storage_with(data: dict[str, str] | None) -> tuple[ConfigMapStorage, MagicMock]:
    core_api = MagicMock()
    core_api.read_namespaced_config_map.return_value = SimpleNamespace(data=data)
    return ConfigMapStorage(core_api, "provisioner-system"), core_api


def test_load_reads_keys_in_sorted_order() -> None:
    storage, core_api = _storage_with(
        {
            "0001-deployment-web.yaml": "kind: Deployment\nmetadata: {name: web}\n",
            "0000-configmap-cfg.yaml": "kind: ConfigMap\nmetadata: {name: cfg}\n",
        }
    )

    objects = storage.load(Bundle(name="pkg-a"))

    assert [obj["kind"] for obj in objects] == ["ConfigMap", "Deployment"]
    core_api.read_namespaced_config_map.assert_called_once_with(
        name="bundle-pkg-a", namespace="provisioner-system"
    )


def test_load_splits_multi_document_values_and_skips_empty_documents() -> None:
    storage, _ = _storage_with({"all.yaml": "kind: A\n---\n---\nkind: B\n"})

    objects = storage.load(Bundle(name="pkg-a"))

    assert objects == [{"kind": "A"}, {"kind": "B"}]


def test_load_empty_config_map_yields_no_objects() -> None:
    storage, _ = _storage_with(None)

    assert storage.load(Bundle(name="pkg-a")) == []


def test_load_missing_config_map_is_content_not_found() -> None:
    storage, core_api = _storage_with({})
    core_api.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(ContentNotFound, match="pkg-a"):
        storage.load(Bundle(name="pkg-a"))


def test_load_api_failure_is_content_read_error() -> None:
    storage, core_api = _storage_with({})
    core_api.read_namespaced_config_map.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ContentReadError, match="500 boom"):
        storage.load(Bundle(name="pkg-a"))


def test_load_transport_failure_is_content_read_error() -> None:
    storage, core_api = _storage_with({})
    core_api.read_namespaced_config_map.side_effect = MaxRetryError(
        None, "/api/v1/namespaces/provisioner-system/configmaps/bundle-pkg-a", "connection refused"
    )

    with pytest.raises(ContentReadError, match="Max retries exceeded"):
        storage.load(Bundle(name="pkg-a"))


@pytest.mark.parametrize("value", ["kind: [unterminated\n", "- just\n- a list\n"])
def test_load_rejects_undecodable_content(value: str) -> None:
    storage, _ = _storage_with({"0000-bad.yaml": value})

    with pytest.raises(ContentReadError, match="0000-bad.yaml"):
        storage.load(Bundle(name="pkg-a"))


def test_store_writes_indexed_keys_and_falls_back_to_create() -> None:
    core_api = MagicMock()
    core_api.replace_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
    storage = ConfigMapStorage(core_api, "provisioner-system")
    objects = [
        {"kind": "ConfigMap", "metadata": {"name": "cfg"}},
        {"kind": "Deployment", "metadata": {"name": "web"}},
    ]

    storage.store(Bundle(name="pkg-a"), objects)

    body = core_api.create_namespaced_config_map.call_args.kwargs["body"]
    assert body.metadata.name == "bundle-pkg-a"
    assert body.metadata.labels == {BUNDLE_NAME_LABEL: "pkg-a"}
    assert sorted(body.data) == ["0000-configmap-cfg.yaml", "0001-deployment-web.yaml"]
    assert yaml.safe_load(body.data["0001-deployment-web.yaml"]) == objects[1]


def test_stored_content_loads_back_in_original_order() -> None:
    core_api = MagicMock()
    storage = ConfigMapStorage(core_api, "ns")
    objects = [{"kind": f"K{index}", "metadata": {"name": "x"}} for index in range(12)]
    storage.store(Bundle(name="pkg-a"), objects)
    body = core_api.replace_namespaced_config_map.call_args.kwargs["body"]
    core_api.read_namespaced_config_map.return_value = SimpleNamespace(data=body.data)

    assert storage.load(Bundle(name="pkg-a")) == objects


def test_delete_ignores_missing_config_map() -> None:
    core_api = MagicMock()
    core_api.delete_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")

    ConfigMapStorage(core_api, "ns").delete(Bundle(name="pkg-a"))

    core_api.delete_namespaced_config_map.assert_called_once_with(name="bundle-pkg-a", namespace="ns")
