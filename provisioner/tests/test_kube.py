from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from provisioner.src.kube import ProvisionerApi, build_clients, load_kube_configuration


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("provisioner.src.kube.config.load_incluster_config") as mock_incluster,
        patch("provisioner.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "provisioner.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("provisioner.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_share_one_api_client() -> None:
    with (
        patch("provisioner.src.kube.client") as mock_client,
        patch("provisioner.src.kube.dynamic") as mock_dynamic,
    ):
        api_client = mock_client.ApiClient.return_value
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        mock_dynamic.DynamicClient.return_value = SimpleNamespace(name="dynamic")
        clients = build_clients()

    assert clients.core_api.name == "core"
    assert clients.custom_api.name == "custom"
    assert clients.dynamic_client.name == "dynamic"
    mock_client.CoreV1Api.assert_called_once_with(api_client)
    mock_dynamic.DynamicClient.assert_called_once_with(api_client)


def test_get_installation_parses_custom_object() -> None:
    custom_api = MagicMock()
    custom_api.get_cluster_custom_object.return_value = {
        "metadata": {"name": "inst-a", "uid": "u1", "generation": 2},
        "spec": {"bundleName": "pkg-a", "provisionerClassName": "core.provisioner.io/plain"},
        "status": {
            "installedBundleName": "pkg-old",
            "conditions": [{"type": "Installed", "status": "True", "reason": "InstallationSucceeded"}],
        },
    }

    request = ProvisionerApi(custom_api).get_installation("inst-a")

    kwargs = custom_api.get_cluster_custom_object.call_args.kwargs
    assert kwargs == {
        "group": "core.provisioner.io",
        "version": "v1alpha1",
        "plural": "installationrequests",
        "name": "inst-a",
    }
    assert request.bundle_name == "pkg-a"
    assert request.generation == 2
    assert request.installed_bundle_name == "pkg-old"
    assert request.conditions[0].reason == "InstallationSucceeded"


def test_list_installations_handles_empty_items() -> None:
    custom_api = MagicMock()
    custom_api.list_cluster_custom_object.return_value = {"items": None}

    assert ProvisionerApi(custom_api).list_installations() == []


def test_get_bundle_reads_phase_from_status() -> None:
    custom_api = MagicMock()
    custom_api.get_cluster_custom_object.return_value = {
        "metadata": {"name": "pkg-a"},
        "spec": {"provisionerClassName": "core.provisioner.io/plain"},
        "status": {"phase": "Unpacked"},
    }

    bundle = ProvisionerApi(custom_api).get_bundle("pkg-a")

    assert custom_api.get_cluster_custom_object.call_args.kwargs["plural"] == "bundles"
    assert bundle.phase == "Unpacked"


def test_patch_installation_status_targets_status_subresource() -> None:
    custom_api = MagicMock()
    body = {"status": {"conditions": [], "installedBundleName": "pkg-a"}}

    ProvisionerApi(custom_api).patch_installation_status("inst-a", body)

    custom_api.patch_cluster_custom_object_status.assert_called_once_with(
        group="core.provisioner.io",
        version="v1alpha1",
        plural="installationrequests",
        name="inst-a",
        body=body,
    )
    custom_api.patch_cluster_custom_object.assert_not_called()
