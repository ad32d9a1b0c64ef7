from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, dynamic
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from provisioner.src.api import (
    BUNDLE_PLURAL,
    GROUP,
    INSTALLATION_PLURAL,
    VERSION,
    Bundle,
    InstallationRequest,
)

LOGGER = logging.getLogger(__name__)

# A failed API call surfaces either as an ApiException carrying the server's
# status or as a urllib3 / socket error raised before any response arrived.
CLIENT_ERRORS = (ApiException, HTTPError, OSError)


def describe_client_error(exc: BaseException) -> str:
    if isinstance(exc, ApiException):
        return f"{exc.status} {exc.reason}"
    return str(exc) or type(exc).__name__


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core_api: CoreV1Api
    custom_api: CustomObjectsApi
    dynamic_client: dynamic.DynamicClient


def build_clients() -> KubeClients:
    """Return typed, custom-object and dynamic clients sharing one ApiClient.

    The dynamic client runs API discovery on construction, so this call
    needs a reachable API server.
    """
    api_client = client.ApiClient()
    return KubeClients(
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        dynamic_client=dynamic.DynamicClient(api_client),
    )


class ProvisionerApi:
    """Thin typed access to the Bundle and InstallationRequest custom resources."""

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get_installation(self, name: str) -> InstallationRequest:
        raw = self.custom_api.get_cluster_custom_object(
            group=GROUP,
            version=VERSION,
            plural=INSTALLATION_PLURAL,
            name=name,
        )
        return InstallationRequest.from_dict(raw)

    def list_installations(self) -> list[InstallationRequest]:
        raw = self.custom_api.list_cluster_custom_object(
            group=GROUP,
            version=VERSION,
            plural=INSTALLATION_PLURAL,
        )
        return [InstallationRequest.from_dict(item) for item in raw.get("items") or []]

    def get_bundle(self, name: str) -> Bundle:
        raw = self.custom_api.get_cluster_custom_object(
            group=GROUP,
            version=VERSION,
            plural=BUNDLE_PLURAL,
            name=name,
        )
        return Bundle.from_dict(raw)

    def patch_installation_status(self, name: str, body: dict[str, Any]) -> None:
        """Merge-patch the status subresource; only fields present in *body* are written."""
        self.custom_api.patch_cluster_custom_object_status(
            group=GROUP,
            version=VERSION,
            plural=INSTALLATION_PLURAL,
            name=name,
            body=body,
        )
