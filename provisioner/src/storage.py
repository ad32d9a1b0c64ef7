from __future__ import annotations

import logging
from typing import Any, Protocol

import yaml
from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta

from provisioner.src.api import Bundle
from provisioner.src.errors import ContentNotFound, ContentReadError
from provisioner.src.kube import CLIENT_ERRORS, describe_client_error

LOGGER = logging.getLogger(__name__)

BUNDLE_NAME_LABEL = "core.provisioner.io/bundle-name"


class Storage(Protocol):
    """Source of the ordered manifest objects of an unpacked Bundle."""

    def load(self, bundle: Bundle) -> list[dict[str, Any]]: ...


def config_map_name(bundle_name: str) -> str:
    return f"bundle-{bundle_name}"


class ConfigMapStorage:
    """Bundle content stored as a ConfigMap, one YAML document per data key.

    Keys are read back in sorted order.  The unpacker writes them with a
    zero-padded index prefix (``0000-<kind>-<name>.yaml``) so the stored
    object order survives the round trip.
    """

    def __init__(self, core_api: CoreV1Api, namespace: str) -> None:
        self.core_api = core_api
        self.namespace = namespace

    def load(self, bundle: Bundle) -> list[dict[str, Any]]:
        name = config_map_name(bundle.name)
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=name,
                namespace=self.namespace,
            )
        except CLIENT_ERRORS as exc:
            if isinstance(exc, ApiException) and exc.status == 404:
                raise ContentNotFound(
                    f"no stored content for bundle {bundle.name!r} "
                    f"(configmap {self.namespace}/{name})"
                ) from exc
            raise ContentReadError(
                f"read configmap {self.namespace}/{name}: {describe_client_error(exc)}"
            ) from exc

        data = getattr(config_map, "data", None) or {}
        objects: list[dict[str, Any]] = []
        for key in sorted(data):
            try:
                documents = list(yaml.safe_load_all(data[key] or ""))
            except yaml.YAMLError as exc:
                raise ContentReadError(f"decode {name}/{key}: {exc}") from exc
            for document in documents:
                if document is None:
                    continue
                if not isinstance(document, dict):
                    raise ContentReadError(
                        f"decode {name}/{key}: expected a mapping, got {type(document).__name__}"
                    )
                objects.append(document)

        LOGGER.debug("Loaded %d object(s) for bundle %s", len(objects), bundle.name)
        return objects

    def store(self, bundle: Bundle, objects: list[dict[str, Any]]) -> None:
        """Write *objects* for *bundle*, replacing any previously stored content."""
        data = {}
        for index, obj in enumerate(objects):
            kind = str(obj.get("kind") or "object").lower()
            obj_name = str((obj.get("metadata") or {}).get("name") or index)
            data[f"{index:04d}-{kind}-{obj_name}.yaml"] = yaml.safe_dump(obj, sort_keys=True)

        body = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=config_map_name(bundle.name),
                namespace=self.namespace,
                labels={BUNDLE_NAME_LABEL: bundle.name},
            ),
            data=data,
        )
        try:
            self.core_api.replace_namespaced_config_map(
                name=config_map_name(bundle.name),
                namespace=self.namespace,
                body=body,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            self.core_api.create_namespaced_config_map(namespace=self.namespace, body=body)

    def delete(self, bundle: Bundle) -> None:
        try:
            self.core_api.delete_namespaced_config_map(
                name=config_map_name(bundle.name),
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
