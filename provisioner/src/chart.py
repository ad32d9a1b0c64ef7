from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any

import yaml

from provisioner.src.errors import InvalidBundleContent

TEMPLATE_PREFIX = "object-"
# Bytes of the SHA-256 digest used in template names (16 hex characters).
TEMPLATE_DIGEST_BYTES = 8

# Kinds are applied, and rendered, in this order; unknown kinds go last.
INSTALL_ORDER: tuple[str, ...] = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)
_KIND_RANK = {kind: rank for rank, kind in enumerate(INSTALL_ORDER)}


@dataclass(frozen=True)
class TemplateEntry:
    """One manifest object serialized and named by its content digest."""

    name: str
    digest: str
    data: bytes
    kind: str = ""

    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass
class Chart:
    name: str
    templates: list[TemplateEntry] = field(default_factory=list)

    def template_names(self) -> list[str]:
        return [template.name for template in self.templates]


def serialize_object(obj: dict[str, Any]) -> bytes:
    """Return the canonical YAML form of *obj* (sorted keys, block style)."""
    return yaml.safe_dump(obj, sort_keys=True, default_flow_style=False).encode("utf-8")


def template_name(digest: str) -> str:
    return f"{TEMPLATE_PREFIX}{digest[: TEMPLATE_DIGEST_BYTES * 2]}.yaml"


def build_template(obj: dict[str, Any]) -> TemplateEntry:
    try:
        data = serialize_object(obj)
    except yaml.YAMLError as exc:
        raise InvalidBundleContent(f"serialize object: {exc}") from exc
    digest = sha256(data).hexdigest()
    return TemplateEntry(
        name=template_name(digest),
        digest=digest,
        data=data,
        kind=str(obj.get("kind") or ""),
    )


def build_chart(name: str, objects: list[dict[str, Any]]) -> Chart:
    """Materialize *objects* into a chart, keeping loader order.

    Any serialization failure aborts the whole chart.  Two byte-identical
    objects would share a template name, so duplicates are rejected.
    """
    chart = Chart(name=name)
    seen: dict[str, int] = {}
    for index, obj in enumerate(objects):
        template = build_template(obj)
        if template.name in seen:
            raise InvalidBundleContent(
                f"objects {seen[template.name]} and {index} are identical "
                f"(template {template.name})"
            )
        seen[template.name] = index
        chart.templates.append(template)
    return chart


def install_order_key(template: TemplateEntry) -> tuple[int, str]:
    return (_KIND_RANK.get(template.kind, len(INSTALL_ORDER)), template.name)


def sorted_templates(chart: Chart) -> list[TemplateEntry]:
    return sorted(chart.templates, key=install_order_key)


def render_manifest(
    chart: Chart,
    post_render: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
) -> str:
    """Render *chart* into a single multi-document manifest string.

    Templates are ordered by kind install order and then by template name,
    so the same object set always renders to the same bytes no matter the
    order it was loaded in.  *post_render* may rewrite each object (the
    release backend uses it to inject owner references).
    """
    parts: list[str] = []
    for template in sorted_templates(chart):
        body = template.text()
        if post_render is not None:
            obj = yaml.safe_load(body)
            body = yaml.safe_dump(post_render(obj), sort_keys=True, default_flow_style=False)
        parts.append(f"---\n# Source: {chart.name}/templates/{template.name}\n{body}")
    return "".join(parts)


def split_manifest(manifest: str) -> list[dict[str, Any]]:
    """Parse a rendered manifest back into its objects, in render order."""
    return [doc for doc in yaml.safe_load_all(manifest) if isinstance(doc, dict)]
