from __future__ import annotations

import base64
import copy
import gzip
import json
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1Namespace, V1ObjectMeta, V1Secret
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from provisioner.src.api import InstallationRequest, utc_now_rfc3339
from provisioner.src.chart import Chart, render_manifest, split_manifest
from provisioner.src.errors import ReleaseBackendError, ReleaseExists, ReleaseNotFound
from provisioner.src.kube import CLIENT_ERRORS, describe_client_error
from provisioner.src.release import Release, ReleaseStatus

LOGGER = logging.getLogger(__name__)

RELEASE_SECRET_TYPE = "provisioner.io/release.v1"
RELEASE_OWNER = "provisioner"
RELEASE_DATA_KEY = "release"


def release_secret_name(name: str, version: int) -> str:
    return f"provisioner.release.v1.{name}.v{version}"


def encode_release(release: Release) -> str:
    payload = json.dumps(release.to_dict(), sort_keys=True, separators=(",", ":"))
    return base64.b64encode(gzip.compress(payload.encode("utf-8"))).decode("ascii")


def decode_release(data: str) -> Release:
    payload = gzip.decompress(base64.b64decode(data))
    return Release.from_dict(json.loads(payload))


def _object_key(obj: dict[str, Any], namespace: str) -> tuple[str, str, str, str]:
    metadata = obj.get("metadata") or {}
    return (
        str(obj.get("apiVersion") or ""),
        str(obj.get("kind") or ""),
        str(metadata.get("namespace") or namespace),
        str(metadata.get("name") or ""),
    )


class KubeActionClient:
    """Release backend storing revisions in Secrets and applying with server-side apply.

    Each revision of a release is one Secret in the release namespace,
    labelled ``owner=provisioner,name=<release>,version=<n>,status=<status>``.
    The highest version is the current release.  Every rendered object gets
    a controller owner reference to the InstallationRequest so dynamic
    watch events on it can be mapped back.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        dynamic_client: DynamicClient,
        namespace: str,
        owner: InstallationRequest,
        field_manager: str,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.dynamic_client = dynamic_client
        self.namespace = namespace
        self.owner = owner
        self.field_manager = field_manager
        self.now_fn = now_fn

    # -- release records ---------------------------------------------------

    def history(self, name: str) -> list[Release]:
        try:
            secrets = self.core_api.list_namespaced_secret(
                namespace=self.namespace,
                label_selector=f"owner={RELEASE_OWNER},name={name}",
            )
        except CLIENT_ERRORS as exc:
            raise ReleaseBackendError(
                f"list release records for {name!r}: {describe_client_error(exc)}"
            ) from exc

        releases: list[Release] = []
        for secret in getattr(secrets, "items", None) or []:
            raw = (getattr(secret, "data", None) or {}).get(RELEASE_DATA_KEY)
            if not raw:
                continue
            try:
                releases.append(decode_release(raw))
            except (OSError, ValueError, KeyError) as exc:
                secret_name = getattr(getattr(secret, "metadata", None), "name", "<unknown>")
                raise ReleaseBackendError(
                    f"decode release record {secret_name}: {exc}"
                ) from exc
        return sorted(releases, key=lambda release: release.version)

    def get(self, name: str) -> Release:
        releases = self.history(name)
        if not releases:
            raise ReleaseNotFound(name)
        return releases[-1]

    def _record_body(self, release: Release) -> V1Secret:
        return V1Secret(
            metadata=V1ObjectMeta(
                name=release_secret_name(release.name, release.version),
                namespace=self.namespace,
                labels={
                    "owner": RELEASE_OWNER,
                    "name": release.name,
                    "version": str(release.version),
                    "status": release.status.value,
                },
            ),
            type=RELEASE_SECRET_TYPE,
            data={RELEASE_DATA_KEY: encode_release(release)},
        )

    def _create_record(self, release: Release) -> None:
        try:
            self.core_api.create_namespaced_secret(
                namespace=self.namespace,
                body=self._record_body(release),
            )
        except CLIENT_ERRORS as exc:
            if isinstance(exc, ApiException) and exc.status == 409:
                raise ReleaseExists(release.name) from exc
            raise ReleaseBackendError(
                f"create release record {release.name} v{release.version}: "
                f"{describe_client_error(exc)}"
            ) from exc

    def _update_record(self, release: Release) -> None:
        try:
            self.core_api.replace_namespaced_secret(
                name=release_secret_name(release.name, release.version),
                namespace=self.namespace,
                body=self._record_body(release),
            )
        except CLIENT_ERRORS as exc:
            raise ReleaseBackendError(
                f"update release record {release.name} v{release.version}: "
                f"{describe_client_error(exc)}"
            ) from exc

    # -- rendering and apply -----------------------------------------------

    def _post_render(self, obj: dict[str, Any]) -> dict[str, Any]:
        rendered = copy.deepcopy(obj)
        metadata = rendered.setdefault("metadata", {})
        owner_ref = self.owner.owner_reference()
        references = [
            ref
            for ref in metadata.get("ownerReferences") or []
            if isinstance(ref, dict)
            and not ref.get("controller")
            and ref.get("uid") != owner_ref["uid"]
        ]
        references.append(owner_ref)
        metadata["ownerReferences"] = references
        return rendered

    def render(self, chart: Chart) -> str:
        return render_manifest(chart, post_render=self._post_render)

    def _resource_for(self, obj: dict[str, Any]) -> Any:
        api_version = obj.get("apiVersion")
        kind = obj.get("kind")
        try:
            return self.dynamic_client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as exc:
            raise ReleaseBackendError(
                f'no matches for kind "{kind}" in version "{api_version}"'
            ) from exc
        except CLIENT_ERRORS as exc:
            raise ReleaseBackendError(
                f"discover {api_version}, Kind={kind}: {describe_client_error(exc)}"
            ) from exc

    def _apply_object(self, obj: dict[str, Any], namespace: str) -> None:
        resource = self._resource_for(obj)
        body = copy.deepcopy(obj)
        metadata = body.setdefault("metadata", {})
        name = metadata.get("name")
        target_namespace = None
        if resource.namespaced:
            target_namespace = metadata.get("namespace") or namespace
            metadata["namespace"] = target_namespace
        try:
            resource.server_side_apply(
                body,
                name=name,
                namespace=target_namespace,
                field_manager=self.field_manager,
                force_conflicts=True,
            )
        except CLIENT_ERRORS as exc:
            raise ReleaseBackendError(
                f"apply {obj.get('kind')} {target_namespace or ''}/{name}: "
                f"{describe_client_error(exc)}"
            ) from exc

    def _apply_manifest(self, manifest: str, namespace: str) -> None:
        for obj in split_manifest(manifest):
            self._apply_object(obj, namespace)

    def _delete_orphans(self, previous: str, desired: str, namespace: str) -> None:
        """Delete objects present in *previous* but no longer rendered in *desired*."""
        keep = {_object_key(obj, namespace) for obj in split_manifest(desired)}
        for obj in reversed(split_manifest(previous)):
            if _object_key(obj, namespace) in keep:
                continue
            kind = obj.get("kind")
            metadata = obj.get("metadata") or {}
            name = metadata.get("name")
            try:
                resource = self.dynamic_client.resources.get(
                    api_version=obj.get("apiVersion"), kind=kind
                )
                target_namespace = None
                if resource.namespaced:
                    target_namespace = metadata.get("namespace") or namespace
                resource.delete(name=name, namespace=target_namespace)
            except ResourceNotFoundError:
                LOGGER.warning(
                    "Skipping orphaned %s %s: kind is not served in version %s",
                    kind,
                    name,
                    obj.get("apiVersion"),
                )
                continue
            except NotFoundError:
                LOGGER.debug("Orphaned %s %s already gone", kind, name)
                continue
            except CLIENT_ERRORS as exc:
                raise ReleaseBackendError(
                    f"delete {kind} {name}: {describe_client_error(exc)}"
                ) from exc
            LOGGER.info("Deleted orphaned %s %s", kind, name)

    def _ensure_namespace(self, namespace: str) -> None:
        try:
            self.core_api.create_namespace(body=V1Namespace(metadata=V1ObjectMeta(name=namespace)))
        except CLIENT_ERRORS as exc:
            if not isinstance(exc, ApiException) or exc.status != 409:
                raise ReleaseBackendError(
                    f"create namespace {namespace}: {describe_client_error(exc)}"
                ) from exc

    # -- release operations ------------------------------------------------

    def install(
        self, name: str, namespace: str, chart: Chart, *, create_namespace: bool = False
    ) -> Release:
        history = self.history(name)
        if history and history[-1].status is not ReleaseStatus.UNINSTALLED:
            raise ReleaseExists(name)

        if create_namespace:
            self._ensure_namespace(namespace)

        now = self.now_fn()
        release = Release(
            name=name,
            namespace=namespace,
            version=history[-1].version + 1 if history else 1,
            status=ReleaseStatus.PENDING_INSTALL,
            manifest=self.render(chart),
            description="Initial install underway",
            first_deployed=now,
            last_deployed=now,
        )
        self._create_record(release)
        try:
            self._apply_manifest(release.manifest, namespace)
        except ReleaseBackendError as exc:
            release.status = ReleaseStatus.FAILED
            release.description = f"Release {name!r} failed: {exc}"
            self._update_record(release)
            raise

        release.status = ReleaseStatus.DEPLOYED
        release.description = "Install complete"
        self._update_record(release)
        return release

    def upgrade(
        self, name: str, namespace: str, chart: Chart, *, dry_run: bool = False
    ) -> Release:
        history = self.history(name)
        if not history:
            raise ReleaseNotFound(name)
        # Orphans are computed against the last deployed revision, not a
        # failed one after it; the latest revision is the base only when
        # nothing was ever deployed.
        deployed = [revision for revision in history if revision.status is ReleaseStatus.DEPLOYED]
        previous = deployed[-1] if deployed else history[-1]
        release = Release(
            name=name,
            namespace=namespace,
            version=history[-1].version + 1,
            status=ReleaseStatus.PENDING_UPGRADE,
            manifest=self.render(chart),
            description="Preparing upgrade",
            first_deployed=previous.first_deployed,
            last_deployed=self.now_fn(),
        )
        if dry_run:
            release.description = "Dry run complete"
            return release

        self._create_record(release)
        try:
            self._apply_manifest(release.manifest, namespace)
            self._delete_orphans(previous.manifest, release.manifest, namespace)
        except ReleaseBackendError as exc:
            release.status = ReleaseStatus.FAILED
            release.description = f"Upgrade {name!r} failed: {exc}"
            self._update_record(release)
            raise

        for superseded in deployed or [previous]:
            superseded.status = ReleaseStatus.SUPERSEDED
            self._update_record(superseded)
        release.status = ReleaseStatus.DEPLOYED
        release.description = "Upgrade complete"
        self._update_record(release)
        return release

    def reconcile(self, release: Release) -> None:
        """Re-apply every object of *release* against live state; history is unchanged."""
        self._apply_manifest(release.manifest, release.namespace or self.namespace)


class ActionClientGetter:
    """Builds an action client bound to a single InstallationRequest."""

    def __init__(
        self,
        core_api: CoreV1Api,
        dynamic_client: DynamicClient,
        namespace: str,
        field_manager: str,
    ) -> None:
        self.core_api = core_api
        self.dynamic_client = dynamic_client
        self.namespace = namespace
        self.field_manager = field_manager

    def action_client_for(self, request: InstallationRequest) -> KubeActionClient:
        if not request.uid:
            raise ReleaseBackendError(
                f"installation request {request.name!r} has no uid; cannot set owner references"
            )
        return KubeActionClient(
            core_api=self.core_api,
            dynamic_client=self.dynamic_client,
            namespace=self.namespace,
            owner=request,
            field_manager=self.field_manager,
        )
