from __future__ import annotations

import json
import logging
import random
import threading
from collections.abc import Callable, Iterator
from hashlib import sha256
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from provisioner.src.api import GROUP, INSTALLATION_KIND, GroupVersionKind
from provisioner.src.errors import WatchRegistrationError
from provisioner.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], None]


def as_dict(obj: Any) -> dict[str, Any]:
    """Coerce a watch event object (raw dict or dynamic ResourceInstance) into a dict."""
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        converted = to_dict()
        if isinstance(converted, dict):
            return converted
    return {}


class WatchSource(Protocol):
    label: str

    def stream(
        self,
        watcher: watch.Watch,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[dict[str, Any]]: ...


class CustomResourceSource:
    """Watch stream over a cluster-scoped custom resource."""

    def __init__(self, custom_api: CustomObjectsApi, group: str, version: str, plural: str) -> None:
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.label = f"{plural}.{group}"

    def stream(
        self,
        watcher: watch.Watch,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[dict[str, Any]]:
        return watcher.stream(
            self.custom_api.list_cluster_custom_object,
            group=self.group,
            version=self.version,
            plural=self.plural,
            resource_version=resource_version,
            timeout_seconds=timeout_seconds,
        )


class DynamicResourceSource:
    """Watch stream over an arbitrary kind resolved through API discovery."""

    def __init__(self, resource: Any, gvk: GroupVersionKind) -> None:
        self.resource = resource
        self.label = str(gvk)

    def stream(
        self,
        watcher: watch.Watch,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[dict[str, Any]]:
        return watcher.stream(
            self.resource.get,
            resource_version=resource_version,
            serialize=False,
            timeout_seconds=timeout_seconds,
        )


class KindWatch:
    """Background watch loop for one resource kind.

    There is no initial list: a watch started without a resourceVersion
    replays existing objects as ``ADDED`` events, which is all a
    level-triggered consumer needs.  ``410 Gone`` restarts from scratch,
    ``401``/``403`` stop the loop, other errors back off with jitter.
    """

    def __init__(
        self,
        source: WatchSource,
        handler: EventHandler,
        timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.handler = handler
        self.timeout_seconds = timeout_seconds
        self.logger = logger or LOGGER
        self.running = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def label(self) -> str:
        return self.source.label

    def start(self) -> KindWatch:
        self._thread = threading.Thread(
            target=self.run,
            name=f"watch-{self.label}",
            daemon=True,
        )
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, join_timeout: float | None = None) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        if join_timeout is not None and self._thread is not None:
            self._thread.join(timeout=join_timeout)

    def _dispatch(self, event: dict[str, Any]) -> str | None:
        """Hand one event to the handler and return its resourceVersion, if any."""
        event_type = str(event.get("type", ""))
        obj = as_dict(event.get("object"))
        if event_type == "ERROR":
            self.logger.warning("Watch %s returned error event: %s", self.label, obj.get("message"))
            return None

        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if event_type == "BOOKMARK":
            return resource_version

        try:
            self.handler(event_type, obj)
        except Exception:
            self.logger.exception("Watch %s handler failed for %s event", self.label, event_type)
        return resource_version

    def run(self) -> None:
        resource_version: str | None = None
        backoff_seconds = 1
        stream_count = 0
        self.running.set()

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.label).inc()
                stream_count += 1
                for event in self.source.stream(
                    watcher,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                ):
                    if self._stop.is_set():
                        break
                    latest = self._dispatch(event)
                    if latest:
                        resource_version = latest
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch %s resource version expired, restarting", self.label)
                    resource_version = None
                    continue
                METRICS.watch_errors_total.labels(kind=self.label).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check provisioner RBAC and service account permissions.",
                        self.label,
                        exc.status,
                    )
                    break
                self.logger.exception("Kubernetes API watch error on %s", self.label)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.label)
                METRICS.watch_errors_total.labels(kind=self.label).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.running.clear()


def controller_owner_name(
    obj: dict[str, Any],
    owner_group: str = GROUP,
    owner_kind: str = INSTALLATION_KIND,
) -> str | None:
    """Return the name of the controlling owner of *obj* if it is of the owner kind."""
    metadata = obj.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if not isinstance(ref, dict) or not ref.get("controller"):
            continue
        group = str(ref.get("apiVersion") or "").rpartition("/")[0]
        if ref.get("kind") == owner_kind and group == owner_group:
            return ref.get("name") or None
    return None


class DependentChangeFilter:
    """Drop dependent-object events that cannot affect the desired state.

    ``ADDED`` events only seed a baseline (they replay on every watch
    restart), ``DELETED`` always passes, and ``MODIFIED`` passes only when
    the object changed outside status and server-managed metadata.
    """

    _IGNORED_METADATA = ("resourceVersion", "managedFields", "generation")

    def __init__(self) -> None:
        self._last_hash: dict[str, str] = {}

    def _key(self, obj: dict[str, Any]) -> str:
        metadata = obj.get("metadata") or {}
        return str(metadata.get("uid") or f"{metadata.get('namespace')}/{metadata.get('name')}")

    def _hash(self, obj: dict[str, Any]) -> str:
        stripped = {k: v for k, v in obj.items() if k != "status"}
        metadata = dict(stripped.get("metadata") or {})
        for key in self._IGNORED_METADATA:
            metadata.pop(key, None)
        stripped["metadata"] = metadata
        payload = json.dumps(stripped, sort_keys=True, separators=(",", ":"), default=str)
        return sha256(payload.encode("utf-8")).hexdigest()

    def should_trigger(self, event_type: str, obj: dict[str, Any]) -> bool:
        key = self._key(obj)
        if event_type == "DELETED":
            self._last_hash.pop(key, None)
            return True

        current = self._hash(obj)
        previous = self._last_hash.get(key)
        self._last_hash[key] = current
        if event_type == "ADDED":
            return False
        return previous is not None and previous != current


class OwnerEventHandler:
    """Attribute events on a dependent kind to the owning InstallationRequest."""

    def __init__(self, enqueue: Callable[[str], None]) -> None:
        self.enqueue = enqueue
        self.filter = DependentChangeFilter()

    def __call__(self, event_type: str, obj: dict[str, Any]) -> None:
        owner = controller_owner_name(obj)
        if owner is None:
            return
        if not self.filter.should_trigger(event_type, obj):
            return
        LOGGER.debug(
            "%s event on owned %s %s; enqueueing %s",
            event_type,
            obj.get("kind"),
            (obj.get("metadata") or {}).get("name"),
            owner,
        )
        self.enqueue(owner)


class Subscription(Protocol):
    def stop(self, join_timeout: float | None = None) -> None: ...


class DynamicWatchRegistry:
    """Process-wide set of resource kinds that already have a watch.

    ``ensure_watched`` performs the membership check and the insert under a
    single lock acquisition, so concurrent passes racing on the same new
    kind establish exactly one subscription.  Kinds are never removed while
    the process runs.
    """

    def __init__(self, establish: Callable[[GroupVersionKind], Subscription]) -> None:
        self._establish = establish
        self._lock = threading.Lock()
        self._watched: dict[GroupVersionKind, Subscription] = {}

    def ensure_watched(self, gvk: GroupVersionKind) -> bool:
        """Make sure *gvk* is watched; return True if this call established the watch."""
        with self._lock:
            if gvk in self._watched:
                return False
            try:
                subscription = self._establish(gvk)
            except WatchRegistrationError:
                raise
            except Exception as exc:
                raise WatchRegistrationError(f"watch {gvk}: {exc}") from exc
            self._watched[gvk] = subscription
            METRICS.dynamic_watches.set(len(self._watched))
        LOGGER.info("Established dynamic watch for %s", gvk)
        return True

    def is_watched(self, gvk: GroupVersionKind) -> bool:
        with self._lock:
            return gvk in self._watched

    def watched_kinds(self) -> list[GroupVersionKind]:
        with self._lock:
            return sorted(self._watched)

    def stop_all(self, join_timeout: float | None = None) -> None:
        with self._lock:
            subscriptions = list(self._watched.values())
        for subscription in subscriptions:
            subscription.stop(join_timeout=join_timeout)


class DynamicWatchFactory:
    """Establish a dependent-object watch for a kind resolved via discovery."""

    def __init__(
        self,
        dynamic_client: DynamicClient,
        enqueue: Callable[[str], None],
        timeout_seconds: int = 30,
    ) -> None:
        self.dynamic_client = dynamic_client
        self.enqueue = enqueue
        self.timeout_seconds = timeout_seconds

    def __call__(self, gvk: GroupVersionKind) -> KindWatch:
        try:
            resource = self.dynamic_client.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except ResourceNotFoundError as exc:
            raise WatchRegistrationError(f"no matches for {gvk}: {exc}") from exc
        return KindWatch(
            source=DynamicResourceSource(resource, gvk),
            handler=OwnerEventHandler(self.enqueue),
            timeout_seconds=self.timeout_seconds,
        ).start()
