from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException

from provisioner.src.api import (
    BUNDLE_PLURAL,
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    GROUP,
    INSTALLATION_PLURAL,
    PLAIN_PROVISIONER_ID,
    REASON_BUNDLE_LOAD_FAILED,
    REASON_BUNDLE_LOOKUP_FAILED,
    REASON_CREATE_DYNAMIC_WATCH_FAILED,
    REASON_ERROR_GETTING_CLIENT,
    REASON_ERROR_GETTING_RELEASE_STATE,
    REASON_INSTALLATION_SUCCEEDED,
    REASON_READING_CONTENT_FAILED,
    TYPE_HAS_VALID_BUNDLE,
    TYPE_INSTALLED,
    TYPE_INVALID_BUNDLE_CONTENT,
    VERSION,
    Bundle,
    GroupVersionKind,
    InstallationRequest,
    unpack_reason,
)
from provisioner.src.backend import ActionClientGetter
from provisioner.src.chart import build_chart
from provisioner.src.config import ProvisionerConfig
from provisioner.src.errors import (
    BundleLoadError,
    BundleNotUnpacked,
    InvalidBundleContent,
    ProvisionerError,
    ReleaseApplyError,
    ReleaseStateError,
    WatchRegistrationError,
)
from provisioner.src.kube import CLIENT_ERRORS, KubeClients, ProvisionerApi, describe_client_error
from provisioner.src.loader import load_bundle_objects
from provisioner.src.metrics import METRICS
from provisioner.src.release import (
    ActionClient,
    ReleaseState,
    apply_release_state,
    get_release_state,
)
from provisioner.src.status import StatusReporter
from provisioner.src.storage import ConfigMapStorage, Storage
from provisioner.src.watches import (
    CustomResourceSource,
    DynamicWatchFactory,
    DynamicWatchRegistry,
    KindWatch,
)
from provisioner.src.workqueue import WorkQueue


class ResourceApi(Protocol):
    def get_installation(self, name: str) -> InstallationRequest: ...

    def list_installations(self) -> list[InstallationRequest]: ...

    def get_bundle(self, name: str) -> Bundle: ...

    def patch_installation_status(self, name: str, body: dict[str, Any]) -> None: ...


class ClientGetter(Protocol):
    def action_client_for(self, request: InstallationRequest) -> ActionClient: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a pass that did not raise.

    ``state`` is ``None`` when the pass stopped before the release state
    was evaluated (missing Bundle, or content still unpacking).
    """

    name: str
    state: ReleaseState | None
    installed: bool


class InstallationReconciler:
    """Drive one InstallationRequest towards its Bundle's content.

    A pass loads and labels the Bundle objects, materializes them into a
    content-addressed chart, evaluates the release state with a dry-run
    upgrade, applies exactly one install/upgrade/reconcile operation and
    then makes sure every produced kind is watched.  Conditions collected
    along the way are written back on every exit path.

    Errors are raised to the caller, which retries with backoff.  The two
    exceptions are a missing Bundle and a Bundle that is not unpacked yet:
    both return normally and wait for the Bundle watch to re-trigger.
    """

    def __init__(
        self,
        api: ResourceApi,
        storage: Storage,
        client_getter: ClientGetter,
        watch_registry: DynamicWatchRegistry,
        release_namespace: str,
        status_reporter: StatusReporter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.storage = storage
        self.client_getter = client_getter
        self.watch_registry = watch_registry
        self.release_namespace = release_namespace
        self.status_reporter = status_reporter or StatusReporter(api)
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _fail(
        request: InstallationRequest,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
    ) -> None:
        request.set_condition(condition_type, status, reason, message)
        METRICS.reconcile_errors_total.labels(reason=reason).inc()

    def reconcile(self, name: str) -> ReconcileResult | None:
        self.logger.debug("Starting reconciliation of %s", name)
        try:
            request = self.api.get_installation(name)
        except ApiException as exc:
            if exc.status == 404:
                self.logger.debug("InstallationRequest %s no longer exists", name)
                METRICS.reconcile_total.labels(result="not_found").inc()
                return None
            raise

        with METRICS.reconcile_duration_seconds.time():
            try:
                with self.status_reporter.reporting(request):
                    result = self._reconcile_request(request)
            except Exception:
                METRICS.reconcile_total.labels(result="error").inc()
                raise
            finally:
                self.logger.debug("Ending reconciliation of %s", name)

        METRICS.reconcile_total.labels(result="success" if result.installed else "waiting").inc()
        return result

    def _lookup_bundle(self, request: InstallationRequest) -> Bundle | None:
        if not request.bundle_name:
            self._fail(
                request,
                TYPE_HAS_VALID_BUNDLE,
                CONDITION_FALSE,
                REASON_BUNDLE_LOOKUP_FAILED,
                "spec.bundleName is empty",
            )
            return None
        try:
            return self.api.get_bundle(request.bundle_name)
        except CLIENT_ERRORS as exc:
            not_found = isinstance(exc, ApiException) and exc.status == 404
            status = CONDITION_FALSE if not_found else CONDITION_UNKNOWN
            self._fail(
                request,
                TYPE_HAS_VALID_BUNDLE,
                status,
                REASON_BUNDLE_LOOKUP_FAILED,
                f"get bundle {request.bundle_name!r}: {describe_client_error(exc)}",
            )
            if not_found:
                return None
            raise

    def _reconcile_request(self, request: InstallationRequest) -> ReconcileResult:
        bundle = self._lookup_bundle(request)
        if bundle is None:
            return ReconcileResult(name=request.name, state=None, installed=False)

        try:
            objects = load_bundle_objects(bundle, request, self.storage)
        except BundleNotUnpacked as exc:
            self.logger.info(
                "Bundle %s for %s is not unpacked yet (phase=%s); waiting",
                bundle.name,
                request.name,
                exc.phase or "<none>",
            )
            request.set_condition(
                TYPE_INSTALLED, CONDITION_FALSE, unpack_reason(exc.phase), str(exc)
            )
            return ReconcileResult(name=request.name, state=None, installed=False)
        except BundleLoadError as exc:
            self._fail(
                request, TYPE_HAS_VALID_BUNDLE, CONDITION_FALSE, REASON_BUNDLE_LOAD_FAILED, str(exc)
            )
            raise

        try:
            chart = build_chart(request.name, objects)
        except InvalidBundleContent as exc:
            self._fail(
                request,
                TYPE_INVALID_BUNDLE_CONTENT,
                CONDITION_TRUE,
                REASON_READING_CONTENT_FAILED,
                str(exc),
            )
            raise

        try:
            client = self.client_getter.action_client_for(request)
        except ProvisionerError as exc:
            self._fail(
                request, TYPE_INSTALLED, CONDITION_FALSE, REASON_ERROR_GETTING_CLIENT, str(exc)
            )
            raise

        try:
            current, state = get_release_state(client, request.name, self.release_namespace, chart)
            self.logger.info("Release %s evaluated as %s", request.name, state.value)
            apply_release_state(client, request.name, self.release_namespace, chart, state, current)
        except ReleaseStateError as exc:
            self._fail(
                request,
                TYPE_INSTALLED,
                CONDITION_FALSE,
                REASON_ERROR_GETTING_RELEASE_STATE,
                str(exc),
            )
            raise
        except ReleaseApplyError as exc:
            self._fail(request, TYPE_INSTALLED, CONDITION_FALSE, exc.reason, str(exc))
            raise

        self._ensure_watches(request, objects)

        request.set_condition(TYPE_INSTALLED, CONDITION_TRUE, REASON_INSTALLATION_SUCCEEDED)
        request.installed_bundle_name = request.bundle_name
        return ReconcileResult(name=request.name, state=state, installed=True)

    def _ensure_watches(self, request: InstallationRequest, objects: list[dict[str, Any]]) -> None:
        for obj in objects:
            gvk = GroupVersionKind.from_object(obj)
            try:
                self.watch_registry.ensure_watched(gvk)
            except WatchRegistrationError as exc:
                self._fail(
                    request,
                    TYPE_INSTALLED,
                    CONDITION_FALSE,
                    REASON_CREATE_DYNAMIC_WATCH_FAILED,
                    str(exc),
                )
                raise


class InstallationController:
    """Level-triggered control loop around :class:`InstallationReconciler`.

    Watches InstallationRequests and Bundles, feeds request names into a
    :class:`WorkQueue` and runs a fixed pool of worker threads.  The queue
    guarantees a name is never reconciled by two workers at once; failed
    passes are re-queued with per-key exponential backoff.
    """

    def __init__(
        self,
        api: ResourceApi,
        reconciler: InstallationReconciler,
        queue: WorkQueue,
        watch_registry: DynamicWatchRegistry,
        installation_watch: KindWatch | None = None,
        bundle_watch: KindWatch | None = None,
        workers: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.reconciler = reconciler
        self.queue = queue
        self.watch_registry = watch_registry
        self.installation_watch = installation_watch
        self.bundle_watch = bundle_watch
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def handle_installation_event(self, event_type: str, obj: dict[str, Any]) -> None:
        request = InstallationRequest.from_dict(obj)
        if not request.name or request.provisioner_class_name != PLAIN_PROVISIONER_ID:
            return
        self.queue.add(request.name)

    def handle_bundle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        bundle = Bundle.from_dict(obj)
        if not bundle.name:
            return
        try:
            requests = self.api.list_installations()
        except CLIENT_ERRORS:
            self.logger.exception(
                "Failed to list InstallationRequests for bundle %s %s event",
                bundle.name,
                event_type,
            )
            return
        for request in requests:
            if (
                request.bundle_name == bundle.name
                and request.provisioner_class_name == PLAIN_PROVISIONER_ID
            ):
                self.queue.add(request.name)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued name.  Returns False when nothing was processed."""
        name = self.queue.get(timeout=timeout)
        if name is None:
            return False
        try:
            self.reconciler.reconcile(name)
        except ProvisionerError as exc:
            delay = self.queue.add_rate_limited(name)
            self.logger.warning(
                "Reconciliation of %s failed: %s; retrying in %.1fs", name, exc, delay
            )
        except Exception:
            delay = self.queue.add_rate_limited(name)
            self.logger.exception("Unexpected error reconciling %s; retrying in %.1fs", name, delay)
        else:
            self.queue.forget(name)
        finally:
            self.queue.done(name)
        return True

    def _run_worker(self) -> None:
        while not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    def request_stop(self) -> None:
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watches and workers and block until shutdown.

        The loop also ends when a primary watch exits on its own, which only
        happens when the API denies access (``401``/``403``).
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        primary = [w for w in (self.installation_watch, self.bundle_watch) if w is not None]
        for kind_watch in primary:
            kind_watch.start()

        threads = [
            threading.Thread(target=self._run_worker, name=f"reconcile-worker-{index}", daemon=True)
            for index in range(self.workers)
        ]
        for thread in threads:
            thread.start()

        self.ready.set()
        self.logger.info(
            "Provisioner %s started with %d worker(s)", PLAIN_PROVISIONER_ID, self.workers
        )

        while not self._should_stop(stop):
            if any(not kind_watch.is_alive() for kind_watch in primary):
                self.logger.error("A primary watch stopped unexpectedly; shutting down")
                break
            stop.wait(timeout=1.0)

        self.ready.clear()
        for kind_watch in primary:
            kind_watch.stop(join_timeout=5.0)
        self.watch_registry.stop_all(join_timeout=5.0)
        self.queue.shut_down()
        for thread in threads:
            thread.join(timeout=5.0)
        self.logger.info("Provisioner stopped")


def build_controller(config: ProvisionerConfig, clients: KubeClients) -> InstallationController:
    """Wire the reconciler, queue, registry and watches from *config*."""
    api = ProvisionerApi(clients.custom_api)
    queue = WorkQueue()
    watch_registry = DynamicWatchRegistry(
        DynamicWatchFactory(
            dynamic_client=clients.dynamic_client,
            enqueue=queue.add,
            timeout_seconds=config.watch_timeout_seconds,
        )
    )
    reconciler = InstallationReconciler(
        api=api,
        storage=ConfigMapStorage(clients.core_api, config.storage_namespace),
        client_getter=ActionClientGetter(
            core_api=clients.core_api,
            dynamic_client=clients.dynamic_client,
            namespace=config.release_namespace,
            field_manager=config.field_manager,
        ),
        watch_registry=watch_registry,
        release_namespace=config.release_namespace,
    )
    controller = InstallationController(
        api=api,
        reconciler=reconciler,
        queue=queue,
        watch_registry=watch_registry,
        workers=config.max_concurrent_reconciles,
    )
    controller.installation_watch = KindWatch(
        source=CustomResourceSource(clients.custom_api, GROUP, VERSION, INSTALLATION_PLURAL),
        handler=controller.handle_installation_event,
        timeout_seconds=config.watch_timeout_seconds,
    )
    controller.bundle_watch = KindWatch(
        source=CustomResourceSource(clients.custom_api, GROUP, VERSION, BUNDLE_PLURAL),
        handler=controller.handle_bundle_event,
        timeout_seconds=config.watch_timeout_seconds,
    )
    return controller
