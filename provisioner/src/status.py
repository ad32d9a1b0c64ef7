from __future__ import annotations

import copy
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from kubernetes.client import ApiException

from provisioner.src.api import InstallationRequest
from provisioner.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class StatusWriter(Protocol):
    def patch_installation_status(self, name: str, body: dict[str, Any]) -> None: ...


class StatusReporter:
    """Best-effort writer for the status fields this provisioner owns.

    A failed patch is logged and counted but never raised: the outcome of
    the reconciliation pass stands, and the next pass reports again.
    """

    def __init__(self, writer: StatusWriter, logger: logging.Logger | None = None) -> None:
        self.writer = writer
        self.logger = logger or LOGGER

    def report(self, request: InstallationRequest) -> bool:
        body = copy.deepcopy(request.status_body())
        try:
            self.writer.patch_installation_status(request.name, body)
        except ApiException as exc:
            METRICS.status_patch_failures_total.inc()
            self.logger.error(
                "Failed to patch status of %s: %s %s",
                request.name,
                exc.status,
                exc.reason,
            )
            return False
        except Exception:
            METRICS.status_patch_failures_total.inc()
            self.logger.exception("Failed to patch status of %s", request.name)
            return False
        return True

    @contextmanager
    def reporting(self, request: InstallationRequest) -> Iterator[InstallationRequest]:
        """Write *request*'s accumulated status on every exit path of the block."""
        try:
            yield request
        finally:
            self.report(request)
