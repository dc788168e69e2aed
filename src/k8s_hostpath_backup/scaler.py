from __future__ import annotations

import logging
import threading
import time
from typing import Sequence

from kubernetes import client
from kubernetes.client import ApiException

from .errors import OperationCancelledError, ScaleError, ScaleTimeoutError, _error_message
from .models import WorkloadRef
from .workloads import workload_kind

DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 300.0
LOGGER = logging.getLogger(__name__)


class ScaleController:
    """Scales release workloads to zero and back to their recorded replica counts."""

    def __init__(
        self,
        *,
        apps_api: client.AppsV1Api,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        wait_timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must be >= 0")
        if wait_timeout_seconds <= 0:
            raise ValueError("wait_timeout_seconds must be positive")
        self.apps_api = apps_api
        self.poll_interval_seconds = poll_interval_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logger or LOGGER

    def scale_down(self, workloads: Sequence[WorkloadRef]) -> None:
        for workload in workloads:
            self.logger.info("Scaling %s to 0 (was %d)", workload, workload.original_replicas)
            try:
                self._set_replicas(workload, 0)
            except ApiException as error:
                raise ScaleError(f"scaling down {workload} failed: {_error_message(error)}") from error

        for workload in workloads:
            self._wait_for_zero_ready(workload)
            self.logger.info("%s scaled down", workload)

    def scale_back(self, workloads: Sequence[WorkloadRef]) -> Exception | None:
        first_error: Exception | None = None
        for workload in workloads:
            self.logger.info("Restoring %s to %d replica(s)", workload, workload.original_replicas)
            try:
                self._set_replicas(workload, workload.original_replicas)
            except Exception as error:  # pylint: disable=broad-except
                self.logger.error("Failed to restore %s: %s", workload, _error_message(error))
                if first_error is None:
                    first_error = error
        return first_error

    def quiesce(self, workloads: Sequence[WorkloadRef]) -> Quiescence:
        """Scale ``workloads`` down and return the handle that scales them back.

        If the scale-down does not complete, the workloads touched so far are
        scaled back before the error propagates.
        """
        handle = Quiescence(self, workloads)
        if not handle.workloads:
            return handle
        try:
            self.scale_down(handle.workloads)
        except BaseException:
            handle.release()
            raise
        return handle

    def _set_replicas(self, workload: WorkloadRef, replicas: int) -> None:
        workload_kind(workload.kind).set_replicas(
            self.apps_api,
            namespace=workload.namespace,
            name=workload.name,
            replicas=replicas,
        )

    def _wait_for_zero_ready(self, workload: WorkloadRef) -> None:
        kind = workload_kind(workload.kind)
        deadline = time.monotonic() + self.wait_timeout_seconds
        while True:
            if self.cancel_event.is_set():
                raise OperationCancelledError(f"cancelled while waiting for {workload} to scale down")

            try:
                ready = kind.read_ready_replicas(self.apps_api, namespace=workload.namespace, name=workload.name)
            except ApiException as error:
                raise ScaleError(f"reading ready replicas of {workload} failed: {_error_message(error)}") from error
            self.logger.debug("%s: %d ready replica(s) (target: 0)", workload, ready)
            if ready == 0:
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ScaleTimeoutError(
                    f"timed out after {self.wait_timeout_seconds:g}s waiting for {workload} to reach 0 ready "
                    f"replicas (last observed: {ready})"
                )
            if self.cancel_event.wait(min(self.poll_interval_seconds, remaining)):
                raise OperationCancelledError(f"cancelled while waiting for {workload} to scale down")


class Quiescence:
    """Release handle for workloads held at zero replicas.

    ``release()`` restores the recorded replica counts exactly once. Failures are
    logged as warnings and never raised, so they cannot mask the error that is
    already propagating through the ``with`` block.
    """

    def __init__(self, controller: ScaleController, workloads: Sequence[WorkloadRef]) -> None:
        self.controller = controller
        self.workloads = tuple(workloads)
        self.released = False
        self.release_error: Exception | None = None

    def release(self) -> Exception | None:
        if self.released:
            return self.release_error
        self.released = True
        if not self.workloads:
            return None

        self.release_error = self.controller.scale_back(self.workloads)
        if self.release_error is not None:
            self.controller.logger.warning(
                "Failed to restore some workloads: %s", _error_message(self.release_error)
            )
        else:
            self.controller.logger.info("All workloads restored.")
        return self.release_error

    def __enter__(self) -> Quiescence:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()
