from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from jetstream_controller.src.kube import EVENT_WARNING, EventRecorder
from jetstream_controller.src.metrics import METRICS
from jetstream_controller.src.resources import API_GROUP, API_VERSION, PLURAL, Stream
from jetstream_controller.src.store import StreamStore
from jetstream_controller.src.validation import (
    StreamValidationError,
    UpdateDecision,
    validate_stream_update,
)


class StreamWatcher:
    """Keeps the :class:`StreamStore` in sync with the cluster and feeds the work queue.

    The watcher is the only writer of the store.  It lists ``Stream`` custom
    objects once, enqueues every one of them so the controller converges
    after a restart, then follows the watch stream from the list's
    ``resourceVersion``.

    ``MODIFIED`` notifications pass through :func:`validate_stream_update`
    against the previously cached spec: unchanged specs (including the
    controller's own status writes) are not enqueued, and an attempt to
    rename the stream is reported on the resource and never reaches the
    streaming server.  Deletions are always enqueued so the finalizer gets
    processed.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: str,
        store: StreamStore,
        enqueue: Callable[[Stream], None],
        recorder: EventRecorder,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.store = store
        self.enqueue = enqueue
        self.recorder = recorder
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, str]:
        kwargs = {"group": API_GROUP, "version": API_VERSION, "plural": PLURAL}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def _list_streams(self) -> Mapping[str, Any]:
        return self._list_func()(**self._list_kwargs())

    def _sync_from_list(self, listing: Mapping[str, Any]) -> str | None:
        """Replace the store with a full listing and enqueue every stream in it.

        Returns the listing's ``resourceVersion`` to resume watching from.
        """
        streams = [Stream.from_dict(item) for item in listing.get("items") or []]
        self.store.replace_all(streams)
        for stream in streams:
            self._enqueue(stream)
        self.logger.info("Synced %d stream resource(s) from list", len(streams))
        return (listing.get("metadata") or {}).get("resourceVersion")

    def _enqueue(self, stream: Stream) -> None:
        try:
            self.enqueue(stream)
        except ValueError:
            self.logger.exception(
                "Failed to enqueue stream %s/%s", stream.namespace, stream.name
            )

    def handle_stream_event(self, event_type: str, obj: Mapping[str, Any]) -> bool:
        """Apply one watch notification to the store.

        Returns ``True`` when the stream was enqueued for reconciliation.
        """
        stream = Stream.from_dict(obj)

        if event_type == "DELETED":
            self.store.delete(stream.namespace, stream.name)
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        previous = self.store.upsert(stream)
        if event_type == "MODIFIED" and previous is not None and not stream.being_deleted:
            try:
                decision = validate_stream_update(previous.spec, stream.spec)
            except StreamValidationError as exc:
                self.logger.warning(
                    "Rejected update of stream %s/%s: %s", stream.namespace, stream.name, exc
                )
                self.recorder.record(stream, EVENT_WARNING, "InvalidUpdate", str(exc))
                return False
            if decision is UpdateDecision.NOTHING_TO_UPDATE:
                return False

        self._enqueue(stream)
        return True

    def _initial_sync(self, stop: threading.Event) -> str | None:
        """List streams until it succeeds, backing off with jitter between attempts.

        Returns ``None`` without setting readiness when stopped or denied.
        """
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._sync_from_list(self._list_streams())
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self._external_stop.set()
                    return None
                self.logger.exception("Initial Stream list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Stream list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)
        return None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch ``Stream`` resources until shutdown.

        1. Retries the initial list with exponential backoff and jitter.
        2. Seeds the store and enqueues every listed stream.
        3. Watches from the list's ``resourceVersion``.
        4. On ``410 Gone`` re-lists, which also re-enqueues everything.
        5. On transient errors backs off exponentially (capped at 30 s).

        ``401`` / ``403`` responses are configuration errors (RBAC/auth) and end
        the loop immediately with readiness cleared.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version = self._initial_sync(stop)
        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func(),
                    **self._list_kwargs(),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, Mapping):
                        continue

                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        resource_version = version

                    self.handle_stream_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; a fresh
                # list is the only way to learn what changed meanwhile.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._sync_from_list(self._list_streams())
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
