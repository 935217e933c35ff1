from __future__ import annotations

import logging
import os
import threading
import time

from kubernetes.client import CoreV1Api, CustomObjectsApi

from jetstream_controller.src.kube import KubeEventRecorder, KubeStreamWriter
from jetstream_controller.src.metrics import METRICS
from jetstream_controller.src.reconciler import StreamReconciler
from jetstream_controller.src.resources import MalformedKeyError, Stream, split_key, stream_key
from jetstream_controller.src.store import StreamStore
from jetstream_controller.src.streams import NatsStreamClient
from jetstream_controller.src.validation import StreamValidationError
from jetstream_controller.src.watcher import StreamWatcher
from jetstream_controller.src.workqueue import ExponentialBackoff, RateLimitingQueue

MAX_QUEUE_RETRIES = 10


class StreamController:
    """Runs reconcile workers against a rate-limited work queue.

    The executor owns every retry decision:

    * success forgets the key's failure counter;
    * a malformed key cannot be fixed by retrying and is dropped at once;
    * a :class:`StreamValidationError` is terminal for the pass and dropped;
    * any other error requeues the key with exponential backoff until it has
      been requeued ``max_retries`` times, after which it is dropped.  A later
      change to the resource enqueues it again from scratch.

    The queue hands a key to one worker at a time, so the reconciler needs no
    locking of its own.
    """

    def __init__(
        self,
        reconciler: StreamReconciler,
        watcher: StreamWatcher | None = None,
        queue: RateLimitingQueue | None = None,
        workers: int = 2,
        max_retries: int = MAX_QUEUE_RETRIES,
        shutdown_timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.reconciler = reconciler
        self.watcher = watcher
        self.queue = queue or RateLimitingQueue()
        self.workers = workers
        self.max_retries = max_retries
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._idle_ready = threading.Event()

    @property
    def ready(self) -> threading.Event:
        """Readiness of the watch feed: set once the initial list has been synced."""
        if self.watcher is not None:
            return self.watcher.ready
        return self._idle_ready

    def enqueue_stream_work(self, stream: Stream) -> None:
        """Queue *stream* for reconciliation under its ``<namespace>/<name>`` key."""
        self.queue.add(stream_key(stream))

    def _handle_error(self, key: str, exc: Exception) -> None:
        if isinstance(exc, StreamValidationError):
            self.queue.forget(key)
            METRICS.dropped_keys_total.labels(reason="invalid").inc()
            self.logger.warning("Dropping %s: %s", key, exc)
            return

        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            self.queue.add_rate_limited(key)
            METRICS.retry_total.inc()
            self.logger.warning(
                "Reconcile of %s failed (attempt %d/%d), requeueing: %s",
                key,
                requeues + 1,
                self.max_retries,
                exc,
            )
            return

        self.queue.forget(key)
        METRICS.dropped_keys_total.labels(reason="retries_exhausted").inc()
        self.logger.error(
            "Dropping %s out of the queue after %d retries: %s", key, requeues, exc
        )

    def process_next_queue_item(self) -> bool:
        """Take one key off the queue and reconcile it.

        Returns ``False`` once the queue has been shut down.
        """
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        try:
            try:
                namespace, name = split_key(key)
            except MalformedKeyError:
                # Keys are only ever built by stream_key(); this should never happen.
                self.queue.forget(key)
                METRICS.dropped_keys_total.labels(reason="malformed_key").inc()
                self.logger.exception("Failed to split work key %r; dropping it", key)
                return True

            started = time.monotonic()
            try:
                action = self.reconciler.process_stream(namespace, name)
            except Exception as exc:
                METRICS.reconcile_total.labels(action="unknown", result="error").inc()
                self._handle_error(key, exc)
                return True
            finally:
                METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

            METRICS.reconcile_total.labels(action=action.value, result="success").inc()
            self.queue.forget(key)
            return True
        finally:
            self.queue.done(key)

    def _run_worker(self) -> None:
        while self.process_next_queue_item():
            pass

    def request_stop(self) -> None:
        """Stop the watch feed and the queue; workers exit after their current item."""
        if self.watcher is not None:
            self.watcher.request_stop()
        self.queue.shut_down()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the workers, follow the watch feed until shutdown, then drain workers.

        Without a watcher the call simply blocks until *shutdown_event* is set.
        """
        stop = shutdown_event or threading.Event()
        threads = [
            threading.Thread(target=self._run_worker, name=f"stream-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        self.logger.info("Started %d stream worker(s)", len(threads))

        try:
            if self.watcher is not None:
                self.watcher.run_forever(shutdown_event=stop)
            else:
                stop.wait()
        finally:
            self.queue.shut_down()
            for thread in threads:
                thread.join(timeout=self.shutdown_timeout_seconds)
                if thread.is_alive():
                    self.logger.error(
                        "Worker %s did not finish within %ss",
                        thread.name,
                        self.shutdown_timeout_seconds,
                    )
            self.reconciler.stream_client.close()
            self.logger.info("Stream workers stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_servers(raw: str) -> list[str]:
    """Split a comma separated server list, dropping blanks."""
    return [part.strip() for part in raw.split(",") if part.strip()]


def build_controller_from_env(custom_api: CustomObjectsApi, core_api: CoreV1Api) -> StreamController:
    """Construct a :class:`StreamController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace to watch; empty watches all namespaces.
        ``NATS_SERVERS``: comma separated NATS URLs (``nats://localhost:4222``).
        ``NATS_CONNECT_TIMEOUT_SECONDS``: connect timeout (``5``).
        ``NATS_REQUEST_TIMEOUT_SECONDS``: per-request timeout (``10``).
        ``WORKERS``: concurrent reconcile workers (``2``).
        ``MAX_RETRIES``: requeues before a failing key is dropped (``10``).
        ``RETRY_BASE_DELAY_MS``: first backoff delay (``5``).
        ``RETRY_MAX_DELAY_SECONDS``: backoff cap (``1000``).
        ``CONTROLLER_NAME``: event source component (``jetstream-controller``).
        ``STREAM_STATUS_SUBRESOURCE``: write status through ``/status`` (``true``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()

    servers = parse_servers(os.getenv("NATS_SERVERS", "nats://localhost:4222"))
    if not servers:
        raise ValueError("NATS_SERVERS must contain at least one server URL")

    connect_timeout = env_int("NATS_CONNECT_TIMEOUT_SECONDS", 5, minimum=1)
    request_timeout = env_int("NATS_REQUEST_TIMEOUT_SECONDS", 10, minimum=1)
    workers = env_int("WORKERS", 2, minimum=1)
    max_retries = env_int("MAX_RETRIES", MAX_QUEUE_RETRIES, minimum=0)
    base_delay_ms = env_int("RETRY_BASE_DELAY_MS", 5, minimum=1)
    max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if max_delay_seconds * 1000 < base_delay_ms:
        raise ValueError("RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_MS")

    controller_name = os.getenv("CONTROLLER_NAME", "jetstream-controller").strip()
    if not controller_name:
        raise ValueError("CONTROLLER_NAME must be a non-empty string")

    store = StreamStore()
    recorder = KubeEventRecorder(core_api=core_api, component=controller_name)
    reconciler = StreamReconciler(
        store=store,
        stream_client=NatsStreamClient(
            servers=servers,
            connect_timeout_seconds=connect_timeout,
            request_timeout_seconds=float(request_timeout),
            client_name=controller_name,
        ),
        writer=KubeStreamWriter(
            custom_api=custom_api,
            status_subresource=env_bool("STREAM_STATUS_SUBRESOURCE", default=True),
        ),
        recorder=recorder,
    )
    controller = StreamController(
        reconciler=reconciler,
        queue=RateLimitingQueue(
            ExponentialBackoff(
                base_delay_seconds=base_delay_ms / 1000.0,
                max_delay_seconds=float(max_delay_seconds),
            )
        ),
        workers=workers,
        max_retries=max_retries,
    )
    controller.watcher = StreamWatcher(
        custom_api=custom_api,
        namespace=namespace,
        store=store,
        enqueue=controller.enqueue_stream_work,
        recorder=recorder,
    )
    return controller
