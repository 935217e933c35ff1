from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from collections.abc import Coroutine, Sequence
from typing import Any, Protocol, TypeVar

import nats
from nats.errors import Error as NatsError
from nats.js.api import DiscardPolicy, RetentionPolicy, StorageType, StreamConfig
from nats.js.errors import NotFoundError

from jetstream_controller.src.resources import StreamSpec, parse_duration

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class StreamClientError(RuntimeError):
    """Raised when the streaming server cannot complete a request.

    Covers connection failures, timeouts and server-side rejections.  The
    executor treats it as transient and retries the key with backoff.
    """


class StreamClient(Protocol):
    """Operations the reconciler needs from the streaming server.

    Every call may be repeated after a crash or redelivery, so implementations
    must be idempotent from the caller's point of view.  ``delete`` of a
    stream that does not exist is a success.
    """

    def connect(self) -> None: ...

    def exists(self, name: str) -> bool: ...

    def create(self, spec: StreamSpec) -> None: ...

    def update(self, spec: StreamSpec) -> None: ...

    def delete(self, name: str) -> None: ...

    def close(self) -> None: ...


class InMemoryStreamClient:
    """Deterministic stand-in for the streaming server.

    Keeps streams in a dict and counts calls per operation.  Setting one of
    the ``*_error`` attributes makes that operation raise it on every call.
    """

    def __init__(self, streams: dict[str, StreamSpec] | None = None) -> None:
        self.streams: dict[str, StreamSpec] = dict(streams or {})
        self.calls: Counter[str] = Counter()
        self.connect_error: Exception | None = None
        self.exists_error: Exception | None = None
        self.create_error: Exception | None = None
        self.update_error: Exception | None = None
        self.delete_error: Exception | None = None
        self._lock = threading.Lock()

    def _call(self, operation: str, error: Exception | None) -> None:
        self.calls[operation] += 1
        if error is not None:
            raise error

    def connect(self) -> None:
        with self._lock:
            self._call("connect", self.connect_error)

    def exists(self, name: str) -> bool:
        with self._lock:
            self._call("exists", self.exists_error)
            return name in self.streams

    def create(self, spec: StreamSpec) -> None:
        with self._lock:
            self._call("create", self.create_error)
            self.streams[spec.name] = spec

    def update(self, spec: StreamSpec) -> None:
        with self._lock:
            self._call("update", self.update_error)
            if spec.name not in self.streams:
                raise StreamClientError(f"stream {spec.name!r} not found")
            self.streams[spec.name] = spec

    def delete(self, name: str) -> None:
        with self._lock:
            self._call("delete", self.delete_error)
            self.streams.pop(name, None)

    def close(self) -> None:
        with self._lock:
            self.calls["close"] += 1


def stream_config(spec: StreamSpec) -> StreamConfig:
    """Translate a resource spec into the JetStream API stream configuration.

    Durations are converted to seconds; a zero duration is omitted so the
    server applies its own default.
    """
    max_age = parse_duration(spec.max_age)
    duplicate_window = parse_duration(spec.duplicate_window)
    return StreamConfig(
        name=spec.name,
        description=spec.description or None,
        subjects=list(spec.subjects) or None,
        retention=RetentionPolicy(spec.retention),
        max_consumers=spec.max_consumers,
        max_msgs=spec.max_msgs,
        max_bytes=spec.max_bytes,
        discard=DiscardPolicy(spec.discard),
        max_age=max_age or None,
        max_msgs_per_subject=spec.max_msgs_per_subject,
        max_msg_size=spec.max_msg_size,
        storage=StorageType(spec.storage),
        num_replicas=spec.replicas,
        no_ack=spec.no_ack,
        duplicate_window=duplicate_window or None,
    )


class NatsStreamClient:
    """JetStream management client backed by ``nats-py``.

    ``nats-py`` is asyncio-only while controller workers are threads, so the
    client owns an event loop running in a daemon thread and submits every
    request to it with :func:`asyncio.run_coroutine_threadsafe`.  All workers
    share the one connection; ``connect`` re-establishes it when it was lost.
    """

    def __init__(
        self,
        servers: Sequence[str],
        connect_timeout_seconds: int = 5,
        request_timeout_seconds: float = 10.0,
        client_name: str = "jetstream-controller",
    ) -> None:
        if not servers:
            raise ValueError("at least one NATS server URL is required")
        self.servers = list(servers)
        self.connect_timeout_seconds = connect_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.client_name = client_name

        self._nc: Any = None
        self._connect_lock = threading.Lock()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="nats-client", daemon=True
        )
        self._thread.start()

    def _run(self, coro: Coroutine[Any, Any, T], operation: str) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=self.request_timeout_seconds)
        except TimeoutError as exc:
            future.cancel()
            raise StreamClientError(
                f"{operation} timed out after {self.request_timeout_seconds}s"
            ) from exc
        except (NatsError, OSError) as exc:
            raise StreamClientError(f"{operation} failed: {exc}") from exc

    def connect(self) -> None:
        with self._connect_lock:
            if self._nc is not None and self._nc.is_connected:
                return
            self._nc = self._run(
                nats.connect(
                    servers=self.servers,
                    name=self.client_name,
                    connect_timeout=self.connect_timeout_seconds,
                    allow_reconnect=True,
                    max_reconnect_attempts=3,
                ),
                "connect",
            )
            LOGGER.info("Connected to NATS servers %s", ", ".join(self.servers))

    def _jsm(self) -> Any:
        if self._nc is None:
            raise StreamClientError("not connected")
        return self._nc.jsm()

    def exists(self, name: str) -> bool:
        async def _exists() -> bool:
            try:
                await self._jsm().stream_info(name)
            except NotFoundError:
                return False
            return True

        return self._run(_exists(), f"stream info {name!r}")

    def create(self, spec: StreamSpec) -> None:
        config = stream_config(spec)
        self._run(self._jsm().add_stream(config=config), f"create stream {spec.name!r}")

    def update(self, spec: StreamSpec) -> None:
        config = stream_config(spec)
        self._run(self._jsm().update_stream(config=config), f"update stream {spec.name!r}")

    def delete(self, name: str) -> None:
        async def _delete() -> None:
            try:
                await self._jsm().delete_stream(name)
            except NotFoundError:
                LOGGER.info("Stream %s already absent on delete", name)

        self._run(_delete(), f"delete stream {name!r}")

    def close(self) -> None:
        """Close the connection and stop the event loop thread."""
        nc, self._nc = self._nc, None
        if nc is not None and not nc.is_closed:
            try:
                self._run(nc.close(), "close")
            except StreamClientError:
                LOGGER.warning("Failed to close NATS connection cleanly", exc_info=True)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=self.request_timeout_seconds)
