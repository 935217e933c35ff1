from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from jetstream_controller.src.kube import (
    EVENT_NORMAL,
    EVENT_WARNING,
    EventRecorder,
    StreamWriter,
    utc_now_rfc3339,
)
from jetstream_controller.src.resources import READY_CONDITION, Condition, Stream
from jetstream_controller.src.store import StreamStore
from jetstream_controller.src.streams import StreamClient, StreamClientError
from jetstream_controller.src.validation import (
    ImmutableFieldError,
    StreamValidationError,
    validate_stream_name,
    validate_stream_spec,
)

T = TypeVar("T")


class ReconcileAction(enum.Enum):
    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class StreamReconciler:
    """Drive one ``Stream`` resource towards its declared state.

    Each call to :meth:`process_stream` re-reads the resource from the store
    and makes exactly one decision:

    ``Absent``
        The resource is gone from the store; nothing to do.
    ``PendingDelete``
        A deletion timestamp is set and our finalizer is still present.  The
        external stream is deleted first and the finalizer removed afterwards,
        so a crash in between leaves the finalizer in place and the next pass
        simply repeats the (idempotent) delete.
    ``Reconciled``
        ``status.observedGeneration`` equals ``metadata.generation`` and the
        finalizer is present; no external call is made.
    ``PendingCreate`` / ``PendingUpdate``
        Chosen by asking the server whether the stream exists, which also
        repairs streams deleted or created behind the controller's back.

    Status and finalizer are handed to the writer once, after the external
    call succeeded.  The status records the stream name that was created;
    a later ``spec.name`` that differs from it is rejected, and deletion
    always targets the recorded name.  Failures propagate unchanged; the
    caller owns retries and backoff, so nothing here sleeps or loops.
    """

    def __init__(
        self,
        store: StreamStore,
        stream_client: StreamClient,
        writer: StreamWriter,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.stream_client = stream_client
        self.writer = writer
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def process_stream(self, namespace: str, name: str) -> ReconcileAction:
        stream = self.store.get(namespace, name)
        if stream is None:
            self.logger.debug("Stream %s/%s no longer exists; nothing to do", namespace, name)
            return ReconcileAction.NOOP

        if stream.being_deleted:
            if not stream.has_finalizer:
                return ReconcileAction.NOOP
            self._delete_stream(stream)
            return ReconcileAction.DELETE

        if (
            stream.status.observed_generation == stream.metadata.generation
            and stream.has_finalizer
        ):
            return ReconcileAction.NOOP

        try:
            validate_stream_spec(stream.spec)
        except StreamValidationError as exc:
            self.recorder.record(stream, EVENT_WARNING, "InvalidSpec", str(exc))
            raise
        try:
            validate_stream_name(stream.status.stream_name, stream.spec)
        except ImmutableFieldError as exc:
            self.recorder.record(stream, EVENT_WARNING, "InvalidUpdate", str(exc))
            raise

        self._external(stream, "FailedConnect", self.stream_client.connect)
        exists = self._external(
            stream, "FailedConnect", lambda: self.stream_client.exists(stream.spec.name)
        )
        if exists:
            self._update_stream(stream)
            return ReconcileAction.UPDATE
        self._create_stream(stream)
        return ReconcileAction.CREATE

    def _external(self, stream: Stream, failure_reason: str, call: Callable[[], T]) -> T:
        """Run a stream client call, reporting failures on the resource before re-raising."""
        try:
            return call()
        except StreamClientError as exc:
            self.recorder.record(stream, EVENT_WARNING, failure_reason, str(exc))
            raise

    def _mark_ready(self, stream: Stream, reason: str, message: str) -> Stream:
        previous = next(
            (c for c in stream.status.conditions if c.type == READY_CONDITION), None
        )
        transition_time = (
            previous.last_transition_time
            if previous is not None and previous.status == "True"
            else self.now_fn()
        )
        ready = Condition(
            type=READY_CONDITION,
            status="True",
            last_transition_time=transition_time,
            reason=reason,
            message=message,
        )
        conditions = tuple(
            c for c in stream.status.conditions if c.type != READY_CONDITION
        ) + (ready,)
        status = replace(
            stream.status,
            observed_generation=stream.metadata.generation,
            conditions=conditions,
            stream_name=stream.spec.name,
        )
        return replace(stream, status=status)

    def _create_stream(self, stream: Stream) -> None:
        stream_name = stream.spec.name
        self.recorder.record(stream, EVENT_NORMAL, "Creating", f"Creating stream {stream_name!r}")
        self._external(stream, "FailedCreate", lambda: self.stream_client.create(stream.spec))

        self.writer.update(
            self._mark_ready(
                stream.with_finalizer(), "Created", "Stream successfully created"
            )
        )
        self.recorder.record(stream, EVENT_NORMAL, "Created", f"Created stream {stream_name!r}")
        self.logger.info(
            "Created stream %s for %s/%s", stream_name, stream.namespace, stream.name
        )

    def _update_stream(self, stream: Stream) -> None:
        stream_name = stream.spec.name
        self.recorder.record(stream, EVENT_NORMAL, "Updating", f"Updating stream {stream_name!r}")
        self._external(stream, "FailedUpdate", lambda: self.stream_client.update(stream.spec))

        self.writer.update(
            self._mark_ready(
                stream.with_finalizer(), "Updated", "Stream successfully updated"
            )
        )
        self.recorder.record(stream, EVENT_NORMAL, "Updated", f"Updated stream {stream_name!r}")
        self.logger.info(
            "Updated stream %s for %s/%s", stream_name, stream.namespace, stream.name
        )

    def _delete_stream(self, stream: Stream) -> None:
        stream_name = stream.owned_stream_name
        # A resource that never named a stream cannot own one.
        if stream_name:
            self._external(stream, "FailedConnect", self.stream_client.connect)
            exists = self._external(
                stream, "FailedConnect", lambda: self.stream_client.exists(stream_name)
            )
            if exists:
                self._external(
                    stream, "FailedDelete", lambda: self.stream_client.delete(stream_name)
                )
            else:
                self.logger.info(
                    "Stream %s for %s/%s already absent", stream_name, stream.namespace, stream.name
                )

        self.writer.update(stream.without_finalizer())
        self.recorder.record(stream, EVENT_NORMAL, "Deleting", f"Deleting stream {stream_name!r}")
        self.logger.info(
            "Deleted stream %s and released finalizer on %s/%s",
            stream_name,
            stream.namespace,
            stream.name,
        )
