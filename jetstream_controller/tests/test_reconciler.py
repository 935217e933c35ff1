from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from jetstream_controller.src.reconciler import ReconcileAction, StreamReconciler
from jetstream_controller.src.resources import STREAM_FINALIZER, Stream, StreamSpec
from jetstream_controller.src.store import StreamStore
from jetstream_controller.src.streams import InMemoryStreamClient, StreamClientError
from jetstream_controller.src.validation import ImmutableFieldError, StreamValidationError


class FakeRecorder:
    """Collects events rendered like ``"<type> <reason> <message>"``."""

    def __init__(self) -> None:
        self.events: list[str] = []

    def record(self, stream: Stream, event_type: str, reason: str, message: str) -> None:
        self.events.append(f"{event_type} {reason} {message}")


class FakeWriter:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.writes: list[Stream] = []

    def update(self, stream: Stream) -> Stream:
        if self.error is not None:
            raise self.error
        self.writes.append(stream)
        return stream


def make_stream(
    name: str = "my-stream",
    namespace: str = "default",
    generation: int = 1,
    observed_generation: int = 0,
    finalizers: list[str] | None = None,
    deletion_timestamp: str | None = None,
    spec: dict[str, Any] | None = None,
    conditions: list[dict[str, str]] | None = None,
    stream_name: str = "",
) -> Stream:
    metadata: dict[str, Any] = {
        "namespace": namespace,
        "name": name,
        "generation": generation,
        "resourceVersion": "1",
        "finalizers": finalizers or [],
    }
    if deletion_timestamp is not None:
        metadata["deletionTimestamp"] = deletion_timestamp
    return Stream.from_dict(
        {
            "metadata": metadata,
            "spec": spec if spec is not None else {"name": name},
            "status": {
                "observedGeneration": observed_generation,
                "conditions": conditions or [],
                "streamName": stream_name,
            },
        }
    )


def fixed_now() -> str:
    return "2026-01-01T00:00:00Z"


def _make_reconciler(
    stream: Stream | None = None,
    stream_client: InMemoryStreamClient | None = None,
    writer: FakeWriter | None = None,
) -> tuple[StreamReconciler, InMemoryStreamClient, FakeWriter, FakeRecorder]:
    store = StreamStore()
    if stream is not None:
        store.upsert(stream)
    client = stream_client or InMemoryStreamClient()
    writer = writer or FakeWriter()
    recorder = FakeRecorder()
    reconciler = StreamReconciler(
        store=store,
        stream_client=client,
        writer=writer,
        recorder=recorder,
        now_fn=fixed_now,
    )
    return reconciler, client, writer, recorder


# ---------------------------------------------------------------------------
# Absent / fast path
# ---------------------------------------------------------------------------


def test_missing_resource_is_a_noop() -> None:
    reconciler, client, writer, recorder = _make_reconciler()

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.NOOP
    assert sum(client.calls.values()) == 0
    assert writer.writes == []
    assert recorder.events == []


def test_reconciled_stream_makes_no_external_calls() -> None:
    stream = make_stream(generation=3, observed_generation=3, finalizers=[STREAM_FINALIZER])
    reconciler, client, writer, recorder = _make_reconciler(stream)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.NOOP
    assert sum(client.calls.values()) == 0
    assert writer.writes == []
    assert recorder.events == []


def test_reconciled_generation_without_finalizer_is_checked_externally() -> None:
    stream = make_stream(generation=3, observed_generation=3)
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    reconciler, client, writer, _ = _make_reconciler(stream, stream_client=client)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.UPDATE
    assert client.calls["exists"] == 1
    assert writer.writes[0].has_finalizer


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def test_create_stream() -> None:
    stream = make_stream(generation=1)
    reconciler, client, writer, recorder = _make_reconciler(stream)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.CREATE
    assert len(recorder.events) == 2
    assert all("Creat" in event for event in recorder.events)
    assert recorder.events[0].startswith("Normal Creating")
    assert recorder.events[1].startswith("Normal Created")
    assert client.calls["create"] == 1
    assert client.calls["update"] == 0
    assert "my-stream" in client.streams

    assert len(writer.writes) == 1
    written = writer.writes[0]
    assert written.status.observed_generation == 1
    assert written.has_finalizer
    assert written.status.stream_name == "my-stream"
    ready = written.status.conditions[-1]
    assert (ready.type, ready.status, ready.reason) == ("Ready", "True", "Created")
    assert ready.last_transition_time == "2026-01-01T00:00:00Z"


def test_create_passes_spec_through_to_client() -> None:
    spec = {"name": "ORDERS", "subjects": ["orders.*"], "maxAge": "1h", "storage": "file"}
    stream = make_stream(name="orders", spec=spec)
    reconciler, client, _, _ = _make_reconciler(stream)

    reconciler.process_stream("default", "orders")

    assert client.streams["ORDERS"] == stream.spec


def test_create_failure_commits_nothing() -> None:
    stream = make_stream(generation=1)
    client = InMemoryStreamClient()
    client.create_error = StreamClientError("server unavailable")
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    with pytest.raises(StreamClientError):
        reconciler.process_stream("default", "my-stream")

    assert writer.writes == []
    assert recorder.events[-1].startswith("Warning FailedCreate")


def test_connect_failure_skips_external_calls() -> None:
    stream = make_stream(generation=1)
    client = InMemoryStreamClient()
    client.connect_error = StreamClientError("bad connect")
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    with pytest.raises(StreamClientError, match="bad connect"):
        reconciler.process_stream("default", "my-stream")

    assert client.calls["exists"] == 0
    assert client.calls["create"] == 0
    assert writer.writes == []
    assert recorder.events == ["Warning FailedConnect bad connect"]


def test_status_conflict_propagates_and_next_pass_converges() -> None:
    stream = make_stream(generation=1)
    writer = FakeWriter(error=ApiException(status=409, reason="Conflict"))
    reconciler, client, writer, _ = _make_reconciler(stream, writer=writer)

    with pytest.raises(ApiException):
        reconciler.process_stream("default", "my-stream")

    # The stream was created; the retry finds it and takes the update path.
    writer.error = None
    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.UPDATE
    assert client.calls["create"] == 1
    assert client.calls["update"] == 1
    assert writer.writes[0].status.observed_generation == 1


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


def test_update_stream() -> None:
    stream = make_stream(generation=2, observed_generation=1)
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.UPDATE
    assert len(recorder.events) == 2
    assert all("Updat" in event for event in recorder.events)
    assert client.calls["update"] == 1
    assert client.calls["create"] == 0
    assert writer.writes[0].status.observed_generation == 2


def test_update_keeps_ready_transition_time() -> None:
    stream = make_stream(
        generation=2,
        observed_generation=1,
        finalizers=[STREAM_FINALIZER],
        conditions=[
            {
                "type": "Ready",
                "status": "True",
                "lastTransitionTime": "2025-06-01T12:00:00Z",
                "reason": "Created",
                "message": "Stream successfully created",
            }
        ],
    )
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    reconciler, _, writer, _ = _make_reconciler(stream, stream_client=client)

    reconciler.process_stream("default", "my-stream")

    conditions = writer.writes[0].status.conditions
    assert len(conditions) == 1
    assert conditions[0].reason == "Updated"
    assert conditions[0].last_transition_time == "2025-06-01T12:00:00Z"


def test_stream_deleted_out_of_band_is_recreated() -> None:
    stream = make_stream(generation=2, observed_generation=1, finalizers=[STREAM_FINALIZER])
    reconciler, client, _, recorder = _make_reconciler(stream)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.CREATE
    assert client.calls["create"] == 1
    assert all("Creat" in event for event in recorder.events)


def test_invalid_spec_is_reported_and_not_sent() -> None:
    stream = make_stream(generation=2, spec={"name": "my-stream", "retention": "forever"})
    reconciler, client, writer, recorder = _make_reconciler(stream)

    with pytest.raises(StreamValidationError):
        reconciler.process_stream("default", "my-stream")

    assert sum(client.calls.values()) == 0
    assert writer.writes == []
    assert len(recorder.events) == 1
    assert recorder.events[0].startswith("Warning InvalidSpec")


def test_renamed_stream_is_rejected_without_external_calls() -> None:
    stream = make_stream(
        name="orders",
        generation=2,
        observed_generation=1,
        finalizers=[STREAM_FINALIZER],
        spec={"name": "ORDERS-V2"},
        stream_name="ORDERS",
    )
    client = InMemoryStreamClient({"ORDERS": StreamSpec(name="ORDERS")})
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    with pytest.raises(ImmutableFieldError, match="ORDERS-V2"):
        reconciler.process_stream("default", "orders")

    assert sum(client.calls.values()) == 0
    assert set(client.streams) == {"ORDERS"}
    assert writer.writes == []
    assert len(recorder.events) == 1
    assert recorder.events[0].startswith("Warning InvalidUpdate")


def test_update_keeps_recorded_stream_name() -> None:
    stream = make_stream(
        name="orders",
        generation=2,
        observed_generation=1,
        finalizers=[STREAM_FINALIZER],
        spec={"name": "ORDERS", "maxAge": "2h"},
        stream_name="ORDERS",
    )
    client = InMemoryStreamClient({"ORDERS": StreamSpec(name="ORDERS")})
    reconciler, client, writer, _ = _make_reconciler(stream, stream_client=client)

    action = reconciler.process_stream("default", "orders")

    assert action is ReconcileAction.UPDATE
    assert writer.writes[0].status.stream_name == "ORDERS"


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def test_delete_stream() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER], deletion_timestamp="2020-09-16T00:42:03Z"
    )
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.DELETE
    assert len(recorder.events) == 1
    assert "Deleting" in recorder.events[0]
    assert client.calls["delete"] == 1
    assert client.streams == {}
    assert len(writer.writes) == 1
    assert not writer.writes[0].has_finalizer


def test_delete_when_stream_already_gone_still_releases_finalizer() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER], deletion_timestamp="2020-09-16T00:42:03Z"
    )
    reconciler, client, writer, recorder = _make_reconciler(stream)

    reconciler.process_stream("default", "my-stream")

    assert client.calls["delete"] == 0
    assert not writer.writes[0].has_finalizer
    assert len(recorder.events) == 1


def test_delete_without_finalizer_is_a_noop() -> None:
    stream = make_stream(deletion_timestamp="2020-09-16T00:42:03Z")
    reconciler, client, writer, recorder = _make_reconciler(stream)

    action = reconciler.process_stream("default", "my-stream")

    assert action is ReconcileAction.NOOP
    assert sum(client.calls.values()) == 0
    assert writer.writes == []
    assert recorder.events == []


def test_delete_failure_keeps_finalizer() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER], deletion_timestamp="2020-09-16T00:42:03Z"
    )
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    client.delete_error = StreamClientError("timeout")
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    with pytest.raises(StreamClientError):
        reconciler.process_stream("default", "my-stream")

    assert writer.writes == []
    assert not any("Deleting" in event for event in recorder.events)
    assert recorder.events[-1].startswith("Warning FailedDelete")


def test_delete_exists_failure_is_reported_as_connect_failure() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER], deletion_timestamp="2020-09-16T00:42:03Z"
    )
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    client.exists_error = StreamClientError("timeout")
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    with pytest.raises(StreamClientError):
        reconciler.process_stream("default", "my-stream")

    assert client.calls["delete"] == 0
    assert writer.writes == []
    assert recorder.events == ["Warning FailedConnect timeout"]


def test_delete_targets_recorded_stream_name_after_rename() -> None:
    stream = make_stream(
        name="orders",
        finalizers=[STREAM_FINALIZER],
        deletion_timestamp="2020-09-16T00:42:03Z",
        spec={"name": "ORDERS-V2"},
        stream_name="ORDERS",
    )
    client = InMemoryStreamClient({"ORDERS": StreamSpec(name="ORDERS")})
    reconciler, client, writer, recorder = _make_reconciler(stream, stream_client=client)

    action = reconciler.process_stream("default", "orders")

    assert action is ReconcileAction.DELETE
    assert client.streams == {}
    assert client.calls["create"] == 0
    assert not writer.writes[0].has_finalizer
    assert recorder.events == ["Normal Deleting Deleting stream 'ORDERS'"]


def test_finalizer_write_failure_after_delete_is_safe_to_retry() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER], deletion_timestamp="2020-09-16T00:42:03Z"
    )
    client = InMemoryStreamClient({"my-stream": StreamSpec(name="my-stream")})
    writer = FakeWriter(error=ApiException(status=500, reason="etcd unavailable"))
    reconciler, client, writer, _ = _make_reconciler(stream, stream_client=client, writer=writer)

    with pytest.raises(ApiException):
        reconciler.process_stream("default", "my-stream")

    writer.error = None
    reconciler.process_stream("default", "my-stream")

    assert client.calls["delete"] == 1
    assert not writer.writes[0].has_finalizer


def test_delete_with_empty_stream_name_skips_server() -> None:
    stream = make_stream(
        finalizers=[STREAM_FINALIZER],
        deletion_timestamp="2020-09-16T00:42:03Z",
        spec={},
    )
    reconciler, client, writer, _ = _make_reconciler(stream)

    reconciler.process_stream("default", "my-stream")

    assert sum(client.calls.values()) == 0
    assert not writer.writes[0].has_finalizer
