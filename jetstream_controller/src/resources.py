from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

API_GROUP = "jetstream.nats.io"
API_VERSION = "v1beta2"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "Stream"
PLURAL = "streams"

STREAM_FINALIZER = "streamfinalizer.jetstream.nats.io"

READY_CONDITION = "Ready"

RETENTION_POLICIES = frozenset({"limits", "interest", "workqueue"})
STORAGE_TYPES = frozenset({"file", "memory"})
DISCARD_POLICIES = frozenset({"old", "new"})

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class MalformedKeyError(ValueError):
    """Raised when a work item key is not of the form ``<namespace>/<name>``."""


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string (``1h30m``, ``500ms``, ``2m``) into seconds.

    An empty string and ``"0"`` both mean zero, which JetStream treats as
    "unlimited" for ``max_age`` and "server default" for ``duplicate_window``.
    """
    text = value.strip()
    if text in {"", "0"}:
        return 0.0

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    last_transition_time: str = ""
    reason: str = ""
    message: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", "")),
            last_transition_time=str(raw.get("lastTransitionTime") or ""),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": self.last_transition_time,
            "reason": self.reason,
            "message": self.message,
        }


@dataclass(frozen=True)
class StreamSpec:
    """Desired configuration of a JetStream stream.

    Field names mirror the ``spec`` block of the custom resource in
    snake_case.  Numeric limits use ``-1`` for "unlimited", as the CRD
    defaults do.  ``max_age`` and ``duplicate_window`` stay as the duration
    strings the user wrote; :func:`parse_duration` converts them when a
    client needs seconds.
    """

    name: str
    description: str = ""
    subjects: tuple[str, ...] = ()
    retention: str = "limits"
    max_consumers: int = -1
    max_msgs: int = -1
    max_msgs_per_subject: int = -1
    max_bytes: int = -1
    max_age: str = ""
    max_msg_size: int = -1
    storage: str = "memory"
    discard: str = "old"
    replicas: int = 1
    no_ack: bool = False
    duplicate_window: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> StreamSpec:
        raw = raw or {}
        return cls(
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            subjects=tuple(str(s) for s in raw.get("subjects") or ()),
            retention=str(raw.get("retention") or "limits"),
            max_consumers=int(raw.get("maxConsumers", -1)),
            max_msgs=int(raw.get("maxMsgs", -1)),
            max_msgs_per_subject=int(raw.get("maxMsgsPerSubject", -1)),
            max_bytes=int(raw.get("maxBytes", -1)),
            max_age=str(raw.get("maxAge") or ""),
            max_msg_size=int(raw.get("maxMsgSize", -1)),
            storage=str(raw.get("storage") or "memory"),
            discard=str(raw.get("discard") or "old"),
            replicas=int(raw.get("replicas", 1)),
            no_ack=bool(raw.get("noAck", False)),
            duplicate_window=str(raw.get("duplicateWindow") or ""),
        )


@dataclass(frozen=True)
class StreamStatus:
    """Observed state written by the controller.

    ``stream_name`` is the JetStream stream this resource owns.  It is set on
    the first successful create and never changes afterwards, so deletion
    targets the stream that was actually created even if ``spec.name`` was
    edited since.
    """

    observed_generation: int = 0
    conditions: tuple[Condition, ...] = ()
    stream_name: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> StreamStatus:
        raw = raw or {}
        return cls(
            observed_generation=int(raw.get("observedGeneration") or 0),
            conditions=tuple(Condition.from_dict(c) for c in raw.get("conditions") or ()),
            stream_name=str(raw.get("streamName") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }
        if self.stream_name:
            status["streamName"] = self.stream_name
        return status


@dataclass(frozen=True)
class StreamMeta:
    namespace: str
    name: str
    generation: int = 0
    deletion_timestamp: str | None = None
    finalizers: tuple[str, ...] = ()
    resource_version: str | None = None
    uid: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> StreamMeta:
        raw = raw or {}
        deletion_timestamp = raw.get("deletionTimestamp")
        return cls(
            namespace=str(raw.get("namespace") or ""),
            name=str(raw.get("name") or ""),
            generation=int(raw.get("generation") or 0),
            deletion_timestamp=str(deletion_timestamp) if deletion_timestamp else None,
            finalizers=tuple(str(f) for f in raw.get("finalizers") or ()),
            resource_version=raw.get("resourceVersion"),
            uid=raw.get("uid"),
        )


@dataclass(frozen=True)
class Stream:
    """Read-only snapshot of a ``Stream`` custom resource.

    Instances are never mutated; the reconciler derives a new snapshot with
    :func:`dataclasses.replace` and hands it to the API writer.  ``raw`` keeps
    the body the snapshot was parsed from so fields this controller does not
    model survive a full-object replace.
    """

    metadata: StreamMeta
    spec: StreamSpec
    status: StreamStatus = field(default_factory=StreamStatus)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> Stream:
        return cls(
            metadata=StreamMeta.from_dict(obj.get("metadata")),
            spec=StreamSpec.from_dict(obj.get("spec")),
            status=StreamStatus.from_dict(obj.get("status")),
            raw=obj,
        )

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return STREAM_FINALIZER in self.metadata.finalizers

    @property
    def owned_stream_name(self) -> str:
        """Name of the external stream this resource owns.

        Falls back to ``spec.name`` for resources whose status predates
        ``status.streamName``.
        """
        return self.status.stream_name or self.spec.name

    def with_finalizer(self) -> Stream:
        if self.has_finalizer:
            return self
        finalizers = (*self.metadata.finalizers, STREAM_FINALIZER)
        return replace(self, metadata=replace(self.metadata, finalizers=finalizers))

    def without_finalizer(self) -> Stream:
        finalizers = tuple(f for f in self.metadata.finalizers if f != STREAM_FINALIZER)
        return replace(self, metadata=replace(self.metadata, finalizers=finalizers))

    def to_body(self) -> dict[str, Any]:
        """Render the full object body for a replace call.

        Only the fields the controller owns (finalizers and status) are
        overwritten.  ``resourceVersion`` is carried so the API server rejects
        the write with ``409 Conflict`` if the object changed meanwhile.
        """
        body: dict[str, Any] = copy.deepcopy(dict(self.raw))
        body.setdefault("apiVersion", API_GROUP_VERSION)
        body.setdefault("kind", KIND)
        metadata = body.setdefault("metadata", {})
        metadata["namespace"] = self.metadata.namespace
        metadata["name"] = self.metadata.name
        metadata["finalizers"] = list(self.metadata.finalizers)
        if self.metadata.resource_version is not None:
            metadata["resourceVersion"] = self.metadata.resource_version
        body["status"] = self.status.to_dict()
        return body


def stream_key(stream: Stream) -> str:
    """Return the work item key ``<namespace>/<name>`` for *stream*."""
    namespace = stream.metadata.namespace
    name = stream.metadata.name
    if not namespace or not name or "/" in namespace or "/" in name:
        raise MalformedKeyError(
            f"cannot derive work key from namespace={namespace!r} name={name!r}"
        )
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a work item key into ``(namespace, name)``.

    Anything other than exactly two non-empty ``/``-separated parts is
    malformed.
    """
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedKeyError(f"unexpected work key format: {key!r}")
    return parts[0], parts[1]
