from __future__ import annotations

import enum

from jetstream_controller.src.resources import (
    DISCARD_POLICIES,
    RETENTION_POLICIES,
    STORAGE_TYPES,
    StreamSpec,
    parse_duration,
)


class StreamValidationError(ValueError):
    """Raised for a stream spec or spec transition that can never succeed.

    Retrying does not help, so the executor drops the key instead of
    requeueing it; the user has to fix the resource.
    """


class ImmutableFieldError(StreamValidationError):
    """Raised when an update tries to change a field JetStream cannot change in place."""


class UpdateDecision(enum.Enum):
    NOTHING_TO_UPDATE = "nothing-to-update"
    PROCEED = "proceed"


def validate_stream_name(owned_name: str, next_spec: StreamSpec) -> None:
    """Reject a spec that would move the resource to a different external stream.

    *owned_name* is the stream the resource already owns; an empty value
    means nothing was created yet and any name is accepted.
    """
    if owned_name and owned_name != next_spec.name:
        raise ImmutableFieldError(
            f"updating stream name from {owned_name!r} to {next_spec.name!r} is not allowed, "
            "please recreate the resource"
        )


def validate_stream_update(prev: StreamSpec, next_spec: StreamSpec) -> UpdateDecision:
    """Decide whether moving from *prev* to *next_spec* is a legal update.

    Identical specs yield :attr:`UpdateDecision.NOTHING_TO_UPDATE`, which is a
    success: callers skip the external update.  A changed stream name raises
    :class:`ImmutableFieldError` because JetStream has no rename operation.
    """
    if prev == next_spec:
        return UpdateDecision.NOTHING_TO_UPDATE
    validate_stream_name(prev.name, next_spec)
    return UpdateDecision.PROCEED


def validate_stream_spec(spec: StreamSpec) -> None:
    """Reject specs the streaming server would refuse on every attempt."""
    if not spec.name:
        raise StreamValidationError("spec.name must be set")
    if "." in spec.name or " " in spec.name or "*" in spec.name or ">" in spec.name:
        raise StreamValidationError(f"spec.name {spec.name!r} contains invalid characters")
    if spec.retention not in RETENTION_POLICIES:
        raise StreamValidationError(f"unknown retention policy {spec.retention!r}")
    if spec.storage not in STORAGE_TYPES:
        raise StreamValidationError(f"unknown storage type {spec.storage!r}")
    if spec.discard not in DISCARD_POLICIES:
        raise StreamValidationError(f"unknown discard policy {spec.discard!r}")
    if spec.replicas < 1:
        raise StreamValidationError(f"spec.replicas must be >= 1, got: {spec.replicas}")
    for field_name, value in (("maxAge", spec.max_age), ("duplicateWindow", spec.duplicate_window)):
        try:
            parse_duration(value)
        except ValueError as exc:
            raise StreamValidationError(f"spec.{field_name}: {exc}") from exc
