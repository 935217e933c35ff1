from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    CustomObjectsApi,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.config.config_exception import ConfigException

from jetstream_controller.src.resources import (
    API_GROUP,
    API_GROUP_VERSION,
    API_VERSION,
    KIND,
    PLURAL,
    Stream,
)

LOGGER = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class EventRecorder(Protocol):
    def record(self, stream: Stream, event_type: str, reason: str, message: str) -> None: ...


class StreamWriter(Protocol):
    def update(self, stream: Stream) -> Stream: ...


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, CoreV1Api]:
    """Return CustomObjects and CoreV1 API clients using the active kube configuration."""
    return client.CustomObjectsApi(), client.CoreV1Api()


class KubeStreamWriter:
    """Persist finalizers and status of a ``Stream``.

    With ``status_subresource`` (the default) the API server ignores
    ``status`` on the main resource, so two calls are made: a replace of the
    object carrying the finalizers, then a replace of ``/status`` built on the
    ``resourceVersion`` the first call returned.  Without it a single replace
    carries both.

    Every body carries ``metadata.resourceVersion``; when another writer got
    there first the API server answers ``409 Conflict`` and the resulting
    :class:`ApiException` propagates so the executor retries from a fresh
    store snapshot.  If the status call fails after the object call, the
    finalizer is already persisted and the stale ``observedGeneration`` makes
    the next pass repeat the (idempotent) external call and the status write.
    """

    def __init__(self, custom_api: CustomObjectsApi, status_subresource: bool = True) -> None:
        self.custom_api = custom_api
        self.status_subresource = status_subresource

    def update(self, stream: Stream) -> Stream:
        response = self.custom_api.replace_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=stream.namespace,
            plural=PLURAL,
            name=stream.name,
            body=stream.to_body(),
        )
        # Releasing the last finalizer of a deleted object removes it outright.
        released = stream.being_deleted and not stream.metadata.finalizers
        if not self.status_subresource or released:
            return Stream.from_dict(response)

        persisted = replace(Stream.from_dict(response), status=stream.status)
        response = self.custom_api.replace_namespaced_custom_object_status(
            group=API_GROUP,
            version=API_VERSION,
            namespace=stream.namespace,
            plural=PLURAL,
            name=stream.name,
            body=persisted.to_body(),
        )
        return Stream.from_dict(response)


class KubeEventRecorder:
    """Record ``core/v1`` Events against ``Stream`` resources.

    Recording is fire-and-forget: a failed event write is logged and never
    fails the reconcile that emitted it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = "jetstream-controller",
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.now_fn = now_fn

    def _event_body(self, stream: Stream, event_type: str, reason: str, message: str) -> Any:
        now = self.now_fn()
        return CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{stream.name}.{uuid.uuid4().hex[:16]}",
                namespace=stream.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=API_GROUP_VERSION,
                kind=KIND,
                name=stream.name,
                namespace=stream.namespace,
                uid=stream.metadata.uid,
                resource_version=stream.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def record(self, stream: Stream, event_type: str, reason: str, message: str) -> None:
        body = self._event_body(stream, event_type, reason, message)
        try:
            self.core_api.create_namespaced_event(namespace=stream.namespace, body=body)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event %s for stream %s/%s: %s",
                event_type,
                reason,
                stream.namespace,
                stream.name,
                exc.reason,
            )
