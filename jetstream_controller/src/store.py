from __future__ import annotations

import threading
from collections.abc import Iterable

from jetstream_controller.src.resources import Stream


class StreamStore:
    """Thread-safe cache of ``Stream`` snapshots keyed by ``(namespace, name)``.

    Only the watch feed writes to the store; reconciler workers read it
    concurrently.  Snapshots are immutable so readers never observe a
    partially updated object.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], Stream] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, name: str) -> Stream | None:
        with self._lock:
            return self._items.get((namespace, name))

    def upsert(self, stream: Stream) -> Stream | None:
        """Store *stream* and return the snapshot it replaced, if any."""
        key = (stream.metadata.namespace, stream.metadata.name)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = stream
            return previous

    def delete(self, namespace: str, name: str) -> Stream | None:
        with self._lock:
            return self._items.pop((namespace, name), None)

    def replace_all(self, streams: Iterable[Stream]) -> None:
        """Swap the whole cache for a fresh listing (initial list or re-list)."""
        fresh = {(s.metadata.namespace, s.metadata.name): s for s in streams}
        with self._lock:
            self._items = fresh

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
