from __future__ import annotations

import threading
from typing import Any

from bundlesync.src.kube import object_namespace, resource_version_of


class ConfigMapCache:
    """Thread-safe read cache of the target ConfigMap, keyed by namespace.

    Kept current by the ConfigMap watch stream: ``ADDED``/``MODIFIED`` store
    the object, ``DELETED`` evicts it. Reconcilers consult the cache first and
    fall back to a direct API read on a miss, so a stale or empty cache only
    costs an extra GET, never a wrong write (writes carry resourceVersion).

    Workers also store the objects returned by their own reads and writes.
    Those can land after the watch has already reported the object deleted,
    so a delete leaves a tombstone holding the deleted resourceVersion and
    :meth:`store` refuses any revision at or below it.
    """

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._tombstones: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str) -> Any | None:
        with self._lock:
            return self._items.get(namespace)

    def store(self, config_map: Any) -> bool:
        """Store *config_map* unless the cache already knows a newer revision.

        Watch events and direct reads can race; resourceVersions are opaque
        but integral on every real API server, so numeric comparison is used
        when both sides parse and the incoming object wins otherwise.
        Returns False when the object was refused.
        """
        namespace = object_namespace(config_map)
        if not namespace:
            return False
        incoming = resource_version_of(config_map)
        with self._lock:
            deleted_at = self._tombstones.get(namespace)
            if deleted_at is not None and _at_or_below(incoming, deleted_at):
                return False
            current = self._items.get(namespace)
            if current is not None and _is_older(config_map, current):
                return False
            self._tombstones.pop(namespace, None)
            self._items[namespace] = config_map
            return True

    def evict(self, namespace: str, resource_version: str | None = None) -> None:
        """Drop the entry for *namespace*.

        With *resource_version* (the revision a ``DELETED`` event reported)
        a tombstone is kept so late stores of that revision or older are refused.
        """
        with self._lock:
            self._items.pop(namespace, None)
            if resource_version:
                self._tombstones[namespace] = resource_version

    def forget(self, namespace: str) -> None:
        """Drop the entry and any tombstone, used once the namespace itself is gone."""
        with self._lock:
            self._items.pop(namespace, None)
            self._tombstones.pop(namespace, None)

    def replace_all(self, config_maps: list[Any]) -> None:
        """Swap the cache contents for a fresh listing.

        Tombstones survive for namespaces the listing has no object for.
        """
        fresh = {}
        for config_map in config_maps:
            namespace = object_namespace(config_map)
            if namespace:
                fresh[namespace] = config_map
        with self._lock:
            self._items = fresh
            self._tombstones = {
                namespace: deleted_at
                for namespace, deleted_at in self._tombstones.items()
                if namespace not in fresh
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _is_older(incoming: Any, current: Any) -> bool:
    try:
        return int(resource_version_of(incoming) or "") < int(resource_version_of(current) or "")
    except ValueError:
        return False


def _at_or_below(incoming: str | None, deleted_at: str) -> bool:
    if not incoming:
        return True
    try:
        return int(incoming) <= int(deleted_at)
    except ValueError:
        return incoming == deleted_at
