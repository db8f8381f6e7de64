from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError as TransportError

from bundlesync.src.cache import ConfigMapCache
from bundlesync.src.config import ControllerConfig
from bundlesync.src.exclusion import ExclusionPolicy
from bundlesync.src.kube import (
    config_map_data,
    create_config_map,
    is_access_denied,
    is_conflict,
    is_namespace_terminating,
    is_not_found,
    object_name,
    object_namespace,
    read_config_map,
    replace_config_map_data,
    resource_version_of,
)
from bundlesync.src.metrics import METRICS
from bundlesync.src.provider import DesiredDataProvider, ProviderError
from bundlesync.src.workqueue import WorkQueue

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIPPED = "skipped"

SOURCE_NAMESPACES = "namespaces"
SOURCE_CONFIGMAPS = "configmaps"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one successful reconciliation of a namespace."""

    namespace: str
    action: str


class ReconcileError(Exception):
    """Base class for reconcile failures that carry their own routing."""

    def __init__(self, namespace: str, message: str) -> None:
        super().__init__(f"{namespace}: {message}")
        self.namespace = namespace


class ReconcileConflict(ReconcileError):
    """The ConfigMap kept changing underneath us; requeue instead of looping inline."""


class NamespaceGone(ReconcileError):
    """The namespace no longer accepts objects (deleted or terminating)."""


class NamespaceController:
    """Replicates one ConfigMap, with provider-supplied data, into every eligible namespace.

    Two list-then-watch loops feed a keyed :class:`WorkQueue`:

    - namespaces: ``ADDED`` enqueues the namespace unless it is excluded.
    - ConfigMaps named ``config_map_name`` in all namespaces: every event
      refreshes the read cache and enqueues the owning namespace.

    A pool of worker threads drains the queue. The queue never hands the same
    namespace to two workers at once, so there is at most one in-flight
    reconciliation per namespace while different namespaces proceed in
    parallel. Reconciliation is level-based: it ignores event payloads,
    reads the current ConfigMap, calls the data provider and issues at most
    one create or one replace. Concurrent writers are arbitrated by the API
    server through ``resourceVersion``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        desired_data: DesiredDataProvider,
        config_map_name: str,
        exclusion: ExclusionPolicy | None = None,
        workers: int = 4,
        resync_seconds: int = 0,
        managed_by_label: tuple[str, str] | None = None,
        watch_timeout_seconds: int = 30,
        stop_timeout_seconds: float = 45.0,
        queue_factory: Callable[[], WorkQueue] = WorkQueue,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.core_api = core_api
        self.desired_data = desired_data
        self.config_map_name = config_map_name
        self.exclusion = exclusion or ExclusionPolicy()
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.managed_by_label = managed_by_label
        self.watch_timeout_seconds = watch_timeout_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._queue_factory = queue_factory
        self.queue = queue_factory()
        self.cache = ConfigMapCache()

        self._known_namespaces: set[str] = set()
        self._known_lock = threading.Lock()

        self.ready = threading.Event()
        self._namespaces_synced = threading.Event()
        self._config_maps_synced = threading.Event()
        self._external_stop = threading.Event()
        self._fatal = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event sources
    # ------------------------------------------------------------------

    def handle_namespace_event(self, event_type: str, namespace: Any) -> bool:
        """Route a namespace watch event. Returns True when a reconcile was enqueued."""
        name = object_name(namespace)
        if not name:
            return False

        if event_type == "DELETED":
            self._forget_namespace(name)
            self.queue.drop(name)
            return False
        if event_type != "ADDED":
            return False

        if self.exclusion.is_excluded(name):
            self.logger.debug("Ignoring excluded namespace %s", name)
            return False

        with self._known_lock:
            self._known_namespaces.add(name)
        return self.queue.add(name)

    def handle_config_map_event(self, event_type: str, config_map: Any) -> bool:
        """Route a target ConfigMap watch event. Returns True when a reconcile was enqueued.

        The event object only refreshes the cache. Whether a write is needed
        is decided by :meth:`reconcile` from a fresh lookup and a fresh
        provider call.
        """
        if object_name(config_map) != self.config_map_name:
            return False
        namespace = object_namespace(config_map)
        if not namespace:
            return False

        if event_type == "DELETED":
            self.cache.evict(namespace, resource_version_of(config_map))
        elif event_type in {"ADDED", "MODIFIED"}:
            self.cache.store(config_map)
        else:
            return False

        if self.exclusion.is_excluded(namespace):
            return False
        return self.queue.add(namespace)

    def sync_namespaces(self, namespaces: Iterable[Any]) -> int:
        """Enqueue every listed, non-excluded namespace and return how many were enqueued.

        Runs on the initial namespace list and again after a ``410 Gone``
        re-list, repairing drift accumulated while nothing was watching.
        """
        names = {name for name in (object_name(ns) for ns in namespaces) if name}
        eligible = sorted(name for name in names if not self.exclusion.is_excluded(name))
        with self._known_lock:
            self._known_namespaces = set(eligible)

        enqueued = sum(1 for name in eligible if self.queue.add(name))
        self.logger.info(
            "Namespace sync enqueued %d of %d namespace(s) (%d excluded)",
            enqueued,
            len(names),
            len(names) - len(eligible),
        )
        return enqueued

    def request_resync(self) -> int:
        """Enqueue every known namespace so provider-side changes are picked up."""
        with self._known_lock:
            names = sorted(self._known_namespaces)
        enqueued = sum(1 for name in names if self.queue.add(name))
        self.logger.info("Resync enqueued %d namespace(s)", enqueued)
        return enqueued

    def known_namespaces(self) -> set[str]:
        with self._known_lock:
            return set(self._known_namespaces)

    def _forget_namespace(self, name: str) -> None:
        with self._known_lock:
            self._known_namespaces.discard(name)
        self.cache.forget(name)
        self.queue.forget(name)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _lookup(self, namespace: str) -> Any | None:
        cached = self.cache.get(namespace)
        if cached is not None:
            return cached
        current = read_config_map(self.core_api, namespace, self.config_map_name)
        if current is not None:
            self.cache.store(current)
        return current

    def _read_fresh(self, namespace: str) -> Any | None:
        current = read_config_map(self.core_api, namespace, self.config_map_name)
        if current is None:
            self.cache.evict(namespace)
        else:
            self.cache.store(current)
        return current

    def reconcile(self, namespace: str) -> ReconcileResult:
        """Bring the target ConfigMap in *namespace* in line with the provider's current data.

        Issues at most one successful write: a create when the ConfigMap is
        absent, a replace when its data differs, nothing when it already
        matches. ``AlreadyExists`` on create falls through to the update
        path; a stale resourceVersion on replace is retried once with a
        fresh read before :class:`ReconcileConflict` hands the key back to
        the queue.
        """
        if self.exclusion.is_excluded(namespace):
            return ReconcileResult(namespace=namespace, action=ACTION_SKIPPED)

        desired = dict(self.desired_data())
        current = self._lookup(namespace)

        if current is None:
            return self._create(namespace, desired)

        if config_map_data(current) == desired:
            return ReconcileResult(namespace=namespace, action=ACTION_UNCHANGED)
        return self._update(namespace, current, desired)

    def _create(self, namespace: str, desired: dict[str, str]) -> ReconcileResult:
        labels = dict([self.managed_by_label]) if self.managed_by_label else None
        try:
            created = create_config_map(
                self.core_api,
                namespace=namespace,
                name=self.config_map_name,
                data=desired,
                labels=labels,
            )
        except ApiException as exc:
            if is_not_found(exc) or is_namespace_terminating(exc):
                raise NamespaceGone(namespace, "namespace is gone or terminating") from exc
            if not is_conflict(exc):
                raise

            self.logger.info(
                "ConfigMap %s/%s already exists; switching to update",
                namespace,
                self.config_map_name,
                extra={"namespace": namespace},
            )
            current = self._read_fresh(namespace)
            if current is None:
                raise ReconcileConflict(namespace, "ConfigMap vanished after create") from exc
            if config_map_data(current) == desired:
                return ReconcileResult(namespace=namespace, action=ACTION_UNCHANGED)
            return self._update(namespace, current, desired)

        if created is not None and object_namespace(created):
            self.cache.store(created)
        self.logger.info(
            "Created ConfigMap %s/%s",
            namespace,
            self.config_map_name,
            extra={"namespace": namespace},
        )
        return ReconcileResult(namespace=namespace, action=ACTION_CREATED)

    def _update(self, namespace: str, current: Any, desired: dict[str, str]) -> ReconcileResult:
        try:
            updated = replace_config_map_data(self.core_api, namespace, current, desired)
        except ApiException as exc:
            if is_not_found(exc):
                # Cached copy outlived the object; the retry reads directly.
                self.cache.evict(namespace)
                raise ReconcileConflict(namespace, "ConfigMap deleted before update") from exc
            if not is_conflict(exc):
                raise
            self.logger.info(
                "Conflict updating ConfigMap %s/%s at resourceVersion %s; retrying with fresh read",
                namespace,
                self.config_map_name,
                resource_version_of(current),
                extra={"namespace": namespace},
            )
            fresh = self._read_fresh(namespace)
            if fresh is None:
                raise ReconcileConflict(namespace, "ConfigMap deleted during update") from exc
            if config_map_data(fresh) == desired:
                return ReconcileResult(namespace=namespace, action=ACTION_UNCHANGED)
            try:
                updated = replace_config_map_data(self.core_api, namespace, fresh, desired)
            except ApiException as retry_exc:
                if is_conflict(retry_exc):
                    raise ReconcileConflict(namespace, "repeated update conflict") from retry_exc
                raise

        if updated is not None and object_namespace(updated):
            self.cache.store(updated)
        self.logger.info(
            "Updated ConfigMap %s/%s",
            namespace,
            self.config_map_name,
            extra={"namespace": namespace},
        )
        return ReconcileResult(namespace=namespace, action=ACTION_UPDATED)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _requeue(self, namespace: str, reason: str) -> None:
        METRICS.reconcile_errors_total.labels(reason=reason).inc()
        if self.queue.shutting_down:
            return
        delay_seconds = self.queue.add_rate_limited(namespace)
        METRICS.requeues_total.inc()
        self.logger.warning(
            "Reconcile of %s failed (%s); retry %d in %.1fs",
            namespace,
            reason,
            self.queue.num_requeues(namespace),
            delay_seconds,
            extra={"namespace": namespace},
        )

    def _abandon(self, namespace: str, reason: str) -> None:
        METRICS.reconcile_errors_total.labels(reason=reason).inc()
        self.queue.forget(namespace)

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Take one namespace off the queue and reconcile it.

        Returns False once the queue is shut down (or *timeout* elapsed with
        nothing to do) so worker loops know to exit. Failures never escape:
        each is classified, logged, and either requeued with backoff or
        dropped until the next event for that namespace.
        """
        namespace = self.queue.get(timeout=timeout)
        if namespace is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconcile(namespace)
        except ReconcileConflict:
            self._requeue(namespace, "conflict")
        except NamespaceGone:
            self.logger.info(
                "Namespace %s is gone or terminating; dropping reconcile",
                namespace,
                extra={"namespace": namespace},
            )
            self._forget_namespace(namespace)
            METRICS.reconcile_errors_total.labels(reason="namespace_gone").inc()
        except ApiException as exc:
            if is_access_denied(exc):
                self.logger.error(
                    "Kubernetes API access denied reconciling %s (status=%s). "
                    "Check controller RBAC and service account permissions.",
                    namespace,
                    exc.status,
                    extra={"namespace": namespace},
                )
                self._abandon(namespace, "forbidden")
            else:
                self.logger.exception(
                    "Kubernetes API error reconciling %s", namespace, extra={"namespace": namespace}
                )
                self._requeue(namespace, "api_error")
        except ProviderError:
            self.logger.exception("Desired data unavailable for %s", namespace)
            self._requeue(namespace, "provider")
        except (TransportError, OSError):
            self.logger.exception("Transport error reconciling %s", namespace)
            self._requeue(namespace, "transport")
        except Exception:
            self.logger.exception("Unexpected error reconciling %s", namespace)
            self._requeue(namespace, "unexpected")
        else:
            self.queue.forget(namespace)
            METRICS.reconcile_total.labels(action=result.action).inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(namespace)
        return True

    def _worker_loop(self) -> None:
        while self.process_next_item():
            pass

    def start_workers(self) -> list[threading.Thread]:
        threads = []
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"bundlesync-worker-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        self.queue.shutdown()
        self._stop_watchers()

    def _stop_watchers(self) -> None:
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set() or self._fatal.is_set()

    def _abort_on_access_denied(self, source: str, stage: str, status: int | None) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            source,
            stage,
            status,
        )
        METRICS.watch_errors_total.labels(source=source).inc()
        self._fatal.set()
        self.ready.clear()

    def _on_namespaces_listed(self, items: list[Any], relisted: bool) -> None:
        self.sync_namespaces(items)
        self._namespaces_synced.set()

    def _on_config_maps_listed(self, items: list[Any], relisted: bool) -> None:
        matching = [item for item in items if object_name(item) == self.config_map_name]
        self.cache.replace_all(matching)
        self._config_maps_synced.set()
        if relisted:
            # Deletions missed while disconnected leave no trace in the listing.
            self.request_resync()

    def _watch_loop(
        self,
        source: str,
        list_func: Callable[..., Any],
        on_listed: Callable[[list[Any], bool], None],
        on_event: Callable[[str, Any], bool],
        stop: threading.Event,
        **list_kwargs: Any,
    ) -> None:
        """List-then-watch *list_func* until stopped.

        1. Lists with jittered exponential backoff (capped at 30 s) so
           transient API startup failures do not crash-loop the controller.
        2. Watches from the list's ``resourceVersion`` so nothing that
           happens between list and watch is missed.
        3. On ``410 Gone`` re-lists and resumes from the new version.
        4. On transient errors reconnects with jittered backoff.

        ``401``/``403`` are configuration errors (RBAC/auth): the controller
        is flagged fatal and every loop exits.
        """
        resource_version: str | None = None
        needs_list = True
        listed_once = False
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    listing = list_func(**list_kwargs)
                except ApiException as exc:
                    if is_access_denied(exc):
                        self._abort_on_access_denied(source, "list", exc.status)
                        return
                    self.logger.exception("Kubernetes %s list failed", source)
                    METRICS.watch_errors_total.labels(source=source).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", source)
                    METRICS.watch_errors_total.labels(source=source).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

                resource_version = resource_version_of(listing)
                on_listed(list(getattr(listing, "items", None) or []), listed_once)
                listed_once = True
                needs_list = False
                backoff_seconds = 1
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", source, resource_version
                )

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=source).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    latest = resource_version_of(obj)
                    if latest:
                        resource_version = latest
                    on_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", source)
                    needs_list = True
                    continue
                if is_access_denied(exc):
                    self._abort_on_access_denied(source, "watch", exc.status)
                    return
                self.logger.exception("Kubernetes API %s watch error", source)
                METRICS.watch_errors_total.labels(source=source).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected %s watch error", source)
                METRICS.watch_errors_total.labels(source=source).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    @staticmethod
    def _backoff(stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def _start_watch(self, source: str, stop: threading.Event) -> threading.Thread:
        if source == SOURCE_CONFIGMAPS:
            args = (
                SOURCE_CONFIGMAPS,
                self.core_api.list_config_map_for_all_namespaces,
                self._on_config_maps_listed,
                self.handle_config_map_event,
                stop,
            )
            kwargs = {"field_selector": f"metadata.name={self.config_map_name}"}
        else:
            args = (
                SOURCE_NAMESPACES,
                self.core_api.list_namespace,
                self._on_namespaces_listed,
                self.handle_namespace_event,
                stop,
            )
            kwargs = {}
        thread = threading.Thread(
            target=self._watch_loop,
            args=args,
            kwargs=kwargs,
            name=f"bundlesync-watch-{source}",
            daemon=True,
        )
        thread.start()
        return thread

    def _wait_for(self, event: threading.Event, stop: threading.Event) -> bool:
        while not self._should_stop(stop):
            if event.wait(timeout=1.0):
                return True
        return False

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: watch namespaces and the target ConfigMap until shutdown.

        1. Starts the reconcile workers.
        2. Starts the ConfigMap watch and waits for its initial list, which
           seeds the read cache.
        3. Starts the namespace watch; its initial list is the startup sync
           that enqueues every eligible namespace.
        4. Marks the controller ready, then re-enqueues all known namespaces
           every ``resync_seconds`` (when positive) until shutdown.
        5. On shutdown the queue stops accepting work, watch streams are
           interrupted, and in-flight reconciliations finish their current
           write before the workers exit.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._fatal.clear()
        self._namespaces_synced.clear()
        self._config_maps_synced.clear()
        if self.queue.shutting_down:
            self.queue = self._queue_factory()

        threads = self.start_workers()
        try:
            threads.append(self._start_watch(SOURCE_CONFIGMAPS, stop))
            if not self._wait_for(self._config_maps_synced, stop):
                return
            threads.append(self._start_watch(SOURCE_NAMESPACES, stop))
            if not self._wait_for(self._namespaces_synced, stop):
                return

            self.ready.set()
            self.logger.info(
                "Controller ready (configmap=%s, workers=%d, excluded=%s)",
                self.config_map_name,
                self.workers,
                ",".join(sorted(self.exclusion.namespaces)) or "<none>",
            )

            next_resync = time.monotonic() + self.resync_seconds
            while not self._should_stop(stop):
                stop.wait(timeout=1.0)
                if self.resync_seconds > 0 and time.monotonic() >= next_resync:
                    self.request_resync()
                    next_resync = time.monotonic() + self.resync_seconds
        finally:
            self.ready.clear()
            self.queue.shutdown()
            self._stop_watchers()
            for thread in threads:
                thread.join(timeout=self.stop_timeout_seconds)
                if thread.is_alive():
                    self.logger.error(
                        "Thread %s did not stop within %ss", thread.name, self.stop_timeout_seconds
                    )
            self.logger.info("Controller loops stopped")


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    desired_data: DesiredDataProvider,
) -> NamespaceController:
    """Construct a :class:`NamespaceController` from a loaded :class:`ControllerConfig`."""
    return NamespaceController(
        core_api=core_api,
        desired_data=desired_data,
        config_map_name=config.config_map_name,
        exclusion=ExclusionPolicy.from_names(config.excluded_namespaces),
        workers=config.workers,
        resync_seconds=config.resync_seconds,
        managed_by_label=config.managed_by_label,
    )
