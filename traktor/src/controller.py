from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from traktor.src.config import ControllerConfig
from traktor.src.errors import StoreReadError
from traktor.src.filters import should_admit
from traktor.src.kube import ClusterStore
from traktor.src.metrics import METRICS
from traktor.src.models import ObjectKey, ReconcileRequest, SecretEvent, SecretSnapshot
from traktor.src.reconciler import ReconcileResult, SecretsRefreshReconciler

MAX_BACKOFF_SECONDS = 30


class SecretRefreshController:
    """Watches Secrets cluster-wide and feeds real content changes to the reconciler.

    This is the event subscription around :class:`SecretsRefreshReconciler`.
    It keeps the last observed snapshot of every Secret so each watch
    notification can be turned into a typed ``(old, new)`` pair for the
    change filter.  Admitted changes are mapped to reconcile requests, which
    run on the watch thread one at a time.

    A request whose reconcile fails with a store read error is retried with
    exponential backoff (1 s doubling to a 30 s cap).  Retries are keyed by
    request, so a new event for the same request replaces the pending retry
    instead of duplicating it.

    Key internal state:
        ``_snapshots``
            Maps Secret identity to the last observed :class:`SecretSnapshot`.
        ``_pending_requests``
            Maps a request to the ``time.monotonic()`` timestamp it is due
            to be retried at.
        ``_retry_attempts``
            Retry attempt counter per pending request.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        reconciler: SecretsRefreshReconciler,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.reconciler = reconciler
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._snapshots: dict[ObjectKey, SecretSnapshot] = {}
        self._pending_requests: dict[ReconcileRequest, float] = {}
        self._retry_attempts: dict[ReconcileRequest, int] = {}
        METRICS.pending_retries.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def observe(self, event_type: str, secret: Any) -> SecretEvent | None:
        """Convert a raw watch notification into a typed :class:`SecretEvent`.

        Updates the snapshot cache as a side effect.  ``ADDED`` events never
        carry an old snapshot, so they are always treated as creations.
        Returns ``None`` for event types other than ADDED, MODIFIED and
        DELETED, and for Secrets that cannot be decoded.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        try:
            snapshot = SecretSnapshot.from_k8s(secret)
        except ValueError as exc:
            METRICS.secret_events_total.labels(decision="malformed").inc()
            self.logger.warning("Ignoring malformed Secret in %s event: %s", event_type, exc)
            return None

        if event_type == "DELETED":
            old = self._snapshots.pop(snapshot.key, None)
            return SecretEvent(type=event_type, old=old, new=None)

        previous = self._snapshots.get(snapshot.key)
        self._snapshots[snapshot.key] = snapshot
        if event_type == "ADDED":
            return SecretEvent(type=event_type, old=None, new=snapshot)
        return SecretEvent(type=event_type, old=previous, new=snapshot)

    def handle_secret_event(self, event: SecretEvent) -> list[ReconcileResult]:
        """Filter one Secret event and reconcile every request it maps to.

        Returns the results of the reconciles that completed.  Requests that
        failed on a store read are scheduled for retry and are not included.
        """
        secret = event.new
        if secret is None or not should_admit(event.old, secret):
            METRICS.secret_events_total.labels(decision="filtered").inc()
            return []
        METRICS.secret_events_total.labels(decision="admitted").inc()

        self.logger.info(
            "Secret %s content changed",
            secret.key,
            extra={"secret": str(secret.key), "namespace": secret.namespace},
        )
        try:
            requests = self.reconciler.map_secret_to_requests(secret)
        except StoreReadError:
            METRICS.mapping_errors_total.inc()
            self.logger.exception(
                "Failed to map Secret %s to SecretsRefresh policies; dropping event",
                secret.key,
            )
            return []

        if not requests:
            self.logger.debug("No SecretsRefresh policy selects Secret %s", secret.key)

        results: list[ReconcileResult] = []
        now_monotonic = time.monotonic()
        for request in requests:
            result = self._process(request, now_monotonic=now_monotonic)
            if result is not None:
                results.append(result)
        return results

    def _process(self, request: ReconcileRequest, now_monotonic: float) -> ReconcileResult | None:
        """Run one reconcile and update the retry bookkeeping for its request."""
        try:
            result = self.reconciler.reconcile(request)
        except StoreReadError:
            METRICS.reconcile_total.labels(outcome="error").inc()
            self.logger.exception("Reconcile failed for %s", request)
            self._schedule_retry(request, now_monotonic=now_monotonic)
            return None

        self._pending_requests.pop(request, None)
        self._retry_attempts.pop(request, None)
        METRICS.pending_retries.set(len(self._pending_requests))
        return result

    def _schedule_retry(self, request: ReconcileRequest, now_monotonic: float) -> None:
        attempt = self._retry_attempts.get(request, 0) + 1
        self._retry_attempts[request] = attempt

        delay_seconds = min(float(MAX_BACKOFF_SECONDS), float(2 ** (attempt - 1)))
        self._pending_requests[request] = now_monotonic + delay_seconds
        METRICS.pending_retries.set(len(self._pending_requests))
        METRICS.retry_total.inc()

        self.logger.warning(
            "Scheduling retry attempt %d for %s in %.1fs", attempt, request, delay_seconds
        )

    def _drain_pending_requests(self, now_monotonic: float) -> None:
        """Retry every pending request whose backoff has elapsed."""
        due = [
            request
            for request, due_at in self._pending_requests.items()
            if due_at <= now_monotonic
        ]
        for request in sorted(due, key=ReconcileRequest.sort_key):
            self.logger.info("Retrying reconcile for %s", request)
            self._process(request, now_monotonic=now_monotonic)

    def _drop_pending_requests_on_shutdown(self) -> None:
        if not self._pending_requests:
            return
        dropped = len(self._pending_requests)
        self.logger.warning("Dropping %d pending reconcile retries on shutdown", dropped)
        METRICS.dropped_requests_total.inc(dropped)
        self._pending_requests.clear()
        self._retry_attempts.clear()
        METRICS.pending_retries.set(0)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so pending retries fire on time."""
        if not self._pending_requests:
            return self.watch_timeout_seconds

        nearest_due = min(self._pending_requests.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _sync_snapshots_from_list(self, secrets: Any, dispatch_changes: bool = False) -> None:
        """Replace the snapshot cache with a full Secret listing.

        At startup (``dispatch_changes=False``) this only seeds the cache.
        After a ``410 Gone`` re-list, any Secret whose content differs from
        its cached snapshot is dispatched as a MODIFIED event so changes made
        while the watch was disconnected are not lost.
        """
        fresh: dict[ObjectKey, SecretSnapshot] = {}
        for secret in getattr(secrets, "items", None) or []:
            try:
                snapshot = SecretSnapshot.from_k8s(secret)
            except ValueError as exc:
                self.logger.warning("Skipping malformed Secret during list: %s", exc)
                continue
            fresh[snapshot.key] = snapshot

        previous = self._snapshots
        self._snapshots = fresh
        if not dispatch_changes:
            return

        for key in sorted(fresh):
            old = previous.get(key)
            if old is None:
                continue
            self.handle_secret_event(SecretEvent(type="MODIFIED", old=old, new=fresh[key]))

    def _is_access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            exc.status,
        )
        return True

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch Secrets in all namespaces until shutdown.

        1. Lists Secrets with jittered exponential backoff until the API
           answers, seeding the snapshot cache.  No restarts happen here.
        2. Streams watch events from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists and dispatches drift found against the
           cache, then resumes.
        4. Drains due retries after every event and on every loop
           iteration, shortening the watch timeout when retries are queued.
        5. ``401``/``403`` responses end the loop with an RBAC hint instead
           of retrying forever.

        Pending retries are dropped on shutdown; the next leader re-lists
        from scratch.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self.core_api.list_secret_for_all_namespaces()
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._sync_snapshots_from_list(initial)
                self.ready.set()
                self.logger.info(
                    "Seeded %d Secret snapshots; starting watch from resourceVersion %s",
                    len(self._snapshots),
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._is_access_denied(exc, "initial Secret list"):
                    self.ready.clear()
                    return
                self.logger.exception("Initial Secret list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Secret list")
                METRICS.watch_errors_total.inc()
            backoff_seconds = self._backoff(stop, backoff_seconds)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            self._drain_pending_requests(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_secret_for_all_namespaces,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                )

                for raw_event in stream:
                    if self._should_stop(stop):
                        break

                    obj = raw_event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    event = self.observe(str(raw_event.get("type", "")), obj)
                    if event is not None:
                        self.handle_secret_event(event)
                    self._drain_pending_requests(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing Secrets")
                    try:
                        fresh = self.core_api.list_secret_for_all_namespaces()
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._sync_snapshots_from_list(fresh, dispatch_changes=True)
                    except ApiException as relist_exc:
                        if self._is_access_denied(relist_exc, "410 re-list"):
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list Secrets after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                METRICS.watch_errors_total.inc()
                if self._is_access_denied(exc, "Secret watch"):
                    self.ready.clear()
                    return
                self.logger.exception("Kubernetes API watch error")
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self._drop_pending_requests_on_shutdown()
        self.ready.clear()


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    apps_api: Any,
    custom_api: Any,
) -> SecretRefreshController:
    """Wire the store, reconciler and watch loop from a :class:`ControllerConfig`."""
    store = ClusterStore(
        core_api=core_api,
        apps_api=apps_api,
        custom_api=custom_api,
        policy_group=config.policy_group,
        policy_version=config.policy_version,
        policy_plural=config.policy_plural,
        workload_kinds=config.workload_kinds,
    )
    reconciler = SecretsRefreshReconciler(
        store=store,
        operator_namespace=config.operator_namespace,
        restart_annotation_key=config.restart_annotation_key,
    )
    return SecretRefreshController(
        core_api=core_api,
        reconciler=reconciler,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )
