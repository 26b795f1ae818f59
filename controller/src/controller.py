from __future__ import annotations

import json
import logging
import random
import threading
from collections.abc import Mapping
from hashlib import sha256
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from controller.src.config import ControllerConfig
from controller.src.errors import PassCancelled, ReconcileError
from controller.src.kube import KubeResourceStore
from controller.src.metrics import METRICS
from controller.src.models import PolicyKey
from controller.src.reconciler import TracingPolicyReconciler
from controller.src.workqueue import RateLimitingQueue

WATCH_TIMEOUT_SECONDS = 30
MAX_WATCH_BACKOFF_SECONDS = 30


class TracingController:
    """Watches ``TracingConfig`` objects and runs reconcile passes for them.

    The watch thread only turns events into policy keys on a
    :class:`RateLimitingQueue`; worker threads take keys off the queue and
    call :meth:`TracingPolicyReconciler.reconcile`.  The queue hands a key
    to one worker at a time, so passes for the same policy never overlap,
    while passes for different policies run in parallel.

    Events only enqueue a key when the SHA-256 of the policy ``spec``
    changed.  The controller's own status writes produce ``MODIFIED``
    events with an unchanged spec, and hashing keeps them from triggering
    an endless chain of passes.

    After each pass the key is requeued:

    * ``Applied`` with every deployment updated: after ``resync_seconds``,
      to repair drift even without new events;
    * ``Failed``, partially applied, or aborted by an exception: after an
      exponential backoff that resets on the next clean pass;
    * policy gone: not at all.
    """

    def __init__(
        self,
        store: KubeResourceStore,
        reconciler: TracingPolicyReconciler,
        namespace: str | None = None,
        resync_seconds: float = 300.0,
        workers: int = 4,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        worker_stop_timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.workers = workers
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.worker_stop_timeout_seconds = worker_stop_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.queue = self._new_queue()
        self._spec_hashes: dict[PolicyKey, str] = {}
        self._worker_threads: list[threading.Thread] = []

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._cancel_passes = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _new_queue(self) -> RateLimitingQueue:
        return RateLimitingQueue(
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
        )

    @property
    def scope(self) -> str:
        return f"namespace {self.namespace}" if self.namespace else "all namespaces"

    @staticmethod
    def _policy_key(obj: Any) -> PolicyKey | None:
        if not isinstance(obj, Mapping):
            return None
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace")
        name = metadata.get("name")
        if not namespace or not name:
            return None
        return PolicyKey(namespace=namespace, name=name)

    @staticmethod
    def _hash_spec(spec: Any) -> str:
        """Return a SHA-256 hex digest of a policy spec.

        Only ``spec`` is hashed: ``resourceVersion`` also changes on status
        and metadata writes that do not alter the desired state.
        """
        stable_payload = json.dumps(spec or {}, sort_keys=True, separators=(",", ":"), default=str)
        return sha256(stable_payload.encode("utf-8")).hexdigest()

    def _observe_spec(self, key: PolicyKey, obj: Mapping[str, Any]) -> bool:
        """Record the spec hash of *key* and return whether it changed."""
        current_hash = self._hash_spec(obj.get("spec"))
        previous_hash = self._spec_hashes.get(key)
        self._spec_hashes[key] = current_hash
        return previous_hash != current_hash

    def _forget_policy(self, key: PolicyKey) -> None:
        self._spec_hashes.pop(key, None)
        self.queue.discard(key)

    def handle_policy_event(self, event_type: str, obj: Any) -> bool:
        """Process a single ``TracingConfig`` watch event.

        Returns ``True`` when the event enqueued a reconcile pass.
        """
        key = self._policy_key(obj)
        if key is None:
            return False

        if event_type == "DELETED":
            self.logger.info("TracingConfig %s deleted; dropping scheduled passes", key)
            self._forget_policy(key)
            return False

        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        if not self._observe_spec(key, obj):
            self.logger.debug("Ignoring %s event for %s without spec change", event_type, key)
            return False

        self.logger.info("Observed %s of TracingConfig %s; enqueueing", event_type.lower(), key)
        self.queue.add(key)
        return True

    def _sync_from_list(self, listing: Any) -> str | None:
        """Enqueue every listed policy whose spec is new or changed.

        Called after the initial list and after a ``410 Gone`` re-list.
        Policies that vanished while the watch was disconnected are
        forgotten.  Returns the list's ``resourceVersion``.
        """
        listing = listing if isinstance(listing, Mapping) else {}
        seen: set[PolicyKey] = set()
        for obj in listing.get("items") or []:
            key = self._policy_key(obj)
            if key is None:
                continue
            seen.add(key)
            if self._observe_spec(key, obj):
                self.queue.add(key)

        for key in set(self._spec_hashes) - seen:
            self.logger.info("TracingConfig %s disappeared while not watching", key)
            self._forget_policy(key)

        metadata = listing.get("metadata") or {}
        return metadata.get("resourceVersion")

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Run one reconcile pass for the next ready key.

        Returns ``False`` when no key was available (timeout or shutdown).
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._process(key)
        finally:
            self.queue.done(key)
        return True

    def _process(self, key: PolicyKey) -> None:
        try:
            result = self.reconciler.reconcile(key, stop_event=self._cancel_passes)
        except PassCancelled:
            # The next leader, or the next run, re-lists every policy.
            self.logger.info("Reconcile of TracingConfig %s interrupted by stop request", key)
            return
        except ReconcileError as exc:
            delay = self.queue.add_rate_limited(key)
            self.logger.warning(
                "Reconcile of TracingConfig %s aborted: %s; retry %d in %.1fs",
                key,
                exc,
                self.queue.num_requeues(key),
                delay,
            )
            return
        except Exception:
            delay = self.queue.add_rate_limited(key)
            self.logger.exception(
                "Unexpected error reconciling TracingConfig %s; retry %d in %.1fs",
                key,
                self.queue.num_requeues(key),
                delay,
            )
            return

        if result.abandoned:
            self.queue.forget(key)
            return

        if result.needs_retry:
            delay = self.queue.add_rate_limited(key)
            self.logger.warning(
                "TracingConfig %s not fully applied (%s); retry %d in %.1fs",
                key,
                result.message,
                self.queue.num_requeues(key),
                delay,
            )
            return

        self.queue.forget(key)
        self.queue.add_after(key, self.resync_seconds)
        self.logger.debug("Next resync of TracingConfig %s in %.0fs", key, self.resync_seconds)

    def _worker_loop(self) -> None:
        queue = self.queue
        while not queue.shutting_down:
            self.process_next_item()

    def _start_workers(self) -> None:
        self._worker_threads = [
            threading.Thread(
                target=self._worker_loop,
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            for index in range(self.workers)
        ]
        for thread in self._worker_threads:
            thread.start()
        self.logger.info("Started %d reconcile worker(s)", self.workers)

    def _stop_workers(self) -> None:
        """Shut the queue down and wait for in-flight passes to finish."""
        self.queue.shut_down()
        for thread in self._worker_threads:
            thread.join(timeout=self.worker_stop_timeout_seconds)
            if thread.is_alive():
                self.logger.error(
                    "Reconcile worker %s did not stop within %ss",
                    thread.name,
                    self.worker_stop_timeout_seconds,
                )
        self._worker_threads = []

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream.

        Passes already running abort at their next store round trip, so a
        replica that lost its lease stops writing before another one
        takes over.
        """
        self._external_stop.set()
        self._cancel_passes.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_policies(self) -> Any:
        return self.store.list_policy_objects(namespace=self.namespace)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch ``TracingConfig`` objects until shutdown.

        1. Retries the initial list with exponential backoff so transient
           API startup failures do not crash-loop the controller.
        2. Enqueues every listed policy and starts the reconcile workers.
        3. Opens a streaming watch from the list's ``resourceVersion``.
        4. On ``410 Gone`` (etcd compaction), re-lists and resumes.
        5. On transient errors, applies exponential backoff with jitter
           (capped at 30 s) to avoid thundering-herd reconnects.
        6. On shutdown or leadership handoff, cancels in-flight passes at
           their next store round trip and stops the workers.

        ``401`` / ``403`` responses from the Kubernetes API are treated as
        configuration errors (RBAC/auth) and terminate the loop immediately
        with a clear log message rather than retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._cancel_passes.clear()
        if self.queue.shutting_down:
            self.queue = self._new_queue()
        self._spec_hashes = {}

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._sync_from_list(self._list_policies())
                self.ready.set()
                self.logger.info(
                    "Watching TracingConfig objects in %s from resourceVersion %s",
                    self.scope,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial TracingConfig list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial TracingConfig list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)

        if self._should_stop(stop):
            self.ready.clear()
            return

        self._start_workers()
        try:
            self._watch(stop, resource_version)
        finally:
            self._cancel_passes.set()
            self._stop_workers()
            self.ready.clear()

    def _watch(self, stop: threading.Event, resource_version: str | None) -> None:
        # Reset to 1 on every successful watch iteration; doubled on error
        # up to a 30 s cap.  Jitter is applied at sleep time.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.store.list_policy_objects,
                    namespace=self.namespace,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, Mapping):
                        continue

                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]

                    self.handle_policy_event(event_type=str(event.get("type", "")), obj=obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._sync_from_list(self._list_policies())
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def build_controller(
    config: ControllerConfig, store: KubeResourceStore
) -> TracingController:
    """Construct a :class:`TracingController` and its reconciler from *config*."""
    reconciler = TracingPolicyReconciler(
        store=store,
        timeout_seconds=config.reconcile_timeout_seconds,
    )
    return TracingController(
        store=store,
        reconciler=reconciler,
        namespace=config.watch_namespace,
        resync_seconds=config.resync_seconds,
        workers=config.workers,
        backoff_base_seconds=config.backoff_base_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
        worker_stop_timeout_seconds=config.reconcile_timeout_seconds or 30.0,
    )
