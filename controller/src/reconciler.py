from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from controller.src.compiler import compile_payload, payload_digest
from controller.src.errors import (
    DeadlineExceeded,
    InvalidSelector,
    InvalidSpec,
    NotFound,
    PassCancelled,
    StoreError,
)
from controller.src.kube import KubeResourceStore
from controller.src.metrics import METRICS
from controller.src.models import Phase, PolicyKey, PolicyStatus, TracingPolicy, utc_now_rfc3339
from controller.src.selector import parse_selector
from controller.src.workloads import WorkloadPatchResult, patch_workloads

DEFAULT_PASS_TIMEOUT_SECONDS = 60.0

PENDING_MESSAGE = "Processing tracing configuration"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single reconcile pass.

    ``phase`` is ``None`` when the pass was abandoned because the policy no
    longer exists; otherwise it is the phase written to the policy status.
    """

    key: PolicyKey
    phase: Phase | None
    message: str = ""
    config_changed: bool = False
    matched_pods: tuple[str, ...] = ()
    workloads: WorkloadPatchResult | None = None

    @property
    def abandoned(self) -> bool:
        return self.phase is None

    @property
    def needs_retry(self) -> bool:
        """True when the pass left work undone and should be retried with backoff."""
        if self.phase == Phase.FAILED:
            return True
        return self.workloads is not None and not self.workloads.complete


def ensure_config_object(
    store: KubeResourceStore,
    namespace: str,
    name: str,
    payload: Mapping[str, str],
    owner: TracingPolicy | None = None,
    logger: logging.Logger | None = None,
) -> bool:
    """Make the ConfigMap ``namespace/name`` hold exactly *payload*.

    Creates it when absent and replaces its data when it differs, so keys
    dropped from the policy disappear too.  Returns whether a write was
    made.  :class:`StoreError` propagates unchanged.
    """
    log = logger or logging.getLogger(__name__)
    desired = dict(payload)
    existing = store.get_config_object(namespace, name)

    if existing is None:
        store.create_config_object(namespace, name, desired, owner=owner)
        METRICS.config_writes_total.labels(action="created").inc()
        log.info("Created ConfigMap %s/%s", namespace, name)
        return True

    if existing == desired:
        METRICS.config_writes_total.labels(action="unchanged").inc()
        log.debug("ConfigMap %s/%s already up to date", namespace, name)
        return False

    store.update_config_object(namespace, name, desired, owner=owner)
    METRICS.config_writes_total.labels(action="updated").inc()
    log.info(
        "Updated ConfigMap %s/%s (payload sha256 %s)", namespace, name, payload_digest(desired)
    )
    return True


class StatusReporter:
    """Publishes pass outcomes to the policy's status subresource.

    Writes are best effort: a failed write is logged and counted, never
    raised, because status is an output of the pass and not a gate on it.
    """

    def __init__(
        self,
        store: KubeResourceStore,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def pending(self, policy: TracingPolicy) -> bool:
        return self._write(policy.key, PolicyStatus(phase=Phase.PENDING, message=PENDING_MESSAGE))

    def applied(self, policy: TracingPolicy, target_pods: Iterable[str], message: str) -> bool:
        status = PolicyStatus(
            phase=Phase.APPLIED,
            message=message,
            applied_at=self.now_fn(),
            target_pods=tuple(target_pods),
        )
        return self._write(policy.key, status)

    def failed(self, key: PolicyKey, message: str) -> bool:
        return self._write(key, PolicyStatus(phase=Phase.FAILED, message=message))

    def _write(self, key: PolicyKey, status: PolicyStatus) -> bool:
        try:
            self.store.update_policy_status(key, status)
        except NotFound:
            self.logger.info(
                "TracingConfig %s disappeared before its %s status was written",
                key,
                status.phase.value,
            )
            return False
        except StoreError:
            METRICS.status_write_errors_total.inc()
            self.logger.warning(
                "Failed to update status of TracingConfig %s to %s",
                key,
                status.phase.value,
                exc_info=True,
            )
            return False
        return True


def _pod_names(pods: Iterable[Any]) -> tuple[str, ...]:
    names = (getattr(getattr(pod, "metadata", None), "name", None) for pod in pods)
    return tuple(sorted(name for name in names if name))


class TracingPolicyReconciler:
    """Drives the downstream objects of one ``TracingConfig`` toward its spec.

    A pass runs these steps in order and stops at the first fatal error:

    1. Read the policy; a missing policy abandons the pass silently and a
       spec field of the wrong type marks it ``Failed``.
    2. Mark the status ``Pending`` before any mutation.
    3. Parse the label selector.
    4. List matching pods for status reporting.
    5. Compile the payload and create or overwrite the derived ConfigMap.
    6. Add an ``envFrom`` reference to it on every matching deployment.
    7. Mark the status ``Applied``.

    Failures in steps 3 to 6 mark the status ``Failed``.  A single
    deployment failing to update in step 6 is not fatal: the others are
    still processed and the pass ends ``Applied``.

    The ConfigMap write always completes before any deployment is touched,
    so a deployment never references a ConfigMap older than itself.  Every
    pass is bounded by ``timeout_seconds``; the deadline is checked before
    each store round trip and raises :class:`DeadlineExceeded`, leaving the
    status as last written.  A call already in flight is not interrupted,
    so a pass can overrun by up to the store's request timeout.  The same
    checkpoints abort the pass with :class:`PassCancelled` once the
    controller's stop event is set.
    """

    def __init__(
        self,
        store: KubeResourceStore,
        timeout_seconds: float = DEFAULT_PASS_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.status = StatusReporter(store=store, logger=self.logger, now_fn=now_fn)

    def _deadline_checker(
        self, key: PolicyKey, stop_event: threading.Event | None = None
    ) -> Callable[[], None]:
        deadline = self.clock() + self.timeout_seconds if self.timeout_seconds > 0 else None

        def check() -> None:
            if stop_event is not None and stop_event.is_set():
                raise PassCancelled(f"reconcile of TracingConfig {key} cancelled by shutdown")
            if deadline is not None and self.clock() > deadline:
                raise DeadlineExceeded(
                    f"reconcile of TracingConfig {key} exceeded {self.timeout_seconds:g}s deadline"
                )

        return check

    def reconcile(
        self, key: PolicyKey, stop_event: threading.Event | None = None
    ) -> ReconcileResult:
        """Run one full pass for *key*.

        Returns a :class:`ReconcileResult` for every outcome the pass can
        report through status.  Raises :class:`StoreError` when the policy
        itself cannot be read, :class:`DeadlineExceeded` on timeout and
        :class:`PassCancelled` once *stop_event* is set.
        """
        started = self.clock()
        try:
            result = self._reconcile(key, self._deadline_checker(key, stop_event))
        except Exception:
            METRICS.reconcile_total.labels(result="error").inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.observe(self.clock() - started)

        outcome = "abandoned" if result.abandoned else result.phase.value.lower()
        METRICS.reconcile_total.labels(result=outcome).inc()
        return result

    def _reconcile(self, key: PolicyKey, check_deadline: Callable[[], None]) -> ReconcileResult:
        self.logger.info("Reconciling TracingConfig %s", key)

        check_deadline()
        try:
            policy = self.store.get_policy(key.namespace, key.name)
        except NotFound:
            self.logger.info("TracingConfig %s no longer exists; nothing to reconcile", key)
            return ReconcileResult(key=key, phase=None, message="not found")
        except InvalidSpec as exc:
            return self._fail(key, f"Invalid spec: {exc}")

        check_deadline()
        self.status.pending(policy)

        namespace = policy.target_namespace
        config_name = policy.config_object_name

        try:
            selector = parse_selector(policy.spec.selector)
        except InvalidSelector as exc:
            return self._fail(policy.key, f"Invalid label selector: {exc}")

        check_deadline()
        try:
            pods = self.store.list_pods(namespace, selector.to_query() or None)
        except StoreError as exc:
            return self._fail(policy.key, f"Failed to list pods: {exc}")
        pod_names = _pod_names(pods)

        payload = compile_payload(policy.spec)

        check_deadline()
        try:
            config_changed = ensure_config_object(
                self.store,
                namespace,
                config_name,
                payload,
                owner=policy,
                logger=self.logger,
            )
        except StoreError as exc:
            return self._fail(
                policy.key, f"Failed to write ConfigMap {namespace}/{config_name}: {exc}"
            )

        check_deadline()
        try:
            workloads = patch_workloads(
                self.store,
                namespace,
                selector,
                config_name,
                logger=self.logger,
                check_deadline=check_deadline,
            )
        except StoreError as exc:
            return self._fail(
                policy.key, f"Failed to list deployments: {exc}", config_changed=config_changed
            )

        message = f"Tracing configuration applied to {len(pod_names)} pods"
        if workloads.failed:
            message += (
                f"; failed to update {len(workloads.failed)} deployment(s): "
                f"{', '.join(workloads.failed)}"
            )

        check_deadline()
        self.status.applied(policy, pod_names, message)
        self.logger.info(
            "Successfully reconciled TracingConfig %s (config changed=%s, deployments "
            "matched=%d patched=%d failed=%d)",
            key,
            config_changed,
            workloads.matched,
            workloads.patched,
            len(workloads.failed),
        )
        return ReconcileResult(
            key=key,
            phase=Phase.APPLIED,
            message=message,
            config_changed=config_changed,
            matched_pods=pod_names,
            workloads=workloads,
        )

    def _fail(
        self, key: PolicyKey, message: str, *, config_changed: bool = False
    ) -> ReconcileResult:
        self.logger.error("Reconcile of TracingConfig %s failed: %s", key, message)
        self.status.failed(key, message)
        return ReconcileResult(
            key=key,
            phase=Phase.FAILED,
            message=message,
            config_changed=config_changed,
        )
