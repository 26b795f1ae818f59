from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1ConfigMapEnvSource, V1EnvFromSource

from controller.src.errors import StoreError
from controller.src.kube import KubeResourceStore
from controller.src.metrics import METRICS
from controller.src.selector import LabelSelector

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkloadPatchResult:
    """Outcome of wiring the matched workloads of one namespace to a ConfigMap."""

    matched: int
    patched: int
    unchanged: int
    failed: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.failed


def workload_name(workload: Any) -> str:
    return getattr(getattr(workload, "metadata", None), "name", None) or "<unknown>"


def pod_template_labels(workload: Any) -> dict[str, str]:
    """Extract pod template labels from a deployment object safely."""
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in labels.items() if isinstance(k, str)}


def _containers(workload: Any) -> list[Any]:
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    return list(getattr(pod_spec, "containers", None) or [])


def has_config_ref(container: Any, config_name: str) -> bool:
    for env_from in getattr(container, "env_from", None) or []:
        config_map_ref = getattr(env_from, "config_map_ref", None)
        if getattr(config_map_ref, "name", None) == config_name:
            return True
    return False


def ensure_config_ref(container: Any, config_name: str) -> bool:
    """Append an ``envFrom`` reference to *config_name* unless one already exists.

    Returns whether the container was modified.  Existing references are
    never removed or reordered.
    """
    if has_config_ref(container, config_name):
        return False
    env_from = list(getattr(container, "env_from", None) or [])
    env_from.append(V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name=config_name)))
    container.env_from = env_from
    return True


def patch_workloads(
    store: KubeResourceStore,
    namespace: str,
    selector: LabelSelector,
    config_name: str,
    *,
    logger: logging.Logger | None = None,
    check_deadline: Callable[[], None] | None = None,
) -> WorkloadPatchResult:
    """Make every workload matching *selector* load *config_name* through ``envFrom``.

    The selector is evaluated against pod template labels.  Each workload is
    written back once, and only if at least one of its containers changed.
    A failed write is logged and recorded, and the remaining workloads are
    still processed.  A failed listing raises :class:`StoreError`.
    """
    log = logger or LOGGER
    workloads = store.list_workloads(namespace)

    matched = 0
    patched = 0
    unchanged = 0
    failed: list[str] = []

    for workload in workloads:
        if not selector.matches(pod_template_labels(workload)):
            continue
        matched += 1
        name = workload_name(workload)

        modified = False
        for container in _containers(workload):
            if ensure_config_ref(container, config_name):
                modified = True

        if not modified:
            unchanged += 1
            METRICS.workload_patches_total.labels(result="unchanged").inc()
            log.debug("Deployment %s/%s already references %s", namespace, name, config_name)
            continue

        if check_deadline is not None:
            check_deadline()
        try:
            store.update_workload(workload)
        except StoreError:
            failed.append(name)
            METRICS.workload_patches_total.labels(result="failed").inc()
            log.exception("Failed to update deployment %s/%s", namespace, name)
            continue

        patched += 1
        METRICS.workload_patches_total.labels(result="patched").inc()
        log.info(
            "Updated deployment %s/%s with tracing configuration %s", namespace, name, config_name
        )

    if not matched:
        log.info("No deployments in %s matched selector %s", namespace, selector)

    return WorkloadPatchResult(
        matched=matched,
        patched=patched,
        unchanged=unchanged,
        failed=tuple(failed),
    )
