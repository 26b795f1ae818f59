from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from controller.src.errors import InvalidSpec

API_GROUP = "observability.kubevishwa.io"
API_VERSION = "v1"
POLICY_KIND = "TracingConfig"
POLICY_PLURAL = "tracingconfigs"

CONFIG_OBJECT_SUFFIX = "-tracing-config"


class Phase(str, Enum):
    PENDING = "Pending"
    APPLIED = "Applied"
    FAILED = "Failed"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, order=True)
class PolicyKey:
    """Identity of a policy resource: namespace plus name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {str(k): ("" if v is None else str(v)) for k, v in raw.items()}


def _number(raw: Any, wire_name: str, convert: Callable[[Any], Any]) -> Any:
    if isinstance(raw, bool):
        raise InvalidSpec(f"spec.{wire_name} must be a number, got: {raw!r}")
    try:
        return convert(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidSpec(f"spec.{wire_name} must be a number, got: {raw!r}") from exc


def _optional_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass(frozen=True)
class PolicySpec:
    """User-declared tracing settings, parsed from the custom object's ``spec``.

    Field defaults follow the CRD: an omitted ``samplingRate`` is ``0.0``,
    empty strings and non-positive batch sizes count as unset.
    """

    endpoint: str
    service_name: str
    enabled: bool = True
    sampling_rate: float = 0.0
    namespace: str | None = None
    selector: Mapping[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    attributes: dict[str, str] = field(default_factory=dict)
    export_timeout: str | None = None
    batch_timeout: str | None = None
    max_batch_size: int | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> PolicySpec:
        raw = raw or {}
        max_batch_size = raw.get("maxBatchSize")
        if max_batch_size is not None:
            max_batch_size = _number(max_batch_size, "maxBatchSize", int)
            if max_batch_size <= 0:
                max_batch_size = None

        enabled = raw.get("enabled")
        return cls(
            endpoint=str(raw.get("endpoint") or ""),
            service_name=str(raw.get("serviceName") or ""),
            enabled=True if enabled is None else bool(enabled),
            sampling_rate=_number(raw.get("samplingRate") or 0.0, "samplingRate", float),
            namespace=_optional_text(raw.get("namespace")),
            selector=raw.get("selector"),
            headers=_string_map(raw.get("headers")),
            attributes=_string_map(raw.get("attributes")),
            export_timeout=_optional_text(raw.get("exportTimeout")),
            batch_timeout=_optional_text(raw.get("batchTimeout")),
            max_batch_size=max_batch_size,
        )


@dataclass(frozen=True)
class PolicyStatus:
    """Controller-owned status sub-structure of a policy.

    ``to_dict`` omits unset fields so that a merge patch built from a
    ``Pending`` status leaves ``appliedAt`` and ``targetPods`` from the last
    successful apply in place.
    """

    phase: Phase
    message: str
    applied_at: str | None = None
    target_pods: tuple[str, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        status: dict[str, Any] = {"phase": self.phase.value, "message": self.message}
        if self.applied_at is not None:
            status["appliedAt"] = self.applied_at
        if self.target_pods is not None:
            status["targetPods"] = list(self.target_pods)
        return status

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> PolicyStatus | None:
        if not raw or not raw.get("phase"):
            return None
        try:
            phase = Phase(raw["phase"])
        except ValueError:
            return None
        pods = raw.get("targetPods")
        return cls(
            phase=phase,
            message=str(raw.get("message") or ""),
            applied_at=raw.get("appliedAt"),
            target_pods=tuple(pods) if isinstance(pods, list) else None,
        )


@dataclass(frozen=True)
class TracingPolicy:
    key: PolicyKey
    spec: PolicySpec
    status: PolicyStatus | None = None
    uid: str | None = None
    resource_version: str | None = None
    generation: int | None = None

    @property
    def target_namespace(self) -> str:
        return self.spec.namespace or self.key.namespace

    @property
    def config_object_name(self) -> str:
        return f"{self.key.name}{CONFIG_OBJECT_SUFFIX}"

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> TracingPolicy:
        """Build a policy from a custom object as returned by ``CustomObjectsApi``."""
        metadata = obj.get("metadata") or {}
        return cls(
            key=PolicyKey(namespace=metadata.get("namespace", ""), name=metadata.get("name", "")),
            spec=PolicySpec.from_dict(obj.get("spec")),
            status=PolicyStatus.from_dict(obj.get("status")),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation"),
        )
