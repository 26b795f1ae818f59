from __future__ import annotations

import json
from collections.abc import Mapping
from hashlib import sha256

from controller.src.models import PolicySpec

ENDPOINT_KEY = "OTEL_EXPORTER_OTLP_ENDPOINT"
SERVICE_NAME_KEY = "OTEL_SERVICE_NAME"
SAMPLER_KEY = "OTEL_TRACES_SAMPLER"
SAMPLER_ARG_KEY = "OTEL_TRACES_SAMPLER_ARG"
EXPORT_TIMEOUT_KEY = "OTEL_EXPORTER_OTLP_TIMEOUT"
SCHEDULE_DELAY_KEY = "OTEL_BSP_SCHEDULE_DELAY"
MAX_BATCH_SIZE_KEY = "OTEL_BSP_MAX_EXPORT_BATCH_SIZE"
ATTRIBUTE_PREFIX = "OTEL_RESOURCE_ATTRIBUTES_"

SAMPLER_KIND = "traceidratio"


def format_ratio(rate: float) -> str:
    return f"{rate:.2f}"


def compile_payload(spec: PolicySpec) -> dict[str, str]:
    """Compile a policy spec into the environment payload of its ConfigMap.

    The result is the wire contract read by traced workloads through
    ``envFrom``.  Keys are returned sorted, so equal specs always produce
    byte-identical payloads whatever the iteration order of ``attributes``.
    The key set is closed: ``enabled`` and ``headers`` never reach the
    payload.
    """
    payload = {
        ENDPOINT_KEY: spec.endpoint,
        SERVICE_NAME_KEY: spec.service_name,
        SAMPLER_KEY: SAMPLER_KIND,
        SAMPLER_ARG_KEY: format_ratio(spec.sampling_rate),
    }

    if spec.export_timeout:
        payload[EXPORT_TIMEOUT_KEY] = spec.export_timeout
    if spec.batch_timeout:
        payload[SCHEDULE_DELAY_KEY] = spec.batch_timeout
    if spec.max_batch_size is not None and spec.max_batch_size > 0:
        payload[MAX_BATCH_SIZE_KEY] = str(spec.max_batch_size)

    for key, value in spec.attributes.items():
        payload[f"{ATTRIBUTE_PREFIX}{key}"] = value

    return dict(sorted(payload.items()))


def payload_digest(payload: Mapping[str, str]) -> str:
    """Return a SHA-256 hex digest of the payload content, independent of key order."""
    stable_payload = json.dumps(dict(payload), sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()
