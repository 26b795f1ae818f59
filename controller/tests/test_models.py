from __future__ import annotations

import re

import pytest

from controller.src.errors import InvalidSpec
from controller.src.models import (
    Phase,
    PolicyKey,
    PolicySpec,
    PolicyStatus,
    TracingPolicy,
    utc_now_rfc3339,
)


def _policy_object(**spec: object) -> dict[str, object]:
    return {
        "apiVersion": "observability.kubevishwa.io/v1",
        "kind": "TracingConfig",
        "metadata": {
            "name": "checkout",
            "namespace": "shop",
            "uid": "uid-1",
            "resourceVersion": "17",
            "generation": 3,
        },
        "spec": {"endpoint": "http://collector:4318", "serviceName": "checkout", **spec},
    }


def test_policy_key_renders_as_namespace_slash_name() -> None:
    assert str(PolicyKey(namespace="shop", name="checkout")) == "shop/checkout"


def test_spec_from_dict_reads_camel_case_fields() -> None:
    spec = PolicySpec.from_dict(
        {
            "endpoint": "http://collector:4318",
            "serviceName": "checkout",
            "samplingRate": 0.25,
            "enabled": False,
            "namespace": "apps",
            "selector": {"matchLabels": {"app": "checkout"}},
            "headers": {"x-api-key": "secret"},
            "attributes": {"team": "payments"},
            "exportTimeout": "10s",
            "batchTimeout": "5s",
            "maxBatchSize": 256,
        }
    )

    assert spec.endpoint == "http://collector:4318"
    assert spec.service_name == "checkout"
    assert spec.sampling_rate == 0.25
    assert spec.enabled is False
    assert spec.namespace == "apps"
    assert spec.selector == {"matchLabels": {"app": "checkout"}}
    assert spec.headers == {"x-api-key": "secret"}
    assert spec.attributes == {"team": "payments"}
    assert spec.export_timeout == "10s"
    assert spec.batch_timeout == "5s"
    assert spec.max_batch_size == 256


def test_spec_defaults_for_omitted_fields() -> None:
    spec = PolicySpec.from_dict({"endpoint": "e", "serviceName": "s"})

    assert spec.enabled is True
    assert spec.sampling_rate == 0.0
    assert spec.namespace is None
    assert spec.selector is None
    assert spec.attributes == {}
    assert spec.export_timeout is None
    assert spec.max_batch_size is None


def test_spec_treats_empty_strings_and_non_positive_batch_size_as_unset() -> None:
    spec = PolicySpec.from_dict(
        {
            "endpoint": "e",
            "serviceName": "s",
            "namespace": "",
            "exportTimeout": "  ",
            "maxBatchSize": 0,
        }
    )

    assert spec.namespace is None
    assert spec.export_timeout is None
    assert spec.max_batch_size is None


@pytest.mark.parametrize(
    ("fields", "message"),
    [
        ({"samplingRate": "fast"}, "spec.samplingRate must be a number, got: 'fast'"),
        ({"samplingRate": True}, "spec.samplingRate must be a number, got: True"),
        ({"maxBatchSize": "lots"}, "spec.maxBatchSize must be a number, got: 'lots'"),
    ],
)
def test_spec_rejects_non_numeric_values(fields: dict[str, object], message: str) -> None:
    with pytest.raises(InvalidSpec, match=re.escape(message)):
        PolicySpec.from_dict({"endpoint": "e", "serviceName": "s", **fields})


def test_spec_accepts_numeric_strings() -> None:
    spec = PolicySpec.from_dict(
        {"endpoint": "e", "serviceName": "s", "samplingRate": "0.25", "maxBatchSize": "512"}
    )

    assert spec.sampling_rate == 0.25
    assert spec.max_batch_size == 512


def test_pending_status_omits_applied_fields() -> None:
    status = PolicyStatus(phase=Phase.PENDING, message="Processing tracing configuration")

    assert status.to_dict() == {"phase": "Pending", "message": "Processing tracing configuration"}


def test_applied_status_serializes_pods_and_timestamp() -> None:
    status = PolicyStatus(
        phase=Phase.APPLIED,
        message="Tracing configuration applied to 2 pods",
        applied_at="2026-01-01T00:00:00Z",
        target_pods=("web-1", "web-2"),
    )

    assert status.to_dict() == {
        "phase": "Applied",
        "message": "Tracing configuration applied to 2 pods",
        "appliedAt": "2026-01-01T00:00:00Z",
        "targetPods": ["web-1", "web-2"],
    }


def test_status_from_dict_ignores_unknown_phase() -> None:
    assert PolicyStatus.from_dict({"phase": "Exploded"}) is None
    assert PolicyStatus.from_dict(None) is None


def test_policy_from_object_reads_metadata_and_status() -> None:
    obj = _policy_object()
    obj["status"] = {"phase": "Applied", "message": "ok", "targetPods": ["a"]}

    policy = TracingPolicy.from_object(obj)

    assert policy.key == PolicyKey(namespace="shop", name="checkout")
    assert policy.uid == "uid-1"
    assert policy.resource_version == "17"
    assert policy.generation == 3
    assert policy.status is not None
    assert policy.status.phase is Phase.APPLIED
    assert policy.status.target_pods == ("a",)


def test_target_namespace_defaults_to_policy_namespace() -> None:
    policy = TracingPolicy.from_object(_policy_object())

    assert policy.target_namespace == "shop"
    assert policy.config_object_name == "checkout-tracing-config"


def test_target_namespace_override() -> None:
    policy = TracingPolicy.from_object(_policy_object(namespace="apps"))

    assert policy.target_namespace == "apps"
    assert policy.config_object_name == "checkout-tracing-config"


def test_utc_now_rfc3339_format() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_now_rfc3339())
