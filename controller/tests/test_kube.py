from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import ProtocolError

from controller.src.errors import NotFound, StoreError
from controller.src.kube import (
    MANAGED_BY_LABEL,
    PAYLOAD_HASH_ANNOTATION,
    POLICY_ANNOTATION,
    KubeResourceStore,
    build_clients,
    load_kube_configuration,
)
from controller.src.models import Phase, PolicyKey, PolicyStatus, TracingPolicy


def _store(request_timeout_seconds: float | None = None) -> KubeResourceStore:
    return KubeResourceStore(
        core_api=MagicMock(),
        apps_api=MagicMock(),
        custom_api=MagicMock(),
        request_timeout_seconds=request_timeout_seconds,
    )


def _policy(namespace: str = "shop", uid: str | None = "uid-1") -> TracingPolicy:
    return TracingPolicy.from_object(
        {
            "metadata": {"name": "checkout", "namespace": namespace, "uid": uid},
            "spec": {"endpoint": "http://collector:4318", "serviceName": "checkout"},
        }
    )


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_all_apis() -> None:
    with patch("controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        clients = build_clients()

    assert clients.core.name == "core"
    assert clients.apps.name == "apps"
    assert clients.custom.name == "custom"


def test_list_policy_objects_namespaced_and_cluster_wide() -> None:
    store = _store()

    store.list_policy_objects(namespace="shop", watch=True)
    store.list_policy_objects()

    store.custom_api.list_namespaced_custom_object.assert_called_once_with(
        "observability.kubevishwa.io", "v1", "shop", "tracingconfigs", watch=True
    )
    store.custom_api.list_cluster_custom_object.assert_called_once_with(
        "observability.kubevishwa.io", "v1", "tracingconfigs"
    )


def test_get_policy_parses_custom_object() -> None:
    store = _store(request_timeout_seconds=5)
    store.custom_api.get_namespaced_custom_object.return_value = {
        "metadata": {"name": "checkout", "namespace": "shop"},
        "spec": {"endpoint": "e", "serviceName": "s", "samplingRate": 0.5},
    }

    policy = store.get_policy("shop", "checkout")

    assert policy.key == PolicyKey("shop", "checkout")
    assert policy.spec.sampling_rate == 0.5
    args = store.custom_api.get_namespaced_custom_object.call_args
    assert args.args == ("observability.kubevishwa.io", "v1", "shop", "tracingconfigs", "checkout")
    assert args.kwargs == {"_request_timeout": 5}


def test_missing_policy_raises_not_found() -> None:
    store = _store()
    store.custom_api.get_namespaced_custom_object.side_effect = ApiException(
        status=404, reason="Not Found"
    )

    with pytest.raises(NotFound):
        store.get_policy("shop", "checkout")


def test_api_errors_become_store_errors_with_status() -> None:
    store = _store()
    store.core_api.list_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(StoreError, match="list pods in shop failed: 403 Forbidden") as exc_info:
        store.list_pods("shop")

    assert exc_info.value.status == 403
    assert not isinstance(exc_info.value, NotFound)


def test_transport_errors_become_store_errors() -> None:
    store = _store()
    store.apps_api.list_namespaced_deployment.side_effect = ProtocolError("connection reset")

    with pytest.raises(StoreError, match="list deployments in shop failed") as exc_info:
        store.list_workloads("shop")

    assert exc_info.value.status is None


def test_update_policy_status_patches_status_subresource() -> None:
    store = _store()
    status = PolicyStatus(phase=Phase.FAILED, message="Invalid label selector: bad")

    store.update_policy_status(PolicyKey("shop", "checkout"), status)

    args = store.custom_api.patch_namespaced_custom_object_status.call_args.args
    assert args == (
        "observability.kubevishwa.io",
        "v1",
        "shop",
        "tracingconfigs",
        "checkout",
        {"status": {"phase": "Failed", "message": "Invalid label selector: bad"}},
    )


def test_list_pods_passes_label_selector_only_when_set() -> None:
    store = _store()
    store.core_api.list_namespaced_pod.return_value = SimpleNamespace(items=["p1"])

    assert store.list_pods("shop", "app=web") == ["p1"]
    assert store.core_api.list_namespaced_pod.call_args.kwargs == {
        "namespace": "shop",
        "label_selector": "app=web",
    }

    store.list_pods("shop")
    assert store.core_api.list_namespaced_pod.call_args.kwargs == {"namespace": "shop"}


def test_get_config_object_returns_none_when_absent() -> None:
    store = _store()
    store.core_api.read_namespaced_config_map.side_effect = ApiException(
        status=404, reason="Not Found"
    )

    assert store.get_config_object("shop", "checkout-tracing-config") is None


def test_get_config_object_returns_data() -> None:
    store = _store()
    store.core_api.read_namespaced_config_map.return_value = SimpleNamespace(data={"A": "1"})

    assert store.get_config_object("shop", "cfg") == {"A": "1"}


def test_create_config_object_sets_owner_reference_in_same_namespace() -> None:
    store = _store()

    store.create_config_object("shop", "checkout-tracing-config", {"A": "1"}, owner=_policy())

    body: Any = store.core_api.create_namespaced_config_map.call_args.kwargs["body"]
    assert body.data == {"A": "1"}
    assert body.metadata.name == "checkout-tracing-config"
    assert body.metadata.labels[MANAGED_BY_LABEL] == "tracing-controller"
    assert body.metadata.annotations[POLICY_ANNOTATION] == "shop/checkout"
    assert len(body.metadata.annotations[PAYLOAD_HASH_ANNOTATION]) == 64
    owner = body.metadata.owner_references[0]
    assert owner.kind == "TracingConfig"
    assert owner.name == "checkout"
    assert owner.uid == "uid-1"
    assert owner.api_version == "observability.kubevishwa.io/v1"


def test_config_object_in_other_namespace_has_no_owner_reference() -> None:
    store = _store()

    store.update_config_object("apps", "checkout-tracing-config", {"A": "1"}, owner=_policy())

    kwargs = store.core_api.replace_namespaced_config_map.call_args.kwargs
    assert kwargs["name"] == "checkout-tracing-config"
    assert kwargs["namespace"] == "apps"
    assert kwargs["body"].metadata.owner_references is None
    assert kwargs["body"].metadata.annotations[POLICY_ANNOTATION] == "shop/checkout"


def test_update_workload_replaces_deployment() -> None:
    store = _store()
    deployment = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="shop"))

    store.update_workload(deployment)

    store.apps_api.replace_namespaced_deployment.assert_called_once_with(
        name="web", namespace="shop", body=deployment
    )


def test_update_workload_conflict_is_store_error() -> None:
    store = _store()
    store.apps_api.replace_namespaced_deployment.side_effect = ApiException(
        status=409, reason="Conflict"
    )
    deployment = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="shop"))

    with pytest.raises(StoreError, match="409 Conflict"):
        store.update_workload(deployment)
