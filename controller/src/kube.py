from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1ObjectMeta,
    V1OwnerReference,
)
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from controller.src.compiler import payload_digest
from controller.src.errors import NotFound, StoreError
from controller.src.models import (
    API_GROUP,
    API_VERSION,
    POLICY_KIND,
    POLICY_PLURAL,
    PolicyKey,
    PolicyStatus,
    TracingPolicy,
)

LOGGER = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "tracing-controller"
POLICY_ANNOTATION = f"{API_GROUP}/policy"
PAYLOAD_HASH_ANNOTATION = f"{API_GROUP}/payload-sha256"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi


def build_clients() -> KubeClients:
    """Return the API clients the controller needs, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate Kubernetes client failures into :class:`StoreError`."""
    try:
        yield
    except ApiException as exc:
        if exc.status == 404:
            raise NotFound(f"{action}: not found") from exc
        raise StoreError(f"{action} failed: {exc.status} {exc.reason}", status=exc.status) from exc
    except (HTTPError, OSError) as exc:
        raise StoreError(f"{action} failed: {exc}") from exc


class KubeResourceStore:
    """Resource store backed by the Kubernetes API.

    Policies are ``TracingConfig`` custom objects, config objects are
    ConfigMaps and workloads are Deployments.  Every method is a single
    blocking round trip and is safe to call from several worker threads.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def _timeout(self) -> dict[str, Any]:
        if self.request_timeout_seconds is None:
            return {}
        return {"_request_timeout": self.request_timeout_seconds}

    def list_policy_objects(self, namespace: str | None = None, **kwargs: Any) -> Any:
        """List raw ``TracingConfig`` objects in one namespace or cluster-wide.

        Used both for plain listings and as the list function of a watch
        stream, so ``ApiException`` is deliberately left untranslated.
        """
        if namespace:
            return self.custom_api.list_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, POLICY_PLURAL, **kwargs
            )
        return self.custom_api.list_cluster_custom_object(
            API_GROUP, API_VERSION, POLICY_PLURAL, **kwargs
        )

    def get_policy(self, namespace: str, name: str) -> TracingPolicy:
        with _store_errors(f"get {POLICY_KIND} {namespace}/{name}"):
            obj = self.custom_api.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, POLICY_PLURAL, name, **self._timeout()
            )
        return TracingPolicy.from_object(obj)

    def update_policy_status(self, key: PolicyKey, status: PolicyStatus) -> None:
        with _store_errors(f"update status of {POLICY_KIND} {key}"):
            self.custom_api.patch_namespaced_custom_object_status(
                API_GROUP,
                API_VERSION,
                key.namespace,
                POLICY_PLURAL,
                key.name,
                {"status": status.to_dict()},
                **self._timeout(),
            )

    def list_pods(self, namespace: str, label_selector: str | None = None) -> list[Any]:
        kwargs = self._timeout()
        if label_selector:
            kwargs["label_selector"] = label_selector
        with _store_errors(f"list pods in {namespace}"):
            pods = self.core_api.list_namespaced_pod(namespace=namespace, **kwargs)
        return list(pods.items or [])

    def get_config_object(self, namespace: str, name: str) -> dict[str, str] | None:
        """Return the data of a ConfigMap, or ``None`` when it does not exist."""
        try:
            with _store_errors(f"get ConfigMap {namespace}/{name}"):
                config_map = self.core_api.read_namespaced_config_map(
                    name=name, namespace=namespace, **self._timeout()
                )
        except NotFound:
            return None
        return dict(config_map.data or {})

    @staticmethod
    def _config_map_body(
        namespace: str,
        name: str,
        payload: Mapping[str, str],
        owner: TracingPolicy | None,
    ) -> V1ConfigMap:
        annotations = {PAYLOAD_HASH_ANNOTATION: payload_digest(payload)}
        owner_references = None
        if owner is not None:
            annotations[POLICY_ANNOTATION] = str(owner.key)
            # Owner references cannot cross namespaces.
            if owner.uid and owner.key.namespace == namespace:
                owner_references = [
                    V1OwnerReference(
                        api_version=f"{API_GROUP}/{API_VERSION}",
                        kind=POLICY_KIND,
                        name=owner.key.name,
                        uid=owner.uid,
                    )
                ]
        return V1ConfigMap(
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                annotations=annotations,
                owner_references=owner_references,
            ),
            data=dict(payload),
        )

    def create_config_object(
        self,
        namespace: str,
        name: str,
        payload: Mapping[str, str],
        owner: TracingPolicy | None = None,
    ) -> None:
        body = self._config_map_body(namespace, name, payload, owner)
        with _store_errors(f"create ConfigMap {namespace}/{name}"):
            self.core_api.create_namespaced_config_map(
                namespace=namespace, body=body, **self._timeout()
            )

    def update_config_object(
        self,
        namespace: str,
        name: str,
        payload: Mapping[str, str],
        owner: TracingPolicy | None = None,
    ) -> None:
        """Replace the ConfigMap wholesale; keys missing from ``payload`` are dropped."""
        body = self._config_map_body(namespace, name, payload, owner)
        with _store_errors(f"update ConfigMap {namespace}/{name}"):
            self.core_api.replace_namespaced_config_map(
                name=name, namespace=namespace, body=body, **self._timeout()
            )

    def list_workloads(self, namespace: str) -> list[Any]:
        with _store_errors(f"list deployments in {namespace}"):
            deployments = self.apps_api.list_namespaced_deployment(
                namespace=namespace, **self._timeout()
            )
        return list(deployments.items or [])

    def update_workload(self, workload: Any) -> None:
        """Write a Deployment back in full.

        The body keeps the ``resourceVersion`` it was listed with, so a
        concurrent edit surfaces as a ``409`` instead of being overwritten.
        """
        metadata = workload.metadata
        with _store_errors(f"update deployment {metadata.namespace}/{metadata.name}"):
            self.apps_api.replace_namespaced_deployment(
                name=metadata.name,
                namespace=metadata.namespace,
                body=workload,
                **self._timeout(),
            )
