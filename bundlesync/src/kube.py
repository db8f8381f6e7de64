from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoordinationV1Api, CoreV1Api, V1ConfigMap, V1ObjectMeta
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CoreV1Api, CoordinationV1Api]:
    """Return CoreV1 and CoordinationV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CoordinationV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    """409 covers both ``AlreadyExists`` on create and a stale resourceVersion on replace."""
    return exc.status == 409


def is_access_denied(exc: ApiException) -> bool:
    return exc.status in {401, 403}


def is_namespace_terminating(exc: ApiException) -> bool:
    """Return True for the 403 the API server sends when creating into a terminating namespace."""
    if exc.status != 403:
        return False
    body = exc.body if isinstance(exc.body, str) else ""
    return "NamespaceTerminating" in body or "being terminated" in body


def object_name(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "name", None)


def object_namespace(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "namespace", None)


def resource_version_of(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


def config_map_data(config_map: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a plain ``dict[str, str]`` for comparison.

    ``None`` data (a ConfigMap with no keys) compares equal to ``{}``.
    """
    raw_data = getattr(config_map, "data", None)
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def read_config_map(core_api: CoreV1Api, namespace: str, name: str) -> V1ConfigMap | None:
    """Read a ConfigMap directly from the API server, returning ``None`` when it does not exist."""
    try:
        return core_api.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as exc:
        if is_not_found(exc):
            return None
        raise


def create_config_map(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: Mapping[str, str],
    labels: Mapping[str, str] | None = None,
) -> V1ConfigMap:
    body = V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
        data=dict(data),
    )
    return core_api.create_namespaced_config_map(namespace=namespace, body=body)


def replace_config_map_data(
    core_api: CoreV1Api,
    namespace: str,
    existing: Any,
    data: Mapping[str, str],
) -> V1ConfigMap:
    """Replace the ``data`` of *existing*, guarded by its resourceVersion.

    The rest of the object (labels, annotations, owner references, binary
    data) is sent back unchanged so a full PUT never strips fields written by
    other actors. The API server rejects the write with 409 when the
    resourceVersion carried in ``existing.metadata`` is stale.
    """
    body = copy.copy(existing)
    body.data = dict(data)
    return core_api.replace_namespaced_config_map(
        name=object_name(existing),
        namespace=namespace,
        body=body,
    )
