"""ObjectStore backed by the Kubernetes API through ``CustomObjectsApi``."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, TypeVar

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .model import (
    CLUSTER_API_GROUP,
    CLUSTER_API_VERSION,
    IPAM_GROUP,
    IPAM_VERSION,
    POOL_VERSION,
    AddressClaim,
    AddressPool,
    AddressRecord,
    ResourceClass,
    Target,
    TargetList,
)
from .store import (
    AlreadyExistsError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ObjectStore,
    StoreError,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

CLUSTERS = "clusters"
CLUSTER_CLASSES = "clusterclasses"
POOLS = "globalinclusterippools"
CLAIMS = "ipaddressclaims"
RECORDS = "ipaddresses"

MERGE_PATCH = "application/merge-patch+json"


def _reason(exc: ApiException) -> str:
    try:
        return str(json.loads(exc.body or "{}").get("reason", ""))
    except (TypeError, ValueError):
        return ""


def translate(exc: ApiException, what: str) -> StoreError:
    """Map an ``ApiException`` onto the store error hierarchy."""

    message = f"{what}: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 410:
        return ExpiredError(message)
    if exc.status == 409:
        if _reason(exc) == "AlreadyExists":
            return AlreadyExistsError(message)
        return ConflictError(message)
    return StoreError(message)


def _watch_error(status: Mapping[str, Any]) -> StoreError:
    message = f"watch Clusters: {status.get('code')} {status.get('reason', '')}"
    if status.get("code") == 410:
        return ExpiredError(message)
    return StoreError(message)


class KubernetesStore(ObjectStore):
    def __init__(self, api: client.CustomObjectsApi) -> None:
        self._api = api

    @classmethod
    def from_config(
        cls, *, kubeconfig: Optional[str] = None, in_cluster: bool = False
    ) -> "KubernetesStore":
        if in_cluster:
            LOG.info("using in-cluster Kubernetes credentials")
            config.load_incluster_config()
        else:
            LOG.info("using kubeconfig %s", kubeconfig or "from the default location")
            config.load_kube_config(config_file=kubeconfig)
        return cls(client.CustomObjectsApi())

    def _call(self, what: str, fn: Callable[..., T], **kwargs: Any) -> T:
        try:
            return fn(**kwargs)
        except ApiException as exc:
            raise translate(exc, what) from exc

    # Clusters -----------------------------------------------------------
    def get_target(self, namespace: str, name: str) -> Target:
        data = self._call(
            f"get Cluster {namespace}/{name}",
            self._api.get_namespaced_custom_object,
            group=CLUSTER_API_GROUP,
            version=CLUSTER_API_VERSION,
            namespace=namespace,
            plural=CLUSTERS,
            name=name,
        )
        return Target.from_dict(data)

    def list_targets(self) -> TargetList:
        data = self._call(
            "list Clusters",
            self._api.list_cluster_custom_object,
            group=CLUSTER_API_GROUP,
            version=CLUSTER_API_VERSION,
            plural=CLUSTERS,
        )
        return TargetList(
            items=[Target.from_dict(item) for item in data.get("items", [])],
            resource_version=str((data.get("metadata") or {}).get("resourceVersion", "")),
        )

    def watch_targets(
        self, resource_version: str, timeout_seconds: int
    ) -> Iterator[Tuple[str, Target]]:
        stream = watch.Watch()
        try:
            for event in stream.stream(
                self._api.list_cluster_custom_object,
                group=CLUSTER_API_GROUP,
                version=CLUSTER_API_VERSION,
                plural=CLUSTERS,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            ):
                event_type = event["type"]
                if event_type == "ERROR":
                    raise _watch_error(event.get("raw_object") or event.get("object") or {})
                yield event_type, Target.from_dict(event["object"])
        except ApiException as exc:
            raise translate(exc, "watch Clusters") from exc
        finally:
            stream.stop()

    def patch_target(self, namespace: str, name: str, patch: Dict[str, Any]) -> Target:
        data = self._call(
            f"patch Cluster {namespace}/{name}",
            self._api.patch_namespaced_custom_object,
            group=CLUSTER_API_GROUP,
            version=CLUSTER_API_VERSION,
            namespace=namespace,
            plural=CLUSTERS,
            name=name,
            body=patch,
            _content_type=MERGE_PATCH,
        )
        return Target.from_dict(data)

    # ClusterClasses -----------------------------------------------------
    def get_resource_class(self, name: str, namespace: Optional[str] = None) -> ResourceClass:
        if namespace is None:
            data = self._call(
                f"get ClusterClass {name}",
                self._api.get_cluster_custom_object,
                group=CLUSTER_API_GROUP,
                version=CLUSTER_API_VERSION,
                plural=CLUSTER_CLASSES,
                name=name,
            )
        else:
            data = self._call(
                f"get ClusterClass {namespace}/{name}",
                self._api.get_namespaced_custom_object,
                group=CLUSTER_API_GROUP,
                version=CLUSTER_API_VERSION,
                namespace=namespace,
                plural=CLUSTER_CLASSES,
                name=name,
            )
        return ResourceClass.from_dict(data)

    # Pools ----------------------------------------------------------------
    def list_pools(self) -> List[AddressPool]:
        data = self._call(
            "list GlobalInClusterIPPools",
            self._api.list_cluster_custom_object,
            group=IPAM_GROUP,
            version=POOL_VERSION,
            plural=POOLS,
        )
        return [AddressPool.from_dict(item) for item in data.get("items", [])]

    # Claims ---------------------------------------------------------------
    def get_claim(self, namespace: str, name: str) -> AddressClaim:
        data = self._call(
            f"get IPAddressClaim {namespace}/{name}",
            self._api.get_namespaced_custom_object,
            group=IPAM_GROUP,
            version=IPAM_VERSION,
            namespace=namespace,
            plural=CLAIMS,
            name=name,
        )
        return AddressClaim.from_dict(data)

    def create_claim(self, claim: AddressClaim) -> AddressClaim:
        data = self._call(
            f"create IPAddressClaim {claim.meta.key}",
            self._api.create_namespaced_custom_object,
            group=IPAM_GROUP,
            version=IPAM_VERSION,
            namespace=claim.meta.namespace,
            plural=CLAIMS,
            body=claim.to_dict(),
        )
        return AddressClaim.from_dict(data)

    def update_claim(self, claim: AddressClaim) -> AddressClaim:
        data = self._call(
            f"update IPAddressClaim {claim.meta.key}",
            self._api.replace_namespaced_custom_object,
            group=IPAM_GROUP,
            version=IPAM_VERSION,
            namespace=claim.meta.namespace,
            plural=CLAIMS,
            name=claim.meta.name,
            body=claim.to_dict(),
        )
        return AddressClaim.from_dict(data)

    # Records --------------------------------------------------------------
    def get_record(self, namespace: str, name: str) -> AddressRecord:
        data = self._call(
            f"get IPAddress {namespace}/{name}",
            self._api.get_namespaced_custom_object,
            group=IPAM_GROUP,
            version=IPAM_VERSION,
            namespace=namespace,
            plural=RECORDS,
            name=name,
        )
        return AddressRecord.from_dict(data)
