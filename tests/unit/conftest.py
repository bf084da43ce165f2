import copy
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import pytest

from vip_allocator.config import CONTROL_PLANE, AllocatorConfig
from vip_allocator.metrics import AllocatorMetrics
from vip_allocator.model import (
    AddressClaim,
    AddressPool,
    AddressRecord,
    ResourceClass,
    Target,
    TargetList,
)
from vip_allocator.store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
)

DOMAIN = "vip.capi.gorizond.io"


def apply_merge_patch(document: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(document) if isinstance(document, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def cluster_doc(
    name: str,
    namespace: str = "default",
    *,
    class_name: str = "cls-x",
    host: str = "",
    port: int = 0,
    variables: Optional[List[Dict[str, Any]]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {}
    if class_name:
        spec["topology"] = {"class": class_name, "version": "v1.30.0"}
        if variables is not None:
            spec["topology"]["variables"] = variables
    if host or port:
        spec["controlPlaneEndpoint"] = {"host": host, "port": port}
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "cluster.x-k8s.io/v1beta1",
        "kind": "Cluster",
        "metadata": metadata,
        "spec": spec,
    }


class InMemoryStore(ObjectStore):
    """ObjectStore fake with resourceVersion checks and fault injection."""

    def __init__(self) -> None:
        self.targets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.classes: Dict[Tuple[Optional[str], str], Dict[str, Any]] = {}
        self.pools: List[Dict[str, Any]] = []
        self.claims: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.list_version = "0"
        self.watch_events: List[Any] = []
        self.watches: List[Tuple[str, int]] = []
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._faults: Dict[str, List[Exception]] = {}
        self._before: Dict[str, List[Callable[[], None]]] = {}
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    # Test helpers ------------------------------------------------------------
    def fail(self, op: str, exc: Exception, times: int = 1) -> None:
        self._faults.setdefault(op, []).extend([exc] * times)

    def before(self, op: str, fn: Callable[[], None]) -> None:
        """Run ``fn`` once right before the next ``op`` call."""

        self._before.setdefault(op, []).append(fn)

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        hooks = self._before.pop(op, [])
        for fn in hooks:
            fn()
        faults = self._faults.get(op)
        if faults:
            raise faults.pop(0)

    def _bump(self, document: Dict[str, Any]) -> None:
        self.list_version = str(next(self._rv))
        document.setdefault("metadata", {})["resourceVersion"] = self.list_version

    def add_target(self, document: Dict[str, Any], persisted: bool = True) -> Target:
        document = copy.deepcopy(document)
        meta = document.setdefault("metadata", {})
        if persisted and not meta.get("uid"):
            meta["uid"] = f"uid-{next(self._uid)}"
        self._bump(document)
        self.targets[(meta.get("namespace", ""), meta["name"])] = document
        return Target.from_dict(document)

    def touch_target(self, namespace: str, name: str, **annotations: str) -> None:
        document = self.targets[(namespace, name)]
        if annotations:
            document["metadata"].setdefault("annotations", {}).update(annotations)
        self._bump(document)

    def target_doc(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.targets[(namespace, name)]

    def add_class(
        self, name: str, variables: Tuple[str, ...] = (), namespace: Optional[str] = "default"
    ) -> None:
        metadata: Dict[str, Any] = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        self.classes[(namespace, name)] = {
            "apiVersion": "cluster.x-k8s.io/v1beta1",
            "kind": "ClusterClass",
            "metadata": metadata,
            "spec": {"variables": [{"name": v, "required": False} for v in variables]},
        }

    def add_pool(self, name: str, class_value: str, role_value: str = "control-plane") -> None:
        self.pools.append(
            {
                "apiVersion": "ipam.cluster.x-k8s.io/v1alpha2",
                "kind": "GlobalInClusterIPPool",
                "metadata": {
                    "name": name,
                    "labels": {
                        f"{DOMAIN}/cluster-class": class_value,
                        f"{DOMAIN}/role": role_value,
                    },
                },
                "spec": {"addresses": ["10.0.0.10-10.0.0.20"], "prefix": 24},
            }
        )

    def add_claim(self, document: Dict[str, Any]) -> None:
        document = copy.deepcopy(document)
        meta = document["metadata"]
        meta.setdefault("uid", f"claim-uid-{next(self._uid)}")
        meta.setdefault("creationTimestamp", self.now.isoformat().replace("+00:00", "Z"))
        self._bump(document)
        self.claims[(meta["namespace"], meta["name"])] = document

    def claim_doc(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.claims[(namespace, name)]

    def bind(self, namespace: str, claim_name: str, address: str, record: str = "") -> None:
        """Act as the pool manager: write the record and the claim status."""

        record = record or claim_name
        self.records[(namespace, record)] = {
            "apiVersion": "ipam.cluster.x-k8s.io/v1beta1",
            "kind": "IPAddress",
            "metadata": {"name": record, "namespace": namespace},
            "spec": {"address": address, "prefix": 24},
        }
        claim = self.claims[(namespace, claim_name)]
        claim["status"] = {"addressRef": {"name": record}}
        self._bump(claim)

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    # ObjectStore -------------------------------------------------------------
    def get_target(self, namespace: str, name: str) -> Target:
        self._enter("get_target")
        try:
            return Target.from_dict(copy.deepcopy(self.targets[(namespace, name)]))
        except KeyError:
            raise NotFoundError(f"Cluster {namespace}/{name} not found") from None

    def list_targets(self) -> TargetList:
        self._enter("list_targets")
        return TargetList(
            [Target.from_dict(copy.deepcopy(doc)) for doc in self.targets.values()],
            self.list_version,
        )

    def watch_targets(
        self, resource_version: str, timeout_seconds: int
    ) -> Iterator[Tuple[str, Target]]:
        """Replay ``watch_events``: ``(type, document)`` pairs or exceptions."""

        self._enter("watch_targets")
        self.watches.append((resource_version, timeout_seconds))
        events, self.watch_events = self.watch_events, []
        for event in events:
            if isinstance(event, Exception):
                raise event
            event_type, document = event
            yield event_type, Target.from_dict(copy.deepcopy(document))

    def patch_target(self, namespace: str, name: str, patch: Dict[str, Any]) -> Target:
        self._enter("patch_target")
        try:
            current = self.targets[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"Cluster {namespace}/{name} not found") from None
        expected = (patch.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"Cluster {namespace}/{name} was modified")
        updated = apply_merge_patch(current, patch)
        self._bump(updated)
        self.targets[(namespace, name)] = updated
        return Target.from_dict(copy.deepcopy(updated))

    def get_resource_class(self, name: str, namespace: Optional[str] = None) -> ResourceClass:
        self._enter("get_resource_class")
        try:
            return ResourceClass.from_dict(self.classes[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"ClusterClass {name} not found") from None

    def list_pools(self) -> List[AddressPool]:
        self._enter("list_pools")
        return [AddressPool.from_dict(doc) for doc in self.pools]

    def get_claim(self, namespace: str, name: str) -> AddressClaim:
        self._enter("get_claim")
        try:
            return AddressClaim.from_dict(copy.deepcopy(self.claims[(namespace, name)]))
        except KeyError:
            raise NotFoundError(f"IPAddressClaim {namespace}/{name} not found") from None

    def create_claim(self, claim: AddressClaim) -> AddressClaim:
        self._enter("create_claim")
        key = (claim.meta.namespace, claim.meta.name)
        if key in self.claims:
            raise AlreadyExistsError(f"IPAddressClaim {claim.meta.key} already exists")
        self.add_claim(claim.to_dict())
        return AddressClaim.from_dict(copy.deepcopy(self.claims[key]))

    def update_claim(self, claim: AddressClaim) -> AddressClaim:
        self._enter("update_claim")
        key = (claim.meta.namespace, claim.meta.name)
        try:
            current = self.claims[key]
        except KeyError:
            raise NotFoundError(f"IPAddressClaim {claim.meta.key} not found") from None
        if claim.meta.resource_version != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"IPAddressClaim {claim.meta.key} was modified")
        updated = claim.to_dict()
        if "status" in current:
            updated["status"] = copy.deepcopy(current["status"])
        self._bump(updated)
        self.claims[key] = updated
        return AddressClaim.from_dict(copy.deepcopy(updated))

    def get_record(self, namespace: str, name: str) -> AddressRecord:
        self._enter("get_record")
        try:
            return AddressRecord.from_dict(self.records[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"IPAddress {namespace}/{name} not found") from None


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def config() -> AllocatorConfig:
    return AllocatorConfig(roles=(CONTROL_PLANE,))


@pytest.fixture
def metrics() -> AllocatorMetrics:
    return AllocatorMetrics()
