"""Typed views over the Cluster API and IPAM documents the allocator touches.

The orchestration API hands us nested JSON documents.  Rather than poking at
``obj["status"]["addressRef"]["name"]`` all over the code base, every object
we read is parsed into one of the dataclasses below.  Each class keeps the raw
document it was built from so that :meth:`to_dict` can overlay the typed
fields on top of it; fields we do not model survive a round-trip untouched.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

CLUSTER_API_GROUP = "cluster.x-k8s.io"
CLUSTER_API_VERSION = "v1beta1"
CLUSTER_KIND = "Cluster"
CLUSTER_CLASS_KIND = "ClusterClass"

IPAM_GROUP = "ipam.cluster.x-k8s.io"
IPAM_VERSION = "v1beta1"  # IPAddressClaim and IPAddress
POOL_VERSION = "v1alpha2"  # GlobalInClusterIPPool
POOL_KIND = "GlobalInClusterIPPool"
CLAIM_KIND = "IPAddressClaim"
RECORD_KIND = "IPAddress"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"


def _get(document: Mapping[str, Any], *path: str, default: Any = None) -> Any:
    """Walk ``path`` through nested mappings, returning ``default`` on a miss."""

    node: Any = document
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return default
        node = node[key]
    return node


def _set(document: Dict[str, Any], path: List[str], value: Any) -> None:
    node = document
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[path[-1]] = value


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OwnerReference":
        return cls(
            api_version=str(data.get("apiVersion", "")),
            kind=str(data.get("kind", "")),
            name=str(data.get("name", "")),
            uid=str(data.get("uid", "")),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class ObjectMeta:
    """The subset of ``metadata`` the allocator reads or writes."""

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    creation_timestamp: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ObjectMeta":
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "") or ""),
            uid=str(data.get("uid", "") or ""),
            resource_version=str(data.get("resourceVersion", "") or ""),
            creation_timestamp=data.get("creationTimestamp"),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            owner_references=[
                OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            meta["namespace"] = self.namespace
        if self.uid:
            meta["uid"] = self.uid
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        if self.creation_timestamp:
            meta["creationTimestamp"] = self.creation_timestamp
        if self.labels:
            meta["labels"] = dict(self.labels)
        if self.annotations:
            meta["annotations"] = dict(self.annotations)
        if self.owner_references:
            meta["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        return meta

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def owned_by(self, uid: str) -> bool:
        return any(ref.uid == uid for ref in self.owner_references)


@dataclass
class Endpoint:
    host: str = ""
    port: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port}


@dataclass
class Variable:
    """A topology variable.  ``value`` is the decoded JSON value."""

    name: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass
class Target:
    """A ``Cluster`` that may need a control-plane or ingress endpoint."""

    meta: ObjectMeta
    class_name: str = ""
    endpoint: Endpoint = field(default_factory=Endpoint)
    variables: List[Variable] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Target":
        endpoint = _get(data, "spec", "controlPlaneEndpoint", default={}) or {}
        variables = _get(data, "spec", "topology", "variables", default=[]) or []
        return cls(
            meta=ObjectMeta.from_dict(data.get("metadata") or {}),
            class_name=str(_get(data, "spec", "topology", "class", default="") or ""),
            endpoint=Endpoint(
                host=str(endpoint.get("host", "") or ""),
                port=int(endpoint.get("port", 0) or 0),
            ),
            variables=[
                Variable(name=str(v.get("name", "")), value=v.get("value"))
                for v in variables
            ],
            raw=copy.deepcopy(dict(data)),
        )

    def to_dict(self) -> Dict[str, Any]:
        document = copy.deepcopy(self.raw)
        document.setdefault("apiVersion", f"{CLUSTER_API_GROUP}/{CLUSTER_API_VERSION}")
        document.setdefault("kind", CLUSTER_KIND)
        metadata = dict(document.get("metadata") or {})
        metadata.update(self.meta.to_dict())
        for key, present in (
            ("labels", self.meta.labels),
            ("annotations", self.meta.annotations),
            ("ownerReferences", self.meta.owner_references),
        ):
            if not present:
                metadata.pop(key, None)
        document["metadata"] = metadata

        if self.endpoint.host or self.endpoint.port or _get(
            document, "spec", "controlPlaneEndpoint"
        ) is not None:
            _set(document, ["spec", "controlPlaneEndpoint"], self.endpoint.to_dict())
        if self.class_name:
            _set(document, ["spec", "topology", "class"], self.class_name)
        if self.variables or _get(document, "spec", "topology", "variables") is not None:
            _set(
                document,
                ["spec", "topology", "variables"],
                [v.to_dict() for v in self.variables],
            )
        return document

    @property
    def has_topology(self) -> bool:
        return bool(self.class_name)

    def variable(self, name: str) -> Optional[Variable]:
        return next((v for v in self.variables if v.name == name), None)

    def upsert_variable(self, name: str, value: Any) -> None:
        """Replace ``name`` in place when present, append it otherwise."""

        existing = self.variable(name)
        if existing is not None:
            existing.value = value
        else:
            self.variables.append(Variable(name=name, value=value))

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=f"{CLUSTER_API_GROUP}/{CLUSTER_API_VERSION}",
            kind=CLUSTER_KIND,
            name=self.meta.name,
            uid=self.meta.uid,
        )


@dataclass
class TargetList:
    """A cluster listing and the resourceVersion to start a watch from."""

    items: List[Target] = field(default_factory=list)
    resource_version: str = ""


@dataclass(frozen=True)
class ResourceClass:
    """A ``ClusterClass``; only its declared variable names matter to us."""

    name: str
    namespace: str = ""
    variable_names: tuple = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceClass":
        meta = data.get("metadata") or {}
        variables = _get(data, "spec", "variables", default=[]) or []
        return cls(
            name=str(meta.get("name", "")),
            namespace=str(meta.get("namespace", "") or ""),
            variable_names=tuple(str(v.get("name", "")) for v in variables),
        )

    def declares(self, variable: str) -> bool:
        return variable in self.variable_names


@dataclass(frozen=True)
class AddressPool:
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    addresses: tuple = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AddressPool":
        meta = data.get("metadata") or {}
        return cls(
            name=str(meta.get("name", "")),
            labels=dict(meta.get("labels") or {}),
            addresses=tuple(_get(data, "spec", "addresses", default=[]) or []),
        )


@dataclass(frozen=True)
class PoolRef:
    name: str
    kind: str = POOL_KIND
    api_group: str = IPAM_GROUP

    def to_dict(self) -> Dict[str, str]:
        return {"apiGroup": self.api_group, "kind": self.kind, "name": self.name}


@dataclass
class AddressClaim:
    meta: ObjectMeta
    pool_ref: Optional[PoolRef] = None
    bound_record: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AddressClaim":
        pool = _get(data, "spec", "poolRef")
        pool_ref = None
        if isinstance(pool, Mapping) and pool.get("name"):
            pool_ref = PoolRef(
                name=str(pool["name"]),
                kind=str(pool.get("kind", POOL_KIND)),
                api_group=str(pool.get("apiGroup", IPAM_GROUP)),
            )
        return cls(
            meta=ObjectMeta.from_dict(data.get("metadata") or {}),
            pool_ref=pool_ref,
            bound_record=str(_get(data, "status", "addressRef", "name", default="") or ""),
            raw=copy.deepcopy(dict(data)),
        )

    def to_dict(self) -> Dict[str, Any]:
        document = copy.deepcopy(self.raw)
        document["apiVersion"] = f"{IPAM_GROUP}/{IPAM_VERSION}"
        document["kind"] = CLAIM_KIND
        document["metadata"] = self.meta.to_dict()
        if self.pool_ref is not None:
            _set(document, ["spec", "poolRef"], self.pool_ref.to_dict())
        return document

    @property
    def owned(self) -> bool:
        return bool(self.meta.owner_references)


@dataclass(frozen=True)
class AddressRecord:
    name: str
    namespace: str = ""
    address: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AddressRecord":
        meta = data.get("metadata") or {}
        return cls(
            name=str(meta.get("name", "")),
            namespace=str(meta.get("namespace", "") or ""),
            address=str(_get(data, "spec", "address", default="") or ""),
        )


def merge_patch(before: Any, after: Any) -> Any:
    """Return the RFC 7386 merge patch turning ``before`` into ``after``.

    Lists are treated as opaque values and replaced wholesale, which is how
    the API server applies ``application/merge-patch+json``.
    """

    if not isinstance(before, Mapping) or not isinstance(after, Mapping):
        return copy.deepcopy(after)

    patch: Dict[str, Any] = {}
    for key in before:
        if key not in after:
            patch[key] = None
    for key, value in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(value)
        elif before[key] != value:
            if isinstance(before[key], Mapping) and isinstance(value, Mapping):
                patch[key] = merge_patch(before[key], value)
            else:
                patch[key] = copy.deepcopy(value)
    return patch
