"""Synchronous, pre-create VIP allocation for Cluster API runtime hooks.

The topology controller calls ``GeneratePatches`` before a ``Cluster`` built
from a ClusterClass is written, so this path can fill in
``spec.controlPlaneEndpoint`` before anything else sees the cluster.  It has
to finish within the hook timeout: the claim is polled with a fixed interval
for at most ``poll_timeout`` seconds, which the configuration guarantees is
shorter than ``hook_timeout``.

Claims created here have no owner reference because the cluster has no UID
yet; :class:`~vip_allocator.reconciler.ClusterReconciler` adopts them once
the cluster exists.
"""

from __future__ import annotations

import base64
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .addresses import AddressResolver, Resolution
from .claims import ClaimManager
from .config import AllocatorConfig, Role, Sink
from .errors import AllocationError, ConfigurationError
from .metrics import AllocatorMetrics
from .model import CLUSTER_KIND, Target
from .ownership import OwnershipReconciler
from .patcher import EndpointPatcher
from .store import ObjectStore

LOG = logging.getLogger(__name__)

HOOKS_API_VERSION = "hooks.runtime.cluster.x-k8s.io/v1alpha1"
INFRASTRUCTURE_GROUP = "infrastructure.cluster.x-k8s.io"

STATUS_SUCCESS = "Success"
STATUS_FAILURE = "Failure"


@dataclass
class PatchItem:
    uid: str
    operations: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        raw = json.dumps(self.operations).encode("utf-8")
        return {
            "uid": self.uid,
            "patchType": "JSONPatch",
            "patch": base64.b64encode(raw).decode("ascii"),
        }


@dataclass
class HookResponse:
    kind: str
    status: str = STATUS_SUCCESS
    message: str = ""
    items: List[PatchItem] = field(default_factory=list)
    retry_after_seconds: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def fail(self, message: str, retry_after: int = 0) -> "HookResponse":
        self.status = STATUS_FAILURE
        self.message = message
        self.items = []
        self.retry_after_seconds = retry_after
        return self

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "apiVersion": HOOKS_API_VERSION,
            "kind": self.kind,
            "status": self.status,
        }
        if self.message:
            body["message"] = self.message
        if self.items:
            body["items"] = [item.to_dict() for item in self.items]
        if self.retry_after_seconds:
            body["retryAfterSeconds"] = self.retry_after_seconds
        return body


def is_infrastructure_cluster(document: Mapping[str, Any]) -> bool:
    """InfrastructureCluster kinds (``ProxmoxCluster``, ``AWSCluster``, ...)."""

    api_version = str(document.get("apiVersion", ""))
    kind = str(document.get("kind", ""))
    if not api_version or kind == CLUSTER_KIND or not kind.endswith("Cluster"):
        return False
    group = api_version.split("/", 1)[0] if "/" in api_version else ""
    return group == INFRASTRUCTURE_GROUP or group.startswith("infrastructure")


def _variable_value(variables: Iterable[Mapping[str, Any]], name: str) -> str:
    for variable in variables:
        if variable.get("name") == name and isinstance(variable.get("value"), str):
            return variable["value"]
    return ""


class HookAllocator:
    def __init__(
        self,
        store: ObjectStore,
        config: AllocatorConfig,
        metrics: Optional[AllocatorMetrics] = None,
        *,
        extension_name: str = "vip-allocator",
        claims: Optional[ClaimManager] = None,
        resolver: Optional[AddressResolver] = None,
        patcher: Optional[EndpointPatcher] = None,
    ) -> None:
        self._config = config
        self._metrics = metrics or AllocatorMetrics()
        self._claims = claims or ClaimManager(
            store, config, ownership=OwnershipReconciler(store, self._metrics)
        )
        self._resolver = resolver or AddressResolver(store)
        self._patcher = patcher or EndpointPatcher(store, config)
        self.extension_name = extension_name

    @property
    def roles(self) -> List[Role]:
        return [r for r in self._config.roles if r.sink is Sink.ENDPOINT]

    @property
    def retry_after(self) -> int:
        return int(math.ceil(self._config.requeue_delay))

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def allocate(self, target: Target, role: Role) -> Resolution:
        """Ensure the claim and wait for its address within ``poll_timeout``.

        Raises :class:`ConfigurationError` when no pool matches and
        :class:`AllocationError` on backend failures; a timeout is returned
        as a TIMED_OUT resolution.
        """

        started = time.monotonic()
        claim = self._claims.ensure_claim(target, role)
        resolution = self._resolver.wait_for_address(
            target.meta.namespace,
            claim.meta.name,
            interval=self._config.poll_interval,
            timeout=self._config.poll_timeout,
            claim=claim,
        )
        if resolution.ready:
            self._metrics.record_allocation(
                role.name, target.class_name, "hook", time.monotonic() - started
            )
        else:
            self._metrics.record_error(role.name, target.class_name, "ip_allocation_timeout")
        return resolution

    def _allocate_or_fail(
        self, target: Target, role: Role, response: HookResponse
    ) -> Optional[Resolution]:
        """Run :meth:`allocate`; on error fail ``response`` and return None."""

        try:
            resolution = self.allocate(target, role)
        except ConfigurationError as exc:
            LOG.warning("cannot allocate VIP for cluster %s: %s", target.meta.key, exc)
            self._metrics.record_error(role.name, target.class_name, "no_matching_pool")
            response.fail(f"failed to allocate IP for cluster {target.meta.name}: {exc}")
            return None
        except AllocationError as exc:
            LOG.error("failed to preallocate IP for cluster %s: %s", target.meta.key, exc)
            self._metrics.record_error(role.name, target.class_name, "claim_creation_failed")
            response.fail(f"failed to allocate IP for cluster {target.meta.name}: {exc}")
            return None

        return resolution

    def _timeout_message(self, target: Target) -> str:
        return (
            f"timeout waiting for IP allocation for cluster {target.meta.name} "
            f"after {self._config.poll_timeout:g}s"
        )

    # ------------------------------------------------------------------
    # GeneratePatches
    # ------------------------------------------------------------------
    def generate_patches(self, request: Mapping[str, Any]) -> HookResponse:
        response = HookResponse(kind="GeneratePatchesResponse")
        items = list(request.get("items") or [])
        LOG.info("GeneratePatches hook called with %d items", len(items))

        ports: Dict[str, int] = {}
        addresses: Dict[str, str] = {}

        for item in items:
            document = item.get("object") or {}
            if document.get("kind") != CLUSTER_KIND:
                continue
            target = Target.from_dict(document)
            if not target.has_topology:
                LOG.debug("cluster %s has no topology, skipping", target.meta.key)
                continue

            port = target.endpoint.port or self._config.default_port
            if target.endpoint.host:
                LOG.info(
                    "controlPlaneEndpoint of %s already set to %s",
                    target.meta.key,
                    target.endpoint.host,
                )
                addresses[target.meta.name] = target.endpoint.host
                ports[target.meta.name] = port
                continue

            variables = list(item.get("variables") or []) + list(request.get("variables") or [])
            existing = _variable_value(variables, self._config.variable_name)
            if existing:
                LOG.info(
                    "%s variable already set on %s: %s",
                    self._config.variable_name,
                    target.meta.key,
                    existing,
                )
                response.items.append(
                    PatchItem(item.get("uid", ""), [self._endpoint_op(existing, port)])
                )
                addresses[target.meta.name] = existing
                ports[target.meta.name] = port
                continue

            for role in self.roles:
                resolution = self._allocate_or_fail(target, role, response)
                if resolution is None:
                    return response
                if not resolution.ready:
                    return response.fail(
                        self._timeout_message(target), retry_after=self.retry_after
                    )
                address = resolution.address
                try:
                    operations = self.cluster_operations(target, address)
                except AllocationError as exc:
                    return response.fail(f"failed to read ClusterClass {target.class_name}: {exc}")
                response.items.append(PatchItem(item.get("uid", ""), operations))
                addresses[target.meta.name] = address
                ports[target.meta.name] = port
                LOG.info("VIP %s allocated for cluster %s", address, target.meta.key)

        for item in items:
            document = item.get("object") or {}
            if not is_infrastructure_cluster(document):
                continue
            name = str((document.get("metadata") or {}).get("name", ""))
            if name not in addresses:
                continue
            if "controlPlaneEndpoint" not in (document.get("spec") or {}):
                continue
            LOG.info("patching %s %s with VIP %s", document.get("kind"), name, addresses[name])
            response.items.append(
                PatchItem(item.get("uid", ""), [self._endpoint_op(addresses[name], ports[name])])
            )
        return response

    def cluster_operations(self, target: Target, address: str) -> List[Dict[str, Any]]:
        """JSON Patch operations writing ``address`` into a Cluster document."""

        port = target.endpoint.port or self._config.default_port
        operations = [self._endpoint_op(address, port)]
        if not self._patcher.injects_variable(target):
            return operations

        name = self._config.variable_name
        topology = (target.raw.get("spec") or {}).get("topology") or {}
        if not topology.get("variables"):
            operations.append(
                {
                    "op": "add",
                    "path": "/spec/topology/variables",
                    "value": [{"name": name, "value": address}],
                }
            )
            return operations
        for index, variable in enumerate(target.variables):
            if variable.name == name:
                operations.append(
                    {
                        "op": "replace",
                        "path": f"/spec/topology/variables/{index}/value",
                        "value": address,
                    }
                )
                return operations
        operations.append(
            {
                "op": "add",
                "path": "/spec/topology/variables/-",
                "value": {"name": name, "value": address},
            }
        )
        return operations

    @staticmethod
    def _endpoint_op(address: str, port: int) -> Dict[str, Any]:
        return {
            "op": "add",
            "path": "/spec/controlPlaneEndpoint",
            "value": {"host": address, "port": port},
        }

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------
    def before_cluster_create(self, request: Mapping[str, Any]) -> HookResponse:
        """Pre-allocate so the address is bound before the cluster is stored.

        An address that is not bound in time blocks creation the way lifecycle
        hooks do it: ``Success`` with ``retryAfterSeconds``.
        """

        response = HookResponse(kind="BeforeClusterCreateResponse")
        target = Target.from_dict(request.get("cluster") or {})
        LOG.info("BeforeClusterCreate hook called for %s", target.meta.key)
        if not target.has_topology or target.endpoint.host:
            return response
        for role in self.roles:
            resolution = self._allocate_or_fail(target, role, response)
            if resolution is None:
                return response
            if not resolution.ready:
                LOG.info("%s; asking for a retry", self._timeout_message(target))
                response.retry_after_seconds = self.retry_after
                return response
        return response

    def before_cluster_delete(self, request: Mapping[str, Any]) -> HookResponse:
        cluster = Target.from_dict(request.get("cluster") or {})
        LOG.info(
            "BeforeClusterDelete hook called for %s; claims are released via ownerReferences",
            cluster.meta.key,
        )
        return HookResponse(kind="BeforeClusterDeleteResponse")

    def after_cluster_upgrade(self, request: Mapping[str, Any]) -> HookResponse:
        return HookResponse(kind="AfterClusterUpgradeResponse")

    def discovery(self) -> Dict[str, Any]:
        def handler(suffix: str, hook: str, timeout: int, policy: str) -> Dict[str, Any]:
            return {
                "name": f"{self.extension_name}-{suffix}",
                "requestHook": {"apiVersion": HOOKS_API_VERSION, "hook": hook},
                "timeoutSeconds": timeout,
                "failurePolicy": policy,
            }

        return {
            "apiVersion": HOOKS_API_VERSION,
            "kind": "DiscoveryResponse",
            "status": STATUS_SUCCESS,
            "handlers": [
                handler(
                    "generate-patches",
                    "GeneratePatches",
                    int(self._config.hook_timeout),
                    "Fail",
                ),
                handler(
                    "before-create",
                    "BeforeClusterCreate",
                    int(self._config.hook_timeout),
                    "Ignore",
                ),
                handler("before-delete", "BeforeClusterDelete", 10, "Ignore"),
                handler("after-upgrade", "AfterClusterUpgrade", 10, "Ignore"),
            ],
        }
