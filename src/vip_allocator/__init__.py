"""Automatic control-plane and ingress VIPs for Cluster API clusters.

Addresses come from ``GlobalInClusterIPPool`` objects selected by labels; the
IPAM provider does the actual allocation in response to the
``IPAddressClaim`` objects we create.  This package covers:

* resolving the pool for a (cluster class, role) pair, where pool labels may
  list several comma-separated values;
* creating exactly one deterministically named claim per (cluster, role);
* following a claim to its bound ``IPAddress``;
* writing the address into ``spec.controlPlaneEndpoint`` and, when the
  ClusterClass declares it, the ``clusterVip`` topology variable;
* adopting claims that were created before their cluster existed.

Two entry points share these pieces: :class:`ClusterReconciler` runs after
the cluster is stored and never blocks, :class:`HookAllocator` answers
runtime-extension hooks before the cluster is stored and polls until the
address is bound or its deadline passes.

Installing the address on a network interface is left to a VRRP/ARP agent
such as kube-vip; nothing here allocates addresses by itself.
"""

from .config import AllocatorConfig, Role  # noqa: F401
from .hook import HookAllocator, HookResponse  # noqa: F401
from .reconciler import ClusterReconciler, ReconcileResult, RoleState  # noqa: F401

__all__ = [
    "AllocatorConfig",
    "ClusterReconciler",
    "HookAllocator",
    "HookResponse",
    "ReconcileResult",
    "Role",
    "RoleState",
]
