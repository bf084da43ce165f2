"""Prometheus instrumentation for the allocator.

Collectors live on a registry owned by an :class:`AllocatorMetrics` instance
rather than on the process-wide default registry, so several reconcilers (or
tests) can coexist without tripping over duplicate registrations.
"""

from __future__ import annotations

from threading import Lock
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

PREFIX = "capi_vip_allocator"


class AllocatorMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.allocations = Counter(
            f"{PREFIX}_allocations_total",
            "Total number of VIP allocations by role",
            ["role", "cluster_class", "path"],
            registry=self.registry,
        )
        self.allocation_errors = Counter(
            f"{PREFIX}_allocation_errors_total",
            "Total number of VIP allocation errors",
            ["role", "cluster_class", "reason"],
            registry=self.registry,
        )
        self.allocation_duration = Histogram(
            f"{PREFIX}_allocation_duration_seconds",
            "Duration of VIP allocation operations in seconds",
            ["role", "cluster_class"],
            registry=self.registry,
        )
        self.reconciles = Counter(
            f"{PREFIX}_reconcile_total",
            "Total number of cluster reconcile operations",
            ["cluster_class", "result"],
            registry=self.registry,
        )
        self.reconcile_duration = Histogram(
            f"{PREFIX}_reconcile_duration_seconds",
            "Duration of cluster reconcile operations in seconds",
            ["cluster_class"],
            registry=self.registry,
        )
        self.claims_pending = Gauge(
            f"{PREFIX}_claims_pending",
            "Number of IPAddressClaims waiting for IP allocation",
            ["role", "namespace"],
            registry=self.registry,
        )
        self.claims_stale = Gauge(
            f"{PREFIX}_claims_stale",
            "Number of IPAddressClaims pending longer than the configured age",
            ["role", "namespace"],
            registry=self.registry,
        )
        self.adoptions = Counter(
            f"{PREFIX}_claim_adoptions_total",
            "IPAddressClaims adopted after being created without an owner",
            ["role"],
            registry=self.registry,
        )
        # claim key -> (role, namespace, stale)
        self._pending: Dict[str, tuple] = {}
        self._lock = Lock()

    def record_allocation(self, role: str, cluster_class: str, path: str, seconds: float) -> None:
        self.allocations.labels(role, cluster_class, path).inc()
        self.allocation_duration.labels(role, cluster_class).observe(seconds)

    def record_error(self, role: str, cluster_class: str, reason: str) -> None:
        self.allocation_errors.labels(role, cluster_class, reason).inc()

    def record_reconcile(self, cluster_class: str, result: str, seconds: float) -> None:
        self.reconciles.labels(cluster_class, result).inc()
        self.reconcile_duration.labels(cluster_class).observe(seconds)

    def record_adoption(self, role: str) -> None:
        self.adoptions.labels(role).inc()

    def claim_pending(self, key: str, role: str, namespace: str, stale: bool = False) -> None:
        with self._lock:
            previous = self._pending.get(key)
            if previous == (role, namespace, stale):
                return
            if previous is not None:
                self._drop(previous)
            self._pending[key] = (role, namespace, stale)
            self.claims_pending.labels(role, namespace).inc()
            if stale:
                self.claims_stale.labels(role, namespace).inc()

    def claim_settled(self, key: str) -> None:
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous is not None:
                self._drop(previous)

    def _drop(self, entry: tuple) -> None:
        role, namespace, stale = entry
        self.claims_pending.labels(role, namespace).dec()
        if stale:
            self.claims_stale.labels(role, namespace).dec()

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self.registry.get_sample_value(name, labels or {})
