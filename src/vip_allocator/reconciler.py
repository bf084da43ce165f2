"""Background (post-create) VIP reconciler.

Each configured role is driven through ``NoClaim -> ClaimPending -> Bound``
independently on every call.  Nothing is kept between calls: the claim in the
API server is the only state, so a reconcile interrupted at any point can be
resumed by the next one.  The reconciler never blocks on the pool manager;
an unbound claim turns into a "requeue after" result instead.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Event
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .addresses import AddressResolver, pending_age
from .claims import ClaimManager
from .config import AllocatorConfig, Role, Sink
from .errors import AllocationError, NoMatchingPoolError
from .metrics import AllocatorMetrics
from .model import AddressClaim, Target
from .ownership import OwnershipReconciler
from .patcher import EndpointPatcher
from .store import ConflictError, NotFoundError, ObjectStore, StoreError, retry_on_conflict

LOG = logging.getLogger(__name__)


class RoleState(Enum):
    DISABLED = "disabled"
    SKIPPED = "skipped"
    PENDING = "pending"
    BOUND = "bound"
    CONFIG_ERROR = "config-error"
    ERROR = "error"


@dataclass
class RoleOutcome:
    role: str
    state: RoleState
    address: str = ""
    error: Optional[Exception] = None


@dataclass
class ReconcileResult:
    """What the dispatcher should do next with this cluster.

    ``requeue_after`` is None for "done until the next event".  ``error`` is
    set for configuration errors (no requeue) and transient failures
    (requeue after the fixed delay).
    """

    requeue_after: Optional[float] = None
    error: Optional[Exception] = None
    roles: Dict[str, RoleOutcome] = field(default_factory=dict)

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None

    def state(self, role: str) -> Optional[RoleState]:
        outcome = self.roles.get(role)
        return outcome.state if outcome else None

    @property
    def retry_roles(self) -> Optional[FrozenSet[str]]:
        """Roles a requeued run has to revisit; None means every role."""

        retry = frozenset(
            o.role for o in self.roles.values() if o.state in (RoleState.PENDING, RoleState.ERROR)
        )
        return retry or None


class ClusterReconciler:
    """Allocate VIPs for clusters that reach the API server without one.

    This is the fallback for clusters created while the hook was disabled or
    failing, and the place where claims created by the hook get adopted.
    """

    def __init__(
        self,
        store: ObjectStore,
        config: AllocatorConfig,
        metrics: Optional[AllocatorMetrics] = None,
        *,
        claims: Optional[ClaimManager] = None,
        resolver: Optional[AddressResolver] = None,
        patcher: Optional[EndpointPatcher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._metrics = metrics or AllocatorMetrics()
        self._claims = claims or ClaimManager(
            store, config, ownership=OwnershipReconciler(store, self._metrics)
        )
        self._resolver = resolver or AddressResolver(store)
        self._patcher = patcher or EndpointPatcher(store, config)
        self._now = now

    @property
    def metrics(self) -> AllocatorMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def reconcile(
        self,
        namespace: str,
        name: str,
        stop_event: Optional[Event] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> ReconcileResult:
        """Drive every configured role, or only ``roles`` when given."""

        started = time.monotonic()
        try:
            target = self._store.get_target(namespace, name)
        except NotFoundError:
            LOG.debug("cluster %s/%s is gone, nothing to do", namespace, name)
            self.forget(namespace, name)
            return ReconcileResult()
        except StoreError as exc:
            LOG.error("fetch cluster %s/%s: %s", namespace, name, exc)
            return ReconcileResult(
                requeue_after=self._config.requeue_delay,
                error=AllocationError(f"fetch cluster: {exc}", target=f"{namespace}/{name}"),
            )

        if not target.has_topology:
            LOG.debug("cluster %s has no topology class, skipping", target.meta.key)
            self.forget(namespace, name)
            return ReconcileResult()

        wanted = None if roles is None else set(roles)
        outcomes: List[RoleOutcome] = []
        for role in self._config.roles:
            if wanted is not None and role.name not in wanted:
                continue
            if stop_event is not None and stop_event.is_set():
                LOG.debug("reconcile of %s cancelled", target.meta.key)
                return ReconcileResult(requeue_after=self._config.requeue_delay)
            outcome, target = self.reconcile_role(target, role)
            outcomes.append(outcome)

        result = self._aggregate(outcomes)
        self._metrics.record_reconcile(
            target.class_name, self._result_label(result), time.monotonic() - started
        )
        return result

    def forget(self, namespace: str, name: str) -> None:
        """Drop pending-claim bookkeeping for a cluster that no longer exists."""

        for role in self._config.roles:
            self._metrics.claim_settled(f"{namespace}/{role.claim_name(name)}")

    # ------------------------------------------------------------------
    # Per-role state machine
    # ------------------------------------------------------------------
    def disabled(self, target: Target, role: Role) -> bool:
        value = target.meta.annotations.get(self._config.disable_annotation(role), "")
        return value.strip().lower() == "false"

    def overridden(self, target: Target, role: Role) -> bool:
        if role.sink is Sink.ENDPOINT:
            return bool(target.endpoint.host)
        return bool(target.meta.annotations.get(self._config.value_annotation(role)))

    def reconcile_role(self, target: Target, role: Role) -> Tuple[RoleOutcome, Target]:
        key = target.meta.key
        claim_key = f"{target.meta.namespace}/{role.claim_name(target.meta.name)}"
        if self.disabled(target, role):
            LOG.debug("%s VIP disabled via annotation on %s", role.name, key)
            self._metrics.claim_settled(claim_key)
            return RoleOutcome(role.name, RoleState.DISABLED), target

        if self.overridden(target, role):
            LOG.debug("%s VIP already set on %s, only checking claim ownership", role.name, key)
            try:
                self._claims.ownership.adopt_existing(
                    role.claim_name(target.meta.name), target, role.name
                )
            except StoreError as exc:
                LOG.info("could not adopt %s claim of %s: %s", role.name, key, exc)
            self._metrics.claim_settled(claim_key)
            return RoleOutcome(role.name, RoleState.SKIPPED), target

        started = time.monotonic()
        try:
            claim = self._claims.ensure_claim(target, role)
        except NoMatchingPoolError as exc:
            LOG.warning("cannot allocate %s VIP for %s: %s", role.name, key, exc)
            self._metrics.record_error(role.name, target.class_name, "no_matching_pool")
            return RoleOutcome(role.name, RoleState.CONFIG_ERROR, error=exc), target
        except AllocationError as exc:
            LOG.error("ensure %s IPAddressClaim for %s: %s", role.name, key, exc)
            self._metrics.record_error(role.name, target.class_name, "claim_creation_failed")
            return RoleOutcome(role.name, RoleState.ERROR, error=exc), target

        try:
            resolution = self._resolver.resolve(target.meta.namespace, claim)
        except AllocationError as exc:
            LOG.error("resolve %s IPAddress for %s: %s", role.name, key, exc)
            self._metrics.record_error(role.name, target.class_name, "ip_resolution_failed")
            return RoleOutcome(role.name, RoleState.ERROR, error=exc), target

        if not resolution.ready:
            self._track_pending(claim, role)
            LOG.info("%s claim %s not ready, will requeue", role.name, claim.meta.key)
            return RoleOutcome(role.name, RoleState.PENDING), target
        self._metrics.claim_settled(claim.meta.key)

        try:
            target, applied = self._patch(target, role, resolution.address)
        except (StoreError, AllocationError) as exc:
            LOG.error("patch %s VIP into %s: %s", role.name, key, exc)
            self._metrics.record_error(role.name, target.class_name, "cluster_patch_failed")
            return RoleOutcome(role.name, RoleState.ERROR, error=exc), target

        if not applied:
            return RoleOutcome(role.name, RoleState.SKIPPED), target

        self._metrics.record_allocation(
            role.name, target.class_name, "reconciler", time.monotonic() - started
        )
        return RoleOutcome(role.name, RoleState.BOUND, address=resolution.address), target

    def _patch(self, target: Target, role: Role, address: str) -> Tuple[Target, bool]:
        """Write ``address``; False when the value was set concurrently instead."""

        current: Optional[Target] = target

        def _attempt() -> Tuple[Target, bool]:
            nonlocal current
            if current is None:
                current = self._store.get_target(target.meta.namespace, target.meta.name)
                if self.overridden(current, role):
                    LOG.info(
                        "%s VIP of %s was set concurrently, leaving it alone",
                        role.name,
                        target.meta.key,
                    )
                    return current, False
            try:
                return self._patcher.apply(current, address, role), True
            except ConflictError:
                current = None
                raise

        return retry_on_conflict(_attempt)

    def _track_pending(self, claim: AddressClaim, role: Role) -> None:
        stale = False
        limit = self._config.max_pending_age
        if limit is not None:
            age = pending_age(claim, self._now() if self._now else None)
            if age is not None and age > limit:
                stale = True
                LOG.warning(
                    "IPAddressClaim %s pending for %.0fs (limit %.0fs); check the pool manager",
                    claim.meta.key,
                    age,
                    limit,
                )
        self._metrics.claim_pending(claim.meta.key, role.name, claim.meta.namespace, stale)

    # ------------------------------------------------------------------
    # Result folding
    # ------------------------------------------------------------------
    def _aggregate(self, outcomes: List[RoleOutcome]) -> ReconcileResult:
        roles = {o.role: o for o in outcomes}
        errors = [o.error for o in outcomes if o.state is RoleState.ERROR]
        config_errors = [o.error for o in outcomes if o.state is RoleState.CONFIG_ERROR]
        pending = any(o.state is RoleState.PENDING for o in outcomes)

        result = ReconcileResult(roles=roles)
        if errors or pending:
            result.requeue_after = self._config.requeue_delay
        if errors:
            result.error = errors[0]
        elif config_errors:
            result.error = config_errors[0]
        return result

    @staticmethod
    def _result_label(result: ReconcileResult) -> str:
        states = {o.state for o in result.roles.values()}
        if RoleState.ERROR in states:
            return "error"
        if RoleState.PENDING in states:
            return "requeued"
        if RoleState.CONFIG_ERROR in states:
            return "config_error"
        if RoleState.BOUND in states:
            return "success"
        return "skipped"
