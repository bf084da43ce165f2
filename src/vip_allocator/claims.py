"""Idempotent IPAddressClaim lifecycle.

Claims are named deterministically from the cluster and role, so the API
server's atomic create is enough to guarantee a single claim per
(cluster, role) even when the hook and the background reconciler race on the
same cluster.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import AllocatorConfig, Role
from .errors import AllocationError, NoMatchingPoolError
from .model import CLUSTER_NAME_LABEL, AddressClaim, ObjectMeta, PoolRef, Target
from .ownership import OwnershipReconciler
from .pools import PoolResolver
from .store import AlreadyExistsError, NotFoundError, ObjectStore, StoreError

LOG = logging.getLogger(__name__)


class ClaimManager:
    """Create or fetch the claim for a (cluster, role) pair."""

    def __init__(
        self,
        store: ObjectStore,
        config: AllocatorConfig,
        *,
        pools: Optional[PoolResolver] = None,
        ownership: Optional[OwnershipReconciler] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._pools = pools or PoolResolver(
            store, class_label=config.class_label, role_label=config.role_label
        )
        self._ownership = ownership or OwnershipReconciler(store)

    @property
    def ownership(self) -> OwnershipReconciler:
        return self._ownership

    def get_claim(self, target: Target, role: Role) -> Optional[AddressClaim]:
        name = role.claim_name(target.meta.name)
        try:
            return self._store.get_claim(target.meta.namespace, name)
        except NotFoundError:
            return None
        except StoreError as exc:
            raise AllocationError(
                f"get IPAddressClaim: {exc}",
                target=target.meta.key,
                role=role.name,
                claim=name,
            ) from exc

    def ensure_claim(self, target: Target, role: Role) -> AddressClaim:
        """Return the claim for ``target``/``role``, creating it when missing.

        An existing unowned claim is adopted when ``target`` has a UID.  A
        target without a UID (not yet persisted) gets an unowned claim that
        carries the cluster-name label for later adoption.

        Raises :class:`NoMatchingPoolError` when no pool serves the class and
        role, and :class:`AllocationError` for backend failures.
        """

        name = role.claim_name(target.meta.name)
        claim = self.get_claim(target, role)
        if claim is not None:
            return self._adopt(claim, target, role)

        try:
            pool = self._pools.find_pool(target.class_name, role.name)
        except StoreError as exc:
            raise AllocationError(
                f"list pools: {exc}", target=target.meta.key, role=role.name, claim=name
            ) from exc
        if pool is None:
            raise NoMatchingPoolError(target.class_name, role.name)

        claim = self.build_claim(target, role, pool.name)
        try:
            created = self._store.create_claim(claim)
        except AlreadyExistsError:
            LOG.debug("IPAddressClaim %s created concurrently, re-reading", claim.meta.key)
            existing = self.get_claim(target, role)
            if existing is None:
                raise AllocationError(
                    "IPAddressClaim vanished after create conflict",
                    target=target.meta.key,
                    role=role.name,
                    claim=name,
                    pool=pool.name,
                )
            return self._adopt(existing, target, role)
        except StoreError as exc:
            raise AllocationError(
                f"create IPAddressClaim: {exc}",
                target=target.meta.key,
                role=role.name,
                claim=name,
                pool=pool.name,
            ) from exc

        LOG.info(
            "Created IPAddressClaim %s in pool %s (role=%s, owned=%s)",
            created.meta.key,
            pool.name,
            role.name,
            created.owned,
        )
        return created

    def build_claim(self, target: Target, role: Role, pool_name: str) -> AddressClaim:
        meta = ObjectMeta(
            name=role.claim_name(target.meta.name),
            namespace=target.meta.namespace,
            labels={
                self._config.role_label: role.name,
                CLUSTER_NAME_LABEL: target.meta.name,
            },
        )
        if target.meta.uid:
            meta.owner_references = [target.owner_reference()]
        return AddressClaim(meta=meta, pool_ref=PoolRef(name=pool_name))

    def _adopt(self, claim: AddressClaim, target: Target, role: Role) -> AddressClaim:
        try:
            return self._ownership.adopt(claim, target, role.name)
        except StoreError as exc:
            raise AllocationError(
                f"adopt IPAddressClaim: {exc}",
                target=target.meta.key,
                role=role.name,
                claim=claim.meta.name,
            ) from exc
