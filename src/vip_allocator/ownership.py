"""Owner-reference adoption for claims created before their cluster existed.

The hook allocator runs before the ``Cluster`` is persisted, so it has no UID
to point an owner reference at and creates its claim unowned.  Whichever
caller later sees that claim with a persisted cluster in hand adds the
reference, so deleting the cluster still cascades to the claim and releases
the address.  Adoption is a no-op for claims that already have an owner.
"""

from __future__ import annotations

import copy
import logging
from typing import Optional

from .metrics import AllocatorMetrics
from .model import AddressClaim, Target
from .store import ConflictError, NotFoundError, ObjectStore, retry_on_conflict

LOG = logging.getLogger(__name__)


def needs_adoption(claim: AddressClaim, target: Target) -> bool:
    """True when ``claim`` has no owner and ``target`` has been persisted."""

    return not claim.meta.owner_references and bool(target.meta.uid)


class OwnershipReconciler:
    def __init__(self, store: ObjectStore, metrics: Optional[AllocatorMetrics] = None) -> None:
        self._store = store
        self._metrics = metrics

    def adopt(self, claim: AddressClaim, target: Target, role: str = "") -> AddressClaim:
        """Point ``claim`` at ``target`` if it is unowned and return it.

        Conflicting updates re-read the claim; if a concurrent caller adopted
        it in the meantime the fresh copy is returned unchanged.
        """

        if not needs_adoption(claim, target):
            return claim

        current = claim

        def _attempt() -> AddressClaim:
            nonlocal current
            if not needs_adoption(current, target):
                return current
            candidate = copy.deepcopy(current)
            candidate.meta.owner_references = [target.owner_reference()]
            try:
                return self._store.update_claim(candidate)
            except ConflictError:
                current = self._store.get_claim(claim.meta.namespace, claim.meta.name)
                raise

        LOG.info(
            "Adopting IPAddressClaim %s for cluster %s", claim.meta.key, target.meta.key
        )
        adopted = retry_on_conflict(_attempt)
        LOG.info("IPAddressClaim %s adopted", claim.meta.key)
        if self._metrics is not None:
            self._metrics.record_adoption(role)
        return adopted

    def adopt_existing(self, claim_name: str, target: Target, role: str = "") -> bool:
        """Adopt the claim called ``claim_name`` if it exists.

        Returns True when an owner reference was written.  A missing claim is
        not an error: this is used for roles whose endpoint was set elsewhere.
        """

        try:
            claim = self._store.get_claim(target.meta.namespace, claim_name)
        except NotFoundError:
            return False
        if not needs_adoption(claim, target):
            return False
        self.adopt(claim, target, role)
        return True
