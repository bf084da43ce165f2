"""Label-selected pool lookup."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .model import AddressPool
from .store import ObjectStore

LOG = logging.getLogger(__name__)


def label_contains_value(label_value: str, target_value: str) -> bool:
    """Return True when ``target_value`` is one of the comma-separated values.

    ``"a, b,c"`` contains ``"b"``; whitespace around each item is ignored.
    """

    wanted = target_value.strip()
    return any(item.strip() == wanted for item in label_value.split(","))


class PoolResolver:
    """Find the pool serving a (cluster class, role) pair.

    Pools are listed without a server-side selector because a single pool may
    advertise several classes or roles in one label value.  When more than
    one pool matches, the lexicographically smallest name wins so that every
    caller picks the same pool regardless of list order.
    """

    def __init__(self, store: ObjectStore, *, class_label: str, role_label: str) -> None:
        self._store = store
        self._class_label = class_label
        self._role_label = role_label

    def matches(self, pool: AddressPool, class_name: str, role: str) -> bool:
        class_value = pool.labels.get(self._class_label)
        role_value = pool.labels.get(self._role_label)
        if class_value is None or role_value is None:
            return False
        return label_contains_value(class_value, class_name) and label_contains_value(
            role_value, role
        )

    def select(
        self, pools: Iterable[AddressPool], class_name: str, role: str
    ) -> Optional[AddressPool]:
        candidates = sorted(
            (p for p in pools if self.matches(p, class_name, role)),
            key=lambda p: p.name,
        )
        if len(candidates) > 1:
            LOG.debug(
                "%d pools match class=%s role=%s, using %s",
                len(candidates),
                class_name,
                role,
                candidates[0].name,
            )
        return candidates[0] if candidates else None

    def find_pool(self, class_name: str, role: str) -> Optional[AddressPool]:
        """Return the matching pool or None; listing failures propagate."""

        return self.select(self._store.list_pools(), class_name, role)
