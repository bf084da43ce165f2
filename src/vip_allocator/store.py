"""Abstract backing-store interface.

Everything the allocator persists or reads goes through an
:class:`ObjectStore`.  The production implementation lives in
:mod:`vip_allocator.kube`; the unit tests use an in-memory fake.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from .model import AddressClaim, AddressPool, AddressRecord, ResourceClass, Target, TargetList

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """Base class for backing-store failures."""


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """Optimistic-concurrency failure; re-read and try again."""


class ExpiredError(StoreError):
    """A watch resourceVersion is too old; list again before watching."""


class ObjectStore(ABC):
    """Reads and writes of targets, classes, pools, claims and records."""

    @abstractmethod
    def get_target(self, namespace: str, name: str) -> Target:
        """Return the cluster ``namespace/name`` or raise :class:`NotFoundError`."""

    @abstractmethod
    def list_targets(self) -> TargetList:
        """Return every cluster in every namespace."""

    @abstractmethod
    def watch_targets(
        self, resource_version: str, timeout_seconds: int
    ) -> Iterator[Tuple[str, Target]]:
        """Yield ``(event_type, cluster)`` changes after ``resource_version``.

        The stream ends on its own after ``timeout_seconds``.  An expired
        ``resource_version`` raises :class:`ExpiredError`.
        """

    @abstractmethod
    def patch_target(self, namespace: str, name: str, patch: Dict[str, Any]) -> Target:
        """Apply a JSON merge patch.

        When the patch carries ``metadata.resourceVersion`` the store must
        reject it with :class:`ConflictError` if the stored object moved on.
        """

    @abstractmethod
    def get_resource_class(self, name: str, namespace: Optional[str] = None) -> ResourceClass:
        """Look up a class; ``namespace=None`` means the class-scoped lookup."""

    @abstractmethod
    def list_pools(self) -> List[AddressPool]:
        """Return all pools without any server-side label filtering."""

    @abstractmethod
    def get_claim(self, namespace: str, name: str) -> AddressClaim:
        ...

    @abstractmethod
    def create_claim(self, claim: AddressClaim) -> AddressClaim:
        """Create ``claim`` or raise :class:`AlreadyExistsError`."""

    @abstractmethod
    def update_claim(self, claim: AddressClaim) -> AddressClaim:
        """Replace ``claim``; stale ``resourceVersion`` raises :class:`ConflictError`."""

    @abstractmethod
    def get_record(self, namespace: str, name: str) -> AddressRecord:
        ...


def retry_on_conflict(fn: Callable[[], T], attempts: int = 5) -> T:
    """Call ``fn`` until it stops raising :class:`ConflictError`.

    ``fn`` must re-read whatever it modifies; the last conflict is re-raised
    once ``attempts`` is exhausted.
    """

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts:
                raise
            LOG.debug("conflict on attempt %d/%d, retrying", attempt, attempts)
    raise AssertionError("unreachable")
