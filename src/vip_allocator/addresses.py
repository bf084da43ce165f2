"""Follow a claim to the address the pool manager bound to it."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Event
from typing import Callable, Optional

from .errors import AllocationError
from .model import AddressClaim, parse_timestamp
from .store import NotFoundError, ObjectStore, StoreError

LOG = logging.getLogger(__name__)


class ResolutionState(Enum):
    READY = "ready"
    PENDING = "pending"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class Resolution:
    state: ResolutionState
    address: str = ""
    claim: Optional[AddressClaim] = None

    @property
    def ready(self) -> bool:
        return self.state is ResolutionState.READY

    @classmethod
    def pending(cls, claim: Optional[AddressClaim] = None) -> "Resolution":
        return cls(ResolutionState.PENDING, claim=claim)


def pending_age(claim: AddressClaim, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds since ``claim`` was created, or None if the API did not say."""

    created = parse_timestamp(claim.meta.creation_timestamp)
    if created is None:
        return None
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - created).total_seconds())


class AddressResolver:
    def __init__(
        self,
        store: ObjectStore,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._clock = clock
        self._sleep = sleep

    def resolve(self, namespace: str, claim: AddressClaim) -> Resolution:
        """Single read: READY with the address, or PENDING.

        A claim without ``status.addressRef`` is pending.  So is a referenced
        IPAddress that is missing or empty, which happens briefly because the
        pool manager writes the claim status and the record separately.
        """

        record_name = claim.bound_record
        if not record_name:
            return Resolution.pending(claim)

        try:
            record = self._store.get_record(namespace, record_name)
        except NotFoundError:
            LOG.debug("IPAddress %s/%s not found yet", namespace, record_name)
            return Resolution.pending(claim)
        except StoreError as exc:
            raise AllocationError(
                f"get IPAddress {record_name}: {exc}", claim=claim.meta.name
            ) from exc

        if not record.address:
            return Resolution.pending(claim)
        return Resolution(ResolutionState.READY, address=record.address, claim=claim)

    def wait_for_address(
        self,
        namespace: str,
        claim_name: str,
        *,
        interval: float,
        timeout: float,
        claim: Optional[AddressClaim] = None,
        stop_event: Optional[Event] = None,
    ) -> Resolution:
        """Poll until the claim is bound or ``timeout`` seconds have elapsed.

        The first check happens immediately.  A claim or record that is not
        found yet keeps the loop going; any other store error aborts it.
        Returns a TIMED_OUT resolution (never raises) when the deadline passes
        or ``stop_event`` is set.
        """

        deadline = self._clock() + timeout
        current = claim
        while True:
            if current is None:
                try:
                    current = self._store.get_claim(namespace, claim_name)
                except NotFoundError:
                    LOG.debug("IPAddressClaim %s/%s not found yet, retrying", namespace, claim_name)
                except StoreError as exc:
                    raise AllocationError(
                        f"get IPAddressClaim: {exc}", claim=claim_name
                    ) from exc

            if current is not None:
                resolution = self.resolve(namespace, current)
                if resolution.ready:
                    LOG.info(
                        "IP %s allocated for IPAddressClaim %s/%s",
                        resolution.address,
                        namespace,
                        claim_name,
                    )
                    return resolution
                # Re-read the claim next round so status updates are seen.
                current = None

            remaining = deadline - self._clock()
            if remaining <= 0 or (stop_event is not None and stop_event.is_set()):
                LOG.warning(
                    "timeout waiting for IP allocation for %s/%s after %ss",
                    namespace,
                    claim_name,
                    timeout,
                )
                return Resolution(ResolutionState.TIMED_OUT)
            self._sleep(min(interval, remaining))
