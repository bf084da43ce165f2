"""Keyed work queue feeding cluster keys to the reconciler."""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from threading import Condition, Event, Thread
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from vip_allocator.reconciler import ReconcileResult

from .events import ClusterDelete, ClusterUpsert

LOG = logging.getLogger(__name__)

ReconcileFn = Callable[..., ReconcileResult]
ForgetFn = Callable[[str, str], None]
Roles = Optional[FrozenSet[str]]


class ReconcileDispatcher:
    """De-duplicating delayed queue drained by a pool of worker threads.

    A key is never handed to two workers at once.  Enqueueing a key that is
    being processed marks it dirty; it is scheduled again once the running
    reconcile finishes.  Enqueueing a key that is already waiting keeps the
    earlier of the two due times.

    A requeue asked for by a reconcile result only revisits the roles that
    were pending or failed; any event widens the next run to every role.
    """

    def __init__(
        self,
        reconcile: ReconcileFn,
        stop_event: Event,
        *,
        workers: int = 2,
        retry_delay: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        forget: Optional[ForgetFn] = None,
    ) -> None:
        self._reconcile = reconcile
        self._forget = forget
        self._stop_event = stop_event
        self._workers = workers
        self._retry_delay = retry_delay
        self._clock = clock
        self._cond = Condition()
        self._heap: List[Tuple[float, int, str]] = []
        self._due: Dict[str, float] = {}
        self._scope: Dict[str, Roles] = {}
        self._active: Set[str] = set()
        self._dirty: Dict[str, float] = {}
        self._seq = itertools.count()
        self._threads: List[Thread] = []

    # Producers -------------------------------------------------------------
    def handle(self, event: ClusterUpsert | ClusterDelete) -> None:
        if isinstance(event, ClusterUpsert):
            self.enqueue(event.key)
        elif isinstance(event, ClusterDelete):
            self.forget(event.key)
            if self._forget is not None:
                self._forget(event.namespace, event.name)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def enqueue(self, key: str, delay: float = 0.0) -> None:
        with self._cond:
            when = self._clock() + delay
            if key in self._active:
                self._dirty[key] = min(when, self._dirty.get(key, when))
                return
            self._schedule(key, when)

    def forget(self, key: str) -> None:
        with self._cond:
            self._due.pop(key, None)
            self._scope.pop(key, None)
            self._dirty.pop(key, None)

    def pending(self) -> int:
        with self._cond:
            return len(self._due)

    def _schedule(self, key: str, when: float, roles: Roles = None) -> None:
        if key in self._due:
            current = self._scope.get(key)
            roles = None if current is None or roles is None else current | roles
        self._scope[key] = roles
        due = self._due.get(key)
        if due is not None and due <= when:
            return
        self._due[key] = when
        heapq.heappush(self._heap, (when, next(self._seq), key))
        self._cond.notify()

    # Consumers -------------------------------------------------------------
    def _next(self, block: bool = True) -> Optional[Tuple[str, Roles]]:
        with self._cond:
            while not self._stop_event.is_set():
                while self._heap and self._due.get(self._heap[0][2]) != self._heap[0][0]:
                    heapq.heappop(self._heap)
                wait = 0.5
                if self._heap:
                    when, _, key = self._heap[0]
                    remaining = when - self._clock()
                    if remaining <= 0:
                        heapq.heappop(self._heap)
                        del self._due[key]
                        self._active.add(key)
                        return key, self._scope.pop(key, None)
                    wait = min(wait, remaining)
                if not block:
                    return None
                self._cond.wait(wait)
            return None

    def _finish(self, key: str, requeue_after: Optional[float], roles: Roles = None) -> None:
        with self._cond:
            self._active.discard(key)
            if key in self._dirty:
                when = self._dirty.pop(key)
                if requeue_after is not None:
                    when = min(when, self._clock() + requeue_after)
                self._schedule(key, when)
            elif requeue_after is not None:
                self._schedule(key, self._clock() + requeue_after, roles)

    def process_next(self, block: bool = False) -> bool:
        """Reconcile one due key; returns False when nothing was due."""

        entry = self._next(block=block)
        if entry is None:
            return False
        self._process(*entry)
        return True

    def _process(self, key: str, roles: Roles = None) -> None:
        namespace, _, name = key.partition("/")
        requeue_after: Optional[float] = None
        retry: Roles = None
        try:
            result = self._reconcile(namespace, name, self._stop_event, roles=roles)
        except Exception:
            LOG.exception("reconcile of cluster %s failed", key)
            requeue_after = self._retry_delay
        else:
            requeue_after = result.requeue_after
            retry = result.retry_roles
            if result.error is not None and requeue_after is None:
                LOG.warning("cluster %s needs operator action: %s", key, result.error)
            elif requeue_after is not None:
                LOG.debug("requeueing cluster %s in %.1fs", key, requeue_after)
        self._finish(key, requeue_after, retry)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.process_next(block=True)

    # Lifecycle ---------------------------------------------------------------
    def start(self) -> None:
        for index in range(self._workers):
            thread = Thread(target=self._run, name=f"reconcile-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        LOG.info("started %d reconcile workers", self._workers)

    def stop(self) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)
