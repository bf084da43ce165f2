"""Cluster watcher: list, then follow a watch from the list's resourceVersion."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Callable, Dict

from vip_allocator.model import Target
from vip_allocator.store import ExpiredError, ObjectStore, StoreError

from ..events import ClusterDelete, ClusterUpsert

LOG = logging.getLogger(__name__)

EventSink = Callable[[object], None]


class ClusterWatcher(Thread):
    """Publish upsert/delete events for every cluster change.

    Each watch is opened with a server-side timeout of ``interval`` seconds.
    When it ends the watcher lists again, so anything a watch missed is
    caught up at least once per interval.  An expired resourceVersion
    restarts the cycle at once; other failures wait ``backoff`` seconds.
    A cluster whose ``resourceVersion`` has already been published is not
    published again.
    """

    def __init__(
        self,
        store: ObjectStore,
        publish: EventSink,
        interval: float,
        stop_event: Event,
        backoff: float = 5.0,
    ) -> None:
        super().__init__(name="cluster-watcher", daemon=True)
        self._store = store
        self._publish = publish
        self._timeout = max(1, int(interval))
        self._stop_event = stop_event
        self._backoff = backoff
        self._state: Dict[str, str] = {}

    def run(self) -> None:
        LOG.info("cluster watcher started")
        while not self._stop_event.is_set():
            try:
                healthy = self.sync()
            except Exception:
                LOG.exception("cluster watcher encountered an error")
                healthy = False
            if not healthy:
                self._stop_event.wait(self._backoff)
        LOG.info("cluster watcher stopped")

    def sync(self) -> bool:
        """Run one list-and-watch cycle; False means back off before the next."""

        try:
            version = self.relist()
            self.watch(version)
        except ExpiredError:
            LOG.info("cluster watch resourceVersion expired, relisting")
        except StoreError as exc:
            LOG.warning("cluster watch failed: %s", exc)
            return False
        return True

    def relist(self) -> str:
        listing = self._store.list_targets()
        seen = set()
        for target in listing.items:
            seen.add(target.meta.key)
            self._observe(target)
        for key in set(self._state) - seen:
            self._removed(key)
        return listing.resource_version

    def watch(self, resource_version: str) -> None:
        LOG.debug("watching clusters from resourceVersion %s", resource_version)
        for event_type, target in self._store.watch_targets(resource_version, self._timeout):
            if self._stop_event.is_set():
                return
            self.handle(event_type, target)

    def handle(self, event_type: str, target: Target) -> None:
        if event_type in ("ADDED", "MODIFIED"):
            self._observe(target)
        elif event_type == "DELETED":
            self._removed(target.meta.key)

    def _observe(self, target: Target) -> None:
        key = target.meta.key
        version = target.meta.resource_version
        if self._state.get(key) == version:
            return
        self._state[key] = version
        LOG.debug("cluster %s changed (resourceVersion %s)", key, version)
        self._publish(ClusterUpsert(target.meta.namespace, target.meta.name))

    def _removed(self, key: str) -> None:
        self._state.pop(key, None)
        LOG.debug("cluster %s removed", key)
        namespace, _, name = key.partition("/")
        self._publish(ClusterDelete(namespace, name))
