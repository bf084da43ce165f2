"""Event primitives consumed by the reconcile dispatcher."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ClusterUpsert:
    """A cluster was seen for the first time or its resourceVersion moved.

    Events only carry the key; the reconciler always re-reads the cluster so
    that a burst of updates collapses into one reconcile of the latest state.
    """

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ClusterDelete:
    """A cluster disappeared; its claims go away through ownerReferences."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"
