"""Watcher implementations used by the VIP allocator agent."""

from .clusters import ClusterWatcher  # noqa: F401

__all__ = ["ClusterWatcher"]
