"""Standalone agent running the VIP allocator against a management cluster.

The agent wires :mod:`vip_allocator` to the Kubernetes API: a cluster watch
feeds a keyed work queue drained by the background reconciler, and an
HTTP(S) server answers Cluster API runtime-extension hooks.
"""
