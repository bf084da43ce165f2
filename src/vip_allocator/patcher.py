"""Write a resolved address into a cluster.

Two shapes of ClusterClass exist in the wild.  Older classes declare a
``clusterVip`` variable and template the endpoint from it; newer ones read
``spec.controlPlaneEndpoint`` directly.  Topology validation rejects variables
the class does not declare, so the variable is only written when the class
asks for it ("variable-injection" mode); otherwise only the endpoint changes
("direct" mode).
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .config import AllocatorConfig, Role, Sink
from .errors import ClassLookupError
from .model import ResourceClass, Target, merge_patch
from .store import NotFoundError, ObjectStore, StoreError

LOG = logging.getLogger(__name__)

_LABEL_VALUE = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")


def valid_label_value(value: str) -> bool:
    return len(value) <= 63 and bool(_LABEL_VALUE.match(value))


class EndpointPatcher:
    def __init__(self, store: ObjectStore, config: AllocatorConfig) -> None:
        self._store = store
        self._config = config

    def resource_class(self, target: Target) -> ResourceClass:
        """Fetch the target's class, class-scoped first then in its namespace."""

        name = target.class_name
        try:
            return self._store.get_resource_class(name)
        except NotFoundError:
            pass
        except StoreError as exc:
            raise ClassLookupError(name, None, str(exc)) from exc

        try:
            return self._store.get_resource_class(name, target.meta.namespace)
        except StoreError as exc:
            raise ClassLookupError(name, target.meta.namespace, str(exc)) from exc

    def injects_variable(self, target: Target) -> bool:
        return self.resource_class(target).declares(self._config.variable_name)

    def mutate(
        self,
        target: Target,
        address: str,
        role: Role,
        *,
        resource_class: Optional[ResourceClass] = None,
    ) -> None:
        """Apply ``address`` to ``target`` in memory for ``role``."""

        if role.sink is Sink.ANNOTATION:
            key = self._config.value_annotation(role)
            target.meta.annotations[key] = address
            if valid_label_value(address):
                target.meta.labels[key] = address
            return

        target.endpoint.host = address
        if target.endpoint.port == 0:
            target.endpoint.port = self._config.default_port

        if not target.has_topology:
            return
        if resource_class is None:
            resource_class = self.resource_class(target)
        if resource_class.declares(self._config.variable_name):
            target.upsert_variable(self._config.variable_name, address)
        else:
            LOG.debug(
                "ClusterClass %s does not declare %s, patching endpoint only",
                resource_class.name,
                self._config.variable_name,
            )

    def apply(self, target: Target, address: str, role: Role) -> Target:
        """Persist ``address`` on ``target`` with a single merge patch.

        The patch is the difference between a snapshot taken before mutation
        and the mutated document, guarded by the snapshot's resourceVersion.
        A :class:`~vip_allocator.store.ConflictError` propagates to the
        caller, which is expected to re-read and retry.
        """

        snapshot = target.to_dict()
        self.mutate(target, address, role)
        patch = merge_patch(snapshot, target.to_dict())
        if not patch:
            LOG.debug("cluster %s already carries %s", target.meta.key, address)
            return target
        if target.meta.resource_version:
            patch.setdefault("metadata", {})["resourceVersion"] = target.meta.resource_version

        patched = self._store.patch_target(target.meta.namespace, target.meta.name, patch)
        LOG.info(
            "Assigned %s VIP %s to cluster %s", role.name, address, target.meta.key
        )
        return patched
