"""Configuration data structures for the VIP allocator core.

The agent's YAML loader (:mod:`vip_agent.config`) turns a file into these
dataclasses; tests build them directly.  Nothing in here talks to the API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

CONTROL_PLANE_ROLE = "control-plane"
INGRESS_ROLE = "ingress"

DEFAULT_ANNOTATION_DOMAIN = "vip.capi.gorizond.io"
DEFAULT_VARIABLE_NAME = "clusterVip"


class Sink(Enum):
    """Where a role's resolved address is written on the target."""

    ENDPOINT = "endpoint"
    ANNOTATION = "annotation"


@dataclass(frozen=True)
class Role:
    """A named endpoint purpose on a cluster.

    Attributes
    ----------
    name:
        Value matched against the pool role selector and stored in the claim
        role label.
    claim_prefix:
        Prefix of the deterministic claim name (``<prefix>-<cluster>``).
    sink:
        :attr:`Sink.ENDPOINT` writes ``spec.controlPlaneEndpoint`` (and the
        derived variable when declared); :attr:`Sink.ANNOTATION` writes an
        annotation and a label carrying the address.
    """

    name: str
    claim_prefix: str
    sink: Sink = Sink.ENDPOINT

    def claim_name(self, target_name: str) -> str:
        return f"{self.claim_prefix}-{target_name}"


CONTROL_PLANE = Role(name=CONTROL_PLANE_ROLE, claim_prefix="vip-cp", sink=Sink.ENDPOINT)
INGRESS = Role(name=INGRESS_ROLE, claim_prefix="vip-ingress", sink=Sink.ANNOTATION)

BUILTIN_ROLES = {CONTROL_PLANE.name: CONTROL_PLANE, INGRESS.name: INGRESS}


def role_for(name: str) -> Role:
    """Return the built-in role called ``name`` or an annotation-sink role."""

    if name in BUILTIN_ROLES:
        return BUILTIN_ROLES[name]
    return Role(name=name, claim_prefix=f"vip-{name}", sink=Sink.ANNOTATION)


@dataclass(frozen=True)
class AllocatorConfig:
    """Knobs shared by the background reconciler and the hook allocator."""

    default_port: int = 6443
    annotation_domain: str = DEFAULT_ANNOTATION_DOMAIN
    variable_name: str = DEFAULT_VARIABLE_NAME
    roles: Sequence[Role] = field(default_factory=lambda: (CONTROL_PLANE, INGRESS))
    requeue_delay: float = 10.0
    poll_interval: float = 0.5
    poll_timeout: float = 25.0
    hook_timeout: float = 30.0
    max_pending_age: Optional[float] = 600.0

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.poll_timeout >= self.hook_timeout:
            raise ValueError(
                f"poll_timeout ({self.poll_timeout}s) must be shorter than "
                f"hook_timeout ({self.hook_timeout}s)"
            )
        if self.requeue_delay <= 0:
            raise ValueError("requeue_delay must be positive")

    # Label and annotation names -------------------------------------------
    @property
    def class_label(self) -> str:
        return f"{self.annotation_domain}/cluster-class"

    @property
    def role_label(self) -> str:
        return f"{self.annotation_domain}/role"

    def disable_annotation(self, role: Role) -> str:
        return f"{self.annotation_domain}/{role.name}-enabled"

    def value_annotation(self, role: Role) -> str:
        return f"{self.annotation_domain}/{role.name}-vip"

    def role(self, name: str) -> Optional[Role]:
        return next((r for r in self.roles if r.name == name), None)
