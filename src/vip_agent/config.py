"""YAML configuration loader for the VIP allocator agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vip_allocator.config import AllocatorConfig, Role, role_for


@dataclass
class ReconcilerSettings:
    enabled: bool = True
    workers: int = 2
    resync_interval: float = 300.0


@dataclass
class HookSettings:
    enabled: bool = True
    port: int = 9443
    cert_dir: Optional[Path] = None
    extension_name: str = "vip-allocator"


@dataclass
class MetricsSettings:
    enabled: bool = True
    port: int = 8080


@dataclass
class KubernetesSettings:
    kubeconfig: Optional[str] = None
    in_cluster: bool = False


@dataclass
class AgentConfig:
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    reconciler: ReconcilerSettings = field(default_factory=ReconcilerSettings)
    hook: HookSettings = field(default_factory=HookSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _parse_roles(entries: Any) -> List[Role]:
    if not isinstance(entries, list) or not entries:
        raise ValueError("'allocator.roles' must be a non-empty list")
    roles = [role_for(str(entry)) for entry in entries]
    names = [role.name for role in roles]
    if len(set(names)) != len(names):
        raise ValueError(f"duplicate role in 'allocator.roles': {names}")
    return roles


def _parse_allocator(section: Dict[str, Any]) -> AllocatorConfig:
    kwargs: Dict[str, Any] = {}
    if "default_port" in section:
        kwargs["default_port"] = int(section["default_port"])
    for key in ("annotation_domain", "variable_name"):
        if key in section:
            kwargs[key] = str(section[key])
    for key in ("requeue_delay", "poll_interval", "poll_timeout", "hook_timeout"):
        if key in section:
            kwargs[key] = float(section[key])
    if "max_pending_age" in section:
        value = section["max_pending_age"]
        kwargs["max_pending_age"] = None if value is None else float(value)
    if "roles" in section:
        kwargs["roles"] = tuple(_parse_roles(section["roles"]))
    return AllocatorConfig(**kwargs)


def _parse_reconciler(section: Dict[str, Any]) -> ReconcilerSettings:
    settings = ReconcilerSettings(
        enabled=bool(section.get("enabled", True)),
        workers=int(section.get("workers", 2)),
        resync_interval=float(section.get("resync_interval", 300.0)),
    )
    if settings.workers < 1:
        raise ValueError("'reconciler.workers' must be at least 1")
    if settings.resync_interval <= 0:
        raise ValueError("'reconciler.resync_interval' must be positive")
    return settings


def _parse_hook(section: Dict[str, Any]) -> HookSettings:
    cert_dir = section.get("cert_dir")
    return HookSettings(
        enabled=bool(section.get("enabled", True)),
        port=int(section.get("port", 9443)),
        cert_dir=Path(cert_dir) if cert_dir else None,
        extension_name=str(section.get("extension_name", "vip-allocator")),
    )


def load_config(path: Path) -> AgentConfig:
    data = yaml.safe_load(Path(path).read_text())
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Agent configuration must be a mapping")

    try:
        allocator = _parse_allocator(_section(data, "allocator"))
    except TypeError as exc:
        raise ValueError(f"invalid 'allocator' section: {exc}") from exc
    metrics = _section(data, "metrics")
    kubernetes = _section(data, "kubernetes")
    return AgentConfig(
        allocator=allocator,
        reconciler=_parse_reconciler(_section(data, "reconciler")),
        hook=_parse_hook(_section(data, "hook")),
        metrics=MetricsSettings(
            enabled=bool(metrics.get("enabled", True)),
            port=int(metrics.get("port", 8080)),
        ),
        kubernetes=KubernetesSettings(
            kubeconfig=kubernetes.get("kubeconfig"),
            in_cluster=bool(kubernetes.get("in_cluster", False)),
        ),
    )
