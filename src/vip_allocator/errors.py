"""Exception types raised by the allocator core."""

from __future__ import annotations

from typing import Optional


class AllocationError(RuntimeError):
    """A backend failure annotated with the allocation it happened in."""

    def __init__(
        self,
        message: str,
        *,
        target: str = "",
        role: str = "",
        claim: str = "",
        pool: str = "",
    ) -> None:
        self.target = target
        self.role = role
        self.claim = claim
        self.pool = pool
        context = ", ".join(
            f"{key}={value}"
            for key, value in (
                ("target", target),
                ("role", role),
                ("claim", claim),
                ("pool", pool),
            )
            if value
        )
        super().__init__(f"{message} ({context})" if context else message)


class ConfigurationError(Exception):
    """The operator has to fix labels or classes before allocation can proceed."""


class NoMatchingPoolError(ConfigurationError):
    def __init__(self, class_name: str, role: str) -> None:
        self.class_name = class_name
        self.role = role
        super().__init__(
            f"no matching ip pool for class {class_name!r} role {role!r}"
        )


class ClassLookupError(AllocationError):
    """The ClusterClass could not be read; retried like any backend error."""

    def __init__(self, class_name: str, namespace: Optional[str], reason: str) -> None:
        self.class_name = class_name
        self.namespace = namespace
        super().__init__(
            f"get ClusterClass {class_name!r} "
            f"(tried cluster-scoped and namespace {namespace!r}): {reason}"
        )
