"""Transport protocol the engine needs from the authorization backend."""

from __future__ import annotations

from typing import Protocol, Sequence

from ..schemas.permission import (
    BulkPermissionResult,
    PermissionEvaluationResult,
    PermissionSpec,
    UserPermissionSummary,
)


class PermissionTransport(Protocol):
    """Async client for the authorization backend.

    Implementations raise on failure; the engine turns every failure into
    a fail-closed decision.
    """

    async def get_my_permissions(self) -> UserPermissionSummary:
        ...

    async def check_permission(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        ...

    async def check_bulk_permissions(self, specs: Sequence[PermissionSpec]) -> BulkPermissionResult:
        ...

    async def clear_cache(self) -> None:
        ...

    async def close(self) -> None:
        ...
