"""In-memory stand-ins for the backend and the clock."""

import asyncio
from typing import Optional

from permission_engine.core.config import Settings
from permission_engine.exceptions import TransportError
from permission_engine.keys import display_key, permission_key
from permission_engine.schemas.permission import (
    BulkPermissionResult,
    PermissionEvaluationResult,
    PermissionRecord,
    PermissionSpec,
    UserPermissionSummary,
)
from permission_engine.services.scope_resolver import resolve


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def grant(resource: str, action: str, scope: str = "own") -> PermissionRecord:
    return PermissionRecord(resource=resource, action=action, scope=scope)


def make_summary(*records: PermissionRecord, user_id: str = "user-1") -> UserPermissionSummary:
    return UserPermissionSummary(user_id=user_id, permissions=records)


async def drain(rounds: int = 20, settle: float = 0.05) -> None:
    """Let scheduled tasks run, including ones waiting out the batch window."""
    for _ in range(rounds):
        await asyncio.sleep(0)
    await asyncio.sleep(settle)
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTransport:
    """Backend double that adjudicates with the local scope resolver.

    ``overrides`` forces a decision per display key, which is how tests
    model instance-level (context) rules only the backend knows about.
    Setting ``gate`` holds every call until the event is set.
    """

    def __init__(self, summary: Optional[UserPermissionSummary] = None):
        self.summary = summary or make_summary()
        self.overrides: dict[str, PermissionEvaluationResult] = {}
        self.omitted: set[str] = set()
        self.ttl: Optional[float] = None
        self.fail_summary = False
        self.fail_checks = False
        self.fail_clear = False
        self.gate: Optional[asyncio.Event] = None

        self.summary_calls = 0
        self.check_calls: list[PermissionSpec] = []
        self.bulk_calls: list[list[PermissionSpec]] = []
        self.clear_calls = 0
        self.closed = False

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()

    def decide(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        override = self.overrides.get(display_key(spec))
        if override is not None:
            return override
        local = resolve(spec, self.summary)
        return PermissionEvaluationResult(
            allowed=local.allowed, reason=local.reason, source="remote", ttl=self.ttl,
        )

    async def get_my_permissions(self) -> UserPermissionSummary:
        self.summary_calls += 1
        await self._wait()
        if self.fail_summary:
            raise TransportError("backend down", status_code=503)
        return self.summary

    async def check_permission(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        self.check_calls.append(spec)
        await self._wait()
        if self.fail_checks:
            raise TransportError("backend down", status_code=503)
        return self.decide(spec)

    async def check_bulk_permissions(self, specs) -> BulkPermissionResult:
        specs = list(specs)
        self.bulk_calls.append(specs)
        await self._wait()
        if self.fail_checks:
            raise TransportError("backend down", status_code=503)
        permissions = {
            permission_key(spec): self.decide(spec)
            for spec in specs
            if display_key(spec) not in self.omitted
        }
        return BulkPermissionResult(permissions=permissions, evaluated=len(permissions))

    async def clear_cache(self) -> None:
        self.clear_calls += 1
        if self.fail_clear:
            raise TransportError("cache clear refused", status_code=500)

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> Settings:
    """Test settings: no ``.env`` file, no retry backoff, a short batch window."""
    values = dict(
        batch_delay_seconds=0.005,
        fetch_timeout_seconds=1.0,
        summary_retry_attempts=0,
        max_retries=1,
        retry_base_delay=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class HoldFirstBulkTransport(FakeTransport):
    """Backend that decides each bulk call against the grants current when it
    arrives, and holds the first call's answer until ``release`` is set.

    Models a slow response for one session landing after the next session
    has already been answered.
    """

    def __init__(self, summary: Optional[UserPermissionSummary] = None):
        super().__init__(summary)
        self.release: Optional[asyncio.Event] = None

    async def check_bulk_permissions(self, specs) -> BulkPermissionResult:
        specs = list(specs)
        self.bulk_calls.append(specs)
        permissions = {permission_key(spec): self.decide(spec) for spec in specs}
        if len(self.bulk_calls) == 1 and self.release is not None:
            await self.release.wait()
        return BulkPermissionResult(permissions=permissions, evaluated=len(permissions))
