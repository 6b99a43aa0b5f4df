"""Scope resolution as a single pure function.

This is the ONE place where local grant-matching rules are defined. The
evaluator, the summary store's change detection and the test fakes all
call into it.

Rules, in order:
    1. Invalid spec (empty resource or action) → deny.
    2. Any grant with scope ``platform`` → allow everything.
    3. A grant with the same resource/action and the same scope, or scope
       ``all`` → allow.
    4. Scopes form a total order own < department < property <
       organization < all. A grant at a broader scope covers a request
       at a narrower one.
    5. Otherwise deny.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..schemas.permission import (
    EvaluationSource,
    PermissionEvaluationResult,
    PermissionRecord,
    PermissionSpec,
    Scope,
    UserPermissionSummary,
    allow,
    deny,
)

# Narrowest first. ``platform`` is not part of the order; it bypasses it.
SCOPE_HIERARCHY: tuple[str, ...] = (
    Scope.OWN.value,
    Scope.DEPARTMENT.value,
    Scope.PROPERTY.value,
    Scope.ORGANIZATION.value,
    Scope.ALL.value,
)

REASON_INVALID_SPEC = "invalid permission spec"
REASON_PLATFORM = "platform access"
REASON_DIRECT = "direct grant"
REASON_NO_MATCH = "no matching permission"


def is_valid_spec(spec: PermissionSpec) -> bool:
    """A spec needs a non-blank resource and action to be evaluated at all."""
    return bool(spec.resource and spec.resource.strip() and spec.action and spec.action.strip())


def has_platform_access(records: Iterable[PermissionRecord]) -> bool:
    return any(record.scope == Scope.PLATFORM.value for record in records)


def higher_scopes(scope: str) -> tuple[str, ...]:
    """Scopes strictly broader than *scope*; empty if *scope* is not in the order."""
    try:
        index = SCOPE_HIERARCHY.index(scope)
    except ValueError:
        return ()
    return SCOPE_HIERARCHY[index + 1:]


def resolve(spec: PermissionSpec, summary: UserPermissionSummary) -> PermissionEvaluationResult:
    """Decide *spec* against the grants held in *summary*. No I/O.

    Args:
        spec: The permission being asked for. ``context`` is ignored here;
            instance-level checks are the backend's job.
        summary: The actor's current grant snapshot.

    Returns:
        A result with ``source="summary"``.
    """
    if not is_valid_spec(spec):
        return deny(REASON_INVALID_SPEC, EvaluationSource.SUMMARY)

    records = summary.permissions
    if has_platform_access(records):
        return allow(REASON_PLATFORM, EvaluationSource.SUMMARY)

    matching = [
        record for record in records
        if record.resource == spec.resource and record.action == spec.action
    ]

    for record in matching:
        if record.scope == spec.scope or record.scope == Scope.ALL.value:
            return allow(REASON_DIRECT, EvaluationSource.SUMMARY)

    broader = higher_scopes(spec.scope)
    if broader:
        for record in matching:
            if record.scope in broader:
                return allow(
                    f"granted at broader scope '{record.scope}'",
                    EvaluationSource.SUMMARY,
                )

    return deny(REASON_NO_MATCH, EvaluationSource.SUMMARY)


def check_scope(spec: PermissionSpec, summary: UserPermissionSummary) -> bool:
    """Boolean shorthand for :func:`resolve`."""
    return resolve(spec, summary).allowed


def changed_resources(
    old: Optional[UserPermissionSummary],
    new: Optional[UserPermissionSummary],
) -> Optional[set[str]]:
    """Resources whose grants differ between two snapshots.

    Returns ``None`` when every decision may have changed: one side is
    missing, or platform access was gained or lost.
    """
    if old is None or new is None:
        return None
    if has_platform_access(old.permissions) != has_platform_access(new.permissions):
        return None

    def grant_set(summary: UserPermissionSummary) -> set[tuple[str, str, str]]:
        # Duplicates from different roles collapse here.
        return {(r.resource, r.action, r.scope) for r in summary.permissions}

    return {resource for resource, _, _ in grant_set(old) ^ grant_set(new)}
