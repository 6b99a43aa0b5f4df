"""Pydantic schemas for permission grants, queries and decisions."""

from .permission import (
    BulkPermissionResult,
    EvaluationSource,
    PermissionEvaluationResult,
    PermissionRecord,
    PermissionSpec,
    Scope,
    UserPermissionSummary,
    allow,
    deny,
    parse_spec,
)

__all__ = [
    "BulkPermissionResult",
    "EvaluationSource",
    "PermissionEvaluationResult",
    "PermissionRecord",
    "PermissionSpec",
    "Scope",
    "UserPermissionSummary",
    "allow",
    "deny",
    "parse_spec",
]
