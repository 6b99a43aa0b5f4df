"""Canonical keys for permission specs.

Two kinds of key exist:

- the evaluation key, ``resource|action|scope|k1=v1&k2=v2``, used for the
  decision cache and for single-flight bookkeeping;
- the display key, ``resource.action.scope``, which is what the backend
  uses in bulk responses and what ``check_bulk_permissions`` returns.

Components are percent-encoded so a ``|`` or ``&`` inside a value can never
make two different specs collide.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional
from urllib.parse import quote, unquote

from .schemas.permission import PermissionSpec


def _enc(value: str) -> str:
    return quote(value, safe="")


def _context_part(spec: PermissionSpec) -> str:
    # spec.context is already sorted by key
    return "&".join(f"{_enc(k)}={_enc(v)}" for k, v in spec.context)


def evaluation_key(spec: PermissionSpec) -> str:
    """Cache key for *spec*; identical specs always produce the same key."""
    return "|".join((
        _enc(spec.resource),
        _enc(spec.action),
        _enc(spec.scope),
        _context_part(spec),
    ))


def permission_key(spec: PermissionSpec) -> str:
    """Backend bulk-response key: ``resource.action.scope``, context ignored."""
    return f"{spec.resource}.{spec.action}.{spec.scope}"


def display_key(spec: PermissionSpec) -> str:
    """Key returned to callers of bulk checks.

    Equal to :func:`permission_key` for context-free specs. Context variants
    get the canonical context appended (``role.assign.own?propertyId=p1``)
    so they never overwrite each other.
    """
    base = permission_key(spec)
    if not spec.context:
        return base
    return f"{base}?{_context_part(spec)}"


def resource_of(key: str) -> str:
    """Resource component of an evaluation key, decoded."""
    return unquote(key.split("|", 1)[0])


def merge_context(
    spec: PermissionSpec,
    global_context: Optional[Mapping[str, Any]],
) -> PermissionSpec:
    """Fold a request-wide context under the spec's own; spec values win."""
    if not global_context:
        return spec
    merged = {str(k): v for k, v in global_context.items()}
    merged.update(spec.context_dict())
    return PermissionSpec(
        resource=spec.resource, action=spec.action, scope=spec.scope, context=merged,
    )
