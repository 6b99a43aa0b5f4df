"""Permission data model: grants, queries, decisions and the bulk envelope.

All models are validated with pydantic so backend payloads are checked at
the transport boundary. Grants, specs and summaries are frozen; a summary
is replaced wholesale, never edited in place.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import InvalidSpecError


class Scope(str, Enum):
    """Breadth of a grant or request."""
    OWN = "own"
    DEPARTMENT = "department"
    PROPERTY = "property"
    ORGANIZATION = "organization"
    ALL = "all"
    PLATFORM = "platform"


class EvaluationSource(str, Enum):
    """Where a decision came from."""
    CACHE = "cache"
    SUMMARY = "summary"
    REMOTE = "remote"
    DEFAULT = "default"


class PermissionRecord(BaseModel):
    """A granted permission as held in the actor's summary.

    The (resource, action, scope) tuple is not unique across a summary;
    the same grant can arrive from several roles.
    """
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str
    scope: str
    description: Optional[str] = None


ContextPairs = tuple[tuple[str, str], ...]


class PermissionSpec(BaseModel):
    """A permission query.

    ``context`` is only used for instance-level checks that the backend
    adjudicates (e.g. ``{"propertyId": "p1"}``). It is stored as a sorted
    tuple of string pairs so equal specs compare and hash equal.
    """
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str
    scope: str = Scope.OWN.value
    context: ContextPairs = ()

    @field_validator('scope', mode='before')
    @classmethod
    def default_scope(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return Scope.OWN.value
        if isinstance(v, Scope):
            return v.value
        return v

    @field_validator('context', mode='before')
    @classmethod
    def normalize_context(cls, v: Any) -> ContextPairs:
        if not v:
            return ()
        items = v.items() if isinstance(v, Mapping) else v
        pairs: dict[str, str] = {}
        for key, value in items:
            pairs[str(key)] = "" if value is None else str(value)
        return tuple(sorted(pairs.items()))

    @classmethod
    def of(
        cls,
        resource: str,
        action: str,
        scope: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> "PermissionSpec":
        return cls(resource=resource, action=action, scope=scope, context=context)

    def context_dict(self) -> dict[str, str]:
        return dict(self.context)

    def to_wire(self) -> dict[str, Any]:
        """Request body shape used by the backend check endpoints."""
        body: dict[str, Any] = {
            "resource": self.resource,
            "action": self.action,
            "scope": self.scope,
        }
        if self.context:
            body["context"] = self.context_dict()
        return body


class UserPermissionSummary(BaseModel):
    """Everything the current actor is granted.

    ``fetched_at`` is stamped by the summary store with its own clock when
    the snapshot is received; whatever the backend sends is ignored.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    roles: tuple[str, ...] = ()
    permissions: tuple[PermissionRecord, ...] = ()
    fetched_at: float = Field(default=0.0, alias="fetchedAt")

    @field_validator('roles', mode='before')
    @classmethod
    def role_names(cls, v: Any) -> Any:
        if not v:
            return ()
        names = []
        for role in v:
            if isinstance(role, Mapping):
                role = role.get("name") or role.get("id") or ""
            if role:
                names.append(str(role))
        return tuple(names)

    @field_validator('fetched_at', mode='before')
    @classmethod
    def numeric_timestamp(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return v
        return 0.0


class PermissionEvaluationResult(BaseModel):
    """One allow/deny decision."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    source: str = EvaluationSource.DEFAULT.value
    # Seconds the decision may be cached; None means the engine default.
    ttl: Optional[float] = None

    @field_validator('source', mode='before')
    @classmethod
    def source_value(cls, v: Any) -> Any:
        if isinstance(v, EvaluationSource):
            return v.value
        return v or EvaluationSource.DEFAULT.value


class BulkPermissionResult(BaseModel):
    """Bulk check envelope, shared by the backend response and the facade.

    ``permissions`` is keyed by display key (``resource.action.scope``);
    ``cached`` counts cache hits, ``evaluated`` counts server-evaluated entries.
    """
    permissions: dict[str, PermissionEvaluationResult] = Field(default_factory=dict)
    cached: int = 0
    evaluated: int = 0
    errors: list[str] = Field(default_factory=list)

    def allowed(self, key: str) -> bool:
        result = self.permissions.get(key)
        return bool(result and result.allowed)


def deny(reason: str, source: EvaluationSource = EvaluationSource.DEFAULT) -> PermissionEvaluationResult:
    return PermissionEvaluationResult(allowed=False, reason=reason, source=source.value)


def allow(reason: str, source: EvaluationSource) -> PermissionEvaluationResult:
    return PermissionEvaluationResult(allowed=True, reason=reason, source=source.value)


def parse_spec(value: Any) -> PermissionSpec:
    """Build a spec from a ``PermissionSpec`` or a mapping payload.

    Raises:
        InvalidSpecError: if the payload does not describe a spec.
    """
    if isinstance(value, PermissionSpec):
        return value
    try:
        return PermissionSpec.model_validate(value)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise InvalidSpecError(f"Invalid permission spec: {first['msg']}", field=field) from exc
