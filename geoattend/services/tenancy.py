"""Tenant isolation for every registry, ledger and state access.

All persisted attendance data is partitioned by organization. Callers build a
plain filter mapping and pass it through :func:`scope` before it reaches a
store; ``scope`` is the only code that knows the name of the tenant key.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from geoattend.errors import MissingTenantContextError, TenancyViolationError

logger = logging.getLogger("geoattend.security")

_TENANT_KEY = "organization_id"


@dataclass(frozen=True, slots=True)
class TenantContext:
    organization_id: str | None
    actor_id: str = "system"
    role: str | None = None
    is_platform_operator: bool = False


def _log_violation(context: TenantContext, requested: Any, reason: str) -> None:
    logger.warning(
        "tenancy_violation",
        extra={
            "security_event": True,
            "reason": reason,
            "actor_id": context.actor_id,
            "actor_role": context.role,
            "context_organization_id": context.organization_id,
            "requested_organization_id": requested,
        },
    )


def require_organization(context: TenantContext, organization_id: str | None = None) -> str:
    """Resolve the single organization an operation is allowed to touch."""
    if context.is_platform_operator:
        resolved = organization_id or context.organization_id
        if not resolved:
            raise MissingTenantContextError("Platform operators must name an organization for this operation.")
        return resolved

    if not context.organization_id:
        raise MissingTenantContextError()
    if organization_id is not None and organization_id != context.organization_id:
        _log_violation(context, organization_id, "organization_mismatch")
        raise TenancyViolationError()
    return context.organization_id


def scope(query: Mapping[str, Any], context: TenantContext) -> dict[str, Any]:
    scoped = dict(query)
    requested = scoped.get(_TENANT_KEY)

    if context.organization_id is None:
        if not context.is_platform_operator:
            raise MissingTenantContextError()
        # Platform-wide read: keep whatever narrowing the caller asked for.
        return scoped

    if requested is not None and requested != context.organization_id and not context.is_platform_operator:
        _log_violation(context, requested, "query_organization_mismatch")
        raise TenancyViolationError()

    if requested is None:
        scoped[_TENANT_KEY] = context.organization_id
    return scoped


def for_organization(context: TenantContext, organization_id: str | None) -> TenantContext:
    """Context narrowed to one organization, used once the target is resolved."""
    resolved = require_organization(context, organization_id)
    if resolved == context.organization_id:
        return context
    return TenantContext(
        organization_id=resolved,
        actor_id=context.actor_id,
        role=context.role,
        is_platform_operator=context.is_platform_operator,
    )


def tenant_of(record: Any) -> str | None:
    return getattr(record, _TENANT_KEY, None)


def ensure_owned(record: Any, context: TenantContext) -> None:
    """Reject records that a scoped read should never have produced."""
    if context.organization_id is None and context.is_platform_operator:
        return
    if tenant_of(record) != context.organization_id:
        _log_violation(context, tenant_of(record), "record_outside_scope")
        raise TenancyViolationError()
