from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from geoattend.errors import ApiError
from geoattend.services.tenancy import TenantContext
from geoattend.settings import get_platform_roles, get_settings

logger = logging.getLogger("geoattend.security")

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES: frozenset[str] = frozenset({"admin", "manager"})


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def context_from_claims(claims: dict[str, Any]) -> TenantContext:
    role = str(claims.get("role") or "").strip().lower() or None
    is_platform_operator = role is not None and role in get_platform_roles()
    organization_id = claims.get("org")
    if organization_id is not None and not isinstance(organization_id, str):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token organization is invalid.")
    if not organization_id and not is_platform_operator:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token has no organization.")
    return TenantContext(
        organization_id=organization_id or None,
        actor_id=str(claims["sub"]),
        role=role,
        is_platform_operator=is_platform_operator,
    )


def get_tenant_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TenantContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")
    context = context_from_claims(decode_token(credentials.credentials))
    request.state.actor = context.role or "unknown"
    request.state.actor_id = context.actor_id
    request.state.organization_id = context.organization_id
    return context


def is_admin(context: TenantContext) -> bool:
    return context.is_platform_operator or (context.role or "") in ADMIN_ROLES


def require_admin(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
    if not is_admin(context):
        logger.warning(
            "admin_role_required",
            extra={"security_event": True, "actor_id": context.actor_id, "actor_role": context.role},
        )
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return context


def ensure_self_or_admin(context: TenantContext, employee_id: str) -> None:
    """Employees may act only on their own attendance; admins on anyone in scope."""
    if is_admin(context) or context.actor_id == employee_id:
        return
    logger.warning(
        "employee_mismatch",
        extra={"security_event": True, "actor_id": context.actor_id, "employee_id": employee_id},
    )
    raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
