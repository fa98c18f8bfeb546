from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from tenantauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PermissionLevelResponse,
    PermissionSetResponse,
    RevokeTokenRequest,
    TokenRefreshRequest,
)
from tenantauth.logging import bind_request_context
from tenantauth.service.auth import AuthContext, AuthResult
from tenantauth.service.errors import (
    RefreshTokenNotFoundError,
    TenantNotFoundError,
    ValidationError,
)
from tenantauth.service.runtime import get_runtime
from tenantauth.service.tenancy import TenantContext
from tenantauth.storage.models import PermissionLevel

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
tenant_router = APIRouter(prefix="/{tenant}/api", tags=["permissions"])


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# -- dependencies ------------------------------------------------------


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = runtime.tokens.authenticate(authorization)
    bind_request_context(user_id=principal.user_id)
    return principal


async def get_tenant(request: Request, tenant: str) -> TenantContext:
    runtime = get_runtime()
    context = await runtime.tenants.resolve_path(request.url.path)
    if context is None:
        # Reserved first segments never name a tenant
        raise TenantNotFoundError(
            f"tenant '{tenant}' not found or inactive", detail={"slug": tenant}
        )
    bind_request_context(tenant_id=context.organization_id)
    return context


def require_permission(resource: str, level: PermissionLevel) -> Callable:
    """Dependency factory: 403 unless the caller holds ``level`` on ``resource``."""

    async def _check(
        principal: AuthContext = Depends(get_principal),
        tenant: TenantContext = Depends(get_tenant),
    ) -> AuthContext:
        runtime = get_runtime()
        await runtime.permissions.require_permission(principal, tenant, resource, level)
        return principal

    return _check


# -- auth --------------------------------------------------------------


def _apply_refresh_cookie(response: Response, result: AuthResult) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        result.refresh_token.token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="strict",
        expires=result.refresh_token.expires_at,
        path="/api/auth",
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            email=result.user.email,
            system_role=result.user.system_role.value,
            access_token=result.access_token.token,
            token_type=result.access_token.token_type,
            expires_at=result.access_token.expires_at,
            refresh_token=result.refresh_token.token,
            refresh_token_expires_at=result.refresh_token.expires_at,
        ),
    )


def _presented_refresh_token(request: Request, body_value: Optional[str]) -> str:
    cookie_name = get_runtime().settings.refresh_cookie_name
    token = request.cookies.get(cookie_name) or body_value
    if not token:
        raise RefreshTokenNotFoundError("refresh token required")
    return token


@auth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a new refresh chain."""
    runtime = get_runtime()
    result = await runtime.tokens.login(
        body.email, body.password, client_ip=_client_ip(request)
    )
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@auth_router.post("/refresh-token", response_model=Envelope)
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(None),
):
    """Rotate the presented refresh token (cookie first, then body)."""
    runtime = get_runtime()
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    result = await runtime.tokens.rotate_refresh_token(
        presented, client_ip=_client_ip(request)
    )
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@auth_router.post("/revoke-token", response_model=Envelope)
async def revoke_token(
    request: Request,
    response: Response,
    body: Optional[RevokeTokenRequest] = Body(None),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    await runtime.tokens.revoke_refresh_token(
        presented,
        client_ip=_client_ip(request),
        reason=body.reason if body else None,
        owner_id=None if principal.is_admin else principal.user_id,
    )
    response.delete_cookie(runtime.settings.refresh_cookie_name, path="/api/auth")
    return Envelope(status="ok", data={"revoked": True})


# -- permissions -------------------------------------------------------


@tenant_router.get("/permissions", response_model=Envelope)
async def list_permissions(
    principal: AuthContext = Depends(get_principal),
    tenant: TenantContext = Depends(get_tenant),
):
    """Every resource level the caller holds in this tenant."""
    runtime = get_runtime()
    permissions = await runtime.permissions.resolve_all(principal, tenant)
    return Envelope(
        status="ok",
        data=PermissionSetResponse(
            tenant=tenant.slug,
            is_admin=permissions.is_admin,
            resources=permissions.as_dict(),
        ),
    )


@tenant_router.get("/permissions/{resource}", response_model=Envelope)
async def get_permission(
    resource: str,
    require: Optional[int] = Query(None, description="Fail with 403 below this level"),
    principal: AuthContext = Depends(get_principal),
    tenant: TenantContext = Depends(get_tenant),
):
    runtime = get_runtime()
    if require is not None:
        try:
            required = PermissionLevel.parse(require)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"require": require}) from exc
        level = await runtime.permissions.require_permission(
            principal, tenant, resource, required
        )
    else:
        level = await runtime.permissions.resolve(principal, tenant, resource)
    return Envelope(
        status="ok",
        data=PermissionLevelResponse(
            resource=resource, level=int(level), description=level.description
        ),
    )
