"""Integration tests for the HTTP surface.

Tests the complete flow including:
- Login and refresh token cookies
- Rotation and reuse detection over HTTP
- Logout
- Tenant-scoped permission endpoints
- Error envelope headers
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.api.error_handling import TOKEN_EXPIRED_HEADER, register_exception_handlers
from tenantauth.api.routes import require_permission
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import PermissionLevel

EMAIL = "alice@example.com"
PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def seeded():
    """Two tenants; alice is a member of acme with Editor (reports=3)."""
    runtime = get_runtime()

    async def _seed():
        acme = await runtime.authority.create_organization("acme", "Acme")
        globex = await runtime.authority.create_organization("globex", "Globex")
        user = await runtime.authority.create_user(
            EMAIL, runtime.tokens.hash_password(PASSWORD)
        )
        await runtime.authority.add_member(user.id, acme.id)
        editor = await runtime.authority.create_authority("Editor", acme.id)
        await runtime.authority.set_resource_permission(editor.id, "reports", 3)
        await runtime.authority.assign_authority(user.id, editor.id)
        await runtime.bus.flush()
        return {"acme": acme, "globex": globex, "user": user}

    return asyncio.run(_seed())


def _login(client):
    response = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]


def _bearer(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


class TestLogin:
    def test_login_returns_tokens_and_cookie(self, client, seeded):
        response = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user_id"] == seeded["user"].id
        assert body["data"]["token_type"] == "bearer"
        assert client.cookies.get("refreshToken") == body["data"]["refresh_token"]
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie

    def test_wrong_password_is_401(self, client, seeded):
        response = client.post("/api/auth/login", json={"email": EMAIL, "password": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert "refreshToken" not in client.cookies

    def test_malformed_email_is_400(self, client, seeded):
        response = client.post("/api/auth/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestRefresh:
    """Tests for refresh token rotation over HTTP."""

    def test_refresh_from_cookie_rotates(self, client, seeded):
        first = _login(client)

        response = client.post("/api/auth/refresh-token")

        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert client.cookies.get("refreshToken") == second["refresh_token"]

    def test_refresh_from_body(self, client, seeded):
        first = _login(client)
        client.cookies.clear()

        response = client.post(
            "/api/auth/refresh-token", json={"refresh_token": first["refresh_token"]}
        )

        assert response.status_code == 200

    def test_replayed_token_is_rejected_and_chain_revoked(self, client, seeded):
        first = _login(client)
        rotated = client.post("/api/auth/refresh-token").json()["data"]
        client.cookies.clear()

        replay = client.post(
            "/api/auth/refresh-token", json={"refresh_token": first["refresh_token"]}
        )
        successor = client.post(
            "/api/auth/refresh-token", json={"refresh_token": rotated["refresh_token"]}
        )

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "refresh_token_reused"
        assert successor.status_code == 401
        assert successor.json()["error"]["code"] == "refresh_token_reused"

    def test_missing_refresh_token_is_401(self, client, seeded):
        response = client.post("/api/auth/refresh-token")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_refresh_token"


class TestRevoke:
    def test_revoke_requires_bearer(self, client, seeded):
        _login(client)

        response = client.post("/api/auth/revoke-token")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_logout_revokes_cookie_token(self, client, seeded):
        data = _login(client)

        response = client.post("/api/auth/revoke-token", headers=_bearer(data))
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": True}
        assert "refreshToken" not in client.cookies

        again = client.post(
            "/api/auth/refresh-token", json={"refresh_token": data["refresh_token"]}
        )
        assert again.status_code == 401


class TestPermissions:
    """Tests for tenant-scoped permission endpoints."""

    def test_list_permissions_in_member_tenant(self, client, seeded):
        data = _login(client)

        response = client.get("/acme/api/permissions", headers=_bearer(data))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "tenant": "acme",
            "is_admin": False,
            "resources": {"reports": 3},
        }

    def test_other_tenant_grants_nothing(self, client, seeded):
        data = _login(client)

        response = client.get("/globex/api/permissions/reports", headers=_bearer(data))

        assert response.status_code == 200
        assert response.json()["data"]["level"] == 0

    def test_single_resource_level(self, client, seeded):
        data = _login(client)

        response = client.get("/ACME/api/permissions/reports", headers=_bearer(data))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "resource": "reports",
            "level": 3,
            "description": "View, Create & Update",
        }

    @pytest.mark.parametrize("required,status", [(2, 200), (3, 200), (4, 403)])
    def test_require_query_enforces_level(self, client, seeded, required, status):
        data = _login(client)

        response = client.get(
            f"/acme/api/permissions/reports?require={required}", headers=_bearer(data)
        )

        assert response.status_code == status
        if status == 403:
            assert response.json()["error"]["details"]["actual_level"] == 3

    def test_require_out_of_range_is_400(self, client, seeded):
        data = _login(client)

        response = client.get("/acme/api/permissions/reports?require=9", headers=_bearer(data))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_tenant_is_404(self, client, seeded):
        data = _login(client)

        response = client.get("/initech/api/permissions", headers=_bearer(data))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "tenant_not_found"

    def test_reserved_segment_is_not_a_tenant(self, client, seeded):
        data = _login(client)

        response = client.get("/admin/api/permissions", headers=_bearer(data))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "tenant_not_found"

    def test_inactive_tenant_is_403(self, client, seeded):
        data = _login(client)
        runtime = get_runtime()

        async def _deactivate():
            await runtime.authority.deactivate_organization(seeded["acme"].id)
            await runtime.bus.flush()

        asyncio.run(_deactivate())
        response = client.get("/acme/api/permissions", headers=_bearer(data))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "tenant_inactive"

    def test_expired_access_token_sets_header(self, client, seeded):
        runtime = get_runtime()
        expired = runtime.signer.sign(
            {"sub": seeded["user"].id, "role": "none", "token_type": "access"},
            datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        response = client.get(
            "/acme/api/permissions", headers={"Authorization": f"Bearer {expired}"}
        )

        assert response.status_code == 401
        assert response.headers[TOKEN_EXPIRED_HEADER] == "true"
        assert response.json()["error"]["code"] == "token_expired"

    def test_forged_access_token_is_invalid(self, client, seeded):
        data = _login(client)
        forged = data["access_token"][:-4] + "AAAA"

        response = client.get(
            "/acme/api/permissions", headers={"Authorization": f"Bearer {forged}"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert TOKEN_EXPIRED_HEADER not in response.headers


class TestRequirePermissionDependency:
    @pytest.fixture
    def guarded_client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/{tenant}/api/reports")
        async def edit_reports(principal=Depends(require_permission("reports", PermissionLevel.EDIT))):
            return {"user_id": principal.user_id}

        @app.delete("/{tenant}/api/reports")
        async def delete_reports(
            principal=Depends(require_permission("reports", PermissionLevel.DELETE)),
        ):
            return {"user_id": principal.user_id}

        return TestClient(app)

    def test_sufficient_level_passes(self, client, guarded_client, seeded):
        data = _login(client)

        response = guarded_client.get("/acme/api/reports", headers=_bearer(data))

        assert response.status_code == 200
        assert response.json() == {"user_id": seeded["user"].id}

    def test_insufficient_level_is_forbidden(self, client, guarded_client, seeded):
        data = _login(client)

        response = guarded_client.delete("/acme/api/reports", headers=_bearer(data))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestAppMiddleware:
    def test_request_id_is_echoed(self, client, seeded):
        response = client.get("/initech/api/permissions", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_oversized_request_id_is_replaced(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "x" * 500})
        assert response.headers["X-Request-ID"] != "x" * 500

    def test_health_and_security_headers(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["bus"] == "InMemoryCacheBus"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
