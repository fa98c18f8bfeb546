"""Unit tests for the token service.

Tests for:
- Password login
- Access token issuance and bearer authentication
- Refresh token rotation and reuse detection
- Logout and revoke-all
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher, Type

from tenantauth.config import Settings
from tenantauth.service.auth import (
    REASON_LOGOUT,
    REASON_REUSE,
    REASON_ROTATED,
    TokenService,
)
from tenantauth.service.errors import (
    AuthenticationError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenReusedError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenInvalidSignatureError,
)
from tenantauth.service.signer import CredentialSigner
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import RefreshToken, SystemRole

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=os.environ["JWT_SECRET"],
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token_service(memory_store, settings):
    # Cheap argon2 parameters keep the suite fast
    hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    return TokenService(
        memory_store,
        CredentialSigner.from_settings(settings),
        settings,
        password_hasher=hasher,
    )


async def _user(service, email="alice@example.com", role=SystemRole.NONE):
    return await service.store.create_user(
        email, service.hash_password(PASSWORD), system_role=role
    )


class TestLogin:
    """Tests for password login."""

    async def test_login_returns_access_and_refresh_tokens(self, token_service):
        user = await _user(token_service)

        result = await token_service.login("alice@example.com", PASSWORD, client_ip="10.0.0.1")

        assert result.user.id == user.id
        assert result.access_token.token_type == "bearer"
        stored = await token_service.store.get_refresh_token(result.refresh_token.token)
        assert stored.user_id == user.id
        assert stored.created_by_ip == "10.0.0.1"
        assert stored.is_active()

    async def test_login_email_is_case_insensitive(self, token_service):
        await _user(token_service)
        result = await token_service.login("Alice@Example.com", PASSWORD)
        assert result.user.email == "alice@example.com"

    async def test_wrong_password_is_rejected(self, token_service):
        await _user(token_service)
        with pytest.raises(AuthenticationError) as excinfo:
            await token_service.login("alice@example.com", "wrong-password")
        assert excinfo.value.error_code == "unauthorized"

    async def test_unknown_email_is_rejected_the_same_way(self, token_service):
        with pytest.raises(AuthenticationError) as excinfo:
            await token_service.login("nobody@example.com", PASSWORD)
        assert excinfo.value.message == "invalid credentials"

    async def test_user_without_password_cannot_log_in(self, token_service):
        user = await token_service.store.create_user("sso@example.com")
        assert token_service.verify_password(user, PASSWORD) is False

    def test_password_hash_is_salted(self, token_service):
        assert token_service.hash_password(PASSWORD) != token_service.hash_password(PASSWORD)


class TestAccessTokens:
    async def test_claims_carry_principal_and_no_tenant(self, token_service):
        user = await _user(token_service, role=SystemRole.ADMIN)
        access = token_service.issue_access_token(user)

        claims = token_service.validate_access_token(access.token)

        assert claims["sub"] == user.id
        assert claims["role"] == "admin"
        assert claims["jti"] == access.token_id
        assert claims["token_type"] == "access"
        assert "tenant" not in claims
        assert {"iss", "aud", "exp", "iat"} <= set(claims)

    async def test_authenticate_returns_context(self, token_service):
        user = await _user(token_service, role=SystemRole.ADMIN)
        access = token_service.issue_access_token(user)

        context = token_service.authenticate(f"Bearer {access.token}")

        assert context.user_id == user.id
        assert context.is_admin
        assert context.token_id == access.token_id

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc"])
    def test_missing_bearer_is_unauthorized(self, token_service, header):
        with pytest.raises(AuthenticationError) as excinfo:
            token_service.authenticate(header)
        assert excinfo.value.error_code == "unauthorized"

    async def test_expired_access_token(self, token_service):
        user = await _user(token_service)
        token_service.access_ttl = timedelta(seconds=-5)
        access = token_service.issue_access_token(user)

        with pytest.raises(TokenExpiredError):
            token_service.authenticate(f"Bearer {access.token}")

    async def test_refresh_token_is_not_a_bearer_credential(self, token_service):
        await _user(token_service)
        result = await token_service.login("alice@example.com", PASSWORD)

        with pytest.raises(TokenInvalidSignatureError):
            token_service.authenticate(f"Bearer {result.refresh_token.token}")

    async def test_signed_token_of_other_type_is_rejected(self, token_service):
        forged = token_service.signer.sign(
            {"sub": "u", "token_type": "refresh"},
            datetime.now(timezone.utc) + timedelta(minutes=5),
        )
        with pytest.raises(TokenInvalidSignatureError):
            token_service.validate_access_token(forged)


class TestRotation:
    """Tests for the refresh token rotation chain."""

    async def test_rotation_links_and_revokes_presented_token(self, token_service):
        await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token

        result = await token_service.rotate_refresh_token(r0.token, client_ip="10.0.0.2")
        r1 = result.refresh_token

        old = await token_service.store.get_refresh_token(r0.token)
        assert old.is_revoked
        assert old.replaced_by_token == r1.token
        assert old.reason_revoked == REASON_ROTATED
        assert old.revoked_by_ip == "10.0.0.2"
        assert (await token_service.store.get_refresh_token(r1.token)).is_active()
        assert result.access_token.token

    async def test_replaying_rotated_token_revokes_successor(self, token_service):
        await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token
        r1 = (await token_service.rotate_refresh_token(r0.token)).refresh_token

        with pytest.raises(RefreshTokenReusedError) as excinfo:
            await token_service.rotate_refresh_token(r0.token)
        assert excinfo.value.status_code == 401

        revoked = await token_service.store.get_refresh_token(r1.token)
        assert revoked.is_revoked
        assert revoked.reason_revoked == REASON_REUSE
        with pytest.raises(RefreshTokenReusedError):
            await token_service.rotate_refresh_token(r1.token)

    async def test_replay_revokes_entire_descendant_chain(self, token_service):
        await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token
        r1 = (await token_service.rotate_refresh_token(r0.token)).refresh_token
        r2 = (await token_service.rotate_refresh_token(r1.token)).refresh_token

        with pytest.raises(RefreshTokenReusedError):
            await token_service.rotate_refresh_token(r0.token)

        for value in (r1.token, r2.token):
            assert (await token_service.store.get_refresh_token(value)).is_revoked
        tail = await token_service.store.get_refresh_token(r2.token)
        assert tail.reason_revoked == REASON_REUSE
        assert tail.replaced_by_token is None

    async def test_other_chains_survive_reuse(self, token_service):
        await _user(token_service)
        first = (await token_service.login("alice@example.com", PASSWORD)).refresh_token
        second = (await token_service.login("alice@example.com", PASSWORD)).refresh_token
        await token_service.rotate_refresh_token(first.token)

        with pytest.raises(RefreshTokenReusedError):
            await token_service.rotate_refresh_token(first.token)

        assert (await token_service.store.get_refresh_token(second.token)).is_active()

    async def test_unknown_token_is_not_found(self, token_service):
        with pytest.raises(RefreshTokenNotFoundError) as excinfo:
            await token_service.rotate_refresh_token("not-a-real-token")
        assert excinfo.value.error_code == "invalid_refresh_token"

    async def test_expired_token_is_rejected_without_revocation(self, token_service):
        user = await _user(token_service)
        past = datetime.now(timezone.utc) - timedelta(days=8)
        expired = RefreshToken.new("expired-token", user.id, timedelta(days=7), now=past)
        await token_service.store.insert_refresh_token(expired)

        with pytest.raises(RefreshTokenExpiredError) as excinfo:
            await token_service.rotate_refresh_token("expired-token")

        assert excinfo.value.error_code == "refresh_token_expired"
        assert not (await token_service.store.get_refresh_token("expired-token")).is_revoked

    async def test_reuse_is_reported_before_expiry(self, token_service):
        user = await _user(token_service)
        past = datetime.now(timezone.utc) - timedelta(days=8)
        token = RefreshToken.new("old-token", user.id, timedelta(days=7), now=past)
        await token_service.store.insert_refresh_token(
            token.revoked(at=past + timedelta(hours=1), replaced_by="gone")
        )

        with pytest.raises(RefreshTokenReusedError):
            await token_service.rotate_refresh_token("old-token")

    async def test_concurrent_rotation_has_single_winner(self, settings):
        """Test that racing rotations of one token never both succeed.

        The store yields to the event loop on every token read and swap, so
        both rotations read the token as active before either swaps it.
        """

        class YieldingStore(MemoryStore):
            def __init__(self):
                super().__init__()
                self.replace_results = []

            async def get_refresh_token(self, token):
                await asyncio.sleep(0)
                return await super().get_refresh_token(token)

            async def replace_refresh_token(self, token, successor, **kwargs):
                await asyncio.sleep(0)
                won = await super().replace_refresh_token(token, successor, **kwargs)
                self.replace_results.append(won)
                return won

        store = YieldingStore()
        hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        service = TokenService(
            store, CredentialSigner.from_settings(settings), settings, password_hasher=hasher
        )
        await _user(service)
        r0 = (await service.login("alice@example.com", PASSWORD)).refresh_token

        outcomes = await asyncio.gather(
            service.rotate_refresh_token(r0.token),
            service.rotate_refresh_token(r0.token),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], RefreshTokenReusedError)
        # Both rotations reached the conditional swap; exactly one lost it
        assert sorted(store.replace_results) == [False, True]
        successor = await store.get_refresh_token(winners[0].refresh_token.token)
        assert successor.is_revoked
        assert successor.reason_revoked == REASON_REUSE

    async def test_store_timeout_is_not_retried(self, memory_store, settings):
        class SlowStore:
            calls = 0

            async def get_refresh_token(self, token):
                SlowStore.calls += 1
                await asyncio.sleep(1)

        slow_settings = settings.model_copy(update={"store_timeout_seconds": 0.01})
        service = TokenService(
            SlowStore(), CredentialSigner.from_settings(slow_settings), slow_settings
        )

        with pytest.raises(StoreUnavailableError):
            await service.rotate_refresh_token("anything")
        assert SlowStore.calls == 1


class TestRevocation:
    async def test_logout_revokes_without_successor(self, token_service):
        user = await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token

        await token_service.revoke_refresh_token(r0.token, client_ip="10.0.0.3", owner_id=user.id)

        stored = await token_service.store.get_refresh_token(r0.token)
        assert stored.is_revoked
        assert stored.reason_revoked == REASON_LOGOUT
        assert stored.replaced_by_token is None
        with pytest.raises(RefreshTokenReusedError):
            await token_service.rotate_refresh_token(r0.token)

    async def test_revoke_records_custom_reason(self, token_service):
        await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token

        await token_service.revoke_refresh_token(r0.token, reason="lost device")

        assert (await token_service.store.get_refresh_token(r0.token)).reason_revoked == "lost device"

    async def test_revoking_someone_elses_token_is_not_found(self, token_service):
        await _user(token_service)
        mallory = await _user(token_service, email="mallory@example.com")
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token

        with pytest.raises(RefreshTokenNotFoundError):
            await token_service.revoke_refresh_token(r0.token, owner_id=mallory.id)
        assert (await token_service.store.get_refresh_token(r0.token)).is_active()

    async def test_revoking_inactive_token_is_not_found(self, token_service):
        await _user(token_service)
        r0 = (await token_service.login("alice@example.com", PASSWORD)).refresh_token
        await token_service.revoke_refresh_token(r0.token)

        with pytest.raises(RefreshTokenNotFoundError):
            await token_service.revoke_refresh_token(r0.token)

    async def test_revoke_all_user_tokens(self, token_service):
        user = await _user(token_service)
        await _user(token_service, email="bob@example.com")
        for _ in range(2):
            await token_service.login("alice@example.com", PASSWORD)
        bob = await token_service.login("bob@example.com", PASSWORD)

        count = await token_service.revoke_all_user_tokens(user.id)

        assert count == 2
        assert (await token_service.store.get_refresh_token(bob.refresh_token.token)).is_active()
        assert await token_service.revoke_all_user_tokens(user.id) == 0
