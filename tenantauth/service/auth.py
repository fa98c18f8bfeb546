from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    AuthenticationError,
    RefreshTokenExpiredError,
    RefreshTokenNotFoundError,
    RefreshTokenReusedError,
    TokenInvalidSignatureError,
)
from tenantauth.service.signer import CredentialSigner
from tenantauth.service.store_calls import call_store
from tenantauth.storage.models import RefreshToken, SystemRole, User

logger = get_logger(__name__)

REASON_ROTATED = "Replaced by new token"
REASON_REUSE = "Attempted reuse of revoked ancestor token"
REASON_LOGOUT = "Revoked without replacement"
REASON_REVOKE_ALL = "All sessions revoked"

# Guards against a corrupted chain that points back at itself
MAX_CHAIN_WALK = 1000


class TokenStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    async def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    async def replace_refresh_token(
        self,
        token: str,
        successor: RefreshToken,
        *,
        at: datetime,
        ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool: ...

    async def revoke_refresh_token(
        self,
        token: str,
        *,
        at: datetime,
        ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool: ...

    async def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]: ...


@dataclass(frozen=True)
class AuthContext:
    """The authenticated principal of one request, taken from its access token."""

    user_id: str
    system_role: SystemRole = SystemRole.NONE
    token_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.system_role == SystemRole.ADMIN


@dataclass(frozen=True)
class AccessToken:
    token: str
    token_id: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    user: User
    access_token: AccessToken
    refresh_token: RefreshToken


class TokenService:
    """Access token issuance and the refresh token rotation chain.

    Access tokens are signed JWTs carrying the principal and its system role
    but no tenant. Refresh tokens are opaque random strings persisted by the
    store; each successful rotation revokes the presented token, links it to
    its successor, and hands out the successor. Presenting a token that was
    already rotated or revoked is treated as theft: the rest of its chain is
    revoked and the client must log in again.
    """

    def __init__(
        self,
        store: TokenStore,
        signer: CredentialSigner,
        settings: Settings,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.settings = settings
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, operation: str, call: Callable, **log_fields: Any):
        # Token writes are not idempotent, so nothing here is retried
        return await call_store(
            operation,
            call,
            timeout=self.settings.store_timeout_seconds,
            retries=0,
            **log_fields,
        )

    # -- passwords -----------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    async def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> AuthResult:
        user = await self._call(
            "get_user_by_email", lambda: self.store.get_user_by_email(email)
        )
        if not user or not self.verify_password(user, password):
            self.logger.info("login_failed", client_ip=client_ip)
            raise AuthenticationError("invalid credentials")
        access = self.issue_access_token(user)
        refresh = await self.issue_refresh_token(user, client_ip)
        self.logger.info("login_succeeded", user_id=user.id, client_ip=client_ip)
        return AuthResult(user=user, access_token=access, refresh_token=refresh)

    # -- access tokens -------------------------------------------------

    def issue_access_token(self, user: User) -> AccessToken:
        now = self._now()
        expires_at = now + self.access_ttl
        token_id = str(uuid.uuid4())
        claims = {
            "sub": user.id,
            "role": SystemRole(user.system_role).value,
            "iat": int(now.timestamp()),
            "jti": token_id,
            "token_type": "access",
        }
        return AccessToken(
            token=self.signer.sign(claims, expires_at),
            token_id=token_id,
            expires_at=expires_at,
        )

    def validate_access_token(self, token: str) -> dict[str, Any]:
        claims = self.signer.verify(token)
        if claims.get("token_type") != "access" or not claims.get("sub"):
            raise TokenInvalidSignatureError("not an access token")
        return claims

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("bearer token required")
        claims = self.validate_access_token(token)
        try:
            role = SystemRole(claims.get("role", SystemRole.NONE.value))
        except ValueError:
            raise TokenInvalidSignatureError("unknown system role in token") from None
        return AuthContext(user_id=claims["sub"], system_role=role, token_id=claims.get("jti"))

    # -- refresh tokens ------------------------------------------------

    def _new_refresh_token(
        self, user_id: str, client_ip: Optional[str], now: datetime
    ) -> RefreshToken:
        return RefreshToken.new(
            self.signer.generate_opaque(self.settings.refresh_token_bytes),
            user_id,
            self.refresh_ttl,
            client_ip,
            now=now,
        )

    async def issue_refresh_token(
        self, user: User, client_ip: Optional[str] = None
    ) -> RefreshToken:
        """Start a new rotation chain for ``user``."""
        token = self._new_refresh_token(user.id, client_ip, self._now())
        await self._call(
            "insert_refresh_token",
            lambda: self.store.insert_refresh_token(token),
            user_id=user.id,
        )
        self.logger.info("refresh_token_issued", user_id=user.id, client_ip=client_ip)
        return token

    async def rotate_refresh_token(
        self, presented: str, client_ip: Optional[str] = None
    ) -> AuthResult:
        current = await self._call(
            "get_refresh_token", lambda: self.store.get_refresh_token(presented)
        )
        if current is None:
            self.logger.info("refresh_token_not_found", client_ip=client_ip)
            raise RefreshTokenNotFoundError("refresh token not recognized")

        if current.is_revoked or current.is_replaced:
            await self._handle_reuse(current, client_ip)

        now = self._now()
        if current.is_expired(now):
            self.logger.info(
                "refresh_token_expired",
                user_id=current.user_id,
                expired_at=current.expires_at.isoformat(),
            )
            raise RefreshTokenExpiredError(
                "refresh token expired",
                detail={"expired_at": current.expires_at.isoformat()},
            )

        user = await self._call(
            "get_user", lambda: self.store.get_user(current.user_id)
        )
        if user is None:
            raise RefreshTokenNotFoundError("refresh token not recognized")

        successor = self._new_refresh_token(user.id, client_ip, now)
        won = await self._call(
            "replace_refresh_token",
            lambda: self.store.replace_refresh_token(
                presented, successor, at=now, ip=client_ip, reason=REASON_ROTATED
            ),
            user_id=user.id,
        )
        if not won:
            # Another rotation of the same token got there first
            latest = await self._call(
                "get_refresh_token", lambda: self.store.get_refresh_token(presented)
            )
            await self._handle_reuse(latest or current, client_ip)

        self.logger.info("refresh_token_rotated", user_id=user.id, client_ip=client_ip)
        return AuthResult(
            user=user,
            access_token=self.issue_access_token(user),
            refresh_token=successor,
        )

    async def _handle_reuse(self, token: RefreshToken, client_ip: Optional[str]) -> None:
        revoked = await self._revoke_descendants(token, client_ip)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.user_id,
            client_ip=client_ip,
            revoked_descendants=revoked,
        )
        raise RefreshTokenReusedError("refresh token reuse detected; sign in again")

    async def _revoke_descendants(
        self, token: RefreshToken, client_ip: Optional[str]
    ) -> int:
        """Revoke every token after ``token`` in its chain; returns how many were revoked."""
        now = self._now()
        revoked = 0
        seen = {token.token}
        next_value = token.replaced_by_token
        while next_value and next_value not in seen and len(seen) < MAX_CHAIN_WALK:
            seen.add(next_value)
            child = await self._call(
                "get_refresh_token", lambda: self.store.get_refresh_token(next_value)
            )
            if child is None:
                break
            if not child.is_revoked:
                changed = await self._call(
                    "revoke_refresh_token",
                    lambda: self.store.revoke_refresh_token(
                        child.token, at=now, ip=client_ip, reason=REASON_REUSE
                    ),
                    user_id=child.user_id,
                )
                revoked += int(changed)
                if changed:
                    # Re-read: a concurrent rotation may have linked a successor
                    child = await self._call(
                        "get_refresh_token", lambda: self.store.get_refresh_token(child.token)
                    ) or child
            next_value = child.replaced_by_token
        return revoked

    async def revoke_refresh_token(
        self,
        presented: str,
        *,
        client_ip: Optional[str] = None,
        reason: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        """Revoke one active refresh token without issuing a successor (logout).

        With ``owner_id`` set, tokens belonging to anyone else are reported as
        unknown.
        """
        current = await self._call(
            "get_refresh_token", lambda: self.store.get_refresh_token(presented)
        )
        if current is None or not current.is_active(self._now()):
            raise RefreshTokenNotFoundError("refresh token not recognized")
        if owner_id is not None and current.user_id != owner_id:
            raise RefreshTokenNotFoundError("refresh token not recognized")
        await self._call(
            "revoke_refresh_token",
            lambda: self.store.revoke_refresh_token(
                presented, at=self._now(), ip=client_ip, reason=reason or REASON_LOGOUT
            ),
            user_id=current.user_id,
        )
        self.logger.info("refresh_token_revoked", user_id=current.user_id, client_ip=client_ip)

    async def revoke_all_user_tokens(
        self, user_id: str, *, client_ip: Optional[str] = None
    ) -> int:
        tokens = await self._call(
            "list_user_refresh_tokens",
            lambda: self.store.list_user_refresh_tokens(user_id),
            user_id=user_id,
        )
        now = self._now()
        revoked = 0
        for token in tokens:
            if not token.is_active(now):
                continue
            changed = await self._call(
                "revoke_refresh_token",
                lambda token=token: self.store.revoke_refresh_token(
                    token.token, at=now, ip=client_ip, reason=REASON_REVOKE_ALL
                ),
                user_id=user_id,
            )
            revoked += int(changed)
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, count=revoked)
        return revoked
