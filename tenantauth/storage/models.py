from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class PermissionLevel(IntEnum):
    """Ordinal access tier on a resource; a higher level includes every lower one."""

    NONE = 0
    VIEW = 1
    CREATE = 2
    EDIT = 3
    DELETE = 4
    FULL = 5

    @classmethod
    def parse(cls, raw: object) -> "PermissionLevel":
        """Validate a raw level coming from a caller or a stored row."""
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"permission level must be an integer, got {raw!r}")
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(
                f"permission level must be between {int(cls.NONE)} and {int(cls.FULL)}"
            ) from None

    @property
    def description(self) -> str:
        return _LEVEL_DESCRIPTIONS[self]


_LEVEL_DESCRIPTIONS = {
    PermissionLevel.NONE: "No Access",
    PermissionLevel.VIEW: "View Only",
    PermissionLevel.CREATE: "View & Create",
    PermissionLevel.EDIT: "View, Create & Update",
    PermissionLevel.DELETE: "View, Create, Update & Delete",
    PermissionLevel.FULL: "Full Administrative Access",
}


class SystemRole(str, Enum):
    NONE = "none"
    ADMIN = "admin"


@dataclass
class Organization:
    slug: str
    name: str
    id: str = field(default_factory=_new_id)
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None


@dataclass
class User:
    email: str
    password_hash: Optional[str] = None
    system_role: SystemRole = SystemRole.NONE
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.system_role == SystemRole.ADMIN


@dataclass
class Membership:
    user_id: str
    organization_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None


@dataclass
class Authority:
    name: str
    # None means the authority applies in every tenant
    organization_id: Optional[str] = None
    is_system_authority: bool = False
    description: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.organization_id is None

    def applies_to(self, organization_id: str) -> bool:
        return self.organization_id is None or self.organization_id == organization_id


@dataclass
class ResourcePermission:
    authority_id: str
    resource_name: str
    level: PermissionLevel
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None


@dataclass
class AuthorityAssignment:
    user_id: str
    authority_id: str
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    created_by_ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    reason_revoked: Optional[str] = None
    replaced_by_token: Optional[str] = None

    @classmethod
    def new(
        cls,
        token: str,
        user_id: str,
        ttl: timedelta,
        created_by_ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        created = now or _utcnow()
        return cls(
            token=token,
            user_id=user_id,
            expires_at=created + ttl,
            created_at=created,
            created_by_ip=created_by_ip,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_replaced(self) -> bool:
        return self.replaced_by_token is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def revoked(
        self,
        *,
        at: datetime,
        ip: Optional[str] = None,
        reason: Optional[str] = None,
        replaced_by: Optional[str] = None,
    ) -> "RefreshToken":
        return replace(
            self,
            revoked_at=at,
            revoked_by_ip=ip,
            reason_revoked=reason,
            replaced_by_token=replaced_by or self.replaced_by_token,
        )
