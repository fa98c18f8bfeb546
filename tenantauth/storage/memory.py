from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import (
    Authority,
    AuthorityAssignment,
    Membership,
    Organization,
    PermissionLevel,
    RefreshToken,
    ResourcePermission,
    SystemRole,
    User,
)

STATE_VERSION = 1

_DATETIME_FIELDS = ("created_at", "expires_at", "revoked_at")
_ENUM_FIELDS = {"system_role": SystemRole, "level": PermissionLevel}


class MemoryStore:
    """In-memory store accessor for tests and single-node deployments.

    Methods are coroutines so the store is interchangeable with an I/O-bound
    backend; every read and write runs under one re-entrant lock and never
    awaits while holding it.

    With ``fs_root`` set, the whole state is written to
    ``{fs_root}/state/memory_store.json`` after every mutation and loaded at
    construction, so processes pointed at the same root (the bootstrap script
    and the API server) share organizations, principals and token chains.
    State is read once at startup; writes from another live process are not
    picked up until restart.

    Refresh tokens past ``expires_at`` by more than ``refresh_token_retention``
    are purged on insert once every token after them in their chain is purgeable
    too, so reuse of an ancestor is still detected while a live descendant exists.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        refresh_token_retention: timedelta = timedelta(days=1),
    ) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}
        self.authorities: Dict[str, Authority] = {}
        self.assignments: Dict[Tuple[str, str], AuthorityAssignment] = {}
        # (authority_id, resource_name) -> row
        self.resource_permissions: Dict[Tuple[str, str], ResourcePermission] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.refresh_token_retention = refresh_token_retention
        self._data_lock = threading.RLock()

        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    path=str(self._state_path()),
                    organizations=len(self.organizations),
                    users=len(self.users),
                    refresh_tokens=len(self.refresh_tokens),
                )

    # -- persistence ---------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(record_type: Type, data: dict) -> Any:
        values = dict(data)
        for key in _DATETIME_FIELDS:
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        for key, enum_cls in _ENUM_FIELDS.items():
            if key in values:
                values[key] = enum_cls(values[key])
        return record_type(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "version": STATE_VERSION,
            "organizations": [self._serialize(o) for o in self.organizations.values()],
            "users": [self._serialize(u) for u in self.users.values()],
            "memberships": [self._serialize(m) for m in self.memberships.values()],
            "authorities": [self._serialize(a) for a in self.authorities.values()],
            "assignments": [self._serialize(a) for a in self.assignments.values()],
            "resource_permissions": [
                self._serialize(r) for r in self.resource_permissions.values()
            ],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
        }
        path = self._state_path()
        # Write to a temp file then rename so a reader never sees half a state
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        if data.get("version") != STATE_VERSION:
            raise RuntimeError(
                f"unsupported memory store state version {data.get('version')!r} in {path}"
            )
        self.organizations = {
            o.id: o
            for o in (self._deserialize(Organization, raw) for raw in data["organizations"])
        }
        self.users = {
            u.id: u for u in (self._deserialize(User, raw) for raw in data["users"])
        }
        self.memberships = {
            (m.user_id, m.organization_id): m
            for m in (self._deserialize(Membership, raw) for raw in data["memberships"])
        }
        self.authorities = {
            a.id: a
            for a in (self._deserialize(Authority, raw) for raw in data["authorities"])
        }
        self.assignments = {
            (a.user_id, a.authority_id): a
            for a in (
                self._deserialize(AuthorityAssignment, raw) for raw in data["assignments"]
            )
        }
        self.resource_permissions = {
            (r.authority_id, r.resource_name): r
            for r in (
                self._deserialize(ResourcePermission, raw)
                for raw in data["resource_permissions"]
            )
        }
        self.refresh_tokens = {
            t.token: t
            for t in (self._deserialize(RefreshToken, raw) for raw in data["refresh_tokens"])
        }
        return True

    # -- organizations -------------------------------------------------

    async def create_organization(
        self, slug: str, name: str, *, created_by: Optional[str] = None
    ) -> Organization:
        with self._data_lock:
            if any(org.slug == slug for org in self.organizations.values()):
                raise ConstraintViolation("slug already exists", {"field": "slug"})
            org = Organization(slug=slug, name=name, created_by=created_by)
            self.organizations[org.id] = org
            self._persist_state()
            return org

    async def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._data_lock:
            return next(
                (org for org in self.organizations.values() if org.slug == slug), None
            )

    async def set_organization_active(
        self, organization_id: str, active: bool
    ) -> Organization:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            if not org:
                raise RecordNotFound(
                    "organization not found", {"organization_id": organization_id}
                )
            org.is_active = active
            self._persist_state()
            return org

    # -- users ---------------------------------------------------------

    async def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        system_role: SystemRole = SystemRole.NONE,
        created_by: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                email=normalized,
                password_hash=password_hash,
                system_role=system_role,
                created_by=created_by,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    async def set_system_role(self, user_id: str, role: SystemRole) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.system_role = role
            self._persist_state()
            return user

    # -- memberships ---------------------------------------------------

    async def add_membership(
        self,
        user_id: str,
        organization_id: str,
        role: str = "member",
        *,
        created_by: Optional[str] = None,
    ) -> Membership:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if organization_id not in self.organizations:
                raise RecordNotFound(
                    "organization not found", {"organization_id": organization_id}
                )
            key = (user_id, organization_id)
            existing = self.memberships.get(key)
            if existing:
                return existing
            membership = Membership(
                user_id=user_id,
                organization_id=organization_id,
                role=role,
                created_by=created_by,
            )
            self.memberships[key] = membership
            self._persist_state()
            return membership

    async def remove_membership(self, user_id: str, organization_id: str) -> bool:
        with self._data_lock:
            removed = self.memberships.pop((user_id, organization_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    async def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]:
        with self._data_lock:
            return self.memberships.get((user_id, organization_id))

    # -- authorities ---------------------------------------------------

    async def create_authority(
        self,
        name: str,
        organization_id: Optional[str] = None,
        *,
        is_system_authority: bool = False,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Authority:
        with self._data_lock:
            if organization_id is not None and organization_id not in self.organizations:
                raise RecordNotFound(
                    "organization not found", {"organization_id": organization_id}
                )
            if any(
                a.name == name and a.organization_id == organization_id
                for a in self.authorities.values()
            ):
                raise ConstraintViolation(
                    "authority name already exists", {"field": "name"}
                )
            authority = Authority(
                name=name,
                organization_id=organization_id,
                is_system_authority=is_system_authority,
                description=description,
                created_by=created_by,
            )
            self.authorities[authority.id] = authority
            self._persist_state()
            return authority

    async def get_authority(self, authority_id: str) -> Optional[Authority]:
        with self._data_lock:
            return self.authorities.get(authority_id)

    async def list_user_authorities(self, user_id: str) -> List[Authority]:
        with self._data_lock:
            return [
                self.authorities[aid]
                for (uid, aid) in self.assignments
                if uid == user_id and aid in self.authorities
            ]

    async def assign_authority(
        self, user_id: str, authority_id: str, *, created_by: Optional[str] = None
    ) -> AuthorityAssignment:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if authority_id not in self.authorities:
                raise RecordNotFound(
                    "authority not found", {"authority_id": authority_id}
                )
            key = (user_id, authority_id)
            existing = self.assignments.get(key)
            if existing:
                return existing
            assignment = AuthorityAssignment(
                user_id=user_id, authority_id=authority_id, created_by=created_by
            )
            self.assignments[key] = assignment
            self._persist_state()
            return assignment

    async def unassign_authority(self, user_id: str, authority_id: str) -> bool:
        with self._data_lock:
            removed = self.assignments.pop((user_id, authority_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    # -- resource permissions -----------------------------------------

    async def set_resource_permission(
        self,
        authority_id: str,
        resource_name: str,
        level: PermissionLevel,
        *,
        created_by: Optional[str] = None,
    ) -> ResourcePermission:
        with self._data_lock:
            if authority_id not in self.authorities:
                raise RecordNotFound(
                    "authority not found", {"authority_id": authority_id}
                )
            row = ResourcePermission(
                authority_id=authority_id,
                resource_name=resource_name,
                level=PermissionLevel(level),
                created_by=created_by,
            )
            self.resource_permissions[(authority_id, resource_name)] = row
            self._persist_state()
            return row

    async def remove_resource_permission(
        self, authority_id: str, resource_name: str
    ) -> bool:
        with self._data_lock:
            removed = self.resource_permissions.pop((authority_id, resource_name), None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    async def list_resource_permissions(
        self, authority_ids: Sequence[str]
    ) -> List[ResourcePermission]:
        wanted = set(authority_ids)
        with self._data_lock:
            return [
                row
                for (aid, _), row in self.resource_permissions.items()
                if aid in wanted
            ]

    # -- refresh tokens ------------------------------------------------

    def purge_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        """Drop tokens whose whole forward chain expired before the retention window.

        Returns the number of tokens removed. A purged token presented again
        reads as unrecognized; nothing after it in its chain is still usable.
        """
        cutoff = (now or datetime.now(timezone.utc)) - self.refresh_token_retention
        with self._data_lock:
            memo: Dict[str, bool] = {}
            doomed = [
                value
                for value in self.refresh_tokens
                if self._chain_expired(value, cutoff, memo)
            ]
            for value in doomed:
                del self.refresh_tokens[value]
        if doomed:
            self.logger.info("refresh_tokens_purged", count=len(doomed))
        return len(doomed)

    def _chain_expired(self, value: str, cutoff: datetime, memo: Dict[str, bool]) -> bool:
        path: List[str] = []
        seen = set()
        expired = True
        current: Optional[str] = value
        while current is not None and current not in seen:
            if current in memo:
                expired = memo[current]
                break
            token = self.refresh_tokens.get(current)
            if token is None:
                break
            seen.add(current)
            path.append(current)
            if token.expires_at > cutoff:
                expired = False
                break
            current = token.replaced_by_token
        for visited in path:
            memo[visited] = expired
        return expired

    async def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self.purge_refresh_tokens()
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = token
            self._persist_state()
            return token

    async def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    async def replace_refresh_token(
        self,
        token: str,
        successor: RefreshToken,
        *,
        at: datetime,
        ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Revoke ``token`` in favour of ``successor`` only if it is still unused.

        Returns False when another caller already revoked or replaced it; the
        successor is inserted only when the transition wins.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(token)
            if current is None or current.is_revoked or current.is_replaced:
                return False
            if successor.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token] = current.revoked(
                at=at, ip=ip, reason=reason, replaced_by=successor.token
            )
            self.refresh_tokens[successor.token] = successor
            self.purge_refresh_tokens(at)
            self._persist_state()
            return True

    async def revoke_refresh_token(
        self,
        token: str,
        *,
        at: datetime,
        ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token)
            if current is None or current.is_revoked:
                return False
            self.refresh_tokens[token] = current.revoked(at=at, ip=ip, reason=reason)
            self._persist_state()
            return True

    async def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(rt)
                for rt in self.refresh_tokens.values()
                if rt.user_id == user_id
            ]
