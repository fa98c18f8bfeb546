from __future__ import annotations

from typing import Optional

from tenantauth.logging import get_logger
from tenantauth.service.cache_bus import CacheBus
from tenantauth.service.errors import ServiceError, ValidationError
from tenantauth.service.tenancy import parse_slug
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    Authority,
    AuthorityAssignment,
    Membership,
    Organization,
    PermissionLevel,
    ResourcePermission,
    SystemRole,
    User,
)

logger = get_logger(__name__)


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class AuthorityService:
    """Administrative mutations of tenants, principals and authorities.

    Every mutation is written to the store first and then publishes the
    narrowest cache invalidation that covers it. Publishing is
    fire-and-forget, so a bus outage never fails the mutation.
    """

    def __init__(self, store: MemoryStore, bus: CacheBus) -> None:
        self.store = store
        self.bus = bus

    async def _get_authority(self, authority_id: str) -> Authority:
        authority = await self.store.get_authority(authority_id)
        if authority is None:
            raise NotFoundError("authority not found", detail={"authority_id": authority_id})
        return authority

    def _ensure_mutable(self, authority: Authority) -> None:
        if authority.is_system_authority:
            raise ValidationError(
                "system authorities cannot be modified",
                detail={"authority_id": authority.id},
            )

    async def _publish_for_authority_users(self, authority: Authority) -> None:
        if authority.is_global:
            await self.bus.invalidate_all_permissions()
        else:
            await self.bus.invalidate_tenant_permissions(authority.organization_id)

    # -- tenants and principals ---------------------------------------

    async def create_organization(
        self, slug: str, name: str, *, created_by: Optional[str] = None
    ) -> Organization:
        normalized = parse_slug(slug)
        if not name or not name.strip():
            raise ValidationError("organization name is required")
        try:
            org = await self.store.create_organization(
                normalized, name.strip(), created_by=created_by
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        # Evicts any cached lookup of a previously deactivated tenant
        await self.bus.invalidate_tenant_resolution(normalized)
        logger.info("organization_created", organization_id=org.id, slug=normalized)
        return org

    async def deactivate_organization(self, organization_id: str) -> Organization:
        try:
            org = await self.store.set_organization_active(organization_id, False)
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        await self.bus.invalidate_tenant_resolution(org.slug)
        await self.bus.invalidate_tenant_permissions(org.id)
        logger.info("organization_deactivated", organization_id=org.id, slug=org.slug)
        return org

    async def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        system_role: SystemRole = SystemRole.NONE,
        created_by: Optional[str] = None,
    ) -> User:
        if not email or "@" not in email:
            raise ValidationError("a valid email is required")
        try:
            return await self.store.create_user(
                email, password_hash, system_role=system_role, created_by=created_by
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    async def set_system_role(self, user_id: str, role: SystemRole) -> User:
        try:
            user = await self.store.set_system_role(user_id, SystemRole(role))
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        await self.bus.invalidate_user_everywhere(user_id)
        logger.info("system_role_changed", user_id=user_id, system_role=user.system_role.value)
        return user

    async def add_member(
        self,
        user_id: str,
        organization_id: str,
        role: str = "member",
        *,
        created_by: Optional[str] = None,
    ) -> Membership:
        try:
            membership = await self.store.add_membership(
                user_id, organization_id, role, created_by=created_by
            )
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        await self.bus.invalidate_user_permissions(organization_id, user_id)
        return membership

    async def remove_member(self, user_id: str, organization_id: str) -> bool:
        removed = await self.store.remove_membership(user_id, organization_id)
        if removed:
            await self.bus.invalidate_user_permissions(organization_id, user_id)
            logger.info("membership_removed", user_id=user_id, organization_id=organization_id)
        return removed

    # -- authorities ---------------------------------------------------

    async def create_authority(
        self,
        name: str,
        organization_id: Optional[str] = None,
        *,
        description: Optional[str] = None,
        is_system_authority: bool = False,
        created_by: Optional[str] = None,
    ) -> Authority:
        if not name or not name.strip():
            raise ValidationError("authority name is required")
        try:
            authority = await self.store.create_authority(
                name.strip(),
                organization_id,
                is_system_authority=is_system_authority,
                description=description,
                created_by=created_by,
            )
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "authority_created",
            authority_id=authority.id,
            organization_id=organization_id,
        )
        return authority

    async def set_resource_permission(
        self,
        authority_id: str,
        resource_name: str,
        level: object,
        *,
        created_by: Optional[str] = None,
    ) -> ResourcePermission:
        try:
            parsed = PermissionLevel.parse(level)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"level": repr(level)}) from exc
        if not resource_name or not resource_name.strip():
            raise ValidationError("resource name is required")
        authority = await self._get_authority(authority_id)
        self._ensure_mutable(authority)
        row = await self.store.set_resource_permission(
            authority.id, resource_name.strip(), parsed, created_by=created_by
        )
        await self._publish_for_authority_users(authority)
        logger.info(
            "resource_permission_set",
            authority_id=authority.id,
            resource=row.resource_name,
            level=int(parsed),
        )
        return row

    async def remove_resource_permission(self, authority_id: str, resource_name: str) -> bool:
        authority = await self._get_authority(authority_id)
        self._ensure_mutable(authority)
        removed = await self.store.remove_resource_permission(authority.id, resource_name)
        if removed:
            await self._publish_for_authority_users(authority)
        return removed

    async def assign_authority(
        self, user_id: str, authority_id: str, *, created_by: Optional[str] = None
    ) -> AuthorityAssignment:
        authority = await self._get_authority(authority_id)
        try:
            assignment = await self.store.assign_authority(
                user_id, authority.id, created_by=created_by
            )
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        await self._publish_for_assignment(user_id, authority)
        logger.info("authority_assigned", user_id=user_id, authority_id=authority.id)
        return assignment

    async def unassign_authority(self, user_id: str, authority_id: str) -> bool:
        authority = await self._get_authority(authority_id)
        removed = await self.store.unassign_authority(user_id, authority.id)
        if removed:
            await self._publish_for_assignment(user_id, authority)
            logger.info("authority_unassigned", user_id=user_id, authority_id=authority.id)
        return removed

    async def _publish_for_assignment(self, user_id: str, authority: Authority) -> None:
        if authority.is_global:
            await self.bus.invalidate_user_everywhere(user_id)
        else:
            await self.bus.invalidate_user_permissions(authority.organization_id, user_id)
