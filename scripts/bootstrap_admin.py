#!/usr/bin/env python3
"""Provision a tenant and an Admin principal.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py --slug acme --name "Acme Corp"

    # Or with command line args:
    python scripts/bootstrap_admin.py --slug acme --name "Acme Corp" \
        --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)
    SHARED_FS_ROOT: State directory shared with the API server (default /srv/tenantauth)
    JWT_SECRET: Signing secret (a throwaway one is generated when unset, and no
        access token is printed since the server could not verify it)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_FS_ROOT = "/srv/tenantauth"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    slug: str, name: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create the organization and the admin principal, or reuse existing ones.

    Returns:
        dict with organization_id, user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.runtime import get_runtime
    from tenantauth.service.tenancy import parse_slug
    from tenantauth.storage.models import SystemRole

    runtime = get_runtime()
    normalized = parse_slug(slug)

    org = await runtime.store.get_organization_by_slug(normalized)
    existing_user = await runtime.store.get_user_by_email(email)

    if dry_run:
        print(
            f"[DRY RUN] Would ensure organization '{normalized}' and admin {email}"
        )
        return {
            "organization_id": org.id if org else None,
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    if org is None:
        org = await runtime.authority.create_organization(normalized, name)
        print(f"Created organization {normalized} (id: {org.id})")

    if existing_user and existing_user.is_admin:
        status = "already_admin"
        user = existing_user
    elif existing_user:
        user = await runtime.authority.set_system_role(existing_user.id, SystemRole.ADMIN)
        status = "promoted"
    else:
        user = await runtime.authority.create_user(
            email,
            runtime.tokens.hash_password(password),
            system_role=SystemRole.ADMIN,
        )
        status = "created"
    await runtime.authority.add_member(user.id, org.id, role="owner")

    result = await runtime.tokens.login(email, password) if status == "created" else None
    await runtime.bus.flush()
    return {
        "organization_id": org.id,
        "user_id": user.id,
        "email": user.email,
        "status": status,
        "access_token": result.access_token.token if result else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a tenant and an admin principal for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--slug", required=True, help="Tenant slug (URL path segment)")
    parser.add_argument("--name", required=True, help="Organization display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--fs-root",
        default=os.environ.get("SHARED_FS_ROOT", DEFAULT_FS_ROOT),
        help="State directory shared with the API server (or set SHARED_FS_ROOT env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    ephemeral_secret = not os.environ.get("JWT_SECRET")
    if ephemeral_secret:
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    os.environ.setdefault("USE_MEMORY_STORE", "true")
    os.environ["SHARED_FS_ROOT"] = args.fs_root

    try:
        result = asyncio.run(
            bootstrap_admin(args.slug, args.name, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Organization ID: {result['organization_id']}")
        print(f"  State: {args.fs_root}")
        if result.get("access_token") and not ephemeral_secret:
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
