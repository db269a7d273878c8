#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Bind an external account while at it:
    python scripts/bootstrap_admin.py --email admin@example.com --bind Steve

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_BIND_IDENTIFIER: External account to bind as the admin's primary (optional)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    email: str, *, name: str | None = None, bind_identifier: str | None = None, dry_run: bool = False
) -> dict:
    """Create the user if needed and grant it the admin role.

    Returns:
        dict with user_id, email and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from hydroline_identity.service.rbac import ADMIN_ROLE
    from hydroline_identity.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)

    if user and ADMIN_ROLE in runtime.rbac.user_role_keys(user.id):
        print(f"User {email} already exists as admin (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "promote existing user" if user else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}

    status = "promoted"
    if not user:
        user = runtime.store.create_user(email, name=name, email_verified=True)
        status = "created"
    roles = set(runtime.rbac.user_role_keys(user.id)) | {ADMIN_ROLE}
    runtime.rbac.assign_roles(user.id, sorted(roles), actor_id=user.id)

    result = {"user_id": user.id, "email": email, "status": status}
    if bind_identifier:
        binding = await runtime.bindings.admin_create_binding(
            user.id, bind_identifier, operator_id=user.id, set_primary=True
        )
        result["binding_id"] = binding.id
        print(f"Bound external account {binding.username} (id: {binding.id})")
    await runtime.close()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Hydroline Identity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new user")
    parser.add_argument(
        "--bind",
        dest="bind_identifier",
        default=os.environ.get("ADMIN_BIND_IDENTIFIER"),
        help="External account to bind (or set ADMIN_BIND_IDENTIFIER env var)",
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/hydroline-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                name=args.name,
                bind_identifier=args.bind_identifier,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
