#!/usr/bin/env python3
"""Create or update an administrator in the persisted admin directory.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=couple@example.com ADMIN_PASSWORD='Secure-Password-123' STATE_PATH=/srv/wedding/admins.json \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email couple@example.com --password 'Secure-Password-123' \
        --role admin --state-path /srv/wedding/admins.json

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    ADMIN_ROLE: super_admin, admin or moderator (default super_admin)
    STATE_PATH: JSON file holding the admin directory
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    state_path: str,
    email: str,
    password: str,
    role: str,
    *,
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create an admin, or update role/password of an existing one.

    Returns:
        dict with user_id, email, role and status
        ('created', 'updated', 'unchanged' or 'dry_run')
    """
    from wedding_admin.service.identity import LocalIdentityProvider, validate_password
    from wedding_admin.service.rbac import Role
    from wedding_admin.storage.memory import MemoryStore

    role = Role(role).value
    validate_password(password)
    store = MemoryStore(state_path)
    identity = LocalIdentityProvider(store)

    existing = store.get_user_by_email(email)
    if existing:
        changes = []
        if existing.role != role:
            changes.append("role")
        if reset_password:
            changes.append("password")
        if not changes:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "unchanged"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "dry_run"}
        if "role" in changes:
            store.update_user_role(existing.id, role)
        if "password" in changes:
            identity.set_password(existing.id, password)
        return {
            "user_id": existing.id,
            "email": existing.email,
            "role": role,
            "status": "updated",
            "changed": changes,
        }

    if dry_run:
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = store.create_user(email, role)
    identity.set_password(user.id, password)
    return {"user_id": user.id, "email": user.email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a wedding site administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
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
        "--role",
        default=os.environ.get("ADMIN_ROLE", "super_admin"),
        choices=["super_admin", "admin", "moderator"],
    )
    parser.add_argument(
        "--state-path",
        default=os.environ.get("STATE_PATH"),
        help="Admin directory file (or set STATE_PATH env var)",
    )
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("--email", args.email), ("--password", args.password), ("--state-path", args.state_path)):
        if not value:
            print(f"Error: {flag} (or the matching environment variable) is required")
            sys.exit(1)

    try:
        result = bootstrap_admin(
            args.state_path,
            args.email,
            args.password,
            args.role,
            reset_password=args.reset_password,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created {result['role']} {result['email']} (id: {result['user_id']})")
    elif status == "updated":
        print(f"Updated {', '.join(result['changed'])} for {result['email']}")
    elif status == "dry_run":
        print(f"[DRY RUN] Would create or update {result['email']} as {result['role']}")
    else:
        print(f"No changes needed - {result['email']} is already {result['role']}.")


if __name__ == "__main__":
    main()
