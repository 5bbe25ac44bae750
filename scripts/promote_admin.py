#!/usr/bin/env python3
"""Grant the admin role to an existing account.

Usage:
    # Using environment variables:
    ADMIN_PHONE=+8613800138000 python scripts/promote_admin.py

    # Or with command line args:
    python scripts/promote_admin.py --phone "+86 138 0013 8000"

Environment Variables:
    ADMIN_PHONE: Phone number of the account to promote
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def promote_admin(phone: str, dry_run: bool = False) -> dict:
    """Give the account registered to ``phone`` the admin role.

    Returns:
        dict with user_id, phone_masked and status
        ('promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from phonegate.service.runtime import get_runtime
    from phonegate.storage.models import AuditEvent, utcnow

    runtime = get_runtime()
    canonical = runtime.phones.normalize(phone)
    masked = runtime.phones.mask(canonical.e164)

    with runtime.store.transaction():
        user = runtime.store.get_user_by_phone(canonical.e164, for_update=True)
        if user is None:
            raise LookupError(f"no account registered to {masked}")
        if user.role == "admin":
            return {"user_id": user.id, "phone_masked": masked, "status": "already_admin"}
        if dry_run:
            return {"user_id": user.id, "phone_masked": masked, "status": "dry_run"}
        before = user.role
        user.role = "admin"
        user.updated_at = utcnow()
        runtime.store.save_user(user)

    runtime.audit.emit(
        AuditEvent(
            action="user.role_changed",
            resource="user",
            resource_id=user.id,
            before={"role": before},
            after={"role": user.role},
        )
    )
    return {"user_id": user.id, "phone_masked": masked, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Grant the admin role to a PhoneGate account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Account phone number (or set ADMIN_PHONE env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.phone:
        print("Error: --phone or ADMIN_PHONE environment variable required")
        sys.exit(1)

    try:
        result = promote_admin(args.phone, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "promoted":
        print(f"Promoted {result['phone_masked']} to admin (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print(f"{result['phone_masked']} is already an admin; no changes needed.")
    else:
        print(f"[DRY RUN] Would promote {result['phone_masked']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
