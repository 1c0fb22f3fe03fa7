#!/usr/bin/env python3
"""Create the first admin identity.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Password-123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity (12+ characters, 3+ classes)
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret shared with the running service
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Register ``email`` as an admin unless an identity already owns it."""
    existing = runtime.store.get_identity_by_email(email)
    if existing:
        status = "already_admin" if existing.is_admin else "exists_not_admin"
        return {"identity_id": existing.id, "email": existing.email, "status": status}

    if dry_run:
        return {"identity_id": None, "email": email, "status": "dry_run"}

    result = runtime.auth.register(email, password, role="admin")
    runtime.audit.flush()
    return {
        "identity_id": result.identity.id,
        "email": result.identity.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for storeguard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD are required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    from storeguard.config import Settings
    from storeguard.logging import configure_logging
    from storeguard.service.runtime import Runtime

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json, settings.log_dev_mode)
    runtime = Runtime(settings)
    try:
        result = bootstrap_admin(runtime, args.email, args.password, args.dry_run)
    finally:
        runtime.audit.stop()
        runtime.store.close()

    print(f"{result['status']}: {result['email']} (id: {result['identity_id']})")
    if result["status"] == "exists_not_admin":
        sys.exit(2)


if __name__ == "__main__":
    main()
