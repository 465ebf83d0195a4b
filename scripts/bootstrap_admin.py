#!/usr/bin/env python3
"""Create the platform SUPER_ADMIN account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Admin12345 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password Admin12345

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password (8-128 chars, upper, lower and digit)
    JWT_SECRET / JWT_REFRESH_SECRET: required, same as for the API
    DATABASE_URL: PostgreSQL connection string (set USE_MEMORY_STORE=true to skip)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

DEFAULT_NAME = "Super Administrator"


async def bootstrap_admin(
    runtime, email: str, password: str, name: str = DEFAULT_NAME, dry_run: bool = False
) -> dict:
    """Create the super admin unless an account with ``email`` already exists.

    Returns:
        dict with user_id, email and status ('created', 'exists', 'conflict' or 'dry_run')
    """
    from payauth.storage.models import UserType

    existing = runtime.store.get_user_by_email(email)
    if existing:
        status = "exists" if existing.type == UserType.SUPER_ADMIN else "conflict"
        return {"user_id": existing.id, "email": existing.email, "status": status}

    if dry_run:
        return {"user_id": None, "email": email.strip().lower(), "status": "dry_run"}

    result = await runtime.auth.sign_up(
        email=email, password=password, name=name, user_type=UserType.SUPER_ADMIN
    )
    return {"user_id": result.user.id, "email": result.user.email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap the PayAuth super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", DEFAULT_NAME))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL is required")
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD is required")

    from pydantic import ValidationError

    from payauth.api.schemas import SignupRequest

    try:
        # Same email/password/name rules as the public sign-up endpoint.
        validated = SignupRequest(email=args.email, password=args.password, name=args.name)
    except ValidationError as exc:
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            ctx_error = (error.get("ctx") or {}).get("error")
            print(f"Error: {field}: {ctx_error or error['msg']}")
        sys.exit(1)

    from payauth.service.runtime import get_runtime

    runtime = get_runtime()
    result = asyncio.run(
        bootstrap_admin(
            runtime, validated.email, validated.password, validated.name, args.dry_run
        )
    )

    status = result["status"]
    if status == "created":
        print(f"Created super admin {result['email']} (id: {result['user_id']})")
    elif status == "exists":
        print(f"Super admin {result['email']} already exists (id: {result['user_id']})")
    elif status == "dry_run":
        print(f"[DRY RUN] Would create super admin {result['email']}")
    else:
        print(f"Error: {result['email']} is already registered with a different role")
        sys.exit(1)


if __name__ == "__main__":
    main()
