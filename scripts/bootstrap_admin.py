#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Examples:
    python scripts/bootstrap_admin.py --email ops@example.com --username ops
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=Secure123 python scripts/bootstrap_admin.py

A new account without --password gets a generated one, shown once. Without
DATABASE_URL the process-local memory store is used, which is only useful
for trying the flow out.
"""
from __future__ import annotations

import argparse
import os
import secrets
import string
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def generate_password(length: int = 16) -> str:
    """Random password that always satisfies the strength rules."""
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.isupper() for c in candidate)
            and any(c.islower() for c in candidate)
            and any(c.isdigit() for c in candidate)
        ):
            return candidate


def bootstrap_admin(
    email: str, username: str, password: str | None, dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    The result status is one of created, promoted, already_admin or dry_run.
    """
    from autovault.service.runtime import get_runtime
    from autovault.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    existing = runtime.store.find_by_identity(email)

    if existing:
        if existing.role == ROLE_ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_role(existing.id, ROLE_ADMIN)
        runtime.audit.record(
            "ACCOUNT_ROLE_CHANGED",
            actor_name="bootstrap",
            detail={"target_id": existing.id, "role": ROLE_ADMIN},
        )
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    generated = password is None
    password = password or generate_password()
    account = runtime.auth.register(username, email, password, role=ROLE_ADMIN)
    runtime.store.mark_email_verified(account.id)
    print(f"Created admin account: {email} (id: {account.id})")
    result = {"user_id": account.id, "email": email, "status": "created"}
    if generated:
        result["password"] = password
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote an AutoVault administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="account email; defaults to $ADMIN_EMAIL",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="username for a new account; defaults to $ADMIN_USERNAME or admin",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="password for a new account; defaults to $ADMIN_PASSWORD",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="report the action without writing anything",
    )

    args = parser.parse_args()

    if not args.email:
        parser.error("an email is required (--email or ADMIN_EMAIL)")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is not set; changes go to a throwaway memory store")
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/autovault-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from autovault.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, args.username, args.password, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for reason in exc.detail.get("errors", []):
            print(f"  - {reason}")
        sys.exit(1)

    from autovault.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.tasks.drain()
    runtime.close()

    status = result["status"]
    if status == "created" and result.get("password"):
        print(f"Generated password (store it now): {result['password']}")
    elif status == "already_admin":
        print("Nothing to do.")


if __name__ == "__main__":
    main()
