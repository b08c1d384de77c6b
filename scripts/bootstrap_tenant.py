#!/usr/bin/env python3
"""Provision the first tenant and its PDG administrator.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=owner@example.com BOOTSTRAP_PASSWORD=Secret123 \
        python scripts/bootstrap_tenant.py --tenant-name "Boutique Abidjan"

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant-name "Boutique Abidjan" \
        --email owner@example.com --password Secret123 --code RAYA2026

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the administrator
    BOOTSTRAP_PASSWORD: Password for the administrator
    APP_ACTIVATION_CODE: Activation code accepted by the server (default RAYA2026)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_tenant(args: argparse.Namespace) -> dict:
    """Run the bootstrap flow and return the new tenant and admin ids."""
    # Import here to avoid loading config before env vars are set
    from rayauth.service.runtime import get_runtime

    runtime = get_runtime()
    code = args.code or runtime.settings.activation_code

    if args.dry_run:
        check = runtime.auth.verify_activation_code(code)
        existing = runtime.store.get_user_by_email(args.email.strip().lower())
        print(f"[DRY RUN] Activation code valid: {check['valid']}")
        print(f"[DRY RUN] Email already registered: {existing is not None}")
        return {"status": "dry_run"}

    result = await runtime.auth.bootstrap(
        code,
        tenant_name=args.tenant_name,
        email=args.email,
        password=args.password,
        first_name=args.first_name,
        last_name=args.last_name,
        tenant_code=args.tenant_code,
        currency=args.currency,
        timezone_name=args.timezone,
    )
    await runtime.auth.drain_notifications()
    return {
        "status": "created",
        "tenant": result.tenant,
        "user": result.user,
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first Raya tenant and its administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-name", required=True, help="Company name")
    parser.add_argument("--tenant-code", default=None, help="Explicit tenant code (derived if omitted)")
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Administrator email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Administrator password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--code", default=None, help="Activation code (defaults to APP_ACTIVATION_CODE)")
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument("--currency", default=None, help="ISO currency code (default XOF)")
    parser.add_argument("--timezone", default=None, help="IANA timezone (default Africa/Abidjan)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate inputs without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if len(args.password) < 6:
        print("Error: Password must be at least 6 characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/rayauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from rayauth.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_tenant(args))
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        tenant = result["tenant"]
        user = result["user"]
        print("\nTenant bootstrapped successfully!")
        print(f"  Tenant: {tenant['name']} ({tenant['tenant_code']})")
        print(f"  Tenant ID: {tenant['id']}")
        print(f"  Admin: {user['email']} (username: {user['username']}, role: {user['role']})")
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
