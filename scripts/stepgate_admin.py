#!/usr/bin/env python3
"""Inspect or reset the second factor of an identity.

Usage:
    # Show whether a factor is enabled:
    python scripts/stepgate_admin.py status --identity user-123

    # Clear the factor, recovery codes and any outstanding challenge or code
    # (for a user who lost their authenticator and every recovery code):
    python scripts/stepgate_admin.py disable --identity user-123

    # Record the address email codes are sent to:
    python scripts/stepgate_admin.py register --identity user-123 --email user@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Directory for the memory store's persisted state
    STEPGATE_IDENTITY: Default for --identity
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


async def show_status(identity_id: str) -> dict:
    # Import here to avoid loading config before env vars are set
    from stepgate.service.runtime import get_runtime

    runtime = get_runtime()
    status = await runtime.login.status(identity_id)
    return {
        "identity_id": identity_id,
        "enabled": status.enabled,
        "method": status.method.value if status.method else None,
        "confirmed_at": status.confirmed_at.isoformat() if status.confirmed_at else None,
    }


async def disable_factor(identity_id: str, dry_run: bool = False) -> dict:
    from stepgate.service.runtime import get_runtime

    runtime = get_runtime()
    status = await runtime.login.status(identity_id)
    if not status.enabled and runtime.store.get_factor_state(identity_id).secret is None:
        print(f"Identity {identity_id} has no second factor; nothing to clear")
        return {"identity_id": identity_id, "status": "not_enrolled"}
    if dry_run:
        print(f"[DRY RUN] Would clear the {status.method.value if status.method else 'pending'} factor for {identity_id}")
        return {"identity_id": identity_id, "status": "dry_run"}
    await runtime.login.disable(identity_id)
    return {"identity_id": identity_id, "status": "disabled"}


def register_identity(identity_id: str, email: str) -> dict:
    from stepgate.service.runtime import get_runtime

    runtime = get_runtime()
    snapshot = runtime.store.register_identity(identity_id, email)
    runtime.cache.invalidate(identity_id)
    return {"identity_id": snapshot.identity_id, "status": "registered"}


def main():
    parser = argparse.ArgumentParser(
        description="Administer step-up factors for StepGate identities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("command", choices=["status", "disable", "register"])
    parser.add_argument(
        "--identity",
        default=os.environ.get("STEPGATE_IDENTITY"),
        help="Identity id (or set STEPGATE_IDENTITY env var)",
    )
    parser.add_argument("--email", help="Delivery address for the register command")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identity:
        print("Error: --identity or STEPGATE_IDENTITY environment variable required")
        sys.exit(1)

    if args.command == "register" and not args.email:
        print("Error: --email is required for register")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/stepgate-admin")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        if args.command == "status":
            result = asyncio.run(show_status(args.identity))
            print(f"Identity: {result['identity_id']}")
            print(f"  Enabled: {result['enabled']}")
            print(f"  Method: {result['method'] or '-'}")
            print(f"  Confirmed at: {result['confirmed_at'] or '-'}")
        elif args.command == "disable":
            result = asyncio.run(disable_factor(args.identity, args.dry_run))
            if result["status"] == "disabled":
                print(f"\nSecond factor cleared for {args.identity}.")
        else:
            result = register_identity(args.identity, args.email)
            print(f"Registered delivery address for {result['identity_id']}.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
