#!/usr/bin/env python3
"""Seed the administrator account for a fresh deployment.

Usage:
    ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --identifier admin@campus.edu --password ChangeMe123

Environment Variables:
    ADMIN_IDENTIFIER: Username and email of the admin (default admin@lms.local)
    ADMIN_PASSWORD: Initial password (at least 8 characters, letters and digits)
    USE_MEMORY_STORE / DATABASE_URL: which store to seed
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    from campusauth.service.bootstrap import DEFAULT_ADMIN_IDENTIFIER

    parser = argparse.ArgumentParser(
        description="Seed the Campus LMS administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("ADMIN_IDENTIFIER", DEFAULT_ADMIN_IDENTIFIER),
        help="Admin username and email (or set ADMIN_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    # Import after argument parsing so --help works without a configured store
    from campusauth.service.bootstrap import ensure_admin
    from campusauth.service.errors import WeakPasswordError
    from campusauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        result = ensure_admin(
            runtime.store,
            args.password,
            identifier=args.identifier,
            passwords=runtime.passwords,
            dry_run=args.dry_run,
        )
    except WeakPasswordError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result.status == "exists":
        print(f"Admin {args.identifier} already exists (id: {result.principal.id})")
    elif result.status == "dry_run":
        print(f"[DRY RUN] Would create admin: {args.identifier}")
    else:
        print(f"Created admin: {args.identifier} (id: {result.principal.id})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
