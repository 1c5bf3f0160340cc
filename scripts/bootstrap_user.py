#!/usr/bin/env python3
"""Seed a pre-verified account for demos and initial setup.

Usage:
    # Using environment variables:
    SEED_USERNAME=anter SEED_PASSWORD=Secret123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --username anter --password Secret123! --email anter@example.com

Environment Variables:
    SEED_USERNAME: Username for the account
    SEED_PASSWORD: Password for the account
    SEED_EMAIL: Optional email address, stored as already verified
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    username: str, password: str, email: str | None = None, dry_run: bool = False
) -> dict:
    """Create the account unless it already exists.

    Returns:
        dict with user_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from photofilter.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.subject_id})")
        return {"user_id": existing.subject_id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.store.create_user(
        username,
        password_hash=runtime.hasher.hash(password),
        email=email,
        email_verified=True,
    )
    return {"user_id": user.subject_id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a pre-verified PhotoFilter account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("SEED_USERNAME"),
        help="Username (or set SEED_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Email address (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username or not args.password:
        print("Error: --username and --password (or SEED_USERNAME/SEED_PASSWORD) are required")
        sys.exit(1)

    min_length = int(os.environ.get("PASSWORD_MIN_LENGTH", "8"))
    if len(args.password) < min_length:
        print(f"Error: Password must be at least {min_length} characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/photofilter-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_user(args.username, args.password, args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nVerified user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
