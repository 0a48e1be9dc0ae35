#!/usr/bin/env python3
"""Ban, unban, deactivate or reactivate a wordnest account by email.

Usage:
    python scripts/manage_user.py ban alice@example.com --reason "spam" --days 7
    python scripts/manage_user.py ban alice@example.com --reason "abuse"   # permanent
    python scripts/manage_user.py unban alice@example.com
    python scripts/manage_user.py deactivate alice@example.com
    python scripts/manage_user.py activate alice@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / SHARED_FS_ROOT: operate on a file-backed memory store instead
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from typing import Optional

ACTIONS = ("ban", "unban", "deactivate", "activate")


def apply_action(
    store,
    email: str,
    action: str,
    *,
    reason: Optional[str] = None,
    days: Optional[int] = None,
) -> dict:
    """Apply ``action`` to the user with ``email``.

    Returns:
        dict with user_id, email and status ('updated' or 'not_found')
    """
    from wordnest.service.auth import normalize_email
    from wordnest.storage.models import utcnow

    email = normalize_email(email)
    user = store.get_user_by_email(email)
    if user is None or user.deleted_at is not None:
        return {"user_id": None, "email": email, "status": "not_found"}

    if action == "ban":
        banned_until = utcnow() + timedelta(days=days) if days else None
        fields = {"is_banned": True, "ban_reason": reason, "banned_until": banned_until}
    elif action == "unban":
        fields = {"is_banned": False, "ban_reason": None, "banned_until": None}
    elif action == "deactivate":
        fields = {"is_active": False}
    elif action == "activate":
        fields = {"is_active": True}
    else:
        raise ValueError(f"unknown action: {action}")

    store.update_user(user.id, **fields)
    return {"user_id": user.id, "email": email, "status": "updated"}


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Manage wordnest account status",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=ACTIONS)
    parser.add_argument("email")
    parser.add_argument("--reason", help="Ban reason shown to the user")
    parser.add_argument("--days", type=int, help="Ban length in days (omit for permanent)")
    args = parser.parse_args(argv)

    if args.days is not None and args.days <= 0:
        print("Error: --days must be positive")
        return 1

    from wordnest.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = apply_action(
            runtime.store, args.email, args.action, reason=args.reason, days=args.days
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "not_found":
        print(f"No user with email {result['email']}")
        return 1
    print(f"{args.action}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
