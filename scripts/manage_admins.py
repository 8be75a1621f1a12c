#!/usr/bin/env python3
"""Grant, revoke or list entries of the catalog admin allow-list."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tracker.config import Settings  # noqa: E402
from tracker.server.datastore import DataStore  # noqa: E402


def _resolve_user_id(datastore: DataStore, ident: str) -> Optional[str]:
    user = datastore.find_user_by_id(ident) or datastore.find_user_by_email(ident)
    return user["id"] if user else None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--store", type=Path, default=None, help="path to store.json")
    sub = parser.add_subparsers(dest="command", required=True)
    grant = sub.add_parser("grant", help="add a user to the allow-list")
    grant.add_argument("user", help="user id or email")
    revoke = sub.add_parser("revoke", help="remove a user from the allow-list")
    revoke.add_argument("user", help="user id or email")
    sub.add_parser("list", help="print current admins")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    store_path = args.store or Settings.from_env().store_path
    if not store_path.exists():
        raise SystemExit(f"{store_path} not found")
    datastore = DataStore(store_path)

    if args.command == "list":
        for user_id in datastore.list_admin_ids():
            user = datastore.find_user_by_id(user_id)
            print(user_id, user["email"] if user else "<missing user>")
        return 0

    user_id = _resolve_user_id(datastore, args.user)
    if not user_id:
        print(f"No user matches {args.user!r}", file=sys.stderr)
        return 1
    datastore.set_admin(user_id, args.command == "grant")
    print("Admin granted:" if args.command == "grant" else "Admin revoked:", user_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
