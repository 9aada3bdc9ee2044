#!/usr/bin/env python3
"""
Draft storage maintenance CLI

Validates draft documents, inspects lock rows and reconciles image files
with image records. Safe to run multiple times.

Usage:
  python manage_drafts.py validate
  python manage_drafts.py locks [--purge-expired]
  python manage_drafts.py orphans [--fix]
  python manage_drafts.py staging [--max-age SECONDS] [--purge]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path

from draft_images import DraftImageService, remove_file
from draft_locks import LockManager
from draft_store import DraftStore


BASE_DIR = Path(__file__).resolve().parent


def _build_service(args: argparse.Namespace) -> DraftImageService:
    store = DraftStore(Path(args.data_dir))
    return DraftImageService(store, LockManager(store), Path(args.uploads_dir))


def validate_drafts(service: DraftImageService) -> int:
    try:
        total, changed = service.store.migrate_drafts()
    except OSError as exc:
        print(f"[error] Unable to read drafts in {service.store.drafts_dir}: {exc}")
        return 1
    print(f"Validated {total} drafts; updated {changed} documents.")
    return 0


def show_locks(service: DraftImageService, purge_expired: bool) -> int:
    now = time.time()
    rows = service.store.list_locks()
    for row in rows:
        remaining = float(row.get("expiresAt") or 0) - now
        state = f"expires in {remaining:.1f}s" if remaining > 0 else "expired"
        print(f"{row.get('key', '?')}: {state}")
    if not rows:
        print("No locks held.")
    if purge_expired:
        purged = service.store.purge_expired_locks(now)
        print(f"Purged {purged} expired locks.")
    return 0


def check_orphans(service: DraftImageService, fix: bool) -> int:
    try:
        report = service.find_orphans()
    except OSError as exc:
        print(f"[error] Unable to scan {service.drafts_root}: {exc}")
        return 1
    for entry in report["untracked_files"]:
        print(f"[untracked] {entry['itemId']}/{entry['filename']}")
    for entry in report["missing_files"]:
        print(f"[missing]   {entry['itemId']}/{entry['filename']}")
    print(
        f"{len(report['untracked_files'])} untracked files, "
        f"{len(report['missing_files'])} records without files."
    )
    if fix:
        result = asyncio.run(service.fix_orphans())
        print(json.dumps(result))
    return 0


def clean_staging(service: DraftImageService, max_age: float, purge: bool) -> int:
    stale = service.stale_staged_files(max_age)
    for path in stale:
        print(f"[stale] {path.name}")
        if purge:
            remove_file(path)
    print(f"{len(stale)} staged files older than {max_age:.0f}s{' removed' if purge else ''}.")
    return 0


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Maintain draft documents, locks and image files.")
    parser.add_argument("--data-dir", default=os.getenv("DRAFTS_DATA_DIR", str(BASE_DIR / "data")))
    parser.add_argument("--uploads-dir", default=os.getenv("DRAFTS_UPLOADS_DIR", str(BASE_DIR / "uploads")))
    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser("validate", help="Apply schema defaults to every draft document")
    locks = sub.add_parser("locks", help="List lock rows")
    locks.add_argument("--purge-expired", action="store_true")
    orphans = sub.add_parser("orphans", help="Report files without records and records without files")
    orphans.add_argument("--fix", action="store_true", help="Delete untracked files and drop dangling records")
    staging = sub.add_parser("staging", help="Report staged uploads that were never saved")
    staging.add_argument("--max-age", type=float, default=3600.0)
    staging.add_argument("--purge", action="store_true")
    args = parser.parse_args(argv)

    service = _build_service(args)
    if args.cmd == "validate":
        return validate_drafts(service)
    if args.cmd == "locks":
        return show_locks(service, args.purge_expired)
    if args.cmd == "orphans":
        return check_orphans(service, args.fix)
    if args.cmd == "staging":
        return clean_staging(service, args.max_age, args.purge)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
