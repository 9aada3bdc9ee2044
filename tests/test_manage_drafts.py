import asyncio
import json
import os
import time

import manage_drafts

from conftest import ITEM_ID, make_image_bytes


def _run(tmp_path, *args):
    return manage_drafts.main(["--data-dir", str(tmp_path / "data"), "--uploads-dir", str(tmp_path / "uploads"), *args])


def test_validate_reports_counts(tmp_path, store, capsys):
    store.ensure_draft(ITEM_ID)
    assert _run(tmp_path, "validate") == 0
    assert "Validated 1 drafts" in capsys.readouterr().out


def test_locks_lists_and_purges(tmp_path, store, capsys):
    store.try_lock("sequential-number-" + ITEM_ID, "o", now=0.0, duration=1.0)
    assert _run(tmp_path, "locks", "--purge-expired") == 0
    out = capsys.readouterr().out
    assert f"sequential-number-{ITEM_ID}: expired" in out
    assert "Purged 1 expired locks." in out
    assert store.list_locks() == []


def test_orphans_fix(tmp_path, service, store, capsys):
    asyncio.run(service.upload_bytes(ITEM_ID, make_image_bytes(), "a.png"))
    (service.item_dir(ITEM_ID) / "stray.jpg").write_bytes(b"x")

    assert _run(tmp_path, "orphans") == 0
    out = capsys.readouterr().out
    assert f"[untracked] {ITEM_ID}/stray.jpg" in out
    assert (service.item_dir(ITEM_ID) / "stray.jpg").exists()

    assert _run(tmp_path, "orphans", "--fix") == 0
    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert result == {"removed_files": 1, "dropped_records": 0, "skipped_items": []}
    assert not (service.item_dir(ITEM_ID) / "stray.jpg").exists()


def test_staging_purge(tmp_path, service, capsys):
    staged = service.stage_bytes(make_image_bytes(), "a.png")
    old = time.time() - 7200
    os.utime(staged, (old, old))
    assert _run(tmp_path, "staging", "--purge") == 0
    assert "1 staged files older than 3600s removed." in capsys.readouterr().out
    assert not staged.exists()
