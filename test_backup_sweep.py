"""Daily backup sweep: one dated copy per day, 7 day retention."""

import os
import time
from datetime import datetime, timedelta

from rent_manager import daily_backup_path, save_data, sweep_backups


def _dated_backups(ctx):
    return sorted(n for n in os.listdir(ctx.backups_path) if n.startswith("data-backup-"))


def test_no_data_file_is_a_no_op(ctx):
    assert sweep_backups(ctx) is None
    assert os.listdir(ctx.backups_path) == []


def test_creates_copy_of_data_file(ctx, sample_data):
    save_data(ctx, sample_data)
    now = datetime.now()

    created = sweep_backups(ctx, now=now)

    assert created == daily_backup_path(ctx, now.date())
    with open(created, "rb") as backup, open(ctx.data_file_path, "rb") as live:
        assert backup.read() == live.read()


def test_running_twice_same_day_keeps_one_backup(ctx, sample_data):
    save_data(ctx, sample_data)
    now = datetime.now()

    sweep_backups(ctx, now=now)
    assert sweep_backups(ctx, now=now) is None

    assert _dated_backups(ctx) == [f"data-backup-{now.date().isoformat()}.json"]


def test_old_backups_are_pruned(ctx, sample_data):
    save_data(ctx, sample_data)
    now = datetime.now()

    old = os.path.join(ctx.backups_path, "data-backup-2000-01-01.json")
    fresh = os.path.join(ctx.backups_path, "data-backup-2000-01-02.json")
    for path in (old, fresh):
        with open(path, "w") as f:
            f.write("{}")
    old_ts = (now - timedelta(days=8)).timestamp()
    os.utime(old, (old_ts, old_ts))
    os.utime(fresh, (now.timestamp(), now.timestamp()))

    sweep_backups(ctx, now=now)

    assert not os.path.exists(old)
    assert os.path.exists(fresh)


def test_failures_are_swallowed(ctx, sample_data, caplog):
    save_data(ctx, sample_data)
    os.rmdir(ctx.backups_path)
    with open(ctx.backups_path, "w") as f:
        f.write("not a directory")

    assert sweep_backups(ctx, now=datetime.now()) is None
    assert any("Failed to create or clean up backups" in r.getMessage() for r in caplog.records)


def test_sweep_runs_on_startup(tmp_path, sample_data):
    import json
    import rent_manager

    user_data = tmp_path / "startup"
    user_data.mkdir()
    (user_data / "data.json").write_text(json.dumps(sample_data))

    app = rent_manager.create_app(user_data_path=str(user_data), on_quit=lambda reason: None)
    try:
        today = time.strftime("%Y-%m-%d")
        assert (user_data / "backups" / f"data-backup-{today}.json").exists()
    finally:
        app.extensions["rent_manager"].close()
