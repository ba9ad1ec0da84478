"""Tests for backup directory naming, copy/truncate helpers and retention."""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from bds_manager.services import backup_manager
from bds_manager.services.backup_manager import (
    BackupConsistencyError,
    BackupPreconditionError,
    build_backup_directory,
    perform_backup_directory_maintenance,
    trim_backup_files,
)
from bds_manager.services.runtime_state import BackupFile


# ── Naming ──


def test_first_backup_of_each_utc_day_is_daily(tmp_path):
    first = build_backup_directory(tmp_path, "Bedrock level", datetime(2024, 3, 1, 10, 15, 30, 123456, tzinfo=timezone.utc))
    second = build_backup_directory(tmp_path, "Bedrock level", datetime(2024, 3, 1, 18, 0, 0, tzinfo=timezone.utc))
    next_day = build_backup_directory(tmp_path, "Bedrock level", datetime(2024, 3, 2, 0, 5, 0, tzinfo=timezone.utc))

    assert first.name == "Daily_Bedrock level_2024-03-01T101530Z"
    assert second.name == "Bedrock level_2024-03-01T180000Z"
    assert next_day.name == "Daily_Bedrock level_2024-03-02T000500Z"


def test_backup_directory_uses_utc(tmp_path):
    plus_two = timezone(timedelta(hours=2))
    directory = build_backup_directory(tmp_path, "L", datetime(2024, 3, 2, 1, 0, 0, tzinfo=plus_two))
    assert directory.name == "Daily_L_2024-03-01T230000Z"


def test_backup_directory_has_db_subdirectory(tmp_path):
    directory = build_backup_directory(tmp_path / "missing" / "root", "L", datetime(2024, 3, 1, tzinfo=timezone.utc))
    assert (directory / "db").is_dir()


def test_target_name_keeps_db_prefix():
    assert backup_manager.backup_target_name(Path("/w/L/db/000096.ldb")) == Path("db") / "000096.ldb"
    assert backup_manager.backup_target_name(Path("/w/L/level.dat")) == Path("level.dat")


# ── Truncation ──


def _write(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


def test_truncation_is_idempotent(tmp_path):
    copied = _write(tmp_path / "backup" / "db" / "CURRENT", 16)
    files = [BackupFile(path=Path("/w/L/db/CURRENT"), length=16)]

    trim_backup_files(tmp_path / "backup", files)
    trim_backup_files(tmp_path / "backup", files)

    assert copied.read_bytes() == b"x" * 16


def test_truncation_rejects_short_copy_without_touching_others(tmp_path):
    big = _write(tmp_path / "backup" / "db" / "a.ldb", 200)
    _write(tmp_path / "backup" / "db" / "CURRENT", 10)
    files = [
        BackupFile(path=Path("/w/L/db/a.ldb"), length=100),
        BackupFile(path=Path("/w/L/db/CURRENT"), length=16),
    ]

    with pytest.raises(BackupConsistencyError):
        trim_backup_files(tmp_path / "backup", files)

    assert big.stat().st_size == 200


def test_truncation_rejects_zero_length(tmp_path):
    _write(tmp_path / "backup" / "db" / "000106.log", 10)
    with pytest.raises(BackupPreconditionError):
        trim_backup_files(tmp_path / "backup", [BackupFile(path=Path("/w/L/db/000106.log"), length=0)])


def test_truncation_rejects_missing_copy(tmp_path):
    with pytest.raises(BackupConsistencyError):
        trim_backup_files(tmp_path, [BackupFile(path=Path("/w/L/level.dat"), length=5)])


# ── Retention ──


NOW = datetime(2024, 6, 15, 12, 0, 0)


def _backup_dir(root: Path, name: str, age_days: float) -> Path:
    directory = root / name
    (directory / "db").mkdir(parents=True)
    stamp = (NOW - timedelta(days=age_days)).timestamp()
    os.utime(directory, (stamp, stamp))
    return directory


@pytest.mark.parametrize("keep_days", [1, 3, 7])
def test_regular_backups_deleted_only_when_older_than_retention(tmp_path, keep_days):
    older = _backup_dir(tmp_path, "L_2024-06-01T000000Z", keep_days + 0.5)
    newer = _backup_dir(tmp_path, "L_2024-06-14T000000Z", keep_days - 0.5)

    deleted = perform_backup_directory_maintenance(tmp_path, keep_days, 0, now=NOW)

    assert deleted == [older]
    assert not older.exists()
    assert newer.exists()


@pytest.mark.parametrize("keep_days", [1, 30])
def test_daily_backups_use_their_own_retention(tmp_path, keep_days):
    old_daily = _backup_dir(tmp_path, "Daily_L_2024-01-01T000000Z", keep_days + 1)
    young_daily = _backup_dir(tmp_path, "Daily_L_2024-06-15T000000Z", keep_days - 0.5)
    regular = _backup_dir(tmp_path, "L_2024-01-01T010000Z", keep_days + 1)

    perform_backup_directory_maintenance(tmp_path, 0, keep_days, now=NOW)

    assert not old_daily.exists()
    assert young_daily.exists()
    assert regular.exists()


def test_zero_days_keeps_everything(tmp_path):
    ancient = _backup_dir(tmp_path, "L_2000-01-01T000000Z", 9000)
    ancient_daily = _backup_dir(tmp_path, "Daily_L_2000-01-01T000000Z", 9000)

    assert perform_backup_directory_maintenance(tmp_path, 0, 0, now=NOW) == []
    assert ancient.exists()
    assert ancient_daily.exists()


def test_failed_deletion_does_not_stop_remaining(monkeypatch, tmp_path):
    first = _backup_dir(tmp_path, "L_2024-01-01T000000Z", 10)
    second = _backup_dir(tmp_path, "L_2024-01-02T000000Z", 10)
    real_rmtree = backup_manager.shutil.rmtree

    def _flaky_rmtree(path, *args, **kwargs):
        if Path(path) == first:
            raise PermissionError("locked")
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(backup_manager.shutil, "rmtree", _flaky_rmtree)

    deleted = perform_backup_directory_maintenance(tmp_path, 1, 1, now=NOW)

    assert deleted == [second]
    assert first.exists()


def test_missing_backup_root_is_a_noop(tmp_path):
    assert perform_backup_directory_maintenance(tmp_path / "nope", 1, 1, now=NOW) == []
