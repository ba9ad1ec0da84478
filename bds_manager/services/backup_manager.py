# bds_manager/services/backup_manager.py
"""
Bedrock World Backup Service

Backups are taken in one of two ways:
- Offline (server stopped): copy the world directory as-is
- Online (server running): save hold -> save query until BDS lists the files
  and their lengths -> copy those files -> save resume -> truncate each copy
  to its reported length

Every attempt is followed by retention maintenance of the backup directory.
Only one backup runs at a time.
"""

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from bds_manager.core.settings import BackupSettings
from bds_manager.services.runtime_state import BackupFile, RuntimeState

logger = logging.getLogger(__name__)

DAILY_BACKUP_DIRECTORY_PREFIX = "Daily_"

# BDS needs a moment to act on "save hold" before the first query
SAVE_HOLD_SETTLE_SECONDS = 2
SAVE_QUERY_POLL_SECONDS = 5

CommandSender = Callable[[str], Awaitable[Any]]


class BackupMode(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"


class BackupError(Exception):
    error_code = "backup_failed"


class BackupPreconditionError(BackupError):
    error_code = "precondition_failed"


class BackupConsistencyError(BackupError):
    error_code = "consistency_failed"


class ServerStoppedDuringBackup(BackupError):
    error_code = "server_stopped"


@dataclass
class BackupRun:
    """Outcome of one backup attempt"""
    mode: Optional[BackupMode] = None
    target_directory: Optional[str] = None
    success: bool = False
    reason: str = ""
    error_code: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value if self.mode else None
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Backup directory layout
# =============================================================================

def format_backup_directory_name(level_name: str, now: datetime) -> str:
    """``<level>_2009-06-15T134530Z``: UTC, no colons, no fractional seconds."""
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H%M%SZ")
    return f"{level_name}_{stamp}"


def build_backup_directory(backup_root: Path, level_name: str, now: Optional[datetime] = None) -> Path:
    """Create the directory for one backup run and return its path.

    Call once per run so a single backup never gets two timestamps.
    """
    now = now or _utcnow()
    backup_root = Path(backup_root)
    backup_root.mkdir(parents=True, exist_ok=True)

    directory_name = format_backup_directory_name(level_name, now)
    date_part = now.astimezone(timezone.utc).strftime("%Y-%m-%d")

    has_backup_today = any(
        entry.is_dir() and date_part in entry.name for entry in backup_root.iterdir()
    )
    if not has_backup_today:
        directory_name = f"{DAILY_BACKUP_DIRECTORY_PREFIX}{directory_name}"

    backup_directory = (backup_root / directory_name).resolve()
    backup_directory.mkdir(parents=True, exist_ok=True)
    (backup_directory / "db").mkdir(exist_ok=True)
    return backup_directory


def backup_target_name(source_path: Path) -> Path:
    """Files that live under a ``db`` folder keep the ``db/`` prefix."""
    source_path = Path(source_path)
    if source_path.parent.name == "db":
        return Path("db") / source_path.name
    return Path(source_path.name)


def is_daily_backup(directory: Path) -> bool:
    return Path(directory).name.startswith(DAILY_BACKUP_DIRECTORY_PREFIX)


# =============================================================================
# File operations (blocking, run via asyncio.to_thread)
# =============================================================================

def _copy_no_overwrite(source: Path, target: Path) -> None:
    if target.exists():
        raise BackupConsistencyError(f"Backup target {target} already exists")
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)


def copy_directory_contents(source_directory: Path, target_directory: Path) -> int:
    """Copy every file below ``source_directory`` into an empty ``target_directory``."""
    source_directory = Path(source_directory)
    target_directory = Path(target_directory).resolve()

    if not source_directory.is_dir():
        raise BackupPreconditionError(f"Unable to copy files as source path {source_directory} cannot be found")

    target_directory.mkdir(parents=True, exist_ok=True)

    # Leftovers mean an earlier, possibly corrupt attempt; never mix with it
    if any(path.is_file() for path in target_directory.rglob("*")):
        raise BackupPreconditionError(f"Target directory {target_directory} is not empty")

    copied = 0
    for source_file in sorted(source_directory.rglob("*")):
        if not source_file.is_file():
            continue
        _copy_no_overwrite(source_file, target_directory / source_file.relative_to(source_directory))
        copied += 1
    return copied


def copy_files_in_backup_set(backup_directory: Path, backup_files: Sequence[BackupFile]) -> int:
    """Copy only the files BDS listed for this backup."""
    if not backup_files:
        raise BackupPreconditionError("No files were specified to be backed up")

    for backup_file in backup_files:
        _copy_no_overwrite(backup_file.path, Path(backup_directory) / backup_target_name(backup_file.path))
    return len(backup_files)


def trim_backup_files(backup_directory: Path, backup_files: Sequence[BackupFile]) -> None:
    """Truncate each copied file to the length BDS reported.

    All files are validated before any is truncated.
    """
    if not backup_files:
        raise BackupPreconditionError("No files were specified to be backed up")

    targets = []
    for backup_file in backup_files:
        copied_path = Path(backup_directory) / backup_target_name(backup_file.path)

        if not copied_path.is_file():
            raise BackupConsistencyError(f"The file {copied_path} could not be found in the backup directory")

        if backup_file.length < 1:
            raise BackupPreconditionError(
                f"Backup file {copied_path} has an invalid length from BDS of {backup_file.length}"
            )

        # A short copy raced with a write in progress
        if copied_path.stat().st_size < backup_file.length:
            raise BackupConsistencyError(
                f"Backup file {copied_path} is smaller than the {backup_file.length} bytes BDS reported"
            )

        targets.append((copied_path, backup_file.length))

    for copied_path, length in targets:
        with open(copied_path, "r+b") as f:
            f.truncate(length)


# =============================================================================
# Retention
# =============================================================================

def _directory_created_at(directory: Path) -> datetime:
    stat = directory.stat()
    created = min(stat.st_mtime, getattr(stat, "st_birthtime", stat.st_mtime))
    return datetime.fromtimestamp(created)


def _delete_threshold(now: datetime, keep_days: int) -> Optional[datetime]:
    # 0 days means keep forever
    if int(keep_days) == 0:
        return None
    return now - timedelta(days=int(keep_days))


def perform_backup_directory_maintenance(
    backup_root: Path,
    keep_backups_for_days: int,
    keep_daily_backups_for_days: int,
    now: Optional[datetime] = None,
) -> List[Path]:
    """Delete backup directories older than their retention. Returns what was deleted."""
    backup_root = Path(backup_root)
    if not backup_root.is_dir():
        return []

    now = now or datetime.now()
    normal_threshold = _delete_threshold(now, keep_backups_for_days)
    daily_threshold = _delete_threshold(now, keep_daily_backups_for_days)

    deleted: List[Path] = []
    for directory in sorted(backup_root.iterdir()):
        if not directory.is_dir():
            continue

        daily = is_daily_backup(directory)
        threshold = daily_threshold if daily else normal_threshold
        if threshold is None:
            continue

        try:
            if _directory_created_at(directory) >= threshold:
                continue
            shutil.rmtree(directory)
            deleted.append(directory)
            logger.info("[BackupManager] Removed expired %sbackup %s", "daily " if daily else "", directory.name)
        except Exception as e:
            logger.error(
                "[BackupManager] There was a problem cleaning up %s backups (%s): %s",
                "daily" if daily else "regular", directory.name, e,
            )

    return deleted


def list_backups(backup_root: Path) -> List[dict]:
    backup_root = Path(backup_root)
    if not backup_root.is_dir():
        return []
    return [
        {
            "name": directory.name,
            "path": str(directory),
            "daily": is_daily_backup(directory),
            "created_at": _directory_created_at(directory).isoformat(),
        }
        for directory in sorted(backup_root.iterdir(), reverse=True)
        if directory.is_dir()
    ]


# =============================================================================
# Backup manager
# =============================================================================

class BackupManager:
    """Takes offline/online backups against one running (or stopped) server."""

    def __init__(
        self,
        state: RuntimeState,
        send_command: CommandSender,
        settings_provider: Callable[[], BackupSettings],
    ):
        self.state = state
        self._send_command = send_command
        self._settings_provider = settings_provider
        self.run_guard_lock = asyncio.Lock()
        self.backup_in_progress: bool = False
        self.last_run: Optional[BackupRun] = None

        # True between "save hold" and the matching "save resume"
        self._holding: bool = False

    @property
    def in_progress(self) -> bool:
        return self.backup_in_progress

    async def create_backup(self) -> BackupRun:
        """Take a backup. Only cancellation escapes; every other outcome is in the returned BackupRun."""
        run = BackupRun(started_at=datetime.now().isoformat())

        async with self.run_guard_lock:
            if self.backup_in_progress:
                logger.warning("[BackupManager] Backup requested while another backup is running, skipping")
                run.reason = "A backup is already in progress"
                run.error_code = "backup_in_progress"
                run.finished_at = datetime.now().isoformat()
                return run
            self.backup_in_progress = True

        try:
            settings = self._settings_provider()

            try:
                if not self.state.server_running:
                    run.mode = BackupMode.OFFLINE
                    await self._create_offline_backup(run, settings)
                else:
                    run.mode = BackupMode.ONLINE
                    await self._create_online_backup(run, settings)
                run.success = True
                run.reason = "Backup completed"
                logger.info("[BackupManager] %s backup created at %s", run.mode.value.capitalize(), run.target_directory)
            except ServerStoppedDuringBackup as e:
                logger.warning("[BackupManager] %s", e)
                run.reason = str(e)
                run.error_code = e.error_code
            except BackupError as e:
                logger.error("[BackupManager] Backup was not successful: %s", e)
                run.reason = str(e)
                run.error_code = e.error_code
            except OSError as e:
                logger.error("[BackupManager] Files were unable to be copied due to %s", e)
                run.reason = str(e)
                run.error_code = "io_error"

            try:
                await asyncio.to_thread(
                    perform_backup_directory_maintenance,
                    settings.backup_directory,
                    settings.keep_backups_for_days,
                    settings.keep_daily_backups_for_days,
                )
            except Exception as e:
                logger.error("[BackupManager] Backup directory maintenance failed: %s", e)

        except asyncio.CancelledError:
            logger.warning("[BackupManager] Backup was cancelled")
            run.success = False
            run.reason = "Backup was cancelled"
            run.error_code = "cancelled"
            raise

        except Exception as e:
            logger.error("[BackupManager] An error occurred during backup and backup maintenance: %s", e)
            run.success = False
            run.reason = str(e) or "Unexpected error"
            run.error_code = "unexpected_error"

        finally:
            run.finished_at = datetime.now().isoformat()
            self.last_run = run
            self.backup_in_progress = False

        return run

    # ------------------------------------------------------------------
    # Offline
    # ------------------------------------------------------------------

    async def _create_offline_backup(self, run: BackupRun, settings: BackupSettings):
        world_directory = self.state.world_directory_path
        if world_directory is None or not Path(world_directory).is_dir():
            raise BackupPreconditionError(f"World directory {world_directory} cannot be found")

        backup_directory = await asyncio.to_thread(
            build_backup_directory, settings.backup_directory, self.state.level_name
        )
        run.target_directory = str(backup_directory)

        copied = await asyncio.to_thread(copy_directory_contents, world_directory, backup_directory)
        logger.info("[BackupManager] Copied %s files from %s", copied, world_directory)

    # ------------------------------------------------------------------
    # Online
    # ------------------------------------------------------------------

    async def _resume_changes(self):
        self._holding = False
        await self._send_command("save resume")

    @asynccontextmanager
    async def _save_hold(self):
        """Hold world changes; on every exit, resume if BDS is still holding."""
        await self._send_command("save hold")
        self._holding = True
        try:
            yield
        finally:
            # A stopped server has nothing left to resume
            if self._holding and self.state.server_running:
                try:
                    await self._resume_changes()
                except Exception as e:
                    logger.error("[BackupManager] Failed to resume world changes: %s", e)
            self._holding = False

    async def _wait_for_backup_files(self) -> Sequence[BackupFile]:
        while True:
            # Nothing more will come from a stopped server
            if not self.state.server_running:
                raise ServerStoppedDuringBackup("Terminating online backup due to server shutdown")

            ready, files = self.state.manifest.snapshot()
            if ready and files:
                return files

            await self._send_command("save query")
            await asyncio.sleep(SAVE_QUERY_POLL_SECONDS)

    async def _create_online_backup(self, run: BackupRun, settings: BackupSettings):
        async with self._save_hold():
            await asyncio.sleep(SAVE_HOLD_SETTLE_SECONDS)

            backup_files = await self._wait_for_backup_files()

            backup_directory = await asyncio.to_thread(
                build_backup_directory, settings.backup_directory, self.state.level_name
            )
            run.target_directory = str(backup_directory)

            copied = await asyncio.to_thread(copy_files_in_backup_set, backup_directory, backup_files)
            logger.info("[BackupManager] Copied %s files listed by the server", copied)

            # Truncation works on our copies, so the server can go back to normal now
            await self._resume_changes()

            await asyncio.to_thread(trim_backup_files, backup_directory, backup_files)
