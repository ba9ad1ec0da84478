# bds_manager/services/backup_scheduler.py
"""
Interval Backup Automation Service

Fires every ``automatic_backup_interval_minutes`` and asks the BackupManager
for a backup. With ``only_backup_if_users_were_online`` set, a cycle is
skipped when nobody is online and nobody left within the last interval.

Changing the interval cancels the running timer and builds a new one. A
backup the old timer already started runs to completion in its own task.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from bds_manager.core.config import DATA_DIR
from bds_manager.core.settings import SettingsStore
from bds_manager.services.backup_manager import BackupManager, BackupRun
from bds_manager.services.runtime_state import RuntimeState

logger = logging.getLogger(__name__)

LOG_FILE = DATA_DIR / "backup_scheduler_log.json"
MAX_LOG_ENTRIES = 100


@dataclass
class BackupLog:
    """Log entry for backup actions"""
    timestamp: str
    action: str
    status: str  # "success", "failed", "info"
    details: str

    def to_dict(self) -> dict:
        return asdict(self)


class BackupScheduler:
    """Runs automatic backups on an interval"""

    def __init__(self, manager: BackupManager, state: RuntimeState, settings_store: SettingsStore):
        self.manager = manager
        self.state = state
        self.settings_store = settings_store
        self.logs: List[BackupLog] = []

        self._timer_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._interval_minutes: Optional[int] = None
        self._next_backup_at: Optional[datetime] = None

        self._load_logs()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load_logs(self):
        if LOG_FILE.exists():
            try:
                with open(LOG_FILE, "r") as f:
                    data = json.load(f)
                    self.logs = [BackupLog(**log) for log in data[-MAX_LOG_ENTRIES:]]
            except Exception as e:
                logger.warning("[BackupScheduler] Failed to load logs: %s", e)

    def _save_logs(self):
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            with open(LOG_FILE, "w") as f:
                json.dump([log.to_dict() for log in self.logs[-MAX_LOG_ENTRIES:]], f, indent=2)
        except Exception as e:
            logger.warning("[BackupScheduler] Failed to save logs: %s", e)

    def _add_log(self, action: str, status: str, details: str):
        log = BackupLog(
            timestamp=datetime.now().isoformat(),
            action=action,
            status=status,
            details=details,
        )
        self.logs.append(log)
        self._save_logs()
        if status == "failed":
            logger.error("[BackupScheduler] %s: %s", action, details)
        else:
            logger.info("[BackupScheduler] %s: %s (%s)", action, details, status)

    # =========================================================================
    # Timer
    # =========================================================================

    @property
    def enabled(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def enable(self):
        """Start interval backups, rebuilding the timer if the interval changed"""
        interval = int(self.settings_store.get().automatic_backup_interval_minutes)

        if self.enabled and interval == self._interval_minutes:
            return

        self._cancel_timer()
        self._interval_minutes = interval
        self._timer_task = asyncio.create_task(self._timer_loop(interval))
        self._add_log("scheduler_enabled", "success", f"Interval backups every {interval} minutes")

    def disable(self):
        if not self.enabled:
            return
        self._cancel_timer()
        self._add_log("scheduler_disabled", "success", "Interval backups disabled")

    def _cancel_timer(self):
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None
        self._next_backup_at = None

    async def stop(self):
        task = self._timer_task
        self._cancel_timer()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Let a running automatic backup finish so the world is never left held
        if self._tick_task is not None and not self._tick_task.done():
            await self._tick_task

    async def _timer_loop(self, interval_minutes: int):
        logger.info("[BackupScheduler] Timer started (%s min)", interval_minutes)
        while True:
            self._next_backup_at = datetime.now() + timedelta(minutes=interval_minutes)
            await asyncio.sleep(interval_minutes * 60)
            await self._run_tick()

    async def _run_tick(self):
        """Run one tick in its own task; cancelling the timer never interrupts a backup."""
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._guarded_tick())
        await asyncio.shield(self._tick_task)

    async def _guarded_tick(self):
        try:
            await self._on_tick()
        except Exception as e:
            self._add_log("error", "failed", f"Automatic backup error: {e}")

    async def _on_tick(self) -> Optional[BackupRun]:
        settings = self.settings_store.get()

        if settings.only_backup_if_users_were_online:
            window = timedelta(minutes=self._interval_minutes or settings.automatic_backup_interval_minutes)
            if not self.state.users_were_active(window):
                self._add_log(
                    "backup_skipped", "info",
                    f"Skipping automatic backup since no users have been active for over "
                    f"{int(window.total_seconds() // 60)} minutes",
                )
                return None

        self._add_log("backup_started", "info", "Automatic backup is starting")
        run = await self.manager.create_backup()
        self._log_run("Automatic", run)
        return run

    def _log_run(self, label: str, run: BackupRun):
        if run.success:
            self._add_log("backup_completed", "success", f"{label} backup completed: {run.target_directory}")
        elif run.error_code == "backup_in_progress":
            self._add_log("backup_skipped", "info", f"{label} backup skipped, another backup is in progress")
        else:
            self._add_log("backup_failed", "failed", f"{label} backup failed: {run.reason}")

    # =========================================================================
    # Manual Trigger
    # =========================================================================

    async def trigger_manual_backup(self) -> dict:
        """Manually trigger a backup"""
        self._add_log("manual_backup", "info", "Manual backup triggered")
        run = await self.manager.create_backup()
        self._log_run("Manual", run)
        return run.to_dict()

    # =========================================================================
    # Config & Status API
    # =========================================================================

    def update_config(self, **kwargs) -> dict:
        result = self.settings_store.update(**kwargs)
        if not result.get("success"):
            self._add_log("config_changed", "failed", f"Configuration rejected: {result.get('error')}")
            return result

        changes = ", ".join(f"{k}={v}" for k, v in kwargs.items())
        self._add_log("config_changed", "success", f"Configuration updated: {changes}")

        settings = self.settings_store.get()
        if settings.enable_automatic_backups and (self.enabled or self.state.server_running):
            self.enable()
        elif not settings.enable_automatic_backups:
            self.disable()
        return result

    def get_config(self) -> dict:
        return self.settings_store.get().to_dict()

    def get_status(self) -> dict:
        last_run = self.manager.last_run
        return {
            "enabled": self.enabled,
            "interval_minutes": self._interval_minutes,
            "next_backup_at": self._next_backup_at.isoformat() if self._next_backup_at else None,
            "backup_in_progress": self.manager.in_progress,
            "last_run": last_run.to_dict() if last_run else None,
        }

    def get_logs(self, limit: int = 50) -> List[dict]:
        return [log.to_dict() for log in self.logs[-limit:]][::-1]
