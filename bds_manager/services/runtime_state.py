# bds_manager/services/runtime_state.py
"""
Runtime state observed from the Bedrock Dedicated Server output.

One instance is shared by the log interpreter (the only writer of the
observed fields), the backup manager and the scheduler.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupFile:
    """A file BDS reported for backup and the length it must be truncated to."""
    path: Path
    length: int


class BackupManifest:
    """Readiness flag and file list, only ever changed together under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ready = False
        self._files: List[BackupFile] = []

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    def mark_ready(self) -> None:
        with self._lock:
            self._ready = True

    def fill(self, files: Iterable[BackupFile]) -> None:
        batch = list(files)
        with self._lock:
            self._files = batch
            self._ready = True

    def clear(self) -> None:
        with self._lock:
            self._ready = False
            self._files = []

    def snapshot(self) -> Tuple[bool, Tuple[BackupFile, ...]]:
        with self._lock:
            return self._ready, tuple(self._files)


class RuntimeState:
    """Server lifecycle, player activity and backup manifest."""

    def __init__(self):
        self.server_running: bool = False
        self.level_name: str = ""
        self.world_directory_path: Optional[Path] = None
        self.server_version: Optional[Tuple[int, ...]] = None

        self.server_last_started_at: Optional[datetime] = None
        self.server_last_stopped_at: Optional[datetime] = None
        self.user_last_logged_on_at: Optional[datetime] = None
        self.user_last_logged_off_at: Optional[datetime] = None

        self.manifest = BackupManifest()

        self._player_lock = threading.Lock()
        self._online_player_count = 0

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    @property
    def online_player_count(self) -> int:
        return self._online_player_count

    def player_connected(self, at: datetime) -> int:
        with self._player_lock:
            self._online_player_count += 1
            self.user_last_logged_on_at = at
            return self._online_player_count

    def player_disconnected(self, at: datetime) -> int:
        with self._player_lock:
            if self._online_player_count == 0:
                logger.warning("Player disconnect seen with no players online, keeping count at 0")
            else:
                self._online_player_count -= 1
            self.user_last_logged_off_at = at
            return self._online_player_count

    def reset_players(self) -> None:
        with self._player_lock:
            self._online_player_count = 0

    def users_were_active(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """Whether users are online now or were within ``window``.

        When the last login and logoff are equal the login does not win and
        the logoff window decides.
        """
        if self.online_player_count > 0:
            return True

        last_on = self.user_last_logged_on_at
        last_off = self.user_last_logged_off_at

        if last_on is None and last_off is None:
            return False

        if last_off is None or (last_on is not None and last_on > last_off):
            return True

        now = now or datetime.now()
        return (now - last_off) < window

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset_session(self) -> None:
        """Forget everything learned from the previous server start."""
        self.level_name = ""
        self.world_directory_path = None
        self.server_version = None
        self.reset_players()
        self.manifest.clear()

    def to_dict(self) -> dict:
        ready, files = self.manifest.snapshot()
        return {
            "server_running": self.server_running,
            "level_name": self.level_name,
            "world_directory_path": str(self.world_directory_path) if self.world_directory_path else None,
            "server_version": ".".join(str(p) for p in self.server_version) if self.server_version else None,
            "online_player_count": self.online_player_count,
            "server_last_started_at": _iso(self.server_last_started_at),
            "server_last_stopped_at": _iso(self.server_last_stopped_at),
            "user_last_logged_on_at": _iso(self.user_last_logged_on_at),
            "user_last_logged_off_at": _iso(self.user_last_logged_off_at),
            "backup_ready": ready,
            "backup_file_count": len(files),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
