# bds_manager/core/settings.py
"""
User-editable backup settings, persisted as YAML next to the app data.
"""

import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

import yaml

from bds_manager.core.config import DEFAULT_BACKUP_PATH, SETTINGS_FILE

logger = logging.getLogger(__name__)


@dataclass
class BackupSettings:
    """Backup behaviour configuration"""
    backup_directory_path: str = str(DEFAULT_BACKUP_PATH)

    # Retention; 0 means keep forever
    keep_backups_for_days: int = 3
    keep_daily_backups_for_days: int = 30

    # Interval based backups
    enable_automatic_backups: bool = False
    automatic_backup_interval_minutes: int = 60
    only_backup_if_users_were_online: bool = True

    # Lifecycle backups
    backup_on_server_start: bool = False
    backup_on_server_stop: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BackupSettings":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def backup_directory(self) -> Path:
        return Path(self.backup_directory_path).expanduser()

    def validate(self) -> Optional[str]:
        """Return an error message when the settings cannot be used, else None."""
        if int(self.automatic_backup_interval_minutes) < 1:
            return "automatic_backup_interval_minutes must be at least 1"
        if int(self.keep_backups_for_days) < 0 or int(self.keep_daily_backups_for_days) < 0:
            return "Retention days cannot be negative"
        if not str(self.backup_directory_path).strip():
            return "backup_directory_path is required"
        return None


class SettingsStore:
    """Loads and saves BackupSettings from a YAML file."""

    def __init__(self, path: Path = SETTINGS_FILE):
        self.path = path
        self.settings = self._load()

    def _load(self) -> BackupSettings:
        if not self.path.exists():
            return BackupSettings()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            settings = BackupSettings.from_dict(data.get("backup", data))
        except Exception as e:
            logger.warning("[Settings] Failed to load %s, using defaults: %s", self.path, e)
            return BackupSettings()

        error = settings.validate()
        if error:
            logger.warning("[Settings] Invalid settings in %s (%s), using defaults", self.path, error)
            return BackupSettings()
        return settings

    def save(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                yaml.safe_dump({"backup": self.settings.to_dict()}, f, sort_keys=False)
            return True
        except Exception as e:
            logger.warning("[Settings] Failed to save settings: %s", e)
            return False

    def update(self, **kwargs) -> dict:
        candidate = BackupSettings.from_dict({**self.settings.to_dict(), **kwargs})
        error = candidate.validate()
        if error:
            return {"success": False, "error": error}

        self.settings = candidate
        self.save()
        return {"success": True, "config": self.settings.to_dict()}

    def get(self) -> BackupSettings:
        return self.settings
