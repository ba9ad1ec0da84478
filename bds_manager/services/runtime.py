# bds_manager/services/runtime.py
"""
Wires one RuntimeState, server, backup manager and scheduler together.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from bds_manager.core.config import BDS_SERVER_PATH, SETTINGS_FILE
from bds_manager.core.settings import SettingsStore
from bds_manager.services.backup_manager import BackupManager
from bds_manager.services.backup_scheduler import BackupScheduler
from bds_manager.services.bedrock_server import BedrockServer
from bds_manager.services.runtime_state import RuntimeState


@dataclass
class ManagerRuntime:
    state: RuntimeState
    settings: SettingsStore
    server: BedrockServer
    backups: BackupManager
    scheduler: BackupScheduler


def build_runtime(
    server_directory: Path = BDS_SERVER_PATH,
    settings_file: Path = SETTINGS_FILE,
) -> ManagerRuntime:
    state = RuntimeState()
    settings = SettingsStore(settings_file)
    server = BedrockServer(state, settings, server_directory)
    backups = BackupManager(state, server.send_command, settings.get)
    scheduler = BackupScheduler(backups, state, settings)

    server.backups = backups
    server.scheduler = scheduler
    return ManagerRuntime(state=state, settings=settings, server=server, backups=backups, scheduler=scheduler)


# =============================================================================
# Singleton
# =============================================================================

_runtime: Optional[ManagerRuntime] = None


def get_runtime() -> ManagerRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[ManagerRuntime]):
    global _runtime
    _runtime = runtime


async def shutdown_runtime():
    if _runtime is None:
        return
    await _runtime.scheduler.stop()
    if _runtime.server.is_process_running():
        await _runtime.server.stop()
