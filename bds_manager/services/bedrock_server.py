# bds_manager/services/bedrock_server.py
"""
Bedrock Dedicated Server Process Service

Handles:
- Starting/stopping the BDS process
- Feeding server output to the log interpreter
- Command execution over the server's stdin
- Backups on start/stop and toggling interval backups
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING

from bds_manager.core.config import BDS_EXECUTABLE_NAME, BDS_SERVER_PATH
from bds_manager.core.settings import SettingsStore
from bds_manager.services.log_events import LogEventInterpreter
from bds_manager.services.runtime_state import RuntimeState

if TYPE_CHECKING:
    from bds_manager.services.backup_manager import BackupManager
    from bds_manager.services.backup_scheduler import BackupScheduler

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT_SEC = 120
DEFAULT_STOP_TIMEOUT_SEC = 60
READY_POLL_INTERVAL_SEC = 0.5
LOG_BUFFER_SIZE = 500


class BedrockServer:
    """Owns the BDS child process and its standard streams."""

    def __init__(
        self,
        state: RuntimeState,
        settings_store: SettingsStore,
        server_directory: Path = BDS_SERVER_PATH,
    ):
        self.state = state
        self.settings_store = settings_store
        self.server_directory = Path(server_directory)
        self.interpreter = LogEventInterpreter(state, self.server_directory)

        self.process: Optional[asyncio.subprocess.Process] = None
        self.process_lock = asyncio.Lock()
        self.log_reader_task: Optional[asyncio.Task] = None
        self.log_buffer: deque = deque(maxlen=LOG_BUFFER_SIZE)

        # Wired after construction; both need send_command from this object
        self.backups: Optional["BackupManager"] = None
        self.scheduler: Optional["BackupScheduler"] = None

    @property
    def executable_path(self) -> Path:
        return self.server_directory / BDS_EXECUTABLE_NAME

    def is_process_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _record_line(self, line: str):
        self.log_buffer.append({"time": datetime.now().strftime("%H:%M:%S"), "message": line})
        try:
            self.interpreter.handle_line(line)
        except Exception as e:
            logger.error("[BedrockServer] Failed to interpret output line %r: %s", line, e)

    async def _read_output(self, process: asyncio.subprocess.Process):
        """Background task feeding every output line, in order, to the interpreter"""
        logger.info("[BedrockServer] Output reader started")
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._record_line(line)
        except asyncio.CancelledError:
            logger.info("[BedrockServer] Output reader cancelled")
        except Exception as e:
            logger.error("[BedrockServer] Output reader error: %s", e)
        finally:
            if self.state.server_running:
                logger.warning("[BedrockServer] Server output ended without a clean shutdown")
                self.state.server_running = False
                self.state.reset_players()
            logger.info("[BedrockServer] Output reader stopped")

    async def _wait_until(self, predicate: Callable[[], bool], timeout_sec: float) -> bool:
        deadline = asyncio.get_running_loop().time() + timeout_sec
        while not predicate():
            if not self.is_process_running():
                return predicate()
            if asyncio.get_running_loop().time() >= deadline:
                return False
            await asyncio.sleep(READY_POLL_INTERVAL_SEC)
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_command(self, command: str, user_sent: bool = False) -> dict:
        """Write a newline-terminated command to the server's stdin"""
        if not command or not command.strip():
            return {"success": False, "error": "Command is empty"}

        if not self.is_process_running() or self.process.stdin is None:
            logger.error("[BedrockServer] Server process is not tracked, unable to send '%s'", command)
            return {"success": False, "error": "Server process is not running"}

        if user_sent:
            logger.info("[BedrockServer] [User] %s", command)
        else:
            logger.info("[BedrockServer] %s", command)

        if not self.state.server_running:
            logger.warning("[BedrockServer] Issuing command '%s' while server is not running", command)

        try:
            self.process.stdin.write(f"{command}\n".encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error("[BedrockServer] Failed to send '%s': %s", command, e)
            return {"success": False, "error": str(e)}

        return {"success": True}

    async def save_hold(self) -> dict:
        return await self.send_command("save hold")

    async def save_query(self) -> dict:
        return await self.send_command("save query")

    async def save_resume(self) -> dict:
        return await self.send_command("save resume")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _backup_for(self, reason: str):
        if self.backups is None:
            return
        logger.info("[BedrockServer] Performing backup on %s per user settings.", reason)
        run = await self.backups.create_backup()
        if run.success:
            logger.info("[BedrockServer] Backup completed successfully")
        else:
            logger.error("[BedrockServer] Backup failed: %s", run.reason)

    async def start(self, ready_timeout_sec: float = DEFAULT_READY_TIMEOUT_SEC) -> dict:
        """Start BDS and wait until it reports that it started"""
        async with self.process_lock:
            if self.is_process_running():
                return {"success": False, "error": "Server is already running"}

            if not self.server_directory.is_dir():
                logger.error("[BedrockServer] Server directory %s does not exist", self.server_directory)
                return {"success": False, "error": f"Server directory not found: {self.server_directory}"}

            if not self.executable_path.exists():
                logger.error(
                    "[BedrockServer] %s cannot be found at %s. Ensure the BDS executable is named %s.",
                    BDS_EXECUTABLE_NAME, self.executable_path, BDS_EXECUTABLE_NAME,
                )
                return {"success": False, "error": f"{BDS_EXECUTABLE_NAME} not found"}

            settings = self.settings_store.get()
            if settings.backup_on_server_start:
                await self._backup_for("start")

            self.state.reset_session()
            self.log_buffer.clear()

            try:
                self.process = await asyncio.create_subprocess_exec(
                    str(self.executable_path),
                    cwd=str(self.server_directory),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                logger.error("[BedrockServer] Failed to start server: %s", e)
                return {"success": False, "error": str(e)}

            self.log_reader_task = asyncio.create_task(self._read_output(self.process))

        started = await self._wait_until(lambda: self.state.server_running, ready_timeout_sec)
        if not started:
            return {
                "success": False,
                "error": f"Server did not report a successful start within {ready_timeout_sec}s",
                "error_code": "start_timeout" if self.is_process_running() else "process_exited_early",
            }

        if settings.enable_automatic_backups and self.scheduler is not None:
            self.scheduler.enable()

        return {"success": True, "pid": self.process.pid, "message": "Server started"}

    async def stop(self, timeout_sec: float = DEFAULT_STOP_TIMEOUT_SEC) -> dict:
        """Stop BDS gracefully, then take a backup if configured"""
        async with self.process_lock:
            if not self.is_process_running():
                return {"success": False, "error": "Server is not running"}

            await self.send_command("stop")
            stopped = await self._wait_until(lambda: not self.state.server_running, timeout_sec)

            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("[BedrockServer] Server did not exit in %ss, killing PID %s", timeout_sec, self.process.pid)
                self.process.kill()
                await self.process.wait()

            if self.log_reader_task is not None:
                try:
                    await asyncio.wait_for(self.log_reader_task, timeout=2.0)
                except asyncio.TimeoutError:
                    self.log_reader_task.cancel()

        settings = self.settings_store.get()
        if self.scheduler is not None:
            self.scheduler.disable()

        if settings.backup_on_server_stop:
            await self._backup_for("stop")

        if not stopped:
            return {"success": True, "method": "unclean", "message": "Server exited without reporting a clean shutdown"}
        return {"success": True, "method": "command", "message": "Server stopped"}

    def get_recent_logs(self, lines: int = 100) -> list:
        return list(self.log_buffer)[-lines:]
