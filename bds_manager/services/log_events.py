# bds_manager/services/log_events.py
"""
Bedrock Dedicated Server Output Interpreter

Two steps:
- parse_line() turns one line of server output into a typed event (or None)
- LogEventInterpreter.apply() updates RuntimeState from that event

Example lines:
    [2021-12-23 21:10:20:336 INFO] Version 1.18.2.03
    [2021-12-23 21:10:21:932 INFO] Level Name: Bedrock level
    [2021-12-23 21:10:21:932 INFO] opening worlds/Bedrock level/db
    [2021-12-23 21:10:37:788 INFO] Server started.
    [2021-12-24 11:50:57:895 INFO] Player connected: IdleOtter7772, xuid: 2535465704948384
    Data saved. Files are now ready to be copied.
    Bedrock level/db/000096.ldb:308603, Bedrock level/db/CURRENT:16, Bedrock level/level.dat:2543
    Changes to the world are resumed.
    Quit correctly
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Type, Union

from bds_manager.services.runtime_state import BackupFile, RuntimeState

logger = logging.getLogger(__name__)

# Marker text is a compatibility contract with BDS output
MARKER_VERSION = "Version"
MARKER_LEVEL_NAME = "Level Name:"
MARKER_OPENING_WORLDS = "opening worlds"
MARKER_SERVER_STARTED = "Server started."
MARKER_STOPPING = "Stopping server..."
MARKER_QUIT = "Quit correctly"
MARKER_FILES_READY = "Data saved. Files are now ready to be copied."
MARKER_MANIFEST_SUFFIX = "/db/CURRENT:"
MARKER_RESUMED = "Changes to the world are resumed."
MARKER_PLAYER_CONNECTED = "Player connected"
MARKER_PLAYER_DISCONNECTED = "Player disconnected"

_LOG_TIMESTAMP = re.compile(r"\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})[:.,](\d{1,3})")
_LOG_PREFIX = re.compile(r"^\s*\[[^\]]*\]\s*")
_VERSION_TOKEN = re.compile(r"^\d+(\.\d+)*$")


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class VersionReported:
    version: Tuple[int, ...]


@dataclass(frozen=True)
class LevelNameReported:
    level_name: str


@dataclass(frozen=True)
class WorldOpened:
    relative_path: str


@dataclass(frozen=True)
class ServerStarted:
    at: datetime


@dataclass(frozen=True)
class ServerStopping:
    at: datetime


@dataclass(frozen=True)
class ServerQuit:
    pass


@dataclass(frozen=True)
class BackupFilesReady:
    pass


@dataclass(frozen=True)
class BackupManifestReported:
    entries: Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class ChangesResumed:
    pass


@dataclass(frozen=True)
class PlayerConnected:
    at: datetime


@dataclass(frozen=True)
class PlayerDisconnected:
    at: datetime


LogEvent = Union[
    VersionReported, LevelNameReported, WorldOpened, ServerStarted, ServerStopping,
    ServerQuit, BackupFilesReady, BackupManifestReported, ChangesResumed,
    PlayerConnected, PlayerDisconnected,
]


# =============================================================================
# Parsing
# =============================================================================

def read_log_timestamp(line: str) -> datetime:
    """Timestamp embedded in a BDS log line, or now when the line has none."""
    match = _LOG_TIMESTAMP.search(line)
    if match:
        try:
            stamp = datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S")
            return stamp.replace(microsecond=int(match.group(2).ljust(3, "0")) * 1000)
        except ValueError:
            pass
    return datetime.now()


def parse_manifest_csv(line: str) -> Tuple[Tuple[str, int], ...]:
    """Parse ``path:length, path:length, ...`` out of a save query response.

    Raises ValueError on a malformed entry.
    """
    body = _LOG_PREFIX.sub("", line, count=1)

    entries = []
    for raw_entry in body.split(","):
        entry = raw_entry.strip()
        if not entry:
            continue
        path, sep, length = entry.rpartition(":")
        if not sep or not path.strip():
            raise ValueError(f"Malformed backup file entry: {entry!r}")
        entries.append((path.strip(), int(length.strip())))
    return tuple(entries)


def _parse_version(line: str) -> Optional[Tuple[int, ...]]:
    token = line.strip().split()[-1] if line.strip() else ""
    if not _VERSION_TOKEN.match(token):
        return None
    return tuple(int(part) for part in token.split("."))


def parse_line(line: str, level_name: str = "") -> Optional[LogEvent]:
    """Recognize one line of server output. Unknown lines give None."""
    if not line or not line.strip():
        return None

    if f"{level_name}{MARKER_MANIFEST_SUFFIX}" in line:
        return BackupManifestReported(entries=parse_manifest_csv(line))

    if MARKER_FILES_READY in line:
        return BackupFilesReady()

    if MARKER_RESUMED in line:
        return ChangesResumed()

    if MARKER_PLAYER_CONNECTED in line:
        return PlayerConnected(at=read_log_timestamp(line))

    if MARKER_PLAYER_DISCONNECTED in line:
        return PlayerDisconnected(at=read_log_timestamp(line))

    if MARKER_SERVER_STARTED in line:
        return ServerStarted(at=read_log_timestamp(line))

    if MARKER_STOPPING in line:
        return ServerStopping(at=read_log_timestamp(line))

    if MARKER_QUIT in line:
        return ServerQuit()

    if MARKER_LEVEL_NAME in line:
        return LevelNameReported(level_name=line[line.rfind(":") + 1:].strip())

    if MARKER_OPENING_WORLDS in line:
        start = line.find("worlds")
        stop = line.find("/db", start)
        if stop == -1:
            return None
        return WorldOpened(relative_path=line[start:stop])

    if MARKER_VERSION in line:
        version = _parse_version(line)
        if version is None:
            return None
        return VersionReported(version=version)

    return None


# =============================================================================
# Interpreter
# =============================================================================

class LogEventInterpreter:
    """Applies recognized server output to a RuntimeState.

    Lines must be fed in the order the server wrote them.
    """

    def __init__(self, state: RuntimeState, server_directory: Path):
        self.state = state
        self.server_directory = Path(server_directory)
        self._handlers: Dict[Type, Callable] = {
            VersionReported: self._on_version,
            LevelNameReported: self._on_level_name,
            WorldOpened: self._on_world_opened,
            ServerStarted: self._on_server_started,
            ServerStopping: self._on_server_stopping,
            ServerQuit: self._on_server_quit,
            BackupFilesReady: self._on_files_ready,
            BackupManifestReported: self._on_manifest,
            ChangesResumed: self._on_resumed,
            PlayerConnected: self._on_player_connected,
            PlayerDisconnected: self._on_player_disconnected,
        }

    @property
    def worlds_root(self) -> Path:
        return self.server_directory / "worlds"

    def resolve_world_file(self, relative_path: str) -> Path:
        """BDS lists files as ``<level>/...``; a leading ``worlds/`` is accepted too."""
        parts = Path(relative_path).parts
        if len(parts) > 2 and parts[0] == "worlds" and parts[1] == self.state.level_name:
            return (self.server_directory / relative_path).resolve()
        return (self.worlds_root / relative_path).resolve()

    def handle_line(self, line: str) -> Optional[LogEvent]:
        try:
            event = parse_line(line, self.state.level_name)
        except ValueError as e:
            logger.error("Unable to read backup file list from server output: %s", e)
            return None

        if event is not None:
            self.apply(event)
        return event

    def apply(self, event: LogEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"No handler for {type(event).__name__}")
        handler(event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_version(self, event: VersionReported):
        self.state.server_version = event.version

    def _on_level_name(self, event: LevelNameReported):
        self.state.level_name = event.level_name

    def _on_world_opened(self, event: WorldOpened):
        self.state.world_directory_path = (self.server_directory / event.relative_path).resolve()

    def _on_server_started(self, event: ServerStarted):
        self.state.server_last_started_at = event.at
        self.state.server_running = True
        logger.info("Server started (level=%s)", self.state.level_name or "unknown")

    def _on_server_stopping(self, event: ServerStopping):
        self.state.server_last_stopped_at = event.at

    def _on_server_quit(self, event: ServerQuit):
        self.state.server_running = False
        self.state.reset_players()
        logger.info("Server quit")

    def _on_files_ready(self, event: BackupFilesReady):
        self.state.manifest.mark_ready()

    def _on_manifest(self, event: BackupManifestReported):
        files = [
            BackupFile(path=self.resolve_world_file(path), length=length)
            for path, length in event.entries
        ]
        self.state.manifest.fill(files)
        logger.debug("Backup manifest received with %s files", len(files))

    def _on_resumed(self, event: ChangesResumed):
        self.state.manifest.clear()

    def _on_player_connected(self, event: PlayerConnected):
        count = self.state.player_connected(event.at)
        logger.info("Player connected (%s online)", count)

    def _on_player_disconnected(self, event: PlayerDisconnected):
        count = self.state.player_disconnected(event.at)
        logger.info("Player disconnected (%s online)", count)
