import asyncio
from datetime import datetime, timedelta

from bds_manager.core.settings import SettingsStore
from bds_manager.services import backup_manager, backup_scheduler
from bds_manager.services.backup_manager import BackupManager, BackupMode, BackupRun
from bds_manager.services.log_events import LogEventInterpreter
from bds_manager.services.runtime_state import RuntimeState

_real_sleep = asyncio.sleep


class _FakeManager:
    def __init__(self, run=None):
        self.calls = 0
        self.run = run or BackupRun(mode=BackupMode.ONLINE, target_directory="/b/L_x", success=True)
        self.last_run = None
        self.in_progress = False

    async def create_backup(self):
        self.calls += 1
        self.last_run = self.run
        return self.run


def _make_scheduler(monkeypatch, tmp_path, run=None):
    monkeypatch.setattr(backup_scheduler, "LOG_FILE", tmp_path / "backup_scheduler_log.json")
    state = RuntimeState()
    store = SettingsStore(tmp_path / "settings.yml")
    manager = _FakeManager(run)
    return backup_scheduler.BackupScheduler(manager, state, store), manager, state, store


def test_tick_skips_when_nobody_was_active(monkeypatch, tmp_path):
    scheduler, manager, _, _ = _make_scheduler(monkeypatch, tmp_path)

    result = asyncio.run(scheduler._on_tick())

    assert result is None
    assert manager.calls == 0
    assert scheduler.logs[-1].action == "backup_skipped"


def test_tick_runs_when_a_player_is_online(monkeypatch, tmp_path):
    scheduler, manager, state, _ = _make_scheduler(monkeypatch, tmp_path)
    state.player_connected(datetime.now())

    result = asyncio.run(scheduler._on_tick())

    assert result is manager.run
    assert manager.calls == 1
    assert scheduler.logs[-1].action == "backup_completed"


def test_tick_runs_for_recent_logoff(monkeypatch, tmp_path):
    scheduler, manager, state, _ = _make_scheduler(monkeypatch, tmp_path)
    state.user_last_logged_on_at = datetime.now() - timedelta(minutes=20)
    state.user_last_logged_off_at = datetime.now() - timedelta(minutes=10)

    asyncio.run(scheduler._on_tick())

    assert manager.calls == 1


def test_tick_ignores_activity_when_not_required(monkeypatch, tmp_path):
    scheduler, manager, _, store = _make_scheduler(monkeypatch, tmp_path)
    store.update(only_backup_if_users_were_online=False)

    asyncio.run(scheduler._on_tick())

    assert manager.calls == 1


def test_busy_manager_is_logged_as_skip(monkeypatch, tmp_path):
    busy = BackupRun(reason="A backup is already in progress", error_code="backup_in_progress")
    scheduler, _, state, _ = _make_scheduler(monkeypatch, tmp_path, run=busy)
    state.player_connected(datetime.now())

    asyncio.run(scheduler._on_tick())

    assert scheduler.logs[-1].action == "backup_skipped"
    assert scheduler.logs[-1].status == "info"


def test_changed_interval_rebuilds_timer(monkeypatch, tmp_path):
    scheduler, _, _, store = _make_scheduler(monkeypatch, tmp_path)
    store.update(enable_automatic_backups=True, automatic_backup_interval_minutes=60)

    async def _scenario():
        scheduler.enable()
        first = scheduler._timer_task

        scheduler.enable()
        assert scheduler._timer_task is first

        scheduler.update_config(automatic_backup_interval_minutes=15)
        second = scheduler._timer_task
        await asyncio.sleep(0)

        status = scheduler.get_status()
        await scheduler.stop()
        return first, second, status

    first, second, status = asyncio.run(_scenario())

    assert second is not first
    assert first.cancelled()
    assert status["enabled"] is True
    assert status["interval_minutes"] == 15
    assert status["next_backup_at"] is not None


def test_disabling_automatic_backups_stops_timer(monkeypatch, tmp_path):
    scheduler, _, _, store = _make_scheduler(monkeypatch, tmp_path)
    store.update(enable_automatic_backups=True)

    async def _scenario():
        scheduler.enable()
        task = scheduler._timer_task
        scheduler.update_config(enable_automatic_backups=False)
        await asyncio.sleep(0)
        return task

    task = asyncio.run(_scenario())

    assert task.cancelled()
    assert scheduler.enabled is False


def test_update_config_rejects_invalid_interval(monkeypatch, tmp_path):
    scheduler, _, _, store = _make_scheduler(monkeypatch, tmp_path)

    result = scheduler.update_config(automatic_backup_interval_minutes=0)

    assert result["success"] is False
    assert store.get().automatic_backup_interval_minutes == 60
    assert scheduler.logs[-1].status == "failed"


def test_update_config_persists_settings(monkeypatch, tmp_path):
    scheduler, _, _, _ = _make_scheduler(monkeypatch, tmp_path)

    scheduler.update_config(keep_backups_for_days=7)

    assert SettingsStore(tmp_path / "settings.yml").get().keep_backups_for_days == 7


def test_logs_survive_restart(monkeypatch, tmp_path):
    scheduler, _, _, _ = _make_scheduler(monkeypatch, tmp_path)
    asyncio.run(scheduler.trigger_manual_backup())

    reloaded, _, _, _ = _make_scheduler(monkeypatch, tmp_path)

    actions = [log["action"] for log in reloaded.get_logs()]
    assert actions[:2] == ["backup_completed", "manual_backup"]


class _SlowServer:
    """Holds back the file list until ``answer`` is set."""

    def __init__(self, state, server_directory):
        self.interpreter = LogEventInterpreter(state, server_directory)
        self.sent = []
        self.answer = False

    async def send_command(self, command: str) -> dict:
        self.sent.append(command)
        if command == "save query" and self.answer:
            self.interpreter.handle_line("Data saved. Files are now ready to be copied.")
            self.interpreter.handle_line("L/db/CURRENT:16")
        elif command == "save resume":
            self.interpreter.handle_line("Changes to the world are resumed.")
        return {"success": True}


def test_interval_change_does_not_interrupt_running_backup(monkeypatch, tmp_path):
    monkeypatch.setattr(backup_scheduler, "LOG_FILE", tmp_path / "backup_scheduler_log.json")
    monkeypatch.setattr(backup_manager, "SAVE_HOLD_SETTLE_SECONDS", 0)
    monkeypatch.setattr(backup_manager, "SAVE_QUERY_POLL_SECONDS", 0)

    world = tmp_path / "server" / "worlds" / "L"
    (world / "db").mkdir(parents=True)
    (world / "db" / "CURRENT").write_bytes(b"c" * 20)

    state = RuntimeState()
    state.level_name = "L"
    state.server_running = True
    state.player_connected(datetime.now())

    store = SettingsStore(tmp_path / "settings.yml")
    store.update(backup_directory_path=str(tmp_path / "backups"), enable_automatic_backups=True)
    server = _SlowServer(state, tmp_path / "server")
    manager = BackupManager(state, server.send_command, store.get)
    scheduler = backup_scheduler.BackupScheduler(manager, state, store)

    # First timer fires at once; every later timer waits for real
    fired = []

    async def _sleep(seconds):
        if seconds >= 60 and not fired:
            fired.append(seconds)
            return
        await _real_sleep(seconds)

    monkeypatch.setattr(backup_scheduler.asyncio, "sleep", _sleep)

    async def _scenario():
        scheduler.enable()
        first = scheduler._timer_task
        while "save query" not in server.sent:
            await _real_sleep(0)

        scheduler.update_config(automatic_backup_interval_minutes=15)
        await _real_sleep(0)
        assert manager.in_progress is True

        server.answer = True
        await scheduler.stop()
        return first

    first = asyncio.run(_scenario())

    assert first.cancelled()
    assert manager.last_run.success is True
    assert server.sent[0] == "save hold"
    assert server.sent.count("save resume") == 1
    assert manager.in_progress is False
    assert "backup_completed" in [log.action for log in scheduler.logs]
