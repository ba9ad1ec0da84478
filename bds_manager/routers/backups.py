# bds_manager/routers/backups.py
"""
Backup Routes

Status, history, manual trigger and settings for world backups.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bds_manager.services.backup_manager import list_backups
from bds_manager.services.runtime import get_runtime

router = APIRouter()

ALLOWED_CONFIG_KEYS = [
    "backup_directory_path",
    "keep_backups_for_days",
    "keep_daily_backups_for_days",
    "enable_automatic_backups",
    "automatic_backup_interval_minutes",
    "only_backup_if_users_were_online",
    "backup_on_server_start",
    "backup_on_server_stop",
]


@router.get("/api/backups/status")
async def get_backup_status():
    """Get runtime state, scheduler status and backup settings"""
    runtime = get_runtime()
    return JSONResponse({
        "status": "ok",
        "server": runtime.state.to_dict(),
        "scheduler": runtime.scheduler.get_status(),
        "config": runtime.scheduler.get_config(),
    })


@router.get("/api/backups")
async def get_backups():
    """List backup directories, newest first"""
    runtime = get_runtime()
    return JSONResponse({
        "status": "ok",
        "backups": list_backups(runtime.settings.get().backup_directory),
    })


@router.get("/api/backups/logs")
async def get_backup_logs(limit: int = 50):
    """Get backup scheduler action logs"""
    runtime = get_runtime()
    return JSONResponse({
        "status": "ok",
        "logs": runtime.scheduler.get_logs(limit=limit),
    })


@router.post("/api/backups/trigger")
async def trigger_backup():
    """Take a backup now"""
    runtime = get_runtime()
    result = await runtime.scheduler.trigger_manual_backup()
    status_code = 409 if result.get("error_code") == "backup_in_progress" else 200
    return JSONResponse(result, status_code=status_code)


@router.post("/api/backups/config")
async def update_backup_config(request: Request):
    """Update backup settings"""
    body = await request.json()
    filtered = {k: v for k, v in body.items() if k in ALLOWED_CONFIG_KEYS}
    if not filtered:
        return JSONResponse({"success": False, "error": "No valid config keys provided"}, status_code=400)

    runtime = get_runtime()
    result = runtime.scheduler.update_config(**filtered)
    return JSONResponse(result, status_code=200 if result.get("success") else 400)
