# bds_manager/routers/server.py
"""
Server Control Routes
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bds_manager.services.runtime import get_runtime

router = APIRouter()

# Backups drive these themselves; a stray user "save resume" would break a running backup
BLOCKED_COMMANDS = {"save"}


@router.post("/api/server/start")
async def start_server():
    runtime = get_runtime()
    result = await runtime.server.start()
    return JSONResponse(result)


@router.post("/api/server/stop")
async def stop_server():
    runtime = get_runtime()
    result = await runtime.server.stop()
    return JSONResponse(result)


@router.post("/api/server/command")
async def send_server_command(request: Request):
    body = await request.json()
    command = str(body.get("command", "")).strip()
    if not command:
        return JSONResponse({"success": False, "error": "Command is required"}, status_code=400)

    base_command = command.lstrip("/").split()[0].lower()
    if base_command in BLOCKED_COMMANDS:
        return JSONResponse({"success": False, "error": f"'{base_command}' is managed by backups"}, status_code=403)

    runtime = get_runtime()
    result = await runtime.server.send_command(command, user_sent=True)
    return JSONResponse(result)


@router.get("/api/server/logs")
async def get_server_logs(lines: int = 100):
    runtime = get_runtime()
    return JSONResponse({
        "status": "ok",
        "logs": runtime.server.get_recent_logs(lines),
    })
