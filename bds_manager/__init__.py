import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from bds_manager.core.config import APP_VERSION, ENV_FILE


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    from bds_manager.services import runtime as runtime_service

    runtime = runtime_service.get_runtime()

    auto_start = os.getenv("AUTO_START_SERVER", "false").lower() in {"1", "true", "yes"}
    if auto_start:
        result = await runtime.server.start()
        if result.get("success"):
            print("Bedrock server started")
        else:
            print(f"Bedrock server failed to start: {result.get('error')}")

    yield

    await runtime_service.shutdown_runtime()
    print("App shutting down")


def create_app():
    """FastAPI application factory."""
    load_dotenv(dotenv_path=ENV_FILE)

    app = FastAPI(
        title="Bedrock Server Backup Manager",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    from bds_manager.routers import backups, server

    app.include_router(backups.router, tags=["Backups"])
    app.include_router(server.router, tags=["Server"])

    return app
