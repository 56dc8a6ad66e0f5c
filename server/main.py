"""
FastAPI Main Application
========================

HTTP and WebSocket control surface for auto mode.

- REST endpoints under /api/auto-mode (see routers/auto_mode.py)
- WebSocket /ws/auto-mode streaming lifecycle events
- /api/health and /api/setup/status

One AutoModeService per process lives in app.state; the lifespan handler
creates it on startup (unless one was injected) and shuts it down, joining
the auto loop task, on exit.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

# Fix for Windows subprocess support in asyncio
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from autoforge.config import Settings
from autoforge.service import AutoModeService

from .event_broadcaster import AutoModeEventBroadcaster
from .exceptions import ErrorCode, create_error_response, register_exception_handlers
from .routers import auto_mode_router

_logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost", None)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8888


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the service on startup; stop auto mode and join the loop on shutdown."""
    if getattr(app.state, "auto_mode_service", None) is None:
        app.state.auto_mode_service = AutoModeService(settings=app.state.settings)
        _logger.info("Auto mode service started")

    yield

    service: AutoModeService = app.state.auto_mode_service
    await service.shutdown()

    tasks = list(app.state.auto_mode_tasks)
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    app.state.event_broadcaster.reset()
    _logger.info("Auto mode service stopped")


def create_app(
    service: AutoModeService | None = None,
    settings: Settings | None = None,
    allow_remote: bool | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Pre-built service (tests inject one with a fake provider)
        settings: Settings used when the lifespan creates the service
        allow_remote: Accept non-localhost clients; defaults to
            AUTOFORGE_ALLOW_REMOTE
    """
    if settings is None:
        settings = service.settings if service is not None else Settings.from_env()
    if allow_remote is None:
        allow_remote = settings.allow_remote

    app = FastAPI(
        title="AutoForge",
        description="Autonomous feature orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.auto_mode_service = service
    app.state.event_broadcaster = AutoModeEventBroadcaster()
    app.state.auto_mode_tasks = set()

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    # {"error_code": "ERROR_TYPE", "message": "Human-readable message", "details": {...}}
    register_exception_handlers(app)

    # ========================================================================
    # CORS / Security Middleware
    # ========================================================================

    if allow_remote:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[
                "http://localhost:5173",      # Vite dev server
                "http://127.0.0.1:5173",
                f"http://localhost:{DEFAULT_PORT}",
                f"http://127.0.0.1:{DEFAULT_PORT}",
            ],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.middleware("http")
        async def require_localhost(request: Request, call_next):
            """Only allow requests from localhost (disabled when AUTOFORGE_ALLOW_REMOTE=1)."""
            client_host = request.client.host if request.client else None
            if client_host not in LOCAL_HOSTS:
                return JSONResponse(
                    status_code=403,
                    content=create_error_response(ErrorCode.FORBIDDEN, "Localhost access only"),
                )
            return await call_next(request)

    app.include_router(auto_mode_router)

    # ========================================================================
    # WebSocket Endpoint
    # ========================================================================

    @app.websocket("/ws/auto-mode")
    async def auto_mode_websocket(websocket: WebSocket):
        """Stream lifecycle events; answers "ping" with a pong message."""
        client_host = websocket.client.host if websocket.client else None
        if not allow_remote and client_host not in LOCAL_HOSTS:
            await websocket.close(code=1008)
            return

        broadcaster: AutoModeEventBroadcaster = websocket.app.state.event_broadcaster
        await websocket.accept()
        broadcaster.connect(websocket)
        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(websocket)

    # ========================================================================
    # Setup & Health Endpoints
    # ========================================================================

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/setup/status")
    async def setup_status(request: Request):
        """Report delegate installation and credential status."""
        service: AutoModeService = request.app.state.auto_mode_service
        installation = await service.provider.detect_installation()
        return {
            "provider": service.provider.get_name(),
            **installation.to_dict(),
            "models": [m.to_dict() for m in service.provider.get_available_models()],
        }

    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "server.main:app",
        host=DEFAULT_HOST,  # Localhost only for security
        port=DEFAULT_PORT,
    )


if __name__ == "__main__":
    main()
