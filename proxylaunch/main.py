# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Main Application

FastAPI control API for the launcher: start and stop the intercepting
proxy, launch the target behind it, read the log, and answer the update
notifications a desktop client would show as dialogs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from . import __version__
from .applier import UpdateApplier
from .config import config, setup_logging
from .downloader import Downloader
from .errors import (
    ConfigurationError,
    ProxyLaunchError,
    ProxyUnavailable,
    TargetNotFound,
)
from .events import EventBus
from .launcher import LaunchConfig, LaunchCoordinator
from .log_buffer import get_log_buffer
from .proxy_config import ProxyConfigWriter
from .schemas import (
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    LaunchRequest,
    LaunchResponse,
    LogsClearedResponse,
    LogsResponse,
    NotificationInfo,
    NotificationListResponse,
    NotificationResponseRequest,
    ProxyActionResponse,
    ServiceStatusResponse,
    StatusInfo,
    UpdateCheckResponse,
)
from .supervisor import ProcessSupervisor
from .updater import UpdateChecker, UpdateManager

# Setup logging
setup_logging(config.logging)
logger = logging.getLogger(__name__)

# =============================================================================
# SERVICE INITIALIZATION
# =============================================================================

# Initialize services (will be configured on startup)
events: Optional[EventBus] = None
supervisor: Optional[ProcessSupervisor] = None
coordinator: Optional[LaunchCoordinator] = None
update_manager: Optional[UpdateManager] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    global events, supervisor, coordinator, update_manager

    logger.info("proxylaunch %s starting up...", __version__)

    events = EventBus()
    supervisor = ProcessSupervisor(
        stop_timeout=config.proxy.stop_timeout,
        events=events,
    )
    coordinator = LaunchCoordinator(
        supervisor,
        config.proxy,
        config_writer=ProxyConfigWriter(config.addon_flags, config.proxy.base_directory),
        events=events,
    )
    update_manager = UpdateManager(
        UpdateChecker(
            config.updates.manifest_url,
            current_version=__version__,
            connect_timeout=config.updates.connect_timeout,
            read_timeout=config.updates.read_timeout,
        ),
        Downloader(
            connect_timeout=config.updates.connect_timeout,
            read_timeout=config.updates.download_read_timeout,
            chunk_size=config.updates.chunk_size,
            progress_step=config.updates.progress_step,
        ),
        UpdateApplier(restart_delay=config.updates.restart_delay),
        events,
        before_restart=supervisor.shutdown,
    )

    coordinator.check_setup()

    check_task = None
    if config.updates.check_on_startup:
        check_task = asyncio.create_task(update_manager.run_check(), name="startup-update-check")

    events.set_status("Ready")
    logger.info(
        "proxylaunch ready on http://%s:%d",
        config.server.host,
        config.server.port,
    )

    yield  # Application runs here

    # Shutdown
    logger.info("proxylaunch shutting down...")

    if check_task and not check_task.done():
        check_task.cancel()
        try:
            await check_task
        except asyncio.CancelledError:
            pass

    await update_manager.close()
    await supervisor.shutdown()
    events.dismiss_all()

    logger.info("proxylaunch shutdown complete")


# =============================================================================
# APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title="proxylaunch",
    description="Launches an application behind a supervised mitmproxy instance",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


def _require_services():
    if coordinator is None or supervisor is None or events is None or update_manager is None:
        raise HTTPException(status_code=503, detail="Service is starting")


def _proxy_state() -> ProxyActionResponse:
    return ProxyActionResponse(proxy_state=supervisor.state.value, proxy_pid=supervisor.pid)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error_content(message: str, error_type: str, status_code: int):
    return ErrorResponse(
        error=ErrorDetail(message=str(message), type=error_type, code=str(status_code))
    ).to_content()


def _status_for(exc: ProxyLaunchError) -> int:
    if isinstance(exc, TargetNotFound):
        return 404
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, ProxyUnavailable):
        return 503
    # ProcessStartError and anything unexpected
    return 500


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with the common error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(exc.detail, "api_error", exc.status_code),
    )


@app.exception_handler(ProxyLaunchError)
async def proxylaunch_exception_handler(request: Request, exc: ProxyLaunchError):
    """Map launcher errors onto HTTP status codes."""
    status_code = _status_for(exc)
    return JSONResponse(
        status_code=status_code,
        content=_error_content(str(exc), type(exc).__name__, status_code),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception("Unexpected error: %s", exc)
    return JSONResponse(
        status_code=500,
        content=_error_content("Internal server error", "internal_error", 500),
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Liveness, version and proxy state."""
    if supervisor is None:
        return HealthResponse(status="starting", version=__version__)
    return HealthResponse(status="ok", version=__version__, proxy_state=supervisor.state.value)


@app.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status():
    _require_services()
    return ServiceStatusResponse(
        proxy_state=supervisor.state.value,
        proxy_pid=supervisor.pid,
        status=StatusInfo(**events.status.to_dict()),
        update_in_progress=update_manager.update_in_progress,
        notifications=[NotificationInfo.from_notification(n) for n in events.pending()],
    )


@app.post("/v1/proxy/start", response_model=ProxyActionResponse)
async def start_proxy():
    """Start the proxy (if needed) and wait for it to become ready."""
    _require_services()
    await coordinator.ensure_proxy()
    return _proxy_state()


@app.post("/v1/proxy/stop", response_model=ProxyActionResponse)
async def stop_proxy():
    _require_services()
    await coordinator.stop_proxy()
    return _proxy_state()


@app.post("/v1/launch", response_model=LaunchResponse)
async def launch_target(request: Optional[LaunchRequest] = None):
    """
    Launch the target application behind the proxy.

    Starts the proxy first when it is not running.
    """
    _require_services()
    target = Path(request.target) if request is not None and request.target else None
    launch_config = LaunchConfig.from_settings(config.launch, config.proxy, target)
    result = await coordinator.launch(launch_config)
    return LaunchResponse(
        pid=result.pid,
        target=str(result.target),
        proxy_url=launch_config.proxy_url,
    )


@app.get("/v1/logs", response_model=LogsResponse)
async def get_logs(limit: Optional[int] = Query(default=None, ge=0)):
    lines = get_log_buffer().lines(limit)
    return LogsResponse(lines=lines, total=len(lines))


@app.delete("/v1/logs", response_model=LogsClearedResponse)
async def clear_logs():
    return LogsClearedResponse(cleared=get_log_buffer().clear())


@app.post("/v1/updates/check", response_model=UpdateCheckResponse)
async def check_updates():
    """Run an update check now. Offers the update as a notification."""
    _require_services()
    manifest = await update_manager.run_check()
    if manifest is None:
        return UpdateCheckResponse(current_version=__version__)

    notification = update_manager.last_notification
    return UpdateCheckResponse(
        current_version=__version__,
        update_available=True,
        latest_version=manifest.version,
        major_update=manifest.major_update,
        notification_id=notification.id if notification else None,
    )


@app.get("/v1/notifications", response_model=NotificationListResponse)
async def list_notifications():
    _require_services()
    pending = [NotificationInfo.from_notification(n) for n in events.pending()]
    return NotificationListResponse(data=pending, total=len(pending))


@app.post("/v1/notifications/{notification_id}/respond", response_model=NotificationInfo)
async def respond_to_notification(notification_id: str, request: NotificationResponseRequest):
    _require_services()
    try:
        notification = events.respond(notification_id, request.action)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return NotificationInfo.from_notification(notification)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def run() -> None:
    import uvicorn

    uvicorn.run(
        "proxylaunch.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
