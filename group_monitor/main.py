import logging
from contextlib import asynccontextmanager
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from group_monitor.config import settings
from group_monitor.connection import ConnectionPhase
from group_monitor.ingestion import IngestResult
from group_monitor.logging_utils import RequestLoggingMiddleware, log_ingest_data, setup_logging
from group_monitor.metrics import get_metrics, get_metrics_content_type
from group_monitor.models import ErrorLogEntry, GroupInput, GroupRecord, MessageStatus, StoredMessage
from group_monitor.runtime import MonitorRuntime
from group_monitor.schemas import (
    ConfigValueRequest,
    ConfigValueResponse,
    ErrorResponse,
    GroupActiveRequest,
    GroupRequest,
    HealthResponse,
    IngestResponse,
    LogoutResponse,
    PairingInfo,
    QrCodeResponse,
    SendMessageRequest,
    Statistics,
    StatusResponse,
    StorageInfo,
)
from group_monitor.storage import MISSING, StorageWriteError
from group_monitor.utils import format_uptime, iso_utc, utc_now


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: initialize storage, start the event dispatcher and chat client
    - Shutdown: stop background tasks and destroy the chat client
    """
    logger.info("Starting group monitor...")
    runtime = MonitorRuntime(settings)
    app.state.runtime = runtime
    await runtime.start()
    yield
    await runtime.stop()


app = FastAPI(
    title="Group Monitor API",
    description="Monitors group chats and stores inbound messages",
    version="1.0.0",
    lifespan=lifespan,
)

CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]


class PreflightMiddleware(BaseHTTPMiddleware):
    """
    Answer every OPTIONS request with 200 and permissive CORS headers.

    Runs outside CORSMiddleware, which rejects preflights asking for a
    method or header it does not list.
    """

    async def dispatch(self, request: Request, call_next):
        if request.method != "OPTIONS":
            return await call_next(request)
        headers = {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": ", ".join(CORS_METHODS),
            "Access-Control-Max-Age": "600",
        }
        requested = request.headers.get("access-control-request-headers")
        if requested:
            headers["Access-Control-Allow-Headers"] = requested
        return Response(status_code=status.HTTP_200_OK, headers=headers)


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=CORS_METHODS,
    allow_headers=["*"],
)
# Added last so it wraps everything else
app.add_middleware(PreflightMiddleware)


def get_runtime(request: Request) -> MonitorRuntime:
    """Dependency returning the process runtime created by the lifespan."""
    return request.app.state.runtime


Runtime = Annotated[MonitorRuntime, Depends(get_runtime)]


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health(runtime: Runtime) -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running,
    whatever the chat connection state.
    """
    return HealthResponse(
        status="healthy",
        uptime=format_uptime(runtime.controller.get_status().uptime_seconds),
        timestamp=iso_utc(utc_now()),
    )


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, runtime: Runtime) -> HealthResponse:
    """Readiness probe - 503 when the storage documents cannot be read."""
    if not runtime.storage.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Storage not readable")
    return HealthResponse(status="ready")


# =============================================================================
# Connection Routes
# =============================================================================

_PHASE_LABELS = {
    ConnectionPhase.INITIALIZING: "Initializing",
    ConnectionPhase.AWAITING_PAIRING: "Waiting for QR scan",
    ConnectionPhase.AUTHENTICATED: "Authenticated",
    ConnectionPhase.CONNECTED: "Connected",
    ConnectionPhase.DISCONNECTED: "Disconnected",
    ConnectionPhase.FAILED: "Failed",
}


def _build_status(runtime: MonitorRuntime) -> StatusResponse:
    connection = runtime.controller.get_status()
    messages = runtime.storage.get_messages(runtime.storage.message_retention)
    total = len(messages)
    failed = sum(1 for msg in messages if msg.status == MessageStatus.FAILED)
    success_rate = 100.0 if total == 0 else round((total - failed) / total * 100, 1)
    stats = runtime.pipeline.stats

    label = _PHASE_LABELS[connection.phase]
    if connection.fallback:
        label = f"{label} (simulation)"

    return StatusResponse(
        phase=connection.phase.value,
        whatsapp=label,
        is_ready=connection.is_ready,
        mode="simulation" if connection.fallback else "live",
        pairing=PairingInfo(
            available=connection.pairing_payload is not None,
            status=connection.phase.value,
        ),
        storage=StorageInfo(type="file", connected=runtime.storage.check_health()),
        statistics=Statistics(
            total_messages=total,
            monitored_messages=connection.message_count,
            success_rate=success_rate,
            duplicates=stats[IngestResult.DUPLICATE.value],
            dropped=stats[IngestResult.INVALID.value],
            errors=stats[IngestResult.ERROR.value],
        ),
        uptime=format_uptime(connection.uptime_seconds),
        last_error=connection.last_error,
    )


@app.get("/status", response_model=StatusResponse)
@app.get("/api/status", response_model=StatusResponse)
async def get_status(runtime: Runtime) -> StatusResponse:
    """Connection phase, pairing availability, message statistics and uptime."""
    try:
        return _build_status(runtime)
    except Exception as e:
        logger.error(f"Status check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Status check failed"
        )


@app.get("/api/qr-code", response_model=QrCodeResponse, response_model_exclude_none=True)
async def get_qr_code(runtime: Runtime) -> QrCodeResponse:
    """Pairing payload, if the chat client is waiting for one to be scanned."""
    connection = runtime.controller.get_status()

    if connection.is_ready:
        return QrCodeResponse(
            status="already_connected",
            message="WhatsApp is already authenticated and connected",
        )

    if connection.pairing_payload:
        return QrCodeResponse(
            status="qr_ready",
            message="QR code ready for scanning",
            qr=connection.pairing_payload,
        )

    return QrCodeResponse(
        status="generating",
        message="QR code is being generated, please wait...",
    )


@app.post("/api/logout", response_model=LogoutResponse)
async def logout(runtime: Runtime) -> LogoutResponse:
    """
    Log out of the chat session. Always reports success: local state is
    reset to Disconnected even when the chat client fails to log out.
    """
    try:
        await runtime.controller.logout()
    except Exception as e:
        logger.error(f"Logout error: {e}")
        runtime.storage.log_error(e, context="logout")
    return LogoutResponse(success=True, message="Logged out successfully")


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages", response_model=list[StoredMessage])
async def list_messages(
    runtime: Runtime,
    limit: Annotated[int, Query(ge=1, le=1000, description="Maximum number of messages to return")] = settings.DEFAULT_MESSAGES_LIMIT,
) -> list[StoredMessage]:
    """Most recent messages, newest first."""
    messages = runtime.storage.get_messages(limit)
    logger.info(f"GET /api/messages: returned {len(messages)} messages (limit={limit})")
    return messages


@app.post(
    "/api/send-message",
    response_model=IngestResponse,
    responses={500: {"model": ErrorResponse, "description": "Message could not be stored"}},
)
@app.post(
    "/simulate",
    response_model=IngestResponse,
    responses={500: {"model": ErrorResponse, "description": "Message could not be stored"}},
)
async def send_message(request: Request, body: SendMessageRequest, runtime: Runtime) -> IngestResponse:
    """
    Inject a message by hand, bypassing the chat client.

    The message gets a synthetic source id and is stored like any inbound
    group message.
    """
    outcome = runtime.pipeline.ingest_manual(
        content=body.content,
        author=body.author,
        group_name=body.group_name,
        group_id=body.group_id,
    )
    log_ingest_data(
        request=request,
        source_message_id=outcome.source_message_id,
        dup=outcome.is_duplicate,
        result=outcome.result.value,
    )

    if outcome.result is IngestResult.ERROR:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    return IngestResponse(result=outcome.result.value, data=outcome.message)


# =============================================================================
# Group Routes
# =============================================================================

@app.get("/api/groups", response_model=list[GroupRecord])
async def list_groups(
    runtime: Runtime,
    active_only: Annotated[bool, Query(description="Only groups being monitored")] = False,
) -> list[GroupRecord]:
    if active_only:
        return runtime.storage.get_active_groups()
    return runtime.storage.get_groups()


@app.post("/api/groups", response_model=GroupRecord)
async def upsert_group(body: GroupRequest, runtime: Runtime) -> GroupRecord:
    """Add a group, or rename / re-flag the one with the same group_id."""
    try:
        return runtime.storage.upsert_group(GroupInput(**body.model_dump()))
    except StorageWriteError as e:
        logger.error(f"Failed to store group {body.group_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store group"
        )


@app.put("/api/groups/{group_id}", response_model=GroupRecord)
async def set_group_active(group_id: str, body: GroupActiveRequest, runtime: Runtime) -> GroupRecord:
    try:
        group = runtime.storage.set_group_active(group_id, body.is_active)
    except StorageWriteError as e:
        logger.error(f"Failed to update group {group_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update group"
        )
    if group is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="group not found")
    return group


# =============================================================================
# Error Log and Config Routes
# =============================================================================

@app.get("/api/errors", response_model=list[ErrorLogEntry])
async def list_errors(
    runtime: Runtime,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of entries to return")] = 50,
) -> list[ErrorLogEntry]:
    return runtime.storage.get_recent_errors(limit)


@app.get("/api/config/{key}", response_model=ConfigValueResponse)
async def get_config(key: str, runtime: Runtime) -> ConfigValueResponse:
    value = runtime.storage.get_config(key, MISSING)
    if value is MISSING:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="config key not set")
    return ConfigValueResponse(key=key, value=value)


@app.put("/api/config/{key}", response_model=ConfigValueResponse)
async def set_config(key: str, body: ConfigValueRequest, runtime: Runtime) -> ConfigValueResponse:
    try:
        runtime.storage.set_config(key, body.value)
    except StorageWriteError as e:
        logger.error(f"Failed to store config {key}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store config"
        )
    return ConfigValueResponse(key=key, value=body.value)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
