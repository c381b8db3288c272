"""
Scribeflow - FastAPI Main Application
"""

import asyncio
import json
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.responses import Response

from scribeflow.config import ProviderId, Settings, settings as default_settings
from scribeflow.core.circuit import CircuitBreakerRegistry, CircuitState
from scribeflow.core.errors import (
    NoProviderAvailableError,
    PipelineError,
    ProviderStateError,
    SessionNotFoundError,
)
from scribeflow.core.logging import setup_logging, get_logger, audit_logger
from scribeflow.core.security import get_current_user, security_manager
from scribeflow.models.requests import CreateSessionRequest, RecognitionEventRequest, StepRunRequest
from scribeflow.models.responses import (
    AudioAcceptedResponse,
    ErrorResponse,
    HealthCheckResponse,
    RateLimitResponse,
    SessionResponse,
    SessionStatusResponse,
    SyncResponse,
)
from scribeflow.models.workflow import StepName, StepResult, WorkflowResult
from scribeflow.services.ingestion import STORAGE_OPERATION
from scribeflow.services.llm_service import GenerationService
from scribeflow.services.metrics import PipelineMetrics
from scribeflow.services.providers import AudioChunk, ProviderCommandResult, RecognitionResult
from scribeflow.services.session import RecordingSession, SessionManager
from scribeflow.services.storage import TranscriptStore, build_store

# Initialize logging
setup_logging()
logger = get_logger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

STARTED_AT = time.time()

ERROR_STATUS = {
    NoProviderAvailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    ProviderStateError: status.HTTP_409_CONFLICT,
}

router = APIRouter()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_session(session_id: str, sessions: SessionManager = Depends(get_sessions)) -> RecordingSession:
    return sessions.get(session_id)


def _command_response(session: RecordingSession, result: ProviderCommandResult) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        success=result.success,
        provider_id=result.provider_id,
        state=result.state.value if result.state else None,
        message=result.message,
    )


# Health check endpoint
@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request):
    """Service health check"""
    app_settings: Settings = request.app.state.settings
    return HealthCheckResponse(
        status="healthy",
        timestamp=_utcnow(),
        version=app_settings.api_version,
        uptime_seconds=int(time.time() - STARTED_AT),
        details={"active_sessions": len(request.app.state.sessions)},
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Ready when at least one provider is configured and the storage circuit
    is not open. Returns 503 Service Unavailable otherwise.
    """
    app_settings: Settings = request.app.state.settings
    resilience: CircuitBreakerRegistry = request.app.state.resilience

    providers = {
        ProviderId.ASSEMBLYAI.value: bool(app_settings.assemblyai_api_key),
        ProviderId.OPENAI.value: bool(app_settings.openai_api_key),
        ProviderId.BROWSER.value: True,
    }
    storage_state = resilience.get(STORAGE_OPERATION).state
    all_ok = any(providers.values()) and storage_state != CircuitState.OPEN

    response_data = {
        "status": "ready" if all_ok else "unavailable",
        "timestamp": _utcnow().isoformat(),
        "version": app_settings.api_version,
        "details": {
            "providers": providers,
            "storage_circuit": storage_state.value,
        },
    }
    if all_ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response_data)
    logger.warning(f"Readiness check failed: {response_data['details']}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response_data)


# Prometheus metrics endpoint
@router.get(default_settings.metrics_path)
async def metrics(request: Request):
    """Prometheus metrics"""
    if not request.app.state.settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(request.app.state.metrics.render(), media_type=CONTENT_TYPE_LATEST)


@router.post(
    "/v1/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": RateLimitResponse},
        503: {"model": ErrorResponse},
    },
)
@limiter.limit(f"{default_settings.rate_limit_requests}/minute")
async def create_session(
    request: Request,
    body: Optional[CreateSessionRequest] = None,
    user_info: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    """Starts recording with the requested provider, or the best available one."""
    body = body or CreateSessionRequest()
    if body.session_id and body.session_id in sessions.list():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Session {body.session_id} already exists")

    session = await sessions.create(preferred=body.provider, session_id=body.session_id)
    logger.info(f"[{request.state.request_id}] Session {session.id} created for {user_info.get('sub')}")
    return SessionResponse(
        session_id=session.id,
        success=True,
        provider_id=session.provider.provider_id.value,
        state=session.provider.state.value,
        message=f"Transcription started with {session.provider.provider_id.value}",
    )


@router.post("/v1/sessions/{session_id}/audio", response_model=AudioAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_audio(
    request: Request,
    audio_file: UploadFile = File(..., alias="file"),
    offset_ms: int = Form(0),
    duration_ms: int = Form(0),
    user_info: dict = Depends(get_current_user),
    session: RecordingSession = Depends(get_session),
):
    """Queues one recorded audio chunk for transcription."""
    app_settings: Settings = request.app.state.settings
    content_type = (audio_file.content_type or "").split(";")[0]
    if content_type not in app_settings.supported_audio_formats:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported audio format '{content_type}'. Supported are: {', '.join(app_settings.supported_audio_formats)}",
        )

    data = await audio_file.read()
    if len(data) > app_settings.max_chunk_size_mb * 1024 * 1024:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Audio chunk exceeds {app_settings.max_chunk_size_mb} MB",
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Audio chunk is empty")

    accepted = await session.feed_audio(
        AudioChunk(
            data=data,
            offset_ms=offset_ms,
            duration_ms=duration_ms,
            content_type=content_type,
            filename=audio_file.filename or "chunk",
        )
    )
    return AudioAcceptedResponse(session_id=session.id, accepted=accepted, offset_ms=offset_ms)


@router.post("/v1/sessions/{session_id}/results", status_code=status.HTTP_202_ACCEPTED)
async def relay_result(
    body: RecognitionEventRequest,
    user_info: dict = Depends(get_current_user),
    session: RecordingSession = Depends(get_session),
):
    """Relays a result or error from the client's own recognizer."""
    if body.error:
        await session.report_error(body.error)
        return {"session_id": session.id, "accepted": True}
    if body.text is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Either text or error is required")

    accepted = await session.submit_result(
        RecognitionResult(**body.model_dump(exclude={"error"}))
    )
    return {"session_id": session.id, "accepted": accepted}


@router.post("/v1/sessions/{session_id}/pause", response_model=SessionResponse)
async def pause_session(user_info: dict = Depends(get_current_user), session: RecordingSession = Depends(get_session)):
    return _command_response(session, await session.pause())


@router.post("/v1/sessions/{session_id}/resume", response_model=SessionResponse)
async def resume_session(user_info: dict = Depends(get_current_user), session: RecordingSession = Depends(get_session)):
    return _command_response(session, await session.resume())


@router.post("/v1/sessions/{session_id}/stop", response_model=WorkflowResult)
async def stop_session(
    request: Request,
    user_info: dict = Depends(get_current_user),
    session: RecordingSession = Depends(get_session),
):
    """
    Stops recording, writes all pending fragments and runs the workflow.
    A failed mandatory step is reported with ``success=false``.
    """
    result = await session.stop()
    if not result.success:
        logger.warning(f"[{request.state.request_id}] Workflow failed for session {session.id}: {result.errors}")
    return result


@router.post("/v1/sessions/{session_id}/sync", response_model=SyncResponse)
async def sync_session(user_info: dict = Depends(get_current_user), session: RecordingSession = Depends(get_session)):
    """Re-attempts batches that could not be saved."""
    resynced = await session.retry_failed()
    return SyncResponse(session_id=session.id, resynced=resynced, stats=session.queue.stats())


@router.post("/v1/sessions/{session_id}/workflow/steps/{step}", response_model=StepResult)
async def run_workflow_step(
    step: str,
    body: Optional[StepRunRequest] = None,
    user_info: dict = Depends(get_current_user),
    session: RecordingSession = Depends(get_session),
):
    """Re-runs a single workflow step, e.g. task extraction after it failed."""
    try:
        step_name = StepName(step)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown workflow step '{step}'. Supported are: {', '.join(s.value for s in StepName)}",
        )
    return await session.run_step(step_name, (body or StepRunRequest()).to_data())


@router.get("/v1/sessions/{session_id}/status", response_model=SessionStatusResponse)
async def session_status(user_info: dict = Depends(get_current_user), session: RecordingSession = Depends(get_session)):
    return SessionStatusResponse(**session.status())


@router.delete("/v1/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    request: Request,
    session_id: str,
    user_info: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    """Closes a session and releases it. Buffered fragments are written first."""
    await sessions.remove(session_id)
    logger.info(f"[{request.state.request_id}] Session {session_id} removed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


async def sse_event_generator(request: Request, session: RecordingSession) -> AsyncGenerator[str, None]:
    """Yields server-sent events for a session."""
    try:
        while True:
            if await request.is_disconnected():
                logger.info(f"Client disconnected from SSE stream for session: {session.id}")
                break
            try:
                event = await asyncio.wait_for(session.events.get(), timeout=30)
            except asyncio.TimeoutError:
                # Keep-alive comment against client/proxy timeouts
                yield ": keep-alive\n\n"
                continue
            if event is None:
                logger.info(f"SSE stream finished for session: {session.id}")
                break
            yield f"data: {json.dumps(event, default=str)}\n\n"
    except asyncio.CancelledError:
        logger.info(f"SSE generator cancelled for session: {session.id}")
        raise


@router.get("/v1/sessions/{session_id}/events")
async def session_events(
    request: Request,
    user_info: dict = Depends(get_current_user),
    session: RecordingSession = Depends(get_session),
):
    """Workflow progress, sync warnings and provider state as server-sent events."""
    return StreamingResponse(
        sse_event_generator(request, session),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Maps pipeline errors to HTTP status codes"""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_502_BAD_GATEWAY,
    )
    logger.warning(f"Request {request_id} failed with {type(exc).__name__}: {exc}")
    response = ErrorResponse(
        error=type(exc).__name__,
        message=str(exc),
        request_id=request_id,
        timestamp=_utcnow(),
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""
    app_settings: Settings = request.app.state.settings
    retry_after = app_settings.rate_limit_window
    response = RateLimitResponse(
        message="Too many requests. Please try again later.",
        retry_after=retry_after,
        limit=app_settings.rate_limit_requests,
        window=app_settings.rate_limit_window,
        timestamp=_utcnow(),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=response.model_dump(mode="json"),
        headers={"Retry-After": str(retry_after)},
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(f"Unhandled error in request {request_id}: {exc}")
    audit_logger.log_error(
        request_id=request_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
        stack_trace=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
            "timestamp": _utcnow().isoformat(),
        },
        headers={"X-Request-ID": request_id},
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TranscriptStore] = None,
    generator=None,
    provider_factory=None,
    resilience: Optional[CircuitBreakerRegistry] = None,
    metrics: Optional[PipelineMetrics] = None,
) -> FastAPI:
    """Builds the application. Every collaborator can be replaced, e.g. in tests."""
    settings = settings or default_settings
    resilience = resilience or CircuitBreakerRegistry.from_settings(settings)
    metrics = metrics or PipelineMetrics()
    sessions = SessionManager(
        settings,
        store or build_store(settings),
        resilience,
        generator or GenerationService.from_settings(settings, resilience),
        provider_factory=provider_factory,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("🚀 Scribeflow starting...")
        logger.info(f"Environment: {settings.environment}")
        logger.info(f"API Version: {settings.api_version}")
        yield
        logger.info("🛑 Scribeflow shutting down...")
        await sessions.shutdown()

    app = FastAPI(
        title=settings.api_title,
        description=settings.api_description,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.resilience = resilience
    app.state.metrics = metrics
    app.state.sessions = sessions

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Request tracking and Prometheus metrics"""
        start_time = time.time()
        request_id = security_manager.generate_request_id()
        request.state.request_id = request_id
        request.state.start_time = start_time

        response = await call_next(request)

        duration = time.time() - start_time
        endpoint = request.scope.get("route").path if request.scope.get("route") else request.url.path
        metrics.request_count.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        metrics.request_duration.observe(duration)
        audit_logger.log_api_request(
            request_id=request_id,
            endpoint=endpoint,
            method=request.method,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
            status_code=response.status_code,
            duration_ms=int(duration * 1000),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time"] = f"{duration:.3f}s"
        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "scribeflow.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=default_settings.environment == "development",
    )
