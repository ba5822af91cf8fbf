"""
FastAPI application for the HTTP request attack classifier.
Provides REST endpoints for classification and pattern management, a
request-screening middleware, a per-route guard and Server-Sent Events
attack notifications.
"""

import os
import sys
import json
import time
import logging
import asyncio
import psutil
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, Iterable
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from sse_starlette.sse import EventSourceResponse
import uvicorn

# Add current directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from settings import Settings, settings
from models import (
    ClassifyRequest, ClassifyHTTPRequest, HTTPRequestFields, PatternCreateRequest,
    ThresholdUpdateRequest, ClassificationResponse, RequestTextResponse,
    PatternCreateResponse, PatternStats, PatternInfo, PatternListResponse,
    ThresholdResponse, HealthStatus, Severity, SettingsStatus
)
from bouncer import Bouncer
from classifier import ClassificationResult
from exceptions import BouncerError, ConfigurationError, ModelDataMissingError
from monitor import AttackMonitor, ClassificationObserver, configure_logging

# Configure logging
configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0
BODY_METHODS = ("POST", "PUT", "PATCH")
ACTIONS = ("log", "block", "challenge")


# =====================================================================
# Notification System (Server-Sent Events)
# =====================================================================

class AttackNotifier(ClassificationObserver):
    """
    Forwards attack verdicts to the event loop serving SSE clients.
    Classifications run in worker threads, so events cross over with
    call_soon_threadsafe.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self.queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self.queue = asyncio.Queue(maxsize=self.maxsize)

    def detach(self) -> None:
        self._loop = None

    def on_attack(self, result: ClassificationResult) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        event = {
            "event": "attack_detected",
            "data": {
                "label": result.label,
                "confidence": result.confidence,
                "nearest_distance": result.nearest_distance,
                "storage": result.storage,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        }
        loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping attack event")


# =====================================================================
# Request Screening
# =====================================================================

def _read_enabled(bouncer: Bouncer) -> bool:
    return bouncer.enabled


async def screening_enabled(bouncer: Bouncer) -> bool:
    """Whether to classify requests; database mode may query SQLite, so it runs in the threadpool."""
    if not bouncer.config.enabled:
        return False
    if not bouncer.config.database_storage:
        return bouncer.enabled
    return await run_in_threadpool(_read_enabled, bouncer)


async def read_body(request: Request, max_size: int) -> str:
    if request.method not in BODY_METHODS:
        return ""
    body = await request.body()
    return body[:max_size].decode("utf-8", errors="replace")


async def build_request_text(request: Request,
                             bouncer: Bouncer,
                             excluded_params: Iterable[str] = ()) -> str:
    """Canonical text for an incoming request."""
    config = bouncer.config
    excluded = set(excluded_params)
    return bouncer.request_to_text(
        method=request.method,
        path=request.url.path,
        body=await read_body(request, config.max_body_size),
        user_agent=request.headers.get("user-agent", ""),
        params={
            name: value
            for name, value in request.query_params.items()
            if name not in excluded
        },
        headers={
            name: request.headers[name]
            for name in config.include_headers
            if name in request.headers
        }
    )


async def screen_request(request: Request,
                         bouncer: Bouncer,
                         excluded_params: Iterable[str] = ()) -> Optional[ClassificationResult]:
    """
    Classify the request and attach the verdict to ``request.state``.

    Returns None when the configured classification timeout passes; the
    request is then let through.
    """
    request_text = await build_request_text(request, bouncer, excluded_params)
    try:
        result = await bouncer.classify_async(
            request_text,
            timeout=bouncer.config.classification_timeout
        )
    except asyncio.TimeoutError:
        logger.warning(
            f"Classification timed out after {bouncer.config.classification_timeout}s: "
            f"{request.method} {request.url.path}; request allowed"
        )
        return None
    request.state.bouncer_classification = result
    return result


def log_attack(request: Request, result: ClassificationResult) -> None:
    client = request.client.host if request.client else "unknown"
    logger.warning(
        f"Attack detected: label={result.label} confidence={result.confidence} "
        f"path={request.url.path} method={request.method} ip={client} "
        f"latency_ms={result.latency_ms}"
    )


class BouncerMiddleware(BaseHTTPMiddleware):
    """
    Classifies requests to protected paths and applies the configured
    action to attack verdicts at or above the threshold.
    """

    async def dispatch(self, request: Request, call_next):
        bouncer: Bouncer = request.app.state.bouncer
        if not bouncer.is_protected(request.url.path) or not await screening_enabled(bouncer):
            return await call_next(request)

        result = await screen_request(request, bouncer)
        if result is None or not bouncer.is_blocking_verdict(result):
            return await call_next(request)

        log_attack(request, result)

        config = bouncer.config
        if config.action == "block":
            return PlainTextResponse(config.block_body, status_code=config.block_status)
        if config.action == "challenge":
            if config.challenge_redirect:
                return RedirectResponse(config.challenge_redirect, status_code=302)
            return PlainTextResponse(config.challenge_body, status_code=config.challenge_status)
        return await call_next(request)


class RequestRejected(Exception):
    """Raised by a route guard to answer with ``response`` instead of running the endpoint."""

    def __init__(self, response: Response):
        super().__init__(response.status_code)
        self.response = response


def protect_from_attacks(threshold: Optional[float] = None, action: Optional[str] = None):
    """
    Route dependency that screens one endpoint.

    Query parameters named in ``settings.sensitive_params`` are dropped
    before classification. A verdict already attached by the middleware is
    reused.

    Args:
        threshold: Confidence threshold for this route (settings.threshold if None)
        action: "log", "block" or "challenge" for this route (settings.action if None)

    Usage:
        @app.post("/login", dependencies=[Depends(protect_from_attacks(action="block"))])

    Raises:
        ConfigurationError: threshold or action out of range
    """
    if threshold is not None and not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"threshold must be between 0 and 1, got {threshold}")
    if action is not None and action not in ACTIONS:
        raise ConfigurationError(f"Unknown action: {action!r}")

    async def check_for_attack(request: Request,
                               bouncer: Bouncer = Depends(get_bouncer)) -> Optional[ClassificationResult]:
        if not await screening_enabled(bouncer):
            return None

        result = getattr(request.state, "bouncer_classification", None)
        if result is None:
            result = await screen_request(request, bouncer, bouncer.config.sensitive_params)
        if result is None or not bouncer.is_blocking_verdict(result, threshold):
            return result

        log_attack(request, result)

        config = bouncer.config
        chosen = action or config.action
        if chosen == "block":
            raise RequestRejected(JSONResponse(
                status_code=config.block_status,
                content={"error": "Forbidden", "code": "attack_detected", "label": result.label}
            ))
        if chosen == "challenge":
            if config.challenge_redirect:
                raise RequestRejected(RedirectResponse(config.challenge_redirect, status_code=302))
            raise RequestRejected(JSONResponse(
                status_code=config.challenge_status,
                content={"error": "Challenge required", "code": "challenge_required"}
            ))
        return result

    return check_for_attack


# =====================================================================
# Exception Handlers
# =====================================================================

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors."""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "errors": errors
        }
    )


async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(
        status_code=400,
        content={"error": "CONFIGURATION_ERROR", "message": str(exc)}
    )


async def model_missing_exception_handler(request: Request, exc: ModelDataMissingError):
    """Model files are not installed; the service cannot classify."""
    logger.error(f"Model data missing: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "error": "MODEL_UNAVAILABLE",
            "message": str(exc),
            "details": {"missing_files": exc.missing_files}
        }
    )


async def timeout_exception_handler(request: Request, exc: asyncio.TimeoutError):
    logger.warning(f"Classification timed out: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=504,
        content={"error": "CLASSIFICATION_TIMEOUT", "message": "No verdict before the deadline"}
    )


async def request_rejected_handler(request: Request, exc: RequestRejected):
    return exc.response


async def bouncer_exception_handler(request: Request, exc: BouncerError):
    logger.error(f"Classifier error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": type(exc).__name__, "message": str(exc)}
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": str(exc)
        }
    )


# =====================================================================
# Dependencies
# =====================================================================

def get_bouncer(request: Request) -> Bouncer:
    return request.app.state.bouncer


def _classification_response(bouncer: Bouncer,
                             result: ClassificationResult,
                             request_text: str) -> ClassificationResponse:
    return ClassificationResponse(
        **result.to_dict(),
        blocked=bouncer.is_blocking_verdict(result),
        request_text=request_text
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    app.state.start_time = time.time()
    app.state.notifier.attach(asyncio.get_running_loop())
    app.state.monitor.start()

    # Startup
    logger.info("Starting request classifier...")

    bouncer: Bouncer = app.state.bouncer
    if bouncer.config.enabled and bouncer.config.preload_model:
        try:
            await run_in_threadpool(bouncer.load)
            logger.info(f"Classifier loaded ({bouncer.config.storage} storage)")
        except Exception as e:
            logger.error(f"Failed to load classifier: {e}")

    yield

    # Shutdown
    app.state.notifier.detach()
    app.state.monitor.close()
    logger.info("Shutting down request classifier...")


def create_app(bouncer: Optional[Bouncer] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application around one Bouncer.

    Args:
        bouncer: Classifier handle (built from config if omitted)
        config: Settings used when no bouncer is given

    Returns:
        FastAPI application
    """
    if bouncer is None:
        bouncer = Bouncer(config or settings)

    monitor = AttackMonitor(logs_dir=bouncer.config.logs_dir)
    notifier = AttackNotifier()
    bouncer.observers.extend([monitor, notifier])

    app = FastAPI(
        title="HTTP Request Attack Classifier",
        description="Embedding-based KNN classification of HTTP requests into attack categories",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.bouncer = bouncer
    app.state.monitor = monitor
    app.state.notifier = notifier
    app.state.start_time = time.time()

    app.add_middleware(BouncerMiddleware)
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(ModelDataMissingError, model_missing_exception_handler)
    app.add_exception_handler(asyncio.TimeoutError, timeout_exception_handler)
    app.add_exception_handler(RequestRejected, request_rejected_handler)
    app.add_exception_handler(BouncerError, bouncer_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # =================================================================
    # Root & Health
    # =================================================================

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "HTTP Request Attack Classifier",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "classify": "/classify",
                "classify_request": "/classify/request",
                "request_text": "/request-text",
                "patterns": "/patterns",
                "patterns_stats": "/patterns/stats",
                "notifications": "/notifications/stream",
                "settings": "/settings"
            }
        }

    @app.get("/health", response_model=HealthStatus, tags=["System"])
    async def health_check(request: Request, bouncer: Bouncer = Depends(get_bouncer)):
        """
        System health check endpoint.

        Reports model and pattern state without triggering a load.
        """
        process = psutil.Process()
        memory_mb = process.memory_info().rss / (1024 * 1024)

        loaded = bouncer.loaded
        model_status = {
            "loaded": loaded,
            "model_path": bouncer.config.model_path,
            "storage": bouncer.config.storage
        }
        if loaded:
            info = bouncer.model.get_info()
            model_status["embedding_dim"] = info["embedding_dim"]
            model_status["max_length"] = info["max_length"]
            model_status["patterns"] = await run_in_threadpool(bouncer.pattern_total)

        return HealthStatus(
            status="healthy" if loaded else "degraded",
            enabled=bouncer.config.enabled,
            model=model_status,
            uptime_seconds=time.time() - request.app.state.start_time,
            memory_usage_mb=round(memory_mb, 2)
        )

    # =================================================================
    # Settings
    # =================================================================

    @app.get("/settings", response_model=SettingsStatus, tags=["Settings"])
    async def get_settings(bouncer: Bouncer = Depends(get_bouncer)):
        """Get current classifier settings."""
        config = bouncer.config
        return SettingsStatus(
            enabled=config.enabled,
            threshold=config.threshold,
            default_k=config.default_k,
            action=config.action,
            storage=config.storage,
            protected_paths=config.protected_paths
        )

    @app.post("/settings/threshold", response_model=ThresholdResponse, tags=["Settings"])
    async def update_threshold(body: ThresholdUpdateRequest, bouncer: Bouncer = Depends(get_bouncer)):
        """
        Update the attack confidence threshold dynamically.

        - **threshold**: New threshold value (0.0 to 1.0)

        Attack verdicts below the threshold are not acted on.
        """
        old_threshold = bouncer.config.threshold
        bouncer.config.threshold = body.threshold

        logger.info(f"Threshold updated: {old_threshold} -> {body.threshold}")

        return ThresholdResponse(
            old_threshold=old_threshold,
            new_threshold=body.threshold,
            status="updated"
        )

    # =================================================================
    # Classification
    # =================================================================

    @app.post("/classify", response_model=ClassificationResponse, tags=["Classification"])
    async def classify_text(body: ClassifyRequest, bouncer: Bouncer = Depends(get_bouncer)):
        """
        Classify canonical request text.

        - **text**: Canonical request text
        - **k**: Number of neighbors (defaults to the configured k)
        """
        result = await bouncer.classify_async(
            body.text, k=body.k, timeout=bouncer.config.classification_timeout
        )
        return _classification_response(bouncer, result, body.text)

    @app.post("/classify/request", response_model=ClassificationResponse, tags=["Classification"])
    async def classify_request(body: ClassifyHTTPRequest, bouncer: Bouncer = Depends(get_bouncer)):
        """Canonicalize a structured HTTP request and classify it."""
        request_text = bouncer.request_to_text(**body.model_dump(exclude={"k"}))
        result = await bouncer.classify_async(
            request_text, k=body.k, timeout=bouncer.config.classification_timeout
        )
        return _classification_response(bouncer, result, request_text)

    @app.post("/request-text", response_model=RequestTextResponse, tags=["Classification"])
    async def request_text(body: HTTPRequestFields, bouncer: Bouncer = Depends(get_bouncer)):
        """Return the canonical text for a structured HTTP request."""
        return RequestTextResponse(text=bouncer.request_to_text(**body.model_dump()))

    # =================================================================
    # Pattern Management
    # =================================================================

    @app.get("/patterns/stats", response_model=PatternStats, tags=["Patterns"])
    async def pattern_stats(bouncer: Bouncer = Depends(get_bouncer)):
        """Stored pattern counts per label."""
        by_label = await run_in_threadpool(bouncer.pattern_counts)
        return PatternStats(
            total=sum(by_label.values()),
            by_label=by_label,
            storage=bouncer.config.storage
        )

    @app.get("/patterns", response_model=PatternListResponse, tags=["Patterns"])
    async def list_patterns(
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        label: Optional[str] = Query(default=None),
        severity: Optional[Severity] = Query(default=None),
        attacks_only: bool = Query(default=False),
        bouncer: Bouncer = Depends(get_bouncer)
    ):
        """
        List stored patterns with pagination and filtering.

        - **limit**: Maximum number of results (1-1000)
        - **offset**: Number of results to skip
        - **label**: Filter by label
        - **severity**: Filter by severity (low, medium, high, critical)
        - **attacks_only**: Exclude clean patterns
        """
        patterns = await run_in_threadpool(
            bouncer.list_patterns,
            limit,
            offset,
            label,
            severity.value if severity else None,
            attacks_only
        )
        return PatternListResponse(
            patterns=[PatternInfo(**p) for p in patterns],
            total=len(patterns),
            limit=limit,
            offset=offset,
            storage=bouncer.config.storage
        )

    @app.get("/patterns/{pattern_id}", response_model=PatternInfo, tags=["Patterns"])
    async def get_pattern(pattern_id: int, bouncer: Bouncer = Depends(get_bouncer)):
        """Get a specific pattern by ID."""
        pattern = await run_in_threadpool(bouncer.get_pattern, pattern_id)
        if not pattern:
            raise HTTPException(status_code=404, detail="Pattern not found")
        return PatternInfo(**pattern)

    @app.post("/patterns", response_model=PatternCreateResponse, status_code=201, tags=["Patterns"])
    async def add_pattern(body: PatternCreateRequest, bouncer: Bouncer = Depends(get_bouncer)):
        """
        Add a custom attack pattern.

        - **label**: Attack label or "clean"
        - **severity**: low, medium, high or critical
        - **text** or **embedding**: Pattern source
        """
        total = await run_in_threadpool(
            bouncer.add_pattern,
            body.label,
            body.severity.value if body.severity else None,
            body.text,
            body.embedding,
            body.source
        )
        return PatternCreateResponse(
            label=body.label,
            total_patterns=total,
            storage=bouncer.config.storage
        )

    @app.post("/patterns/seed", tags=["Patterns"])
    async def seed_patterns(bouncer: Bouncer = Depends(get_bouncer)):
        """Replace the database corpus with the bundled pattern vectors."""
        if not bouncer.config.database_storage:
            raise ConfigurationError("Seeding requires database storage")
        count = await run_in_threadpool(bouncer.seed_database)
        return {"seeded": count, "status": "seeded"}

    # =================================================================
    # Notifications
    # =================================================================

    @app.get("/notifications/stream", tags=["Notifications"])
    async def notifications_stream(request: Request):
        """
        Server-Sent Events endpoint for real-time notifications.

        Events:
        - attack_detected: An attack verdict reached the threshold
        - heartbeat: Sent when no event arrived within the heartbeat interval
        """
        notifier: AttackNotifier = request.app.state.notifier

        async def event_generator():
            try:
                while True:
                    try:
                        notification = await asyncio.wait_for(notifier.queue.get(), timeout=HEARTBEAT_SECONDS)
                        yield {
                            "event": notification["event"],
                            "data": json.dumps(notification["data"])
                        }
                    except asyncio.TimeoutError:
                        # Send heartbeat to keep connection alive
                        yield {
                            "event": "heartbeat",
                            "data": json.dumps({"timestamp": datetime.now(timezone.utc).isoformat()})
                        }
            except asyncio.CancelledError:
                logger.debug("Notification stream closed")
                raise

        return EventSourceResponse(event_generator())

    # =================================================================
    # Statistics
    # =================================================================

    @app.get("/stats", tags=["Statistics"])
    async def get_stats(request: Request, bouncer: Bouncer = Depends(get_bouncer)):
        """Get classifier and monitor statistics."""
        return {
            "classifier": bouncer.get_stats(),
            "monitor": request.app.state.monitor.get_stats(),
            "uptime_seconds": time.time() - request.app.state.start_time
        }


app = create_app()


# =====================================================================
# Main Entry Point
# =====================================================================

def main():
    """Run the FastAPI application."""
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
