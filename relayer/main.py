import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import admin as admin_api
from .api import compliance as compliance_api
from .api import jobs as jobs_api
from .api import monitoring as monitoring_api
from .api import raffles as raffles_api
from .auth import FixedWindowRateLimiter, check_ip_allowlist, rate_limit, require_api_key
from .config import get_settings
from .errors import ApiError, JobValidationError
from .jobs import summarize_errors
from .logging_config import setup_logging
from .metrics import metrics_response, request_latency_seconds
from .schemas import HealthResponse
from .services import RelayerServices, build_services, ping_redis

logger = structlog.stdlib.get_logger("http")

PROTECTED = [Depends(check_ip_allowlist), Depends(rate_limit), Depends(require_api_key)]


def _install(app: FastAPI, services: RelayerServices) -> None:
    settings = services.settings
    app.state.services = services
    app.state.rate_limiter = FixedWindowRateLimiter(settings.rate_limit_per_minute, 60)
    app.state.sensitive_limiter = FixedWindowRateLimiter(1, settings.sensitive_rate_limit_window_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        settings = get_settings()
        setup_logging(settings.log_level)
        _install(app, await build_services(settings))
    services: RelayerServices = app.state.services
    services.start(run_worker=services.settings.run_worker_in_process)
    logger.info("relayer_started", worker=services.settings.run_worker_in_process)
    try:
        yield
    finally:
        await services.stop()
        logger.info("relayer_stopped")


def _envelope(status: int, error: str, message: Optional[str] = None, **extra) -> JSONResponse:
    body = {"success": False, "error": error}
    if message is not None:
        body["message"] = message
    body.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status, content=body)


def _plain_errors(errors) -> list:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]


def create_app(services: Optional[RelayerServices] = None) -> FastAPI:
    app = FastAPI(title="Raffle Transaction Relayer", lifespan=lifespan)
    if services is not None:
        _install(app, services)

    app.include_router(raffles_api.router, dependencies=PROTECTED, tags=["Raffles"])
    app.include_router(admin_api.router, dependencies=PROTECTED, tags=["System"])
    app.include_router(compliance_api.router, dependencies=PROTECTED, tags=["Compliance"])
    app.include_router(monitoring_api.router, dependencies=PROTECTED, tags=["Monitoring"])
    app.include_router(jobs_api.router, dependencies=PROTECTED, tags=["Jobs"])

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-request-id"] = request_id
            return response
        finally:
            elapsed = time.time() - start
            request_latency_seconds.observe(elapsed)
            log = logger.info if status_code < 400 else logger.warning
            if status_code >= 500:
                log = logger.error
            log(
                "http_request",
                method=request.method,
                path=request.url.path,
                status=status_code,
                duration_ms=round(elapsed * 1000, 1),
                client=request.client.host if request.client else None,
            )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = _plain_errors(exc.errors())
        return _envelope(400, "Invalid request", summarize_errors(errors), details=errors)

    @app.exception_handler(JobValidationError)
    async def job_validation_handler(request: Request, exc: JobValidationError):
        return _envelope(400, "Invalid request", exc.message, details=_plain_errors(exc.errors))

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return _envelope(exc.status, exc.error, exc.message, code=exc.code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        try:
            error = HTTPStatus(exc.status_code).phrase
        except ValueError:
            error = "Error"
        response = _envelope(exc.status_code, error, str(exc.detail))
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        current: RelayerServices = request.app.state.services
        redis_ok = await ping_redis(current)
        return HealthResponse(
            status="healthy" if redis_ok else "degraded",
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            signer=current.chain.address,
            redis=redis_ok,
        )

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app


app = create_app()
