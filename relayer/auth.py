import secrets
import time
from typing import Callable, Dict, Optional, Tuple

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader

logger = structlog.stdlib.get_logger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _settings(request: Request):
    return request.app.state.services.settings


async def require_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)):
    expected = _settings(request).relayer_api_key.get_secret_value()
    if api_key is None:
        logger.warning("unauthorized_request", reason="missing api key", ip=client_ip(request), path=request.url.path)
        raise HTTPException(status_code=401, detail="Missing API key")
    if not secrets.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("unauthorized_request", reason="invalid api key", ip=client_ip(request), path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid API key")
    return True


async def check_ip_allowlist(request: Request):
    allowed = _settings(request).allowed_ip_list
    # an empty allowlist admits every client
    if not allowed:
        return True
    ip = client_ip(request)
    if ip not in allowed:
        logger.warning("rejected_ip", ip=ip, path=request.url.path)
        raise HTTPException(status_code=403, detail="IP not whitelisted")
    return True


class RateLimitExceeded(Exception):
    """Rate limit has been exceeded."""

    def __init__(self, limit: int, window_seconds: int, retry_after: int):
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded: {limit} requests per {window_seconds}s")


class FixedWindowRateLimiter:
    """In-process fixed-window counter keyed by caller."""

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[object, Tuple[int, float]] = {}

    def check(self, key) -> None:
        now = self._clock()
        count, reset_at = self._windows.get(key, (0, 0.0))
        if reset_at <= now:
            self._prune(now)
            self._windows[key] = (1, now + self.window_seconds)
            return
        if count >= self.limit:
            raise RateLimitExceeded(self.limit, self.window_seconds, max(int(reset_at - now), 1))
        self._windows[key] = (count + 1, reset_at)

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]


async def rate_limit(request: Request):
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    ip = client_ip(request)
    try:
        limiter.check(ip)
    except RateLimitExceeded as exc:
        logger.warning("rate_limit_exceeded", ip=ip, path=request.url.path, limit=exc.limit)
        raise HTTPException(
            status_code=429,
            detail="Too Many Requests",
            headers={"Retry-After": str(exc.retry_after)},
        )
    return True


async def check_admin_ip(request: Request):
    settings = _settings(request)
    admin_ips = settings.admin_ip_list
    if not admin_ips and settings.environment.lower() == "development":
        logger.warning("admin_ip_check_disabled", environment=settings.environment)
        return True
    ip = client_ip(request)
    if ip not in admin_ips:
        logger.error("unauthorized_admin_ip", ip=ip, path=request.url.path)
        raise HTTPException(status_code=403, detail="Access denied - Admin IP required")
    logger.info("admin_ip_validated", ip=ip, path=request.url.path)
    return True


async def sensitive_rate_limit(request: Request):
    limiter: FixedWindowRateLimiter = request.app.state.sensitive_limiter
    ip = client_ip(request)
    try:
        limiter.check((ip, request.url.path))
    except RateLimitExceeded as exc:
        logger.warning("sensitive_rate_limit_exceeded", ip=ip, path=request.url.path)
        raise HTTPException(
            status_code=429,
            detail=f"Sensitive operation rate limit exceeded (1 per {exc.window_seconds // 60} minutes)",
            headers={"Retry-After": str(exc.retry_after)},
        )
    return True


def audit_sensitive_operation(operation: str):
    async def audit(request: Request):
        logger.warning(
            "sensitive_operation_initiated",
            operation=operation,
            ip=client_ip(request),
            path=request.url.path,
        )
        return True

    return audit
