from __future__ import annotations

import logging
from typing import NoReturn

import redis.asyncio as redis
from redis.exceptions import RedisError
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from humsafer.config import Settings
from humsafer.models import ErrorCode

settings = Settings()
redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

IP_LIMIT_PER_MINUTE = 30
USER_LIMIT_PER_MINUTE = 120

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str
    reason: str | None = None
    remaining_total: int | None = None
    remaining_today: int | None = None
    wait_seconds: int | None = None
    days_expired: int | None = None
    attempted: list[str] | None = None
    configured: list[str] | None = None


def _raise(status: int, code: ErrorCode, message: str) -> NoReturn:
    err = ErrorResponse(code=code, message=message)
    raise HTTPException(status_code=status, detail=err.model_dump(exclude_none=True))


async def require_api_headers(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> str:
    if x_api_ver is None:
        _raise(426, ErrorCode.UPGRADE_REQUIRED, "Missing API version")

    if x_api_ver != "v1":
        _raise(426, ErrorCode.UPGRADE_REQUIRED, "Invalid API version")

    if x_api_key != settings.api_key:
        _raise(401, ErrorCode.UNAUTHORIZED, "Invalid API key")

    if x_user_id is None or not x_user_id.strip():
        _raise(401, ErrorCode.UNAUTHORIZED, "Missing user ID")

    return x_user_id.strip()


def _client_ip(request: Request) -> str:
    client_host = request.client.host if request.client else ""
    ip = client_host
    xff = request.headers.get("X-Forwarded-For")
    if xff and client_host in settings.trusted_proxies:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if forwarded and all(p in settings.trusted_proxies for p in proxies):
            ip = forwarded[0]
    return ip


async def _hit(ip_key: str, user_key: str) -> tuple[int, int]:
    try:
        pipe = redis_client.pipeline()
        pipe.incr(ip_key)
        pipe.expire(ip_key, 60)
        pipe.incr(user_key)
        pipe.expire(user_key, 60)
        ip_count, _, user_count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for rate limiting: %s", exc)
        err = ErrorResponse(
            code=ErrorCode.SERVICE_UNAVAILABLE, message="Rate limiter unavailable"
        )
        raise HTTPException(status_code=503, detail=err.model_dump(exclude_none=True)) from exc
    return ip_count, user_count


async def rate_limit(request: Request, user_id: str = Depends(require_api_headers)) -> str:
    """Throttle requests by IP and user via Redis."""
    ip_count, user_count = await _hit(
        f"rate:ip:{_client_ip(request)}", f"rate:user:{user_id}"
    )
    if ip_count > IP_LIMIT_PER_MINUTE or user_count > USER_LIMIT_PER_MINUTE:
        _raise(429, ErrorCode.TOO_MANY_REQUESTS, "Rate limit exceeded")
    return user_id


async def free_tier_throttle(user_id: str) -> None:
    """Per-user AI throttle for free tiers (``FREE_RATE_LIMIT_PER_MINUTE``).

    Called once the caller's tier is known; paid tiers skip it.
    """
    key = f"rate:ai:{user_id}"
    try:
        pipe = redis_client.pipeline()
        pipe.incr(key)
        pipe.expire(key, 60)
        count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for AI throttle: %s", exc)
        _raise(503, ErrorCode.SERVICE_UNAVAILABLE, "Rate limiter unavailable")
    if count > settings.free_rate_limit_per_minute:
        _raise(429, ErrorCode.TOO_MANY_REQUESTS, "Rate limit exceeded")


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


def get_usage_store(request: Request):
    return request.app.state.usage_store
