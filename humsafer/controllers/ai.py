from __future__ import annotations

import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from humsafer.dependencies import (
    ErrorResponse,
    free_tier_throttle,
    get_orchestrator,
    get_usage_store,
    rate_limit,
)
from humsafer.models import ErrorCode
from humsafer.services.errors import (
    FreeTierExpired,
    InvalidInput,
    OrchestrationError,
    ProviderChainExhausted,
    QuotaExceeded,
    StoreUnavailable,
)
from humsafer.services.orchestrator import ChatFlags, Orchestrator
from humsafer.services.usage_store import UsageStore

router = APIRouter(prefix="/ai", tags=["ai"])
logger = logging.getLogger(__name__)

STREAM_CHUNK_CHARS = 64
DEFAULT_TIER = "free"


class HistoryTurn(BaseModel):
    role: str
    content: str


class ProcessRequest(BaseModel):
    message: str
    mode: str | None = "general"
    conversation_history: list[HistoryTurn] = Field(default_factory=list)
    tier_level: str | None = None
    fast: bool = False
    voice_session: bool = False
    attachments: list[str] = Field(default_factory=list)
    reply_style: str | None = None
    stream: bool = False


class ProcessResponse(BaseModel):
    response: str
    mode: str
    remaining_total: int
    remaining_today: int
    provider: str | None = None
    action: str | None = None


def error_status(exc: OrchestrationError) -> tuple[int, ErrorResponse]:
    """Map an orchestration error onto an HTTP status and payload."""
    if isinstance(exc, FreeTierExpired):
        return 402, ErrorResponse(
            code=ErrorCode.FREE_TIER_EXPIRED,
            message=exc.message,
            reason=exc.reason,
            remaining_total=0,
            remaining_today=0,
            days_expired=exc.days_expired,
        )
    if isinstance(exc, QuotaExceeded):
        return 429, ErrorResponse(
            code=ErrorCode.QUOTA_EXCEEDED,
            message=exc.message,
            reason=exc.reason,
            remaining_total=exc.remaining_total,
            remaining_today=exc.remaining_today,
            wait_seconds=exc.wait_seconds,
        )
    if isinstance(exc, ProviderChainExhausted):
        return 503, ErrorResponse(
            code=ErrorCode.AI_UNAVAILABLE,
            message=exc.message,
            remaining_total=exc.remaining_total,
            remaining_today=exc.remaining_today,
            attempted=exc.attempted,
            configured=exc.configured,
        )
    if isinstance(exc, InvalidInput):
        return 400, ErrorResponse(code=ErrorCode.BAD_REQUEST, message=exc.message)
    return 503, ErrorResponse(code=ErrorCode.SERVICE_UNAVAILABLE, message=exc.message)


async def resolve_tier(store: UsageStore, uid: str, requested: str | None) -> str:
    """Stored ``users.tier`` wins; ``requested`` only covers unknown users."""
    try:
        account = await store.get_account(uid)
    except StoreUnavailable as exc:
        logger.warning("ai.tier_lookup_failed uid=%s: %s", uid, exc)
        return DEFAULT_TIER
    if account is not None:
        return account.tier or DEFAULT_TIER
    return requested or DEFAULT_TIER


async def _chunks(text: str) -> AsyncIterator[str]:
    for start in range(0, len(text), STREAM_CHUNK_CHARS):
        yield text[start : start + STREAM_CHUNK_CHARS]


@router.post("/process", response_model=ProcessResponse)
async def process_message(
    body: ProcessRequest,
    user_id: str = Depends(rate_limit),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    store: UsageStore = Depends(get_usage_store),
    x_stream: str | None = Header(None, alias="X-Stream"),
):
    stream = body.stream or x_stream == "1"
    mode = body.mode or "general"
    tier = await resolve_tier(store, user_id, body.tier_level)
    if not body.voice_session and not orchestrator.is_paid(tier):
        await free_tier_throttle(user_id)
    flags = ChatFlags(
        fast=body.fast,
        voice_session=body.voice_session,
        attachments=tuple(body.attachments),
        reply_style=body.reply_style,
        stream=stream,
    )
    try:
        reply = await orchestrator.check_and_consume(
            user_id,
            tier,
            mode,
            body.message,
            [turn.model_dump() for turn in body.conversation_history],
            flags,
        )
    except OrchestrationError as exc:
        status, err = error_status(exc)
        raise HTTPException(status_code=status, detail=err.model_dump(exclude_none=True)) from exc

    if stream:
        headers = {
            "X-Remaining-Total": str(reply.remaining_total),
            "X-Remaining-Today": str(reply.remaining_today),
        }
        if reply.provider_id:
            headers["X-Provider"] = reply.provider_id
        return StreamingResponse(
            _chunks(reply.response), media_type="text/plain; charset=utf-8", headers=headers
        )

    return ProcessResponse(
        response=reply.response,
        mode=mode,
        remaining_total=reply.remaining_total,
        remaining_today=reply.remaining_today,
        provider=reply.provider_id,
        action=reply.action,
    )
