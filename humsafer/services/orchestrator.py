"""Per-message lifecycle of an AI chat request.

quota check -> intent short-circuit -> chain resolution -> provider chain ->
post-processing -> background usage/audit writes -> reply.

Usage and audit writes are fire-and-forget tasks scheduled once the reply is
final. They are not awaited by the request and a failure is only logged.
Two near-simultaneous requests from one user may both pass the quota check
before either increment lands; increments are at-least-once.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Sequence

from humsafer.metrics import (
    ai_requests_total,
    background_write_fail_total,
    quota_reject_total,
)
from humsafer.services import provider_chain
from humsafer.services.errors import (
    FreeTierExpired,
    InvalidInput,
    ProviderChainExhausted,
    QuotaExceeded,
)
from humsafer.services.intents import IntentClassifier
from humsafer.services.provider_chain import ChainProfile
from humsafer.services.providers import ProviderSet
from humsafer.services.quota import (
    DenyReason,
    EligibilityDecision,
    QuotaLedger,
    QuotaSnapshot,
)
from humsafer.services.tier_policy import ChainFlags, resolve_chain
from humsafer.services.usage_store import UsageStore

logger = logging.getLogger(__name__)

SHORT_REPLY_STYLE = "short"
_CLAUSE_RE = re.compile(r"[^.!?।]+[.!?।]*")


@dataclass(frozen=True)
class ChatFlags:
    fast: bool = False
    voice_session: bool = False
    attachments: tuple[str, ...] = field(default_factory=tuple)
    reply_style: str | None = None
    stream: bool = False


@dataclass(frozen=True)
class ChatReply:
    response: str
    remaining_total: int
    remaining_today: int
    provider_id: str | None = None
    action: str | None = None
    quota_bypassed: bool = False


def shorten_reply(text: str) -> str:
    """Keep the first two clauses; a lone clause is returned as is."""
    clauses = [c.strip() for c in _CLAUSE_RE.findall(text) if c.strip()]
    if not clauses:
        return text.strip()
    if len(clauses) == 1:
        return clauses[0]
    return f"{clauses[0]} {clauses[1]}"


def postprocess(text: str, reply_style: str | None) -> str:
    text = text.strip()
    if reply_style == SHORT_REPLY_STYLE:
        return shorten_reply(text)
    return text


def _uncharged(decision: EligibilityDecision) -> tuple[int, int]:
    """Remaining counters for a message that will not be recorded."""
    total, today = decision.remaining_total, decision.remaining_today
    # only allowed free-tier decisions anticipate the message
    if decision.allowed and total >= 0:
        return total + 1, today + 1
    return total, today


class Orchestrator:
    def __init__(
        self,
        ledger: QuotaLedger,
        store: UsageStore,
        providers: ProviderSet,
        *,
        low_latency: ChainProfile,
        legacy: ChainProfile,
        intent_classifier: IntentClassifier | None = None,
        charge_restricted_refusal: bool = False,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._providers = providers
        self._low_latency = low_latency
        self._legacy = legacy
        self._intents = intent_classifier
        self._charge_refusal = charge_restricted_refusal
        self._background: set[asyncio.Task] = set()

    @property
    def pending_writes(self) -> int:
        return len(self._background)

    def is_paid(self, tier: str | None) -> bool:
        return self._ledger.is_paid(tier)

    def configured_providers(self) -> list[str]:
        return [p.provider_id for p in self._providers.all() if p.configured]

    async def get_quota_snapshot(self, uid: str, tier: str | None) -> QuotaSnapshot:
        return await self._ledger.remaining_quota(uid, tier)

    async def check_and_consume(
        self,
        uid: str,
        tier: str | None,
        mode: str | None,
        message: str,
        history: Sequence[dict[str, Any]] | None = None,
        flags: ChatFlags | None = None,
    ) -> ChatReply:
        flags = flags or ChatFlags()
        message = (message or "").strip()
        if not uid:
            raise InvalidInput("user id required")
        if not message:
            raise InvalidInput("message required")
        mode = mode or "general"

        decision = await self._ledger.check(uid, tier)
        bypassed = False
        if not decision.allowed:
            if not flags.voice_session:
                quota_reject_total.labels(reason=decision.reason.value).inc()
                ai_requests_total.labels(status="denied").inc()
                logger.info(
                    "orchestrator.denied uid=%s reason=%s",
                    uid,
                    decision.reason.value,
                    extra={"uid": uid, "tier": tier, "reason": decision.reason.value},
                )
                raise self._deny_error(decision)
            bypassed = True
            logger.info(
                "orchestrator.voice_bypass uid=%s reason=%s",
                uid,
                decision.reason.value,
                extra={"uid": uid, "tier": tier, "reason": decision.reason.value},
            )

        if self._intents is not None:
            intent = await self._intents.classify(uid, message, mode)
            if intent is not None:
                self._record(uid, message, intent.response, mode, action=intent.action)
                ai_requests_total.labels(status="intent").inc()
                return self._reply(decision, intent.response, action=intent.action, bypassed=bypassed)

        plan = resolve_chain(
            self._providers,
            tier,
            mode,
            ChainFlags(fast=flags.fast, has_attachments=bool(flags.attachments)),
        )
        if plan.refused:
            self._record(
                uid,
                message,
                plan.refusal,
                mode,
                action="refused",
                charge=self._charge_refusal,
            )
            ai_requests_total.labels(status="refused").inc()
            return self._reply(
                decision,
                plan.refusal,
                action="refused",
                bypassed=bypassed,
                charged=self._charge_refusal,
            )

        profile = self._low_latency if (flags.stream or flags.voice_session) else self._legacy
        outcome = await provider_chain.invoke(
            plan.providers,
            plan.system_prompt,
            message,
            history,
            profile,
            images=flags.attachments or None,
        )
        if not outcome.text:
            ai_requests_total.labels(status="failed").inc()
            remaining_total, remaining_today = _uncharged(decision)
            raise ProviderChainExhausted(
                attempted=outcome.attempted,
                configured=self.configured_providers(),
                remaining_total=remaining_total,
                remaining_today=remaining_today,
            )

        text = postprocess(outcome.text, flags.reply_style)
        self._record(uid, message, text, mode, provider_id=outcome.provider_id)
        ai_requests_total.labels(status="ok").inc()
        return self._reply(decision, text, provider_id=outcome.provider_id, bypassed=bypassed)

    def _reply(
        self,
        decision: EligibilityDecision,
        text: str,
        *,
        provider_id: str | None = None,
        action: str | None = None,
        bypassed: bool = False,
        charged: bool = True,
    ) -> ChatReply:
        if charged:
            remaining_total, remaining_today = decision.remaining_total, decision.remaining_today
        else:
            remaining_total, remaining_today = _uncharged(decision)
        return ChatReply(
            response=text,
            remaining_total=remaining_total,
            remaining_today=remaining_today,
            provider_id=provider_id,
            action=action,
            quota_bypassed=bypassed,
        )

    @staticmethod
    def _deny_error(decision: EligibilityDecision) -> QuotaExceeded:
        if decision.reason is DenyReason.FREE_TIER_EXPIRED:
            return FreeTierExpired(decision.days_expired or 0, decision.message or "")
        return QuotaExceeded(
            decision.reason.value,
            decision.message or "Message limit reached.",
            remaining_total=decision.remaining_total,
            remaining_today=decision.remaining_today,
            wait_seconds=decision.wait_seconds,
        )

    def _record(
        self,
        uid: str,
        message: str,
        response: str,
        mode: str,
        *,
        provider_id: str | None = None,
        action: str | None = None,
        charge: bool = True,
    ) -> None:
        if charge:
            self._spawn(self._ledger.increment(uid), "usage")
        self._spawn(
            self._store.append_ai_log(
                uid,
                message,
                response,
                mode=mode,
                action=action,
                provider_id=provider_id,
            ),
            "audit",
        )

    def _spawn(self, coro: Awaitable, kind: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                background_write_fail_total.labels(kind=kind).inc()
                logger.warning("orchestrator.%s_write_failed: %s", kind, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled usage/audit writes (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


__all__ = [
    "ChatFlags",
    "ChatReply",
    "Orchestrator",
    "postprocess",
    "shorten_reply",
]
