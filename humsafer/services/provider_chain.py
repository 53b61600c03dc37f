"""Sequential, fault-isolated invocation of generation providers.

Providers are tried strictly one after another. A timeout, an exception or an
empty completion moves on to the next entry; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from humsafer.config import Settings
from humsafer.metrics import provider_attempts_total, provider_latency_seconds
from humsafer.services.providers import GenerationOptions, Message, Provider

logger = logging.getLogger(__name__)

_HISTORY_ROLES = {"user", "assistant"}


@dataclass(frozen=True)
class ChainProfile:
    name: str
    history_turns: int
    timeout_seconds: float


@dataclass(frozen=True)
class ProviderResult:
    text: str
    provider_id: str
    ok: bool


@dataclass
class ChainOutcome:
    text: str = ""
    provider_id: str | None = None
    results: list[ProviderResult] = field(default_factory=list)

    @property
    def attempted(self) -> list[str]:
        return [r.provider_id for r in self.results]


def profiles_from_settings(settings: Settings) -> tuple[ChainProfile, ChainProfile]:
    """Return ``(low_latency, legacy)`` profiles."""
    low_latency = ChainProfile(
        name="low_latency",
        history_turns=settings.fast_history_turns,
        timeout_seconds=settings.fast_timeout_seconds,
    )
    legacy = ChainProfile(
        name="legacy",
        history_turns=settings.legacy_history_turns,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    return low_latency, legacy


def truncate_history(history: Sequence[dict[str, Any]] | None, turns: int) -> list[Message]:
    if not history or turns <= 0:
        return []
    cleaned = [
        {"role": item["role"], "content": item["content"]}
        for item in history
        if isinstance(item, dict)
        and item.get("role") in _HISTORY_ROLES
        and isinstance(item.get("content"), str)
    ]
    return cleaned[-turns:]


def build_messages(
    system_prompt: str,
    message: str,
    history: Sequence[dict[str, Any]] | None,
    turns: int,
) -> list[Message]:
    return [
        {"role": "system", "content": system_prompt},
        *truncate_history(history, turns),
        {"role": "user", "content": message},
    ]


async def _attempt(
    provider: Provider,
    messages: list[Message],
    options: GenerationOptions,
    images: Sequence[str] | None,
    timeout: float,
) -> ProviderResult:
    pid = provider.provider_id
    started = time.perf_counter()
    outcome = "ok"
    text = ""
    try:
        text = await asyncio.wait_for(
            provider.generate(messages, options, images=images), timeout=timeout
        )
    except asyncio.TimeoutError:
        outcome = "timeout"
        logger.warning(
            "provider_chain.timeout provider=%s after %.1fs", pid, timeout, extra={"provider": pid}
        )
    except Exception as exc:
        outcome = "error"
        logger.warning("provider_chain.error provider=%s: %s", pid, exc, extra={"provider": pid})
    finally:
        provider_latency_seconds.labels(provider=pid).observe(time.perf_counter() - started)

    text = (text or "").strip() if isinstance(text, str) else ""
    if outcome == "ok" and not text:
        outcome = "empty"
        logger.warning("provider_chain.empty provider=%s", pid, extra={"provider": pid})
    provider_attempts_total.labels(provider=pid, outcome=outcome).inc()
    return ProviderResult(text=text, provider_id=pid, ok=outcome == "ok")


async def invoke(
    providers: Sequence[Provider],
    system_prompt: str,
    message: str,
    history: Sequence[dict[str, Any]] | None,
    profile: ChainProfile,
    *,
    images: Sequence[str] | None = None,
    options: GenerationOptions | None = None,
) -> ChainOutcome:
    """Try each provider once, in order, until one returns non-empty text."""
    options = options or GenerationOptions()
    messages = build_messages(system_prompt, message, history, profile.history_turns)
    outcome = ChainOutcome()
    for provider in providers:
        result = await _attempt(provider, messages, options, images, profile.timeout_seconds)
        outcome.results.append(result)
        if result.ok:
            outcome.text = result.text
            outcome.provider_id = result.provider_id
            logger.info(
                "provider_chain.success provider=%s profile=%s attempts=%s",
                result.provider_id,
                profile.name,
                len(outcome.results),
            )
            return outcome
    logger.error(
        "provider_chain.exhausted profile=%s attempted=%s",
        profile.name,
        outcome.attempted,
    )
    return outcome


__all__ = [
    "ChainProfile",
    "ChainOutcome",
    "ProviderResult",
    "profiles_from_settings",
    "truncate_history",
    "build_messages",
    "invoke",
]
