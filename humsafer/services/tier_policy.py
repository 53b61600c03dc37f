"""Provider chain and system prompt selection by tier and mode."""

from __future__ import annotations

from dataclasses import dataclass, field

from humsafer.services.providers import Provider, ProviderSet

RESTRICTED_MODE = "night"
RESTRICTED_TIERS = frozenset({"tier2", "tier3"})

RESTRICTED_REFUSAL = (
    "Night mode is only available for Premium (Tier 2) and Ultimate (Tier 3) "
    "subscribers. Please upgrade your subscription to access this feature."
)

DEFAULT_PROMPT = "You are a helpful AI assistant."

SYSTEM_PROMPTS: dict[str, str] = {
    "general": DEFAULT_PROMPT,
    "funLearn": "You are a fun, educational AI assistant. Make learning exciting and engaging!",
    "health": "You are a health and wellness assistant. Provide helpful, supportive health advice.",
    "finance": "You are a financial advisor assistant. Give practical financial advice and tips.",
    RESTRICTED_MODE: (
        "You are Ev, a witty, romantic companion. Keep an 18+ vibe with tone, never explicit. "
        "Be conversational, engaging, and remember context from previous messages."
    ),
}


@dataclass(frozen=True)
class ChainFlags:
    fast: bool = False
    has_attachments: bool = False


@dataclass(frozen=True)
class ChainPlan:
    providers: list[Provider] = field(default_factory=list)
    system_prompt: str = DEFAULT_PROMPT
    refusal: str | None = None

    @property
    def refused(self) -> bool:
        return self.refusal is not None


def system_prompt_for(mode: str | None) -> str:
    return SYSTEM_PROMPTS.get(mode or "general", DEFAULT_PROMPT)


def resolve_chain(
    providers: ProviderSet,
    tier: str | None,
    mode: str | None,
    flags: ChainFlags | None = None,
) -> ChainPlan:
    flags = flags or ChainFlags()
    prompt = system_prompt_for(mode)

    if mode == RESTRICTED_MODE:
        if tier not in RESTRICTED_TIERS:
            return ChainPlan(providers=[], system_prompt=prompt, refusal=RESTRICTED_REFUSAL)
        chain = [providers.persona, providers.general]
    else:
        head = providers.vision if flags.has_attachments else providers.fast
        chain = [head, providers.general, providers.persona]
        if flags.fast:
            chain = [providers.general] + [p for p in chain if p is not providers.general]

    return ChainPlan(
        providers=[p for p in chain if p.configured],
        system_prompt=prompt,
    )


__all__ = [
    "RESTRICTED_MODE",
    "RESTRICTED_REFUSAL",
    "SYSTEM_PROMPTS",
    "ChainFlags",
    "ChainPlan",
    "resolve_chain",
    "system_prompt_for",
]
