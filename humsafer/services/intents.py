"""Pre-AI intent detection for scheduling and expense notes.

The orchestrator consults a classifier once per message, before choosing a
provider chain. A classifier returns an :class:`IntentOutcome` to answer the
message itself, or ``None`` to let the AI answer it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

IntentHandler = Callable[[str, str], Awaitable[str]]

SCHEDULE_ACTIONS = ("add", "create", "schedule", "krdo", "karna", "lagao", "set")
SCHEDULE_TARGETS = (
    "meeting",
    "reminder",
    "calendar",
    "calender",
    "event",
    "appointment",
    "मीटिंग",
)
EXPENSE_KEYWORDS = ("spent", "expense", "paid", "bought", "kharch", "kharcha", "दिया")
_AMOUNT_RE = re.compile(r"\d+")


@dataclass(frozen=True)
class IntentOutcome:
    action: str
    response: str


class IntentClassifier(Protocol):
    async def classify(self, uid: str, message: str, mode: str) -> IntentOutcome | None:
        ...


def detect_intent(message: str) -> str | None:
    """Return ``schedule.add``, ``expense.add`` or ``None``."""
    lower = message.lower()
    if any(kw in lower for kw in SCHEDULE_ACTIONS) and any(
        kw in lower for kw in SCHEDULE_TARGETS
    ):
        return "schedule.add"
    if any(kw in lower for kw in EXPENSE_KEYWORDS) and _AMOUNT_RE.search(message):
        return "expense.add"
    return None


class KeywordIntentClassifier:
    """Keyword heuristic (English + Hindi/Hinglish) with pluggable handlers.

    A detected intent without a handler falls through to the AI. A handler
    that raises also falls through, so a broken notes backend never blocks
    chat.
    """

    def __init__(
        self,
        *,
        schedule_handler: IntentHandler | None = None,
        expense_handler: IntentHandler | None = None,
    ) -> None:
        self._handlers: dict[str, IntentHandler] = {}
        if schedule_handler is not None:
            self._handlers["schedule.add"] = schedule_handler
        if expense_handler is not None:
            self._handlers["expense.add"] = expense_handler

    async def classify(self, uid: str, message: str, mode: str) -> IntentOutcome | None:
        action = detect_intent(message)
        if action is None:
            return None
        handler = self._handlers.get(action)
        if handler is None:
            logger.debug("intents.unhandled action=%s uid=%s", action, uid)
            return None
        try:
            response = await handler(uid, message)
        except Exception:
            logger.exception("intents.handler_failed action=%s uid=%s", action, uid)
            return None
        if not response:
            return None
        return IntentOutcome(action=action, response=response)


__all__ = [
    "IntentOutcome",
    "IntentClassifier",
    "KeywordIntentClassifier",
    "detect_intent",
]
