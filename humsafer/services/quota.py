"""Message quota ledger.

Free users get a timed trial with a total cap, a daily cap and a cooldown
between messages. Paid tiers are unlimited unless a daily cap is configured
for the tier.

``check`` and ``remaining_quota`` are read-only; only ``increment`` writes.
The daily counter resets lazily: readers treat it as zero once
``daily_reset_at`` has passed and the next increment persists the reset.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo

from humsafer.config import Settings
from humsafer.metrics import quota_store_fail_open_total
from humsafer.services.errors import StoreUnavailable
from humsafer.services.usage_store import UsageRecord, UsageStore, UserAccount

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
FREE_TIERS = frozenset({"none", "free", "expired"})


class DenyReason(str, Enum):
    NONE = "None"
    FREE_TIER_EXPIRED = "FreeTierExpired"
    TOTAL_CAP_REACHED = "TotalCapReached"
    DAILY_CAP_REACHED = "DailyCapReached"
    DAILY_CAP_REACHED_PAID = "DailyCapReachedPaid"
    COOLDOWN_ACTIVE = "CooldownActive"


@dataclass(frozen=True)
class TierRule:
    trial_duration_days: int = 0
    total_message_cap: int = -1
    daily_message_cap: int = -1
    cooldown_seconds: int = 0
    daily_cap_paid: int | None = None


@dataclass(frozen=True)
class EligibilityDecision:
    allowed: bool
    remaining_total: int
    remaining_today: int
    reason: DenyReason = DenyReason.NONE
    wait_seconds: int | None = None
    days_expired: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class QuotaSnapshot:
    remaining_total: int
    remaining_today: int
    unlimited: bool
    total_limit: int
    daily_limit: int


def build_tier_rules(settings: Settings) -> dict[str, TierRule]:
    free = TierRule(
        trial_duration_days=settings.free_trial_days,
        total_message_cap=settings.free_total_messages,
        daily_message_cap=settings.free_daily_messages,
        cooldown_seconds=settings.free_cooldown_seconds,
    )
    return {
        "free": free,
        "tier1": TierRule(daily_cap_paid=settings.tier1_daily_cap),
        "tier2": TierRule(daily_cap_paid=settings.tier2_daily_cap),
        "tier3": TierRule(daily_cap_paid=settings.tier3_daily_cap),
    }


def next_local_midnight(now: datetime, tz: ZoneInfo) -> datetime:
    """Return the first local midnight strictly after ``now`` (as UTC)."""
    local = now.astimezone(tz)
    tomorrow = local.date() + timedelta(days=1)
    midnight = datetime.combine(tomorrow, time.min, tzinfo=tz)
    return midnight.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    def __init__(
        self,
        store: UsageStore,
        rules: dict[str, TierRule],
        *,
        tz: str | ZoneInfo = "UTC",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if "free" not in rules:
            raise ValueError("tier rules must define 'free'")
        self._store = store
        self._rules = dict(rules)
        self._tz = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def is_paid(self, tier: str | None) -> bool:
        return bool(tier) and tier not in FREE_TIERS

    def _zero_record(self, now: datetime) -> UsageRecord:
        return UsageRecord(
            total_messages=0,
            today_messages=0,
            last_message_at=None,
            daily_reset_at=next_local_midnight(now, self._tz),
        )

    async def _load(self, uid: str, now: datetime, *, with_account: bool):
        """Read usage (and optionally the account), failing open on store errors."""
        try:
            record = await self._store.get_usage(uid)
            account = await self._store.get_account(uid) if with_account else None
        except StoreUnavailable as exc:
            quota_store_fail_open_total.inc()
            logger.warning("quota.store_unavailable uid=%s, using zeroed record: %s", uid, exc)
            return self._zero_record(now), None
        return record or self._zero_record(now), account

    def _today(self, record: UsageRecord, now: datetime) -> int:
        if now >= record.daily_reset_at:
            return 0
        return record.today_messages

    async def check(self, uid: str, tier: str | None) -> EligibilityDecision:
        now = self.now()
        paid = self.is_paid(tier)
        record, account = await self._load(uid, now, with_account=not paid)
        today = self._today(record, now)

        if paid:
            return self._check_paid(self._rules.get(tier, TierRule()), today)
        return self._check_free(self._rules["free"], record, account, today, now)

    def _check_paid(self, rule: TierRule, today: int) -> EligibilityDecision:
        cap = rule.daily_cap_paid or 0
        if cap > 0 and today >= cap:
            return EligibilityDecision(
                allowed=False,
                remaining_total=-1,
                remaining_today=0,
                reason=DenyReason.DAILY_CAP_REACHED_PAID,
                message=f"Daily limit reached ({cap} messages/day).",
            )
        return EligibilityDecision(
            allowed=True,
            remaining_total=-1,
            remaining_today=cap - today if cap > 0 else -1,
        )

    def _check_free(
        self,
        rule: TierRule,
        record: UsageRecord,
        account: UserAccount | None,
        today: int,
        now: datetime,
    ) -> EligibilityDecision:
        total = record.total_messages
        created_at = account.created_at if account and account.created_at else now
        age_days = (now - created_at).total_seconds() / SECONDS_PER_DAY

        if age_days > rule.trial_duration_days:
            days_expired = math.floor(age_days - rule.trial_duration_days)
            return EligibilityDecision(
                allowed=False,
                remaining_total=0,
                remaining_today=0,
                reason=DenyReason.FREE_TIER_EXPIRED,
                days_expired=days_expired,
                message=(
                    f"Your {rule.trial_duration_days}-day FREE tier has expired. "
                    "Please upgrade to a paid plan to continue using AI features."
                ),
            )

        if total >= rule.total_message_cap:
            return EligibilityDecision(
                allowed=False,
                remaining_total=0,
                remaining_today=max(0, rule.daily_message_cap - today),
                reason=DenyReason.TOTAL_CAP_REACHED,
                message=(
                    f"Free tier limit reached ({rule.total_message_cap} messages). "
                    "Please upgrade to continue."
                ),
            )

        if today >= rule.daily_message_cap:
            return EligibilityDecision(
                allowed=False,
                remaining_total=rule.total_message_cap - total,
                remaining_today=0,
                reason=DenyReason.DAILY_CAP_REACHED,
                message=(
                    f"Daily limit reached ({rule.daily_message_cap} messages/day). "
                    "Try again tomorrow."
                ),
            )

        if record.last_message_at is not None:
            elapsed = (now - record.last_message_at).total_seconds()
            if elapsed < rule.cooldown_seconds:
                wait = math.ceil(rule.cooldown_seconds - elapsed)
                return EligibilityDecision(
                    allowed=False,
                    remaining_total=rule.total_message_cap - total,
                    remaining_today=rule.daily_message_cap - today,
                    reason=DenyReason.COOLDOWN_ACTIVE,
                    wait_seconds=wait,
                    message=f"Please wait {wait} seconds between messages.",
                )

        return EligibilityDecision(
            allowed=True,
            remaining_total=rule.total_message_cap - total - 1,
            remaining_today=rule.daily_message_cap - today - 1,
        )

    async def increment(self, uid: str) -> UsageRecord:
        """Record one consumed message. Store errors propagate."""
        now = self.now()
        stored = await self._store.get_usage(uid)
        await self._store.ensure_account(uid, now)

        if stored is None:
            stored = self._zero_record(now)
        if now >= stored.daily_reset_at:
            today = 1
            reset_at = next_local_midnight(now, self._tz)
        else:
            today = stored.today_messages + 1
            reset_at = stored.daily_reset_at

        updated = UsageRecord(
            total_messages=stored.total_messages + 1,
            today_messages=today,
            last_message_at=now,
            daily_reset_at=reset_at,
        )
        await self._store.save_usage(uid, updated, now)
        logger.debug(
            "quota.increment uid=%s total=%s today=%s",
            uid,
            updated.total_messages,
            updated.today_messages,
        )
        return updated

    async def remaining_quota(self, uid: str, tier: str | None) -> QuotaSnapshot:
        if self.is_paid(tier):
            return QuotaSnapshot(
                remaining_total=-1,
                remaining_today=-1,
                unlimited=True,
                total_limit=-1,
                daily_limit=-1,
            )
        now = self.now()
        rule = self._rules["free"]
        record, _ = await self._load(uid, now, with_account=False)
        today = self._today(record, now)
        return QuotaSnapshot(
            remaining_total=max(0, rule.total_message_cap - record.total_messages),
            remaining_today=max(0, rule.daily_message_cap - today),
            unlimited=False,
            total_limit=rule.total_message_cap,
            daily_limit=rule.daily_message_cap,
        )


__all__ = [
    "DenyReason",
    "TierRule",
    "EligibilityDecision",
    "QuotaSnapshot",
    "QuotaLedger",
    "build_tier_rules",
    "next_local_midnight",
]
