from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from humsafer.services.errors import StoreUnavailable
from humsafer.services.quota import (
    DenyReason,
    QuotaLedger,
    TierRule,
    next_local_midnight,
)


async def _send(ledger, uid, clock, count, gap=4):
    for _ in range(count):
        await ledger.increment(uid)
        clock.advance(seconds=gap)


@pytest.mark.asyncio
async def test_check_is_idempotent(ledger, uid, clock):
    await ledger.increment(uid)
    clock.advance(seconds=10)
    first = await ledger.check(uid, "free")
    second = await ledger.check(uid, "free")
    assert first == second
    assert first.allowed
    assert first.remaining_total == 48
    assert first.remaining_today == 13


@pytest.mark.asyncio
async def test_new_user_is_allowed(ledger, uid):
    decision = await ledger.check(uid, None)
    assert decision.allowed
    assert decision.reason is DenyReason.NONE
    assert decision.remaining_total == 49
    assert decision.remaining_today == 14


@pytest.mark.asyncio
async def test_total_cap_reached(store, uid, clock):
    rules = {"free": TierRule(trial_duration_days=7, total_message_cap=5, daily_message_cap=100)}
    ledger = QuotaLedger(store, rules, clock=clock)
    await _send(ledger, uid, clock, 5)
    decision = await ledger.check(uid, "free")
    assert not decision.allowed
    assert decision.reason is DenyReason.TOTAL_CAP_REACHED
    assert decision.remaining_total == 0
    assert decision.remaining_today == 95


@pytest.mark.asyncio
async def test_daily_counter_resets_after_local_midnight(ledger, uid, clock):
    await _send(ledger, uid, clock, 3)
    # 06:00 UTC is 11:30 IST; midnight IST is 18:30 UTC
    clock.advance(hours=13)
    decision = await ledger.check(uid, "free")
    assert decision.remaining_today == 14
    assert decision.remaining_total == 46

    record = await ledger.increment(uid)
    assert record.today_messages == 1
    assert record.total_messages == 4
    assert record.daily_reset_at > clock()


@pytest.mark.asyncio
async def test_cooldown_between_messages(ledger, uid, clock):
    await ledger.increment(uid)
    clock.advance(seconds=1)
    await ledger.increment(uid)
    clock.advance(seconds=1)
    decision = await ledger.check(uid, "free")
    assert not decision.allowed
    assert decision.reason is DenyReason.COOLDOWN_ACTIVE
    assert decision.wait_seconds == 2
    assert "2 seconds" in decision.message


@pytest.mark.asyncio
async def test_paid_tier_without_cap_is_never_limited(ledger, uid, clock):
    await _send(ledger, uid, clock, 20, gap=0)
    decision = await ledger.check(uid, "tier2")
    assert decision.allowed
    assert decision.remaining_total == -1
    assert decision.remaining_today == -1


@pytest.mark.asyncio
async def test_paid_tier_daily_cap(ledger, uid, clock):
    await _send(ledger, uid, clock, 2, gap=0)
    decision = await ledger.check(uid, "tier1")
    assert decision.allowed
    assert decision.remaining_today == 1
    await ledger.increment(uid)
    decision = await ledger.check(uid, "tier1")
    assert not decision.allowed
    assert decision.reason is DenyReason.DAILY_CAP_REACHED_PAID
    assert decision.remaining_total == -1


@pytest.mark.asyncio
async def test_unknown_paid_tier_is_not_volume_limited(ledger, uid, clock):
    await _send(ledger, uid, clock, 15)
    decision = await ledger.check(uid, "tier4")
    assert decision.allowed
    assert decision.remaining_total == -1
    assert decision.remaining_today == -1
    assert ledger.is_paid("tier4")
    snapshot = await ledger.remaining_quota(uid, "tier4")
    assert snapshot.unlimited


@pytest.mark.asyncio
async def test_free_tier_names_are_not_paid(ledger):
    for tier in (None, "", "none", "free", "expired"):
        assert not ledger.is_paid(tier)


@pytest.mark.asyncio
async def test_trial_expired(ledger, store, uid, clock):
    await store.ensure_account(uid, clock() - timedelta(days=8))
    decision = await ledger.check(uid, "free")
    assert not decision.allowed
    assert decision.reason is DenyReason.FREE_TIER_EXPIRED
    assert decision.days_expired == 1
    assert decision.remaining_total == 0
    assert decision.remaining_today == 0
    assert "7-day FREE tier has expired" in decision.message


@pytest.mark.asyncio
async def test_trial_boundary_is_still_allowed(ledger, store, uid, clock):
    await store.ensure_account(uid, clock() - timedelta(days=7))
    decision = await ledger.check(uid, "free")
    assert decision.allowed


@pytest.mark.asyncio
async def test_free_user_daily_cap_end_to_end(ledger, uid, clock):
    for n in range(1, 16):
        decision = await ledger.check(uid, "free")
        assert decision.allowed, n
        if n == 15:
            assert decision.remaining_today == 0
        await ledger.increment(uid)
        clock.advance(seconds=4)

    decision = await ledger.check(uid, "free")
    assert not decision.allowed
    assert decision.reason is DenyReason.DAILY_CAP_REACHED
    assert decision.remaining_total == 35
    assert decision.remaining_today == 0


@pytest.mark.asyncio
async def test_increment_creates_free_account(ledger, store, uid, clock):
    await ledger.increment(uid)
    account = await store.get_account(uid)
    assert account.tier == "free"
    assert account.created_at == clock()


@pytest.mark.asyncio
async def test_remaining_quota(ledger, uid, clock):
    await _send(ledger, uid, clock, 2)
    snapshot = await ledger.remaining_quota(uid, "free")
    assert snapshot.remaining_total == 48
    assert snapshot.remaining_today == 13
    assert not snapshot.unlimited
    assert snapshot.total_limit == 50
    assert snapshot.daily_limit == 15

    paid = await ledger.remaining_quota(uid, "tier3")
    assert paid.unlimited
    assert paid.remaining_total == -1


class _BrokenStore:
    async def get_usage(self, uid):
        raise StoreUnavailable("db down")

    async def get_account(self, uid):
        raise StoreUnavailable("db down")

    async def ensure_account(self, uid, now):
        raise StoreUnavailable("db down")

    async def save_usage(self, uid, record, now):
        raise StoreUnavailable("db down")


@pytest.mark.asyncio
async def test_check_fails_open_when_store_unavailable(rules, clock):
    ledger = QuotaLedger(_BrokenStore(), rules, clock=clock)
    decision = await ledger.check("u1", "free")
    assert decision.allowed
    assert decision.remaining_total == 49


@pytest.mark.asyncio
async def test_increment_propagates_store_errors(rules, clock):
    ledger = QuotaLedger(_BrokenStore(), rules, clock=clock)
    with pytest.raises(StoreUnavailable):
        await ledger.increment("u1")


def test_rules_require_free_tier(store):
    with pytest.raises(ValueError):
        QuotaLedger(store, {"tier1": TierRule()})


def test_next_local_midnight():
    tz = ZoneInfo("Asia/Kolkata")
    now = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
    assert next_local_midnight(now, tz) == datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)
    # exactly at midnight rolls to the following day
    at_midnight = datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)
    assert next_local_midnight(at_midnight, tz) == datetime(2026, 3, 11, 18, 30, tzinfo=timezone.utc)
