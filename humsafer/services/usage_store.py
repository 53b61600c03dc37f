"""Document-store adapter for usage counters, accounts and the AI audit log.

Each public coroutine runs a short synchronous SQLAlchemy session in a worker
thread. Database errors are re-raised as :class:`StoreUnavailable` so callers
can decide whether to fail open or propagate.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from humsafer import db as db_module
from humsafer.services.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# UTC timestamps; SQLite keeps them as naive strings
_TS = DateTime(timezone=True)


@dataclass(frozen=True)
class UsageRecord:
    total_messages: int
    today_messages: int
    last_message_at: datetime | None
    daily_reset_at: datetime


@dataclass(frozen=True)
class UserAccount:
    created_at: datetime | None
    tier: str | None


def _as_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UsageStore:
    """SQL-backed store; safe to share across requests."""

    def _get_usage_sync(self, uid: str) -> UsageRecord | None:
        with db_module.SessionLocal() as db:
            row = db.execute(
                text(
                    "SELECT total_messages, today_messages, last_message_at, daily_reset_at "
                    "FROM usage_counters WHERE user_id = :uid"
                ),
                {"uid": uid},
            ).mappings().first()
        if not row:
            return None
        return UsageRecord(
            total_messages=int(row["total_messages"] or 0),
            today_messages=int(row["today_messages"] or 0),
            last_message_at=_as_utc(row["last_message_at"]),
            daily_reset_at=_as_utc(row["daily_reset_at"]),
        )

    def _get_account_sync(self, uid: str) -> UserAccount | None:
        with db_module.SessionLocal() as db:
            row = db.execute(
                text("SELECT created_at, tier FROM users WHERE id = :uid"),
                {"uid": uid},
            ).mappings().first()
        if not row:
            return None
        return UserAccount(created_at=_as_utc(row["created_at"]), tier=row["tier"])

    def _save_usage_sync(self, uid: str, record: UsageRecord, now: datetime) -> None:
        with db_module.SessionLocal() as db:
            db.execute(
                text(
                    "INSERT INTO usage_counters "
                    "(user_id, total_messages, today_messages, last_message_at, daily_reset_at, updated_at) "
                    "VALUES (:uid, :total, :today, :last, :reset, :now) "
                    "ON CONFLICT (user_id) DO UPDATE SET "
                    "total_messages = excluded.total_messages, "
                    "today_messages = excluded.today_messages, "
                    "last_message_at = excluded.last_message_at, "
                    "daily_reset_at = excluded.daily_reset_at, "
                    "updated_at = excluded.updated_at"
                ).bindparams(
                    bindparam("last", type_=_TS),
                    bindparam("reset", type_=_TS),
                    bindparam("now", type_=_TS),
                ),
                {
                    "uid": uid,
                    "total": record.total_messages,
                    "today": record.today_messages,
                    "last": record.last_message_at,
                    "reset": record.daily_reset_at,
                    "now": now,
                },
            )
            db.commit()

    def _ensure_account_sync(self, uid: str, now: datetime) -> bool:
        with db_module.SessionLocal() as db:
            result = db.execute(
                text(
                    "INSERT INTO users (id, tier, created_at, free_tier_started_at) "
                    "VALUES (:uid, 'free', :now, :now) "
                    "ON CONFLICT (id) DO NOTHING"
                ).bindparams(bindparam("now", type_=_TS)),
                {"uid": uid, "now": now},
            )
            db.commit()
            return bool(result.rowcount)

    def _append_ai_log_sync(
        self,
        uid: str,
        message: str,
        response: str,
        mode: str,
        action: str | None,
        provider_id: str | None,
    ) -> None:
        with db_module.SessionLocal() as db:
            db.execute(
                text(
                    "INSERT INTO ai_logs (user_id, text, response, mode, action, provider_id, created_at) "
                    "VALUES (:uid, :text, :response, :mode, :action, :provider, :now)"
                ).bindparams(bindparam("now", type_=_TS)),
                {
                    "uid": uid,
                    "text": message,
                    "response": response,
                    "mode": mode,
                    "action": action,
                    "provider": provider_id,
                    "now": datetime.now(timezone.utc),
                },
            )
            db.commit()

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (SQLAlchemyError, RuntimeError) as exc:
            # RuntimeError: SessionLocal used before init_db
            raise StoreUnavailable(str(exc)) from exc

    async def get_usage(self, uid: str) -> UsageRecord | None:
        return await self._run(self._get_usage_sync, uid)

    async def get_account(self, uid: str) -> UserAccount | None:
        return await self._run(self._get_account_sync, uid)

    async def save_usage(self, uid: str, record: UsageRecord, now: datetime) -> None:
        await self._run(self._save_usage_sync, uid, record, now)

    async def ensure_account(self, uid: str, now: datetime) -> bool:
        """Create the account with tier ``free`` unless it already exists."""
        created = await self._run(self._ensure_account_sync, uid, now)
        if created:
            logger.info("usage_store.account_created uid=%s tier=free", uid)
        return created

    async def append_ai_log(
        self,
        uid: str,
        message: str,
        response: str,
        *,
        mode: str,
        action: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        await self._run(
            self._append_ai_log_sync, uid, message, response, mode, action, provider_id
        )


__all__ = ["UsageRecord", "UserAccount", "UsageStore"]
