"""Per-user message counters for the free tier and paid daily caps.

``today_messages`` is only meaningful while ``daily_reset_at`` is in the
future; readers treat it as zero afterwards and the next increment resets it.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from .base import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    user_id = Column(String(128), primary_key=True)
    total_messages = Column(Integer, nullable=False, server_default="0")
    today_messages = Column(Integer, nullable=False, server_default="0")
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    daily_reset_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["UsageCounter"]
