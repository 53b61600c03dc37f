from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from .base import Base


class AiLog(Base):
    """Audit trail of answered chat messages."""

    __tablename__ = "ai_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    text = Column(Text, nullable=False)
    response = Column(Text, nullable=False)
    mode = Column(String(32), nullable=False, server_default="general")
    action = Column(String(32), nullable=True)
    provider_id = Column(String(32), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


__all__ = ["AiLog"]
