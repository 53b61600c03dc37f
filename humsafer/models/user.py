from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from humsafer.models.base import Base


class User(Base):
    """Account document; ``tier`` is owned by the subscription subsystem."""

    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    tier = Column(String(16), nullable=False, server_default="free")
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    free_tier_started_at = Column(DateTime(timezone=True), nullable=True)


__all__ = ["User"]
