from .base import Base
from .user import User
from .usage_counter import UsageCounter
from .ai_log import AiLog
from .error_code import ErrorCode

__all__ = [
    "Base",
    "User",
    "UsageCounter",
    "AiLog",
    "ErrorCode",
]
