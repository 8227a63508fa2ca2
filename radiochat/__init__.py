"""Real-time core of the RadioChat service (Version 1.0)."""

__version__ = "1.0.0"
__author__ = "RadioChat Development Team"
__status__ = "production"

from .config import Settings
from .core import ChatCore
from .errors import (
    BannedError,
    ChatError,
    RateLimitError,
    Result,
    StoreUnavailable,
    ValidationError,
)
