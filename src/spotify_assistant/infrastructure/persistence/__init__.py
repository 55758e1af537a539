"""Infrastructure persistence layer.

Driver-specific adapters (repositories, mongo, redis_cache) are imported by
the selector on demand, so only the installed extras need to be importable.
"""

from .base import BaseRepository
from .retry import execute_with_retry
from .selector import BackendSelector

__all__ = [
    "BackendSelector",
    "BaseRepository",
    "execute_with_retry",
]
