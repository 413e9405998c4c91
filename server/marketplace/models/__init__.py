"""Local store models."""

from .cache_entry import CacheEntry
from .idempotency import IdempotencyRecord

__all__ = [
    "CacheEntry",
    "IdempotencyRecord",
]
