"""Two-tier (memory + persistent) cache."""

from .store import CacheStore
from .two_tier import TwoTierCache, cached

__all__ = ["CacheStore", "TwoTierCache", "cached"]
