"""
Caching utilities for the Villy retrieval core.

This module provides the bounded TTL cache shared by the structured query
generator and both reranking strategies.
"""

from libs.caching.ttl_cache import CacheStats, TTLCache

__all__ = ["CacheStats", "TTLCache"]
