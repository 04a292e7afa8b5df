"""
Cache backends for classification, reasoning and graph-view results.
"""

from .cache import Cache, RedisCache, NullCache, make_cache_key

__all__ = ["Cache", "RedisCache", "NullCache", "make_cache_key"]
