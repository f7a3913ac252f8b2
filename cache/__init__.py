"""
Cache layer — the fast key-value mirror of presence, unread counts and messages.

Backends:
  - Redis (production)
  - In-memory (development/testing)
"""
import structlog

from cache.cache_base import BaseChatCache
from cache.cache_memory import InMemoryChatCache
from cache.cache_redis import RedisChatCache

logger = structlog.get_logger()


def create_cache(config=None) -> BaseChatCache:
    """Factory: create the cache backend named by CacheConfig.backend."""
    backend = getattr(config, "backend", "memory")
    if backend == "redis":
        logger.info("cache_created", backend="redis")
        return RedisChatCache(
            redis_url=config.redis_url,
            key_prefix=config.key_prefix,
            presence_ttl=config.presence_ttl,
            message_ttl=config.message_ttl,
        )
    logger.info("cache_created", backend="memory")
    return InMemoryChatCache()


__all__ = ["BaseChatCache", "InMemoryChatCache", "RedisChatCache", "create_cache"]
