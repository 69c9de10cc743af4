from __future__ import annotations

from redis.asyncio import Redis

from app.core.config import settings

# Connections are opened lazily on first command.
redis_client: Redis = Redis.from_url(settings.redis_url, decode_responses=True)
