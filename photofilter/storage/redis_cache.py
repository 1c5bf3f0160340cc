from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

from photofilter.storage.models import ShareGrant


class RedisShareStore:
    """Share grants in Redis so every API instance resolves the same links.

    Keys expire with the grant; the manager still checks ``expires_at`` since
    Redis TTLs are clamped to at least one second.
    """

    KEY_PREFIX = "share:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        socket_timeout: float = 5.0,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL for an absolute expiry, clamped to at least 1 second for Redis."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    async def put(self, grant: ShareGrant) -> None:
        await self.client.set(
            self._key(grant.token),
            json.dumps(grant.to_dict()),
            ex=self._ttl_seconds(grant.expires_at),
        )

    async def get(self, token: str) -> Optional[ShareGrant]:
        raw = await self.client.get(self._key(token))
        if not raw:
            return None
        return ShareGrant.from_dict(json.loads(raw))

    async def delete(self, token: str) -> None:
        await self.client.delete(self._key(token))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        # Redis evicts grants through key TTLs
        return 0

    async def close(self) -> None:
        await self.client.aclose()
