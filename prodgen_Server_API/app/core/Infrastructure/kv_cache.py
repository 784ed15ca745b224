"""
Key-value cache used for dead-letter entries and shared circuit state.

`InMemoryKeyValueCache` keeps values in process with lazy TTL expiry;
`RedisKeyValueCache` maps the same calls onto plain Redis strings.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


class KeyValueCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def keys(self, prefix: str) -> List[str]: ...

    async def ping(self) -> bool: ...


class InMemoryKeyValueCache:
    def __init__(self, clock: Clock = now_ms):
        self._clock = clock
        # key -> (value, expires_at_ms or None)
        self._data: Dict[str, Tuple[str, Optional[int]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[int]]]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item[1]
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return item

    async def get(self, key: str) -> Optional[str]:
        item = self._live(key)
        return item[0] if item else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + int(ttl_seconds) * 1000 if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def ttl(self, key: str) -> Optional[int]:
        item = self._live(key)
        if item is None or item[1] is None:
            return None
        return max(0, (item[1] - self._clock()) // 1000)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)

    async def ping(self) -> bool:
        return True


class RedisKeyValueCache:
    def __init__(self, client):
        # client: redis.asyncio.Redis created with decode_responses=True
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=int(ttl_seconds) if ttl_seconds else None)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.client.ttl(key)
        return remaining if remaining is not None and remaining >= 0 else None

    async def keys(self, prefix: str) -> List[str]:
        found = [key async for key in self.client.scan_iter(match=f"{prefix}*", count=200)]
        return sorted(found)

    async def ping(self) -> bool:
        return bool(await self.client.ping())
