import json
from datetime import UTC, datetime

from redis import asyncio as redis

from domain.exceptions.fx import CacheError
from infrastructure.cache.durable import StoredRecord


class RedisDurableStore:
    """Durable tier on Redis.

    Each record lives under ``fx:entry:<storage key>`` as JSON; the sorted set
    ``fx:access`` scores every key by last access time and drives eviction.
    """

    ACCESS_INDEX_KEY = 'fx:access'
    ENTRY_PREFIX = 'fx:entry:'

    def __init__(self, redis_client: redis.Redis, capacity: int = 1000):
        self.redis = redis_client
        self.capacity = capacity

    def _make_entry_key(self, key: str) -> str:
        return f'{self.ENTRY_PREFIX}{key}'

    async def get(self, key: str) -> StoredRecord | None:
        data = await self.redis.get(self._make_entry_key(key))
        if not data:
            return None

        try:
            record = json.loads(data)
            payload = record['payload']
            inserted_at = datetime.fromisoformat(record['inserted_at'])
            last_accessed_at = datetime.fromisoformat(record['last_accessed_at'])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CacheError(f'Invalid json data for {key}') from e

        score = await self.redis.zscore(self.ACCESS_INDEX_KEY, key)
        if score is not None:
            last_accessed_at = last_access_from_score(score)
        return StoredRecord(
            key=key,
            payload=payload,
            inserted_at=inserted_at,
            last_accessed_at=last_accessed_at,
        )

    async def put(self, key: str, payload: str, inserted_at: datetime) -> None:
        record = {
            'payload': payload,
            'inserted_at': inserted_at.isoformat(),
            'last_accessed_at': inserted_at.isoformat(),
        }
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self._make_entry_key(key), json.dumps(record))
        pipe.zadd(self.ACCESS_INDEX_KEY, {key: inserted_at.timestamp()})
        await pipe.execute()
        await self._evict_overflow(protect=key)

    async def _evict_overflow(self, protect: str) -> None:
        total = await self.redis.zcard(self.ACCESS_INDEX_KEY)
        excess = total - self.capacity
        if excess <= 0:
            return

        oldest = await self.redis.zrange(self.ACCESS_INDEX_KEY, 0, excess)
        victims = [k for k in oldest if k != protect][:excess]
        if not victims:
            return

        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(*[self._make_entry_key(k) for k in victims])
        pipe.zrem(self.ACCESS_INDEX_KEY, *victims)
        await pipe.execute()

    async def touch(self, key: str, accessed_at: datetime) -> None:
        # xx: only refresh keys that still exist in the index
        await self.redis.zadd(self.ACCESS_INDEX_KEY, {key: accessed_at.timestamp()}, xx=True)

    async def delete(self, key: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self._make_entry_key(key))
        pipe.zrem(self.ACCESS_INDEX_KEY, key)
        await pipe.execute()

    async def clear(self) -> None:
        keys = [k async for k in self.redis.scan_iter(match=f'{self.ENTRY_PREFIX}*')]
        keys.append(self.ACCESS_INDEX_KEY)
        await self.redis.delete(*keys)

    async def count(self) -> int:
        return await self.redis.zcard(self.ACCESS_INDEX_KEY)

    async def close(self) -> None:
        await self.redis.aclose()


def last_access_from_score(score: float) -> datetime:
    return datetime.fromtimestamp(score, tz=UTC)
