import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from domain.exceptions.fx import CacheError
from domain.models.rates import (
    CacheEntry,
    CacheKey,
    CacheLookup,
    CachePayload,
    CacheTier,
    Provenance,
    QueryKind,
    RateSnapshot,
    payload_from_dict,
)
from infrastructure.cache.durable import DurableStore
from infrastructure.cache.memory_tier import MemoryTier

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RateCache:
    """Two-tier cache of rate snapshots and symbol tables.

    Reads check the in-process tier first and fall back to the durable tier,
    promoting durable hits. Writes go through to both tiers under a single
    writer lock. The durable tier may fail on its own: failures are logged and
    the in-process copy stays authoritative for this process.
    """

    def __init__(
        self,
        durable: DurableStore | None = None,
        fast_capacity: int = 256,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.fast = MemoryTier(fast_capacity)
        self.durable = durable
        self.clock = clock
        self._write_lock = asyncio.Lock()

    async def get(self, key: CacheKey) -> CacheLookup | None:
        storage_key = key.storage_key
        now = self.clock()

        entry = self.fast.get(storage_key)
        if entry is not None:
            entry.last_accessed_at = now
            # durable eviction must see fast-tier reads or it drops the hottest keys
            await self._touch_durable(storage_key, now)
            self._log_operation('get', storage_key, hit=True, tier=CacheTier.FAST)
            return CacheLookup(entry=entry, age=entry.age(now))

        if self.durable is None:
            self._log_operation('get', storage_key, hit=False)
            return None

        entry = await self._read_durable(storage_key, now)
        if entry is None:
            self._log_operation('get', storage_key, hit=False)
            return None

        async with self._write_lock:
            # a concurrent put may have landed a newer copy while we awaited the durable tier
            if self.fast.peek(storage_key) is None:
                self.fast.set(
                    storage_key,
                    CacheEntry(
                        payload=entry.payload,
                        tier=CacheTier.FAST,
                        inserted_at=entry.inserted_at,
                        last_accessed_at=now,
                    ),
                )

        await self._touch_durable(storage_key, now)
        self._log_operation('get', storage_key, hit=True, tier=CacheTier.DURABLE)
        return CacheLookup(entry=entry, age=entry.age(now))

    async def _touch_durable(self, storage_key: str, now: datetime) -> None:
        if self.durable is None:
            return
        try:
            await self.durable.touch(storage_key, now)
        except Exception as e:
            logger.warning(f'Durable cache touch failed for {storage_key}: {e}')

    async def _read_durable(self, storage_key: str, now: datetime) -> CacheEntry | None:
        try:
            record = await self.durable.get(storage_key)
            if record is None:
                return None
            payload = payload_from_dict(json.loads(record.payload))
        except (CacheError, json.JSONDecodeError) as e:
            logger.error(f'Discarding corrupt durable cache entry {storage_key}: {e}')
            await self._delete_durable(storage_key)
            return None
        except Exception as e:
            logger.error(f'Durable cache read failed for {storage_key}: {e}')
            return None

        return CacheEntry(
            payload=payload,
            tier=CacheTier.DURABLE,
            inserted_at=record.inserted_at,
            last_accessed_at=now,
        )

    async def _delete_durable(self, storage_key: str) -> None:
        try:
            await self.durable.delete(storage_key)
        except Exception as e:
            logger.warning(f'Durable cache delete failed for {storage_key}: {e}')

    async def put(self, key: CacheKey, payload: CachePayload) -> bool:
        """Store ``payload`` in both tiers. Returns False when the write was refused."""
        storage_key = key.storage_key
        payload = payload.with_provenance(Provenance.CACHE)

        async with self._write_lock:
            if await self._protects_confirmed(key, payload):
                logger.debug(f'Keeping confirmed entry for {storage_key}; estimated update ignored')
                return False

            now = self.clock()
            evicted = self.fast.set(
                storage_key,
                CacheEntry(payload=payload, tier=CacheTier.FAST, inserted_at=now, last_accessed_at=now),
            )
            if evicted:
                logger.debug(f'Fast cache evicted {len(evicted)} entries: {evicted}')

            if self.durable is not None:
                start_time = time.time()
                try:
                    await self.durable.put(storage_key, json.dumps(payload.to_dict()), now)
                except Exception as e:
                    logger.error(
                        f'Durable cache write failed for {storage_key}: {e}',
                        extra={'extra_data': {
                            'operation': 'put',
                            'cache_key': storage_key,
                            'duration_ms': (time.time() - start_time) * 1000,
                            'error_message': str(e),
                        }},
                    )

        self._log_operation('put', storage_key, hit=False)
        return True

    async def _protects_confirmed(self, key: CacheKey, payload: CachePayload) -> bool:
        if key.kind is not QueryKind.DATE or not isinstance(payload, RateSnapshot) or not payload.is_estimated:
            return False

        entry = self.fast.peek(key.storage_key)
        if entry is None and self.durable is not None:
            entry = await self._read_durable(key.storage_key, self.clock())
        return (
            entry is not None
            and isinstance(entry.payload, RateSnapshot)
            and not entry.payload.is_estimated
        )

    async def clear(self) -> None:
        async with self._write_lock:
            self.fast.clear()
            if self.durable is not None:
                try:
                    await self.durable.clear()
                except Exception as e:
                    logger.error(f'Durable cache clear failed: {e}')
                    raise CacheError(f'Durable cache clear failed: {e}') from e
        logger.info('FX rate cache cleared')

    @property
    def fast_count(self) -> int:
        return len(self.fast)

    async def count(self, tier: CacheTier) -> int:
        if tier is CacheTier.FAST:
            return self.fast_count
        if self.durable is None:
            return 0
        return await self.durable.count()

    def latest_resident(self) -> RateSnapshot | None:
        """Newest ``latest`` snapshot held in the fast tier. Synchronous and side-effect free."""
        newest = None
        for storage_key, entry in self.fast.items():
            if not storage_key.startswith(f'{QueryKind.LATEST.value}:'):
                continue
            payload = entry.payload
            if isinstance(payload, RateSnapshot) and (newest is None or payload.fetched_at > newest.fetched_at):
                newest = payload
        return newest

    async def close(self) -> None:
        if self.durable is not None:
            await self.durable.close()

    def _log_operation(self, operation: str, cache_key: str, hit: bool, tier: CacheTier | None = None):
        logger.debug(
            f"Cache {operation} for {cache_key}: {'HIT' if hit else 'MISS'}"
            + (f' ({tier.value})' if tier else ''),
            extra={'extra_data': {'operation': operation, 'cache_key': cache_key, 'hit': hit}},
        )
