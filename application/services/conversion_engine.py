import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from application.services.circuit_breaker import CircuitBreaker
from application.services.freshness import FreshnessPolicy
from domain.exceptions.fx import CurrencyNotFound, FXError, HTTPError
from domain.models.rates import (
    CacheKey,
    CachePayload,
    CacheTier,
    ConversionOutcome,
    Provenance,
    RateSnapshot,
    TimeframeRates,
)
from infrastructure.cache.rate_cache import RateCache
from infrastructure.security.token_store import SecureTokenStore

if TYPE_CHECKING:
    from infrastructure.providers.finyvo import FinyvoRateClient

logger = logging.getLogger(__name__)

RatesListener = Callable[[RateSnapshot | None], None]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _same_rates(a: RateSnapshot | None, b: RateSnapshot | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.base == b.base and a.rates == b.rates and a.fetched_at == b.fetched_at


class ConversionEngine:
    """Entry point for every FX fetch and conversion.

    Each operation reads the cache first, goes to the provider when the entry
    is missing or stale, writes successful results through to the cache and
    falls back to the newest cached copy (marked as estimated) when the
    provider cannot be reached.
    """

    def __init__(
        self,
        client: 'FinyvoRateClient',
        cache: RateCache,
        breaker: CircuitBreaker,
        token_store: SecureTokenStore,
        freshness: FreshnessPolicy | None = None,
        timeframe_max_days: int = 366,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.cache = cache
        self.breaker = breaker
        self.token_store = token_store
        self.freshness = freshness or FreshnessPolicy()
        self.timeframe_max_days = max(timeframe_max_days, 1)
        self.clock = clock

        self.last_error: FXError | None = None
        self._current: RateSnapshot | None = None
        self._listeners: list[RatesListener] = []

    # Fetch operations

    async def fetch_latest(self, currencies: list[str] | None = None) -> RateSnapshot:
        key = CacheKey.latest(currencies)
        snapshot = await self._resolve(key, lambda: self.client.latest(self._codes(key)))
        if key.currencies is None:
            self._publish(snapshot)
        return snapshot

    async def fetch_for_date(self, day: date, currencies: list[str] | None = None) -> RateSnapshot:
        if day == self._today():
            return await self.fetch_latest(currencies)
        key = CacheKey.for_date(day, currencies)
        return await self._resolve(key, lambda: self.client.for_date(day, self._codes(key)))

    async def fetch_timeframe(
        self, start: date, end: date, currencies: list[str] | None = None
    ) -> dict[date, RateSnapshot]:
        """Per-date snapshots for ``start..end`` (inclusive).

        Only dates without a fresh cache entry are requested, as one range
        call over the span they cover.
        """
        if start > end:
            raise ValueError(f'Timeframe start {start} is after end {end}')

        results: dict[date, RateSnapshot] = {}
        stale: dict[date, RateSnapshot] = {}
        missing: list[date] = []

        day = start
        while day <= end:
            fresh, fallback = await self._read_cache(CacheKey.for_date(day, currencies))
            if fresh is not None:
                results[day] = fresh
            else:
                missing.append(day)
                if fallback is not None:
                    stale[day] = fallback
            day += timedelta(days=1)

        error: FXError | None = None
        chunks = self._chunks(missing[0], missing[-1]) if missing else []
        for chunk_start, chunk_end in chunks:
            wanted = [d for d in missing if chunk_start <= d <= chunk_end]
            chunk_key = CacheKey.timeframe(chunk_start, chunk_end, currencies)
            try:
                timeframe = await self.client.timeframe(chunk_start, chunk_end, self._codes(chunk_key))
            except FXError as e:
                error = e
                self._record_error('timeframe', e)
                for d in wanted:
                    if d in stale:
                        results[d] = stale[d].as_fallback()
                continue

            fetched = await self._store_timeframe(timeframe, currencies, wanted)
            for d in wanted:
                if d in fetched:
                    results[d] = fetched[d]
                elif d in stale:
                    results[d] = stale[d].as_fallback()

        if error is not None and not results:
            raise error
        return dict(sorted(results.items()))

    async def fetch_symbols(self) -> dict[str, str]:
        table = await self._resolve(CacheKey.symbols(), self.client.symbols)
        return dict(table.symbols)

    async def convert(
        self, amount: float, from_currency: str, to_currency: str, day: date | None = None
    ) -> ConversionOutcome:
        from_code = from_currency.strip().upper()
        to_code = to_currency.strip().upper()

        if from_code == to_code:
            return ConversionOutcome(
                amount=amount,
                from_code=from_code,
                to_code=to_code,
                result=amount,
                rate=1.0,
                provenance=Provenance.CACHE,
                date_used=day,
            )

        snapshot = await (self.fetch_latest() if day is None else self.fetch_for_date(day))
        rate = snapshot.cross_rate(from_code, to_code)
        if rate is None:
            return await self._convert_remotely(amount, from_code, to_code, day, snapshot)

        return ConversionOutcome(
            amount=amount,
            from_code=from_code,
            to_code=to_code,
            result=amount * rate,
            rate=rate,
            provenance=snapshot.provenance,
            is_estimated=snapshot.is_estimated,
            date_used=snapshot.date_used or snapshot.requested_date,
            as_of=snapshot.fetched_at,
        )

    async def _convert_remotely(
        self, amount: float, from_code: str, to_code: str, day: date | None, snapshot: RateSnapshot
    ) -> ConversionOutcome:
        missing = from_code if not snapshot.contains(from_code) else to_code
        logger.info(f'{missing} not in {snapshot.base} snapshot; asking provider to convert {from_code}->{to_code}')
        try:
            return await self.client.convert(amount, from_code, to_code, day)
        except FXError as e:
            self._record_error('convert', e)
            if isinstance(e, HTTPError) and not e.is_transient and 400 <= e.status < 500:
                # the provider rejected the pair
                raise CurrencyNotFound(missing, request_id=e.request_id) from e
            raise

    # Cache-first resolution

    async def _resolve(self, key: CacheKey, fetch: Callable[[], Awaitable[CachePayload]]) -> CachePayload:
        fresh, stale = await self._read_cache(key)
        if fresh is not None:
            return fresh

        try:
            payload = await fetch()
        except FXError as e:
            self._record_error(key.kind.value, e)
            if stale is None:
                raise
            logger.warning(f'Serving stale {key.storage_key} after provider failure: {e}')
            return stale.as_fallback() if isinstance(stale, RateSnapshot) else stale.with_provenance(Provenance.FALLBACK)

        await self.cache.put(key, payload)
        return payload

    async def _read_cache(self, key: CacheKey) -> tuple[CachePayload | None, CachePayload | None]:
        """(fresh, stale) candidates for ``key``.

        A subset query is also answered by the all-currency entry of the same
        shape when that entry holds every requested code.
        """
        candidates = [key] if key.currencies is None else [key, key.widened()]
        stale = None
        for candidate in candidates:
            lookup = await self.cache.get(candidate)
            if lookup is None:
                continue
            payload = lookup.payload
            if isinstance(payload, RateSnapshot) and key.currencies:
                if not all(payload.contains(code) for code in key.currencies):
                    continue
                payload = payload.restricted_to(key.currencies)
            if self.freshness.is_fresh(candidate, lookup):
                return payload, None
            stale = stale or payload
        return None, stale

    async def _store_timeframe(
        self, timeframe: TimeframeRates, currencies: list[str] | None, wanted: list[date]
    ) -> dict[date, RateSnapshot]:
        """Split a range response into per-date entries.

        Dates the provider left out (weekends, holidays) take the rates of the
        closest earlier date in the response and are stored as estimated, the
        way a single-date request would have answered them.
        """
        today = self._today()
        published = sorted(timeframe.rates_by_date)
        snapshots = {}
        for day in wanted:
            used = max((d for d in published if d <= day), default=None)
            if used is None:
                continue
            snapshot = RateSnapshot(
                base=timeframe.base,
                rates=timeframe.rates_by_date[used],
                fetched_at=timeframe.fetched_at,
                provenance=Provenance.REMOTE,
                is_estimated=day >= today or used != day,
                date_used=used,
                requested_date=day,
                provider=timeframe.provider,
                source=timeframe.source,
            )
            await self.cache.put(CacheKey.for_date(day, currencies), snapshot)
            snapshots[day] = snapshot
        return snapshots

    def _chunks(self, start: date, end: date) -> list[tuple[date, date]]:
        chunks = []
        span = timedelta(days=self.timeframe_max_days - 1)
        while start <= end:
            chunk_end = min(start + span, end)
            chunks.append((start, chunk_end))
            start = chunk_end + timedelta(days=1)
        return chunks

    @staticmethod
    def _codes(key: CacheKey) -> list[str] | None:
        return list(key.currencies) if key.currencies else None

    def _today(self) -> date:
        return self.clock().date()

    def _record_error(self, operation: str, error: FXError) -> None:
        self.last_error = error
        logger.error(
            f'FX {operation} failed: {error}',
            extra={'extra_data': {
                'operation': operation,
                'error_type': type(error).__name__,
                'request_id': error.request_id,
            }},
        )

    # Current rates

    def current_rates(self) -> RateSnapshot | None:
        return self._current

    def subscribe(self, listener: RatesListener) -> Callable[[], None]:
        """Call ``listener`` whenever the current rates change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: RateSnapshot | None) -> None:
        if _same_rates(snapshot, self._current):
            return
        self._current = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f'Current-rates listener {listener!r} failed: {e}')

    # Token management

    @property
    def is_configured(self) -> bool:
        return bool(self.token_store.get())

    async def configure(self, token: str) -> None:
        self.token_store.set(token)
        self.last_error = None
        await self.breaker.reset()
        logger.info('FX API token configured')

    def clear_token(self) -> None:
        self.token_store.clear()
        self._publish(None)
        logger.info('FX API token cleared')

    # Diagnostics

    async def check_health(self) -> bool:
        return await self.client.health()

    async def cache_counts(self) -> dict[CacheTier, int]:
        return {tier: await self.cache.count(tier) for tier in CacheTier}

    async def clear_cache(self) -> None:
        await self.cache.clear()
        self._publish(None)

    async def reset_breaker(self) -> None:
        await self.breaker.reset()

    async def breaker_status(self) -> dict:
        return await self.breaker.get_status()
