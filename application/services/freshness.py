from datetime import timedelta

from config.settings import Settings
from domain.models.rates import CacheKey, CacheLookup, QueryKind, RateSnapshot


class FreshnessPolicy:
    """Decides whether a cached entry may be served without revalidation."""

    def __init__(
        self,
        latest_ttl: timedelta = timedelta(minutes=30),
        estimated_historical_ttl: timedelta = timedelta(minutes=5),
        symbols_ttl: timedelta = timedelta(days=7),
    ):
        self.latest_ttl = latest_ttl
        self.estimated_historical_ttl = estimated_historical_ttl
        self.symbols_ttl = symbols_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> 'FreshnessPolicy':
        return cls(
            latest_ttl=timedelta(seconds=settings.LATEST_TTL_SECONDS),
            estimated_historical_ttl=timedelta(seconds=settings.ESTIMATED_HISTORICAL_TTL_SECONDS),
            symbols_ttl=timedelta(seconds=settings.SYMBOLS_TTL_SECONDS),
        )

    def ttl_for(self, key: CacheKey, payload) -> timedelta | None:
        """``None`` means the entry never goes stale."""
        if key.kind is QueryKind.LATEST:
            return self.latest_ttl
        if key.kind is QueryKind.SYMBOLS:
            return self.symbols_ttl
        if isinstance(payload, RateSnapshot) and payload.is_estimated:
            return self.estimated_historical_ttl
        return None

    def is_fresh(self, key: CacheKey, lookup: CacheLookup) -> bool:
        ttl = self.ttl_for(key, lookup.payload)
        return ttl is None or lookup.age <= ttl
