from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from domain.exceptions.fx import CacheError


class Provenance(Enum):
    REMOTE = 'remote'
    CACHE = 'cache'
    FALLBACK = 'fallback'


class QueryKind(Enum):
    LATEST = 'latest'
    DATE = 'date'
    TIMEFRAME = 'timeframe'
    SYMBOLS = 'symbols'


class CacheTier(Enum):
    FAST = 'fast'
    DURABLE = 'durable'


def normalize_codes(currencies: Iterable[str] | None) -> tuple[str, ...] | None:
    if not currencies:
        return None
    codes = sorted({code.strip().upper() for code in currencies if code and code.strip()})
    return tuple(codes) or None


@dataclass(frozen=True)
class RateSnapshot:
    """Rates relative to ``base`` as returned by the provider at ``fetched_at``."""

    base: str
    rates: dict[str, float]
    fetched_at: datetime
    provenance: Provenance = Provenance.REMOTE
    is_estimated: bool = False
    date_used: date | None = None
    requested_date: date | None = None
    provider: str | None = None
    source: str | None = None

    def contains(self, code: str) -> bool:
        return code == self.base or code in self.rates

    def rate_for(self, code: str) -> float | None:
        if code == self.base:
            return 1.0
        return self.rates.get(code)

    def cross_rate(self, from_code: str, to_code: str) -> float | None:
        """rate(from -> to) triangulated through the snapshot base."""
        if from_code == to_code:
            return 1.0
        if from_code == self.base:
            return self.rates.get(to_code)
        from_rate = self.rates.get(from_code)
        if from_rate is None or from_rate == 0:
            return None
        if to_code == self.base:
            return 1.0 / from_rate
        to_rate = self.rates.get(to_code)
        if to_rate is None:
            return None
        return to_rate / from_rate

    def restricted_to(self, currencies: Iterable[str] | None) -> 'RateSnapshot':
        codes = normalize_codes(currencies)
        if codes is None:
            return self
        return replace(self, rates={c: r for c, r in self.rates.items() if c in codes})

    def with_provenance(self, provenance: Provenance) -> 'RateSnapshot':
        return replace(self, provenance=provenance)

    def as_fallback(self) -> 'RateSnapshot':
        return replace(self, provenance=Provenance.FALLBACK, is_estimated=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': 'rates',
            'base': self.base,
            'rates': dict(self.rates),
            'fetched_at': self.fetched_at.isoformat(),
            'is_estimated': self.is_estimated,
            'date_used': self.date_used.isoformat() if self.date_used else None,
            'requested_date': self.requested_date.isoformat() if self.requested_date else None,
            'provider': self.provider,
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'RateSnapshot':
        try:
            return cls(
                base=data['base'],
                rates={code: float(rate) for code, rate in data['rates'].items()},
                fetched_at=datetime.fromisoformat(data['fetched_at']),
                provenance=Provenance.CACHE,
                is_estimated=bool(data.get('is_estimated', False)),
                date_used=date.fromisoformat(data['date_used']) if data.get('date_used') else None,
                requested_date=(
                    date.fromisoformat(data['requested_date']) if data.get('requested_date') else None
                ),
                provider=data.get('provider'),
                source=data.get('source'),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheError(f'Invalid rate snapshot payload: {e}') from e


@dataclass(frozen=True)
class SymbolTable:
    symbols: dict[str, str]
    fetched_at: datetime
    provenance: Provenance = Provenance.REMOTE

    def with_provenance(self, provenance: Provenance) -> 'SymbolTable':
        return replace(self, provenance=provenance)

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': 'symbols',
            'symbols': dict(self.symbols),
            'fetched_at': self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'SymbolTable':
        try:
            return cls(
                symbols={str(code): str(name) for code, name in data['symbols'].items()},
                fetched_at=datetime.fromisoformat(data['fetched_at']),
                provenance=Provenance.CACHE,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheError(f'Invalid symbol table payload: {e}') from e


CachePayload = RateSnapshot | SymbolTable


def payload_from_dict(data: dict[str, Any]) -> CachePayload:
    kind = data.get('type') if isinstance(data, dict) else None
    if kind == 'rates':
        return RateSnapshot.from_dict(data)
    if kind == 'symbols':
        return SymbolTable.from_dict(data)
    raise CacheError(f'Unknown cache payload type: {kind!r}')


@dataclass(frozen=True)
class CacheKey:
    kind: QueryKind
    on: date | None = None
    end: date | None = None
    currencies: tuple[str, ...] | None = None

    @classmethod
    def latest(cls, currencies: Iterable[str] | None = None) -> 'CacheKey':
        return cls(QueryKind.LATEST, currencies=normalize_codes(currencies))

    @classmethod
    def for_date(cls, day: date, currencies: Iterable[str] | None = None) -> 'CacheKey':
        return cls(QueryKind.DATE, on=day, currencies=normalize_codes(currencies))

    @classmethod
    def timeframe(cls, start: date, end: date, currencies: Iterable[str] | None = None) -> 'CacheKey':
        return cls(QueryKind.TIMEFRAME, on=start, end=end, currencies=normalize_codes(currencies))

    @classmethod
    def symbols(cls) -> 'CacheKey':
        return cls(QueryKind.SYMBOLS)

    def widened(self) -> 'CacheKey':
        """The same query shape over all currencies."""
        return replace(self, currencies=None)

    @property
    def storage_key(self) -> str:
        subset = ','.join(self.currencies) if self.currencies else 'all'
        if self.kind is QueryKind.DATE:
            return f'date:{self.on.isoformat()}:{subset}'
        if self.kind is QueryKind.TIMEFRAME:
            return f'timeframe:{self.on.isoformat()}..{self.end.isoformat()}:{subset}'
        return f'{self.kind.value}:{subset}'


@dataclass
class CacheEntry:
    payload: CachePayload
    tier: CacheTier
    inserted_at: datetime
    last_accessed_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.payload.fetched_at


@dataclass(frozen=True)
class CacheLookup:
    """A cache hit plus how old it is; staleness policy is the caller's call."""

    entry: CacheEntry
    age: timedelta

    @property
    def payload(self) -> CachePayload:
        return self.entry.payload


class BreakerState(Enum):
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


class BreakerVerdict(Enum):
    ALLOW = 'allow'
    ALLOW_AS_PROBE = 'allow_as_probe'
    DENY = 'deny'


@dataclass(frozen=True)
class BreakerDecision:
    verdict: BreakerVerdict
    retry_after: datetime | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict is not BreakerVerdict.DENY

    @property
    def is_probe(self) -> bool:
        return self.verdict is BreakerVerdict.ALLOW_AS_PROBE


@dataclass(frozen=True)
class TimeframeRates:
    base: str
    start: date
    end: date
    rates_by_date: dict[date, dict[str, float]]
    fetched_at: datetime
    provider: str | None = None
    source: str | None = None


@dataclass(frozen=True)
class ConversionOutcome:
    amount: float
    from_code: str
    to_code: str
    result: float
    rate: float
    provenance: Provenance
    is_estimated: bool = False
    date_used: date | None = None
    as_of: datetime | None = None
