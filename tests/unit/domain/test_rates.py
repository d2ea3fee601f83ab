# nosec B101


from datetime import date

import pytest

from domain.exceptions.fx import CacheError
from domain.models.rates import (
    CacheKey,
    Provenance,
    QueryKind,
    RateSnapshot,
    SymbolTable,
    normalize_codes,
    payload_from_dict,
)


def test_base_converts_to_itself_at_rate_one(usd_snapshot):
    assert usd_snapshot.rate_for('USD') == 1.0
    assert usd_snapshot.cross_rate('USD', 'USD') == 1.0
    assert usd_snapshot.contains('USD')


def test_cross_rate_from_base_reads_rate_directly(usd_snapshot):
    assert 100 * usd_snapshot.cross_rate('USD', 'EUR') == pytest.approx(92.0)


def test_cross_rate_triangulates_through_base(usd_snapshot):
    result = 100 * usd_snapshot.cross_rate('EUR', 'DOP')

    assert result == pytest.approx(6358.70, abs=0.01)


def test_cross_rate_to_base_inverts(usd_snapshot):
    assert usd_snapshot.cross_rate('EUR', 'USD') == pytest.approx(1 / 0.92)


def test_conversion_round_trip_returns_original_amount(usd_snapshot):
    amount = 1234.56
    there = amount * usd_snapshot.cross_rate('EUR', 'DOP')
    back = there * usd_snapshot.cross_rate('DOP', 'EUR')

    assert back == pytest.approx(amount, rel=1e-12)


def test_cross_rate_missing_code_returns_none(usd_snapshot):
    assert usd_snapshot.cross_rate('USD', 'GBP') is None
    assert usd_snapshot.cross_rate('GBP', 'EUR') is None
    assert usd_snapshot.rate_for('GBP') is None


def test_cross_rate_zero_rate_returns_none(clock):
    snapshot = RateSnapshot(base='USD', rates={'XXX': 0.0, 'EUR': 0.9}, fetched_at=clock())

    assert snapshot.cross_rate('XXX', 'EUR') is None


def test_restricted_to_projects_subset(usd_snapshot):
    subset = usd_snapshot.restricted_to(['eur'])

    assert subset.rates == {'EUR': 0.92}
    assert subset.base == 'USD'
    assert usd_snapshot.restricted_to(None) is usd_snapshot


def test_as_fallback_marks_estimated(usd_snapshot):
    fallback = usd_snapshot.as_fallback()

    assert fallback.provenance is Provenance.FALLBACK
    assert fallback.is_estimated is True
    assert fallback.rates == usd_snapshot.rates
    assert usd_snapshot.is_estimated is False


def test_snapshot_serialisation_preserves_fields(clock):
    snapshot = RateSnapshot(
        base='USD',
        rates={'EUR': 0.92},
        fetched_at=clock(),
        is_estimated=True,
        date_used=date(2026, 2, 11),
        requested_date=date(2026, 2, 12),
        provider='finyvo',
    )

    restored = payload_from_dict(snapshot.to_dict())

    assert isinstance(restored, RateSnapshot)
    assert restored.provenance is Provenance.CACHE
    assert restored.fetched_at == snapshot.fetched_at
    assert restored.date_used == date(2026, 2, 11)
    assert restored.requested_date == date(2026, 2, 12)
    assert restored.is_estimated is True
    assert restored.rates == {'EUR': 0.92}


def test_symbol_table_serialisation(clock):
    table = SymbolTable(symbols={'USD': 'US Dollar'}, fetched_at=clock())

    restored = payload_from_dict(table.to_dict())

    assert isinstance(restored, SymbolTable)
    assert restored.symbols == {'USD': 'US Dollar'}


@pytest.mark.parametrize('data', [
    {'type': 'rates', 'base': 'USD'},
    {'type': 'rates', 'base': 'USD', 'rates': {'EUR': 'abc'}, 'fetched_at': '2026-02-12T12:00:00+00:00'},
    {'type': 'unknown'},
    ['not', 'a', 'dict'],
])
def test_invalid_payload_raises_cache_error(data):
    with pytest.raises(CacheError):
        payload_from_dict(data)


def test_normalize_codes_sorts_and_uppercases():
    assert normalize_codes(['usd', ' eur', 'USD']) == ('EUR', 'USD')
    assert normalize_codes([]) is None
    assert normalize_codes(None) is None


def test_cache_key_storage_keys():
    assert CacheKey.latest().storage_key == 'latest:all'
    assert CacheKey.for_date(date(2026, 2, 12), ['usd', 'eur']).storage_key == 'date:2026-02-12:EUR,USD'
    assert (
        CacheKey.timeframe(date(2026, 2, 1), date(2026, 2, 7)).storage_key
        == 'timeframe:2026-02-01..2026-02-07:all'
    )
    assert CacheKey.symbols().storage_key == 'symbols:all'


def test_cache_key_same_currencies_any_order_are_equal():
    assert CacheKey.latest(['USD', 'EUR']) == CacheKey.latest(['eur', 'usd'])


def test_widened_key_drops_currencies():
    key = CacheKey.for_date(date(2026, 2, 12), ['EUR'])

    assert key.widened() == CacheKey.for_date(date(2026, 2, 12))
    assert key.widened().kind is QueryKind.DATE
