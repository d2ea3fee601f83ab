import logging

from domain.models.rates import ConversionOutcome
from infrastructure.cache.rate_cache import RateCache

logger = logging.getLogger(__name__)


class LocalConversionEngine:
    """Best-effort conversion for code that cannot await.

    Uses only the newest ``latest`` snapshot resident in memory. Never touches
    the network or the durable tier and never raises; ``None`` means no answer.
    """

    def __init__(self, cache: RateCache):
        self.cache = cache

    def convert_locally_if_possible(self, amount: float, from_currency: str, to_currency: str) -> ConversionOutcome | None:
        try:
            snapshot = self.cache.latest_resident()
            if snapshot is None:
                return None

            from_code = from_currency.strip().upper()
            to_code = to_currency.strip().upper()
            if not (snapshot.contains(from_code) and snapshot.contains(to_code)):
                return None

            rate = snapshot.cross_rate(from_code, to_code)
            if rate is None:
                return None

            return ConversionOutcome(
                amount=amount,
                from_code=from_code,
                to_code=to_code,
                result=amount * rate,
                rate=rate,
                provenance=snapshot.provenance,
                is_estimated=snapshot.is_estimated,
                date_used=snapshot.date_used,
                as_of=snapshot.fetched_at,
            )
        except (AttributeError, TypeError, ArithmeticError) as e:
            logger.debug(f'Local conversion {from_currency}->{to_currency} unavailable: {e}')
            return None
