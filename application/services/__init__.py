from .circuit_breaker import CircuitBreaker
from .freshness import FreshnessPolicy
from .conversion_engine import ConversionEngine
from .local_conversion import LocalConversionEngine

__all__ = ['CircuitBreaker', 'FreshnessPolicy', 'ConversionEngine', 'LocalConversionEngine']
