from .coalescer import RequestCoalescer
from .finyvo import FinyvoRateClient

__all__ = ['RequestCoalescer', 'FinyvoRateClient']
