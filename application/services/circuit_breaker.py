import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from domain.models.rates import BreakerDecision, BreakerState, BreakerVerdict

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CircuitBreaker:
    """Circuit breaker guarding the FX provider.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures. Once the
    cooldown has elapsed a single probe is let through (HALF_OPEN); its
    success closes the circuit, its failure re-opens it with the cooldown
    multiplied by ``backoff_factor`` up to ``max_cooldown``.
    """

    def __init__(
            self,
            provider_name: str = 'finyvo',
            failure_threshold: int = 5,
            cooldown: timedelta = timedelta(seconds=60),
            backoff_factor: float = 2.0,
            max_cooldown: timedelta = timedelta(minutes=15),
            probe_retry_hint: timedelta = timedelta(seconds=1),
            clock: Callable[[], datetime] = utc_now,
    ):
        if failure_threshold < 1:
            raise ValueError('failure_threshold must be at least 1')
        self.provider_name = provider_name

        # Circuit breaker configuration
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown
        self.backoff_factor = backoff_factor
        self.max_cooldown = max_cooldown
        self.probe_retry_hint = probe_retry_hint
        self.clock = clock

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._cooldown = cooldown
        self._open_until: datetime | None = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    @property
    def open_until(self) -> datetime | None:
        return self._open_until

    async def allow_request(self) -> BreakerDecision:
        """Gate one outbound call."""
        async with self._lock:
            now = self.clock()

            if self._state is BreakerState.OPEN:
                if now < self._open_until:
                    return BreakerDecision(BreakerVerdict.DENY, retry_after=self._open_until)
                self._transition(BreakerState.HALF_OPEN, 'cooldown_elapsed')

            if self._state is BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    return BreakerDecision(BreakerVerdict.DENY, retry_after=now + self.probe_retry_hint)
                self._probe_in_flight = True
                logger.debug(f'Circuit breaker {self.provider_name}: admitting recovery probe')
                return BreakerDecision(BreakerVerdict.ALLOW_AS_PROBE)

            return BreakerDecision(BreakerVerdict.ALLOW)

    async def record_success(self, is_probe: bool = False) -> None:
        async with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                # only the probe decides recovery
                if is_probe:
                    self._close('recovery_successful')
            elif self._state is BreakerState.CLOSED and self._failure_count:
                # Reset failure count on successful call in normal operation
                self._failure_count = 0

    async def record_failure(self, is_probe: bool = False) -> None:
        async with self._lock:
            now = self.clock()

            if self._state is BreakerState.HALF_OPEN:
                if is_probe:
                    self._cooldown = min(self._cooldown * self.backoff_factor, self.max_cooldown)
                    self._open(now, 'failure_during_recovery')
                return

            if self._state is BreakerState.OPEN:
                # late failure from a call admitted before the circuit opened
                return

            self._failure_count += 1
            if self._failure_count >= self.failure_threshold:
                self._open(now, f'{self._failure_count}_consecutive_failures')
            else:
                logger.warning(
                    f'API failure for {self.provider_name}: '
                    f'{self._failure_count}/{self.failure_threshold}'
                )

    async def abandon_probe(self) -> None:
        """Release the probe slot when the probe ended without an FX outcome (cancelled or crashed)."""
        async with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._probe_in_flight = False

    async def reset(self) -> None:
        """Manually close the circuit (diagnostics only)."""
        async with self._lock:
            self._close('manual_reset')
        logger.warning(f'Circuit breaker manually closed for {self.provider_name}')

    def _open(self, now: datetime, reason: str) -> None:
        self._open_until = now + self._cooldown
        self._probe_in_flight = False
        self._transition(BreakerState.OPEN, reason)

    def _close(self, reason: str) -> None:
        self._failure_count = 0
        self._cooldown = self.base_cooldown
        self._open_until = None
        self._probe_in_flight = False
        self._transition(BreakerState.CLOSED, reason)

    def _transition(self, new_state: BreakerState, reason: str) -> None:
        old_state = self._state
        self._state = new_state
        level = logging.WARNING if new_state is BreakerState.OPEN else logging.INFO
        logger.log(
            level,
            f'Circuit breaker state change: {old_state.value} -> {new_state.value} ({reason})',
            extra={'extra_data': {
                'provider': self.provider_name,
                'old_state': old_state.value,
                'new_state': new_state.value,
                'failure_count': self._failure_count,
                'cooldown_seconds': self._cooldown.total_seconds(),
                'open_until': self._open_until,
                'reason': reason,
            }},
        )

    async def get_status(self) -> dict:
        """Current circuit breaker status for monitoring"""
        async with self._lock:
            return {
                'provider_name': self.provider_name,
                'state': self._state.value,
                'status': 'healthy' if self._state is BreakerState.CLOSED else 'unhealthy',
                'failure_count': self._failure_count,
                'failure_threshold': self.failure_threshold,
                'cooldown_seconds': self._cooldown.total_seconds(),
                'open_until': self._open_until.isoformat() if self._open_until else None,
                'probe_in_flight': self._probe_in_flight,
            }
