import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from application.services.circuit_breaker import CircuitBreaker
from domain.exceptions.fx import (
    AuthRequired,
    CircuitOpenError,
    CurrencyNotFound,
    DecodingError,
    FXError,
    HTTPError,
    NetworkError,
    NoDataForDate,
    RateLimitedError,
)
from domain.models.rates import (
    ConversionOutcome,
    Provenance,
    RateSnapshot,
    SymbolTable,
    TimeframeRates,
    normalize_codes,
)
from infrastructure.monitoring.logger import get_api_logger
from infrastructure.providers.coalescer import RequestCoalescer
from infrastructure.providers.schemas import (
    APIErrorEnvelope,
    ConvertResponse,
    RatesResponse,
    SymbolsResponse,
    TimeframeResponse,
)
from infrastructure.security.token_store import SecureTokenStore

logger = get_api_logger()

T = TypeVar('T')
M = TypeVar('M', bound=BaseModel)

UNSUPPORTED_CURRENCY_CODES = {'UNSUPPORTED_CURRENCY', 'CURRENCY_NOT_FOUND', 'INVALID_CURRENCY'}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, NetworkError):
        return True
    return isinstance(error, HTTPError) and error.is_transient


class FinyvoRateClient:
    """Client for the FinyvoRate FX API.

    Every capability except ``health`` needs a bearer token, passes through the
    circuit breaker and shares in-flight requests with identical parameters.
    """

    USER_AGENT = 'finyvo-fx/0.1.0'

    def __init__(
        self,
        base_url: str,
        token_store: SecureTokenStore,
        breaker: CircuitBreaker,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        retry_max_attempts: int = 1,
        retry_max_delay: float = 8.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.base_url = base_url.rstrip('/')
        self.token_store = token_store
        self.breaker = breaker
        self.timeout = timeout
        self.retry_max_attempts = max(retry_max_attempts, 1)
        self.retry_max_delay = retry_max_delay
        self.clock = clock
        self.coalescer = RequestCoalescer()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={'accept': 'application/json', 'user-agent': self.USER_AGENT},
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )

    @property
    def name(self) -> str:
        return 'finyvo'

    # Capabilities

    async def health(self) -> bool:
        """Unauthenticated liveness probe; bypasses the breaker."""
        try:
            await self._send('/health', None, token=None)
            return True
        except FXError as e:
            logger.warning(f'FX health check failed: {e}')
            return False

    async def latest(self, currencies: list[str] | None = None) -> RateSnapshot:
        params = self._currency_params(currencies)
        return await self._call(
            'latest', '/fx/latest', params,
            lambda data, request_id: self._snapshot(self._decode(RatesResponse, data, request_id), None),
        )

    async def for_date(self, day: date, currencies: list[str] | None = None) -> RateSnapshot:
        params = self._currency_params(currencies)
        return await self._call(
            'date', f'/fx/date/{day.isoformat()}', params,
            lambda data, request_id: self._snapshot(self._decode(RatesResponse, data, request_id), day),
        )

    async def timeframe(self, start: date, end: date, currencies: list[str] | None = None) -> TimeframeRates:
        params = {'start': start.isoformat(), 'end': end.isoformat()}
        params.update(self._currency_params(currencies) or {})
        return await self._call(
            'timeframe', '/fx/timeframe', params,
            lambda data, request_id: self._timeframe(self._decode(TimeframeResponse, data, request_id)),
        )

    async def convert(
        self, amount: float, from_currency: str, to_currency: str, day: date | None = None
    ) -> ConversionOutcome:
        params = {
            'from': from_currency.upper(),
            'to': to_currency.upper(),
            'amount': repr(float(amount)),
        }
        if day is not None:
            params['date'] = day.isoformat()
        return await self._call(
            'convert', '/fx/convert', params,
            lambda data, request_id: self._conversion(self._decode(ConvertResponse, data, request_id)),
        )

    async def symbols(self) -> SymbolTable:
        return await self._call(
            'symbols', '/fx/symbols', None,
            lambda data, request_id: SymbolTable(
                symbols={code.upper(): name for code, name in self._decode(SymbolsResponse, data, request_id).symbols.items()},
                fetched_at=self.clock(),
            ),
        )

    # Request pipeline

    async def _call(
        self,
        capability: str,
        path: str,
        params: dict[str, str] | None,
        parse: Callable[[Any, str | None], T],
    ) -> T:
        token = self.token_store.get()
        if not token:
            raise AuthRequired()

        signature = (capability, path, tuple(sorted((params or {}).items())))
        return await self.coalescer.run(
            signature, lambda: self._guarded(capability, path, params, parse, token)
        )

    async def _guarded(
        self,
        capability: str,
        path: str,
        params: dict[str, str] | None,
        parse: Callable[[Any, str | None], T],
        token: str,
    ) -> T:
        decision = await self.breaker.allow_request()
        if not decision.allowed:
            logger.info(f'Circuit open; skipping {capability} until {decision.retry_after.isoformat()}')
            raise CircuitOpenError(decision.retry_after)

        try:
            data, request_id = await self._send_with_retry(path, params, token)
            result = parse(data, request_id)
        except FXError:
            await self.breaker.record_failure(is_probe=decision.is_probe)
            raise
        except BaseException:
            # cancellation or a bug: no verdict on the provider, but the probe slot must be freed
            if decision.is_probe:
                await self.breaker.abandon_probe()
            raise

        await self.breaker.record_success(is_probe=decision.is_probe)
        return result

    async def _send_with_retry(
        self, path: str, params: dict[str, str] | None, token: str
    ) -> tuple[Any, str | None]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_max_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.retry_max_delay),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(path, params, token)

    async def _send(
        self, path: str, params: dict[str, str] | None, token: str | None
    ) -> tuple[Any, str | None]:
        """Common HTTP request handling with timing and error mapping."""
        url = f'{self.base_url}{path}'
        headers = {'authorization': f'Bearer {token}'} if token else None
        start_time = time.time()

        try:
            async with asyncio.timeout(self.timeout):
                response = await self._client.get(url, params=params, headers=headers)
        except (httpx.TimeoutException, TimeoutError) as e:
            self._log_call(path, start_time, success=False, error_message=f'Timeout after {self.timeout}s')
            raise NetworkError(f'Request to {path} timed out after {self.timeout}s', timed_out=True) from e
        except httpx.RequestError as e:
            self._log_call(path, start_time, success=False, error_message=e.__class__.__name__)
            raise NetworkError(f'Request to {path} failed: {e.__class__.__name__}') from e

        request_id = response.headers.get('x-request-id')
        if not response.is_success:
            error = self._map_error(path, params, response, request_id)
            self._log_call(path, start_time, success=False, status=response.status_code, error_message=str(error))
            raise error

        try:
            data = response.json()
        except ValueError as e:
            self._log_call(path, start_time, success=False, status=response.status_code, error_message='invalid json')
            raise DecodingError(f'Response from {path} is not valid JSON', request_id=request_id) from e

        self._log_call(path, start_time, success=True, status=response.status_code)
        return data, request_id

    def _map_error(
        self, path: str, params: dict[str, str] | None, response: httpx.Response, request_id: str | None
    ) -> FXError:
        detail = None
        try:
            detail = APIErrorEnvelope.model_validate(response.json()).error
        except (ValueError, ValidationError):
            pass

        if detail is not None and detail.request_id:
            request_id = detail.request_id
        message = detail.message if detail is not None and detail.message else response.text[:200] or None
        status = response.status_code

        if status == 429:
            retry_after = response.headers.get('retry-after')
            try:
                retry_after_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_seconds = None
            return RateLimitedError(request_id=request_id, message=message, retry_after_seconds=retry_after_seconds)

        if status == 404 and path.startswith('/fx/date/'):
            return NoDataForDate(date.fromisoformat(path.rsplit('/', 1)[-1]), request_id=request_id, message=message)

        if 400 <= status < 500 and detail is not None and (detail.code or '').upper() in UNSUPPORTED_CURRENCY_CODES:
            params = params or {}
            requested = params.get('currencies') or ','.join(filter(None, (params.get('from'), params.get('to'))))
            return CurrencyNotFound(requested or 'unknown', request_id=request_id)

        return HTTPError(status, request_id=request_id, message=message)

    # Decoding

    def _decode(self, model: type[M], data: Any, request_id: str | None) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DecodingError(
                f'Unexpected {model.__name__} payload: {e.error_count()} validation errors',
                request_id=request_id,
            ) from e

    def _snapshot(self, parsed: RatesResponse, requested: date | None) -> RateSnapshot:
        requested = requested or parsed.requested_date
        substituted = requested is not None and parsed.date_used is not None and parsed.date_used != requested
        return RateSnapshot(
            base=parsed.base.upper(),
            rates={code.upper(): rate for code, rate in parsed.rates.items()},
            fetched_at=self.clock(),
            provenance=Provenance.REMOTE,
            is_estimated=bool(parsed.is_estimated) or substituted,
            date_used=parsed.date_used,
            requested_date=requested,
            provider=parsed.provider,
            source=parsed.source,
        )

    def _timeframe(self, parsed: TimeframeResponse) -> TimeframeRates:
        return TimeframeRates(
            base=parsed.base.upper(),
            start=parsed.start,
            end=parsed.end,
            rates_by_date={
                day: {code.upper(): rate for code, rate in rates.items()}
                for day, rates in parsed.rates_by_date.items()
            },
            fetched_at=self.clock(),
            provider=parsed.provider,
            source=parsed.source,
        )

    def _conversion(self, parsed: ConvertResponse) -> ConversionOutcome:
        return ConversionOutcome(
            amount=parsed.amount,
            from_code=parsed.from_code.upper(),
            to_code=parsed.to_code.upper(),
            result=parsed.result,
            rate=parsed.rate,
            provenance=Provenance.REMOTE,
            is_estimated=bool(parsed.is_estimated),
            date_used=parsed.date_used,
            as_of=self.clock(),
        )

    @staticmethod
    def _currency_params(currencies: list[str] | None) -> dict[str, str] | None:
        codes = normalize_codes(currencies)
        return {'currencies': ','.join(codes)} if codes else None

    def _log_call(
        self,
        endpoint: str,
        start_time: float,
        success: bool,
        status: int | None = None,
        error_message: str | None = None,
    ) -> None:
        response_time_ms = int((time.time() - start_time) * 1000)
        logger.log(
            logging.INFO if success else logging.ERROR,
            f"API call to {self.name}{endpoint}: {'SUCCESS' if success else 'FAILED'}",
            extra={'extra_data': {
                'provider': self.name,
                'endpoint': endpoint,
                'success': success,
                'http_status_code': status,
                'response_time_ms': response_time_ms,
                'error_message': error_message,
            }},
        )

    async def close(self) -> None:
        """Cleanly close the HTTP client."""
        await self._client.aclose()
