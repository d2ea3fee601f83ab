from datetime import date, datetime


class FXError(Exception):
    """Base class for every error raised by the FX rate client."""

    request_id: str | None = None


class AuthRequired(FXError):
    def __init__(self, message: str = 'No FX API token configured'):
        super().__init__(message)


class NetworkError(FXError):
    """Connection failure or timeout before a response was received."""

    def __init__(self, message: str, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class HTTPError(FXError):
    def __init__(self, status: int, request_id: str | None = None, message: str | None = None):
        self.status = status
        self.request_id = request_id
        self.message = message
        detail = f'HTTP {status}'
        if message:
            detail += f': {message}'
        if request_id:
            detail += f' (request id {request_id})'
        super().__init__(detail)

    @property
    def is_transient(self) -> bool:
        return self.status == 429 or self.status >= 500


class RateLimitedError(HTTPError):
    def __init__(
        self,
        request_id: str | None = None,
        message: str | None = None,
        retry_after_seconds: float | None = None,
    ):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(429, request_id=request_id, message=message or 'Too many requests')


class NoDataForDate(HTTPError):
    def __init__(self, day: date, request_id: str | None = None, message: str | None = None):
        self.day = day
        super().__init__(404, request_id=request_id, message=message or f'No rates available for {day.isoformat()}')


class DecodingError(FXError):
    def __init__(self, message: str, request_id: str | None = None):
        self.request_id = request_id
        super().__init__(message)


class CircuitOpenError(FXError):
    """Raised without any network attempt while the breaker is open."""

    def __init__(self, retry_after: datetime):
        self.retry_after = retry_after
        super().__init__(f'FX provider circuit open; retry after {retry_after.isoformat()}')


class CurrencyNotFound(FXError):
    def __init__(self, code: str, request_id: str | None = None):
        self.code = code
        self.request_id = request_id
        super().__init__(f'Currency {code} is not available')


class CacheError(FXError):
    pass
