from datetime import date, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Response(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class RatesResponse(_Response):
    """`GET /fx/latest` and `GET /fx/date/:date`"""

    base: str
    requested_date: date | None = Field(None, validation_alias=AliasChoices('requested_date', 'requestedDate'))
    date_used: date | None = Field(None, validation_alias=AliasChoices('date_used', 'dateUsed'))
    rates: dict[str, float]
    provider: str | None = None
    fetched_at: datetime | None = Field(None, validation_alias=AliasChoices('fetched_at', 'fetchedAt'))
    is_estimated: bool | None = Field(None, validation_alias=AliasChoices('is_estimated', 'isEstimated'))
    source: str | None = None


class ConvertResponse(_Response):
    """`GET /fx/convert`"""

    from_code: str = Field(validation_alias=AliasChoices('from', 'from_code'))
    to_code: str = Field(validation_alias=AliasChoices('to', 'to_code'))
    amount: float
    rate: float
    result: float
    base: str | None = None
    requested_date: date | None = Field(None, validation_alias=AliasChoices('requested_date', 'requestedDate'))
    date_used: date | None = Field(None, validation_alias=AliasChoices('date_used', 'dateUsed'))
    provider: str | None = None
    fetched_at: datetime | None = Field(None, validation_alias=AliasChoices('fetched_at', 'fetchedAt'))
    is_estimated: bool | None = Field(None, validation_alias=AliasChoices('is_estimated', 'isEstimated'))
    source: str | None = None


class TimeframeResponse(_Response):
    """`GET /fx/timeframe`"""

    base: str
    start: date
    end: date
    rates_by_date: dict[date, dict[str, float]] = Field(
        validation_alias=AliasChoices('rates_by_date', 'ratesByDate')
    )
    provider: str | None = None
    fetched_at: datetime | None = Field(None, validation_alias=AliasChoices('fetched_at', 'fetchedAt'))
    source: str | None = None


class SymbolsResponse(_Response):
    """`GET /fx/symbols`"""

    symbols: dict[str, str]
    provider: str | None = None
    fetched_at: datetime | None = Field(None, validation_alias=AliasChoices('fetched_at', 'fetchedAt'))
    source: str | None = None


class APIErrorDetail(_Response):
    code: str | None = None
    message: str | None = None
    request_id: str | None = Field(None, validation_alias=AliasChoices('request_id', 'requestId'))


class APIErrorEnvelope(_Response):
    """`{"error": {"code": "RATE_LIMIT", "message": "...", "request_id": "..."}}`"""

    error: APIErrorDetail
