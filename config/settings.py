from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
	API_BASE_URL: str = 'https://api.finyvo.com'
	API_TOKEN: str | None = None
	TOKEN_FILE: str | None = None

	REQUEST_TIMEOUT_SECONDS: float = 10.0
	RETRY_MAX_ATTEMPTS: int = 1
	RETRY_MAX_DELAY_SECONDS: float = 8.0

	# Circuit breaker
	CB_FAILURE_THRESHOLD: int = 5
	CB_COOLDOWN_SECONDS: float = 60.0
	CB_BACKOFF_FACTOR: float = 2.0
	CB_MAX_COOLDOWN_SECONDS: float = 900.0

	# Freshness windows
	LATEST_TTL_SECONDS: float = 30 * 60
	ESTIMATED_HISTORICAL_TTL_SECONDS: float = 5 * 60
	SYMBOLS_TTL_SECONDS: float = 7 * 24 * 60 * 60

	# Cache tiers
	FAST_CACHE_CAPACITY: int = 256
	DURABLE_CACHE_CAPACITY: int = 1000
	CACHE_BACKEND: Literal['sql', 'redis'] = 'sql'
	DATABASE_URL: str = 'sqlite+aiosqlite:///./fx_cache.db'
	REDIS_URL: str = 'redis://localhost:6379'

	TIMEFRAME_MAX_DAYS: int = 366

	# Logging
	LOG_LEVEL: str = 'INFO'
	LOG_DIRECTORY: str = 'logs'
	LOG_TO_FILE: bool = False

	model_config = SettingsConfigDict(
		env_prefix='FX_', env_file='.env', case_sensitive=False, extra='ignore'
	)


@lru_cache
def get_settings() -> Settings:
	return Settings()
