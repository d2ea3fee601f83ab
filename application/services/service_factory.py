import logging
from datetime import timedelta

from redis.asyncio import Redis

from application.services.circuit_breaker import CircuitBreaker
from application.services.conversion_engine import ConversionEngine
from application.services.freshness import FreshnessPolicy
from application.services.local_conversion import LocalConversionEngine
from config.settings import Settings, get_settings
from infrastructure.cache.durable import DurableStore
from infrastructure.cache.rate_cache import RateCache
from infrastructure.cache.redis_store import RedisDurableStore
from infrastructure.cache.sql_store import SqlDurableStore
from infrastructure.monitoring.logger import configure_logging
from infrastructure.persistence.database import Database
from infrastructure.providers.finyvo import FinyvoRateClient
from infrastructure.security.token_store import FileTokenStore, InMemoryTokenStore, SecureTokenStore

logger = logging.getLogger(__name__)


class FXServiceFactory:
	"""Builds and wires every FX component from ``Settings``.

	Usage::

		async with FXServiceFactory() as fx:
			snapshot = await fx.engine.fetch_latest()
	"""

	def __init__(self, settings: Settings | None = None, setup_logging: bool = False):
		self.settings = settings or get_settings()
		if setup_logging:
			configure_logging(self.settings)

		self.db: Database | None = None
		self.redis_client: Redis | None = None

		self.token_store = self._create_token_store()
		self.durable = self._create_durable_store()
		self.cache = RateCache(durable=self.durable, fast_capacity=self.settings.FAST_CACHE_CAPACITY)
		self.breaker = CircuitBreaker(
			provider_name='finyvo',
			failure_threshold=self.settings.CB_FAILURE_THRESHOLD,
			cooldown=timedelta(seconds=self.settings.CB_COOLDOWN_SECONDS),
			backoff_factor=self.settings.CB_BACKOFF_FACTOR,
			max_cooldown=timedelta(seconds=self.settings.CB_MAX_COOLDOWN_SECONDS),
		)
		self.client = FinyvoRateClient(
			base_url=self.settings.API_BASE_URL,
			token_store=self.token_store,
			breaker=self.breaker,
			timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
			retry_max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
			retry_max_delay=self.settings.RETRY_MAX_DELAY_SECONDS,
		)
		self.engine = ConversionEngine(
			client=self.client,
			cache=self.cache,
			breaker=self.breaker,
			token_store=self.token_store,
			freshness=FreshnessPolicy.from_settings(self.settings),
			timeframe_max_days=self.settings.TIMEFRAME_MAX_DAYS,
		)
		self.local = LocalConversionEngine(self.cache)

	def _create_token_store(self) -> SecureTokenStore:
		if self.settings.TOKEN_FILE:
			return FileTokenStore(self.settings.TOKEN_FILE)
		return InMemoryTokenStore()

	def _create_durable_store(self) -> DurableStore:
		if self.settings.CACHE_BACKEND == 'redis':
			self.redis_client = Redis.from_url(self.settings.REDIS_URL, decode_responses=True)
			return RedisDurableStore(self.redis_client, capacity=self.settings.DURABLE_CACHE_CAPACITY)

		self.db = Database(self.settings.DATABASE_URL)
		return SqlDurableStore(self.db, capacity=self.settings.DURABLE_CACHE_CAPACITY)

	async def start(self) -> 'FXServiceFactory':
		logger.info(f'Starting FX services ({self.settings.CACHE_BACKEND} durable cache)...')
		if self.db is not None:
			await self.db.create_schema()
		if self.redis_client is not None:
			await self.redis_client.ping()

		if self.settings.API_TOKEN and not self.token_store.get():
			self.token_store.set(self.settings.API_TOKEN)
			logger.info('FX API token installed from settings')

		logger.info('FX services started')
		return self

	async def close(self) -> None:
		logger.info('Closing FX services...')
		await self.client.close()
		await self.cache.close()
		logger.info('FX services closed')

	async def __aenter__(self) -> 'FXServiceFactory':
		return await self.start()

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()
