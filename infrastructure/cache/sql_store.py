from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update

from infrastructure.cache.durable import StoredRecord
from infrastructure.persistence.database import Database
from infrastructure.persistence.models.cache import CachedPayloadDB


def _aware(value: datetime) -> datetime:
	# SQLite hands back naive datetimes even for timezone-aware columns
	return value if value.tzinfo else value.replace(tzinfo=UTC)


class SqlDurableStore:
	"""Durable tier on any SQLAlchemy async engine (SQLite by default)."""

	def __init__(self, db: Database, capacity: int = 1000):
		self.db = db
		self.capacity = capacity

	async def get(self, key: str) -> StoredRecord | None:
		async with self.db.session() as session:
			row = await session.get(CachedPayloadDB, key)
			if row is None:
				return None
			return StoredRecord(
				key=row.key,
				payload=row.payload,
				inserted_at=_aware(row.inserted_at),
				last_accessed_at=_aware(row.last_accessed_at),
			)

	async def put(self, key: str, payload: str, inserted_at: datetime) -> None:
		async with self.db.session() as session:
			row = await session.get(CachedPayloadDB, key)
			if row is None:
				session.add(
					CachedPayloadDB(
						key=key,
						kind=key.split(':', 1)[0],
						payload=payload,
						inserted_at=inserted_at,
						last_accessed_at=inserted_at,
					)
				)
			else:
				row.payload = payload
				row.inserted_at = inserted_at
				row.last_accessed_at = inserted_at
			await session.flush()

			total = (await session.execute(select(func.count(CachedPayloadDB.key)))).scalar_one()
			excess = total - self.capacity
			if excess > 0:
				oldest = (
					await session.execute(
						select(CachedPayloadDB.key)
						.where(CachedPayloadDB.key != key)
						.order_by(CachedPayloadDB.last_accessed_at.asc())
						.limit(excess)
					)
				).scalars().all()
				await session.execute(delete(CachedPayloadDB).where(CachedPayloadDB.key.in_(oldest)))

	async def touch(self, key: str, accessed_at: datetime) -> None:
		async with self.db.session() as session:
			await session.execute(
				update(CachedPayloadDB)
				.where(CachedPayloadDB.key == key)
				.values(last_accessed_at=accessed_at)
			)

	async def delete(self, key: str) -> None:
		async with self.db.session() as session:
			await session.execute(delete(CachedPayloadDB).where(CachedPayloadDB.key == key))

	async def clear(self) -> None:
		async with self.db.session() as session:
			await session.execute(delete(CachedPayloadDB))

	async def count(self) -> int:
		async with self.db.session() as session:
			return (await session.execute(select(func.count(CachedPayloadDB.key)))).scalar_one()

	async def close(self) -> None:
		await self.db.close()
