from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from infrastructure.persistence.models.cache import Base


class Database:
    """Async engine for the durable cache table."""

    def __init__(self, db_url: str):
        url = make_url(db_url)
        if url.get_backend_name() == 'sqlite' and url.database not in (None, '', ':memory:'):
            # sqlite does not create missing parent directories
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_async_engine(url)
        self._sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def session(self):
        """One session per transaction: committed on exit, rolled back if the block raises."""
        return self._sessions.begin()

    async def close(self) -> None:
        await self.engine.dispose()
