from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
	pass


class CachedPayloadDB(Base):
	__tablename__ = 'fx_cache_entries'

	key: Mapped[str] = mapped_column(String(255), primary_key=True)
	kind: Mapped[str] = mapped_column(String(20), nullable=False)
	payload: Mapped[str] = mapped_column(Text, nullable=False)
	inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
	last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

	__table_args__ = (
		Index('idx_fx_cache_last_accessed', 'last_accessed_at'),
		Index('idx_fx_cache_kind', 'kind'),
	)
