from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class StoredRecord:
    key: str
    payload: str
    inserted_at: datetime
    last_accessed_at: datetime


class DurableStore(Protocol):
    """Capacity-bounded keyed store backing the durable cache tier.

    ``put`` evicts least-recently-accessed records once ``capacity`` is
    exceeded. Each ``put`` is applied atomically or not at all.
    """

    capacity: int

    async def get(self, key: str) -> StoredRecord | None: ...

    async def put(self, key: str, payload: str, inserted_at: datetime) -> None: ...

    async def touch(self, key: str, accessed_at: datetime) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...
