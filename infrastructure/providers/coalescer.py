import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class _InFlight:
    task: asyncio.Task
    waiters: int = 0


class RequestCoalescer:
    """Shares one in-flight call between concurrent callers with the same signature.

    Every caller awaits the same task and receives the same result or error.
    A caller that is cancelled only detaches itself; the shared task is
    cancelled once its last waiter has gone.
    """

    def __init__(self):
        self._in_flight: dict[Hashable, _InFlight] = {}
        self.coalesced_total = 0

    def __len__(self) -> int:
        return len(self._in_flight)

    def __contains__(self, signature: Hashable) -> bool:
        return signature in self._in_flight

    async def run(self, signature: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        in_flight = self._in_flight.get(signature)
        if in_flight is None:
            in_flight = _InFlight(task=asyncio.ensure_future(factory()))
            self._in_flight[signature] = in_flight
            in_flight.task.add_done_callback(lambda _, sig=signature, entry=in_flight: self._forget(sig, entry))
        else:
            self.coalesced_total += 1
            logger.debug(f'Coalesced request {signature}')

        in_flight.waiters += 1
        try:
            return await asyncio.shield(in_flight.task)
        except asyncio.CancelledError:
            if not in_flight.task.done() and in_flight.waiters == 1:
                # later callers must start a new task rather than join the dying one
                if self._in_flight.get(signature) is in_flight:
                    del self._in_flight[signature]
                in_flight.task.cancel()
            raise
        finally:
            in_flight.waiters -= 1

    def _forget(self, signature: Hashable, entry: _InFlight) -> None:
        if self._in_flight.get(signature) is entry:
            del self._in_flight[signature]
        if not entry.task.cancelled() and entry.task.exception() is not None and entry.waiters == 0:
            # nobody left to observe the error
            logger.debug(f'In-flight request {signature} failed after all callers left')
