import asyncio

import pytest

from infrastructure.providers.coalescer import RequestCoalescer


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_concurrent_identical_calls_share_one_invocation():
    coalescer = RequestCoalescer()
    release = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return {'EUR': 0.92}

    tasks = [asyncio.create_task(coalescer.run(('latest', ()), fetch)) for _ in range(5)]
    await settle()
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(result is results[0] for result in results)
    assert coalescer.coalesced_total == 4
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_distinct_signatures_run_separately():
    coalescer = RequestCoalescer()
    calls = []

    async def fetch(name):
        calls.append(name)
        return name

    results = await asyncio.gather(
        coalescer.run('latest', lambda: fetch('latest')),
        coalescer.run('symbols', lambda: fetch('symbols')),
    )

    assert results == ['latest', 'symbols']
    assert sorted(calls) == ['latest', 'symbols']


@pytest.mark.asyncio
async def test_error_reaches_every_caller():
    coalescer = RequestCoalescer()
    release = asyncio.Event()

    async def fetch():
        await release.wait()
        raise ConnectionError('provider down')

    tasks = [asyncio.create_task(coalescer.run('latest', fetch)) for _ in range(3)]
    await settle()
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, ConnectionError) for result in results)
    assert results[0] is results[1]


@pytest.mark.asyncio
async def test_sequential_calls_are_not_coalesced():
    coalescer = RequestCoalescer()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        return calls

    assert await coalescer.run('latest', fetch) == 1
    assert await coalescer.run('latest', fetch) == 2


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_request():
    coalescer = RequestCoalescer()
    release = asyncio.Event()

    async def fetch():
        await release.wait()
        return 'rates'

    leaving = asyncio.create_task(coalescer.run('latest', fetch))
    staying = asyncio.create_task(coalescer.run('latest', fetch))
    await settle()

    leaving.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leaving
    release.set()

    assert await staying == 'rates'


@pytest.mark.asyncio
async def test_last_caller_leaving_cancels_shared_request():
    coalescer = RequestCoalescer()
    started = asyncio.Event()
    cancelled = False

    async def fetch():
        nonlocal cancelled
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled = True
            raise

    caller = asyncio.create_task(coalescer.run('latest', fetch))
    await started.wait()

    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    await settle()

    assert cancelled
    assert 'latest' not in coalescer


@pytest.mark.asyncio
async def test_caller_arriving_after_last_cancellation_starts_fresh_request():
    coalescer = RequestCoalescer()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.Event().wait()
        return 'rates'

    first = asyncio.create_task(coalescer.run('latest', fetch))
    await settle()

    first.cancel()
    second = asyncio.create_task(coalescer.run('latest', fetch))

    with pytest.raises(asyncio.CancelledError):
        await first
    assert await second == 'rates'
    assert calls == 2
