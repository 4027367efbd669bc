"""Browser-free tests for RenderContextPool slot handling and browser retirement."""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from evaluation import PoolExhausted, RenderContextPool, RenderOptions

OPTIONS = RenderOptions(width=10, height=10)


class _Context:
    def __init__(self, fail_close: bool = False):
        self.fail_close = fail_close
        self.closed = False

    async def close(self):
        if self.fail_close:
            raise PlaywrightError("Target page, context or browser has been closed")
        self.closed = True


class _Browser:
    """Stands in for a launched Chromium; the pool only needs these calls."""

    def __init__(self):
        self.closed = False
        self.contexts: list[_Context] = []
        self.fail_next_close = False

    def is_connected(self) -> bool:
        return not self.closed

    async def new_context(self, **kwargs):
        context = _Context(fail_close=self.fail_next_close)
        self.fail_next_close = False
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


def _pool(browser: _Browser, **kwargs) -> RenderContextPool:
    pool = RenderContextPool(**kwargs)
    pool._browser = browser
    return pool


@pytest.mark.anyio
async def test_acquire_raises_pool_exhausted_when_slots_are_held():
    pool = RenderContextPool(max_contexts=1, acquire_timeout_sec=0.05)
    await pool._semaphore.acquire()

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(PoolExhausted):
        async with pool.acquire(OPTIONS):
            pass

    assert loop.time() - started < 1
    assert PoolExhausted.retryable is True


@pytest.mark.anyio
async def test_acquire_waits_for_a_free_slot():
    pool = _pool(_Browser(), max_contexts=1, acquire_timeout_sec=2)
    order: list[str] = []

    async def hold():
        async with pool.acquire(OPTIONS):
            order.append("first in")
            await asyncio.sleep(0.1)
            order.append("first out")

    async def wait_then_use():
        await asyncio.sleep(0.01)
        async with pool.acquire(OPTIONS):
            order.append("second in")

    await asyncio.gather(hold(), wait_then_use())

    assert order == ["first in", "first out", "second in"]


@pytest.mark.anyio
async def test_contexts_are_fresh_and_closed_after_use():
    browser = _Browser()
    pool = _pool(browser, max_contexts=2)

    async with pool.acquire(OPTIONS) as first:
        pass
    async with pool.acquire(OPTIONS) as second:
        pass

    assert first is not second
    assert all(context.closed for context in browser.contexts)
    assert browser.closed is False


@pytest.mark.anyio
async def test_stuck_context_retires_browser_after_others_release():
    browser = _Browser()
    pool = _pool(browser, max_contexts=2, acquire_timeout_sec=1)

    async with pool.acquire(OPTIONS) as healthy:
        browser.fail_next_close = True
        async with pool.acquire(OPTIONS):
            pass

        # Another evaluation is still rendering in this browser.
        assert browser.closed is False
        assert healthy.closed is False
        assert pool._browser is None

    assert browser.closed is True
    assert pool._retired == set()
    assert pool._in_use == {}


@pytest.mark.anyio
async def test_close_closes_retired_browsers():
    browser = _Browser()
    pool = _pool(browser, max_contexts=2)
    pool._in_use[browser] = 1
    await pool._retire(browser)

    await pool.close()

    assert browser.closed is True
    assert pool._retired == set()
