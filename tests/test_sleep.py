import asyncio
import time

import dns.message
import pytest

from dnschain.core import BQ, QueryContext, get_exec_quick_setup
from dnschain.sleep import Sleep, quick_setup


def _qctx():
    return QueryContext(dns.message.make_query("example.com.", "A"))


def test_quick_setup_milliseconds():
    assert quick_setup(BQ(), "500").duration == pytest.approx(0.5)
    assert quick_setup(BQ(), "-10").duration < 0
    assert get_exec_quick_setup("sleep") is quick_setup


@pytest.mark.parametrize("bad", ["", "abc", "1.5", "10ms"])
def test_quick_setup_invalid(bad):
    with pytest.raises(ValueError):
        quick_setup(BQ(), bad)


@pytest.mark.asyncio
async def test_exec_waits():
    s = quick_setup(BQ(), "50")
    assert s.duration == pytest.approx(0.05)
    qctx = _qctx()
    start = time.monotonic()
    await s.exec(qctx)
    elapsed = time.monotonic() - start
    assert elapsed >= s.duration * 0.8
    assert qctx.response is None


@pytest.mark.asyncio
async def test_exec_non_positive_returns_immediately():
    negative = Sleep(-1)
    zero = Sleep(0)
    assert negative.duration == -1
    assert zero.duration == 0
    qctx = _qctx()
    start = time.monotonic()
    await negative.exec(qctx)
    await zero.exec(qctx)
    assert time.monotonic() - start < 0.5
    assert qctx.response is None


@pytest.mark.asyncio
async def test_exec_cancellable():
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(Sleep(10).exec(_qctx()), timeout=0.05)