import dns.edns
import dns.message
import pytest

from dnschain.chain import ChainNode, ChainWalker
from dnschain.core import BQ, Executable, QueryContext, get_exec_quick_setup
from dnschain.forward_edns0opt import EDNS0Forwarder, quick_setup

WANTED = dns.edns.GenericOption(65001, b"ab")
OTHER = dns.edns.GenericOption(65002, b"cd")


class _Respond(Executable):
    def __init__(self, options=()):
        self.options = list(options)

    async def exec(self, qctx):
        r = dns.message.make_response(qctx.query)
        r.use_edns(0, options=self.options)
        qctx.set_response(r)


def test_quick_setup_parses_codes():
    f = quick_setup(BQ(), "8  65001")
    assert f.codes == {8, 65001}


@pytest.mark.parametrize("bad", ["abc", "65536", "-1"])
def test_quick_setup_rejects_bad_codes(bad):
    with pytest.raises(ValueError):
        quick_setup(BQ(), bad)


def test_registered():
    assert get_exec_quick_setup("forward_edns0opt") is quick_setup


@pytest.mark.asyncio
async def test_forwards_selected_options_both_ways():
    q = dns.message.make_query("example.", "A", use_edns=0, options=[WANTED, OTHER])
    qctx = QueryContext(q)
    f = EDNS0Forwarder([65001])
    walker = ChainWalker([ChainNode(executable=_Respond([OTHER, WANTED]))])
    await f.exec(qctx, walker)
    assert qctx.query_opt() == [WANTED]
    assert qctx.response_opt() == [WANTED]


@pytest.mark.asyncio
async def test_client_without_edns():
    qctx = QueryContext(dns.message.make_query("example.", "A"))
    f = EDNS0Forwarder([65001])
    walker = ChainWalker([ChainNode(executable=_Respond([WANTED]))])
    await f.exec(qctx, walker)
    assert qctx.query_opt() == []
    assert qctx.response_opt() is None
    assert qctx.response is not None


@pytest.mark.asyncio
async def test_error_from_chain_propagates():
    class _Fail(Executable):
        async def exec(self, qctx):
            raise RuntimeError("upstream down")

    qctx = QueryContext(dns.message.make_query("example.", "A", use_edns=0, options=[WANTED]))
    f = EDNS0Forwarder([65001])
    with pytest.raises(RuntimeError, match="upstream down"):
        await f.exec(qctx, ChainWalker([ChainNode(executable=_Fail())]))
    assert qctx.query_opt() == [WANTED]