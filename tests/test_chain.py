from typing import Dict, List, Optional

import dns.message
import dns.rcode
import dns.rdatatype
import pytest

from dnschain.chain import (
    ActionAccept,
    ActionGoto,
    ActionJump,
    ActionReject,
    ActionReturn,
    ChainNode,
    ChainWalker,
    MatchAlwaysFalse,
    MatchAlwaysTrue,
    Sequence,
    to_executable,
)
from dnschain.config import RuleArgs
from dnschain.core import (
    BQ,
    Executable,
    Matcher,
    QueryContext,
    RecursiveExecutable,
    register_exec_quick_setup,
)


class Dummy(Matcher, RecursiveExecutable):
    def __init__(
        self,
        matched: bool = False,
        want_err: Optional[Exception] = None,
        want_r: Optional[dns.message.Message] = None,
        drop_r: bool = False,
        want_return: bool = False,
    ) -> None:
        self.matched = matched
        self.want_err = want_err
        self.want_r = want_r
        self.drop_r = drop_r
        self.want_return = want_return

    async def match(self, qctx):
        if self.want_err is not None:
            raise self.want_err
        return self.matched

    async def exec(self, qctx, walker):
        if self.want_err is not None:
            raise self.want_err
        if self.want_r is not None:
            qctx.set_response(self.want_r)
        if self.drop_r:
            qctx.set_response(None)
        if self.want_return:
            return
        await walker.exec_next(qctx)


class Closable(Executable):
    instances: List["Closable"] = []

    def __init__(self) -> None:
        self.closed = False
        Closable.instances.append(self)

    async def exec(self, qctx):
        qctx.set_mark(7)

    def close(self):
        self.closed = True


register_exec_quick_setup("test_chain_closable", lambda bq, s: Closable())


def prepare_plugins() -> Dict[str, object]:
    return {
        "target": Dummy(want_r=dns.message.Message()),
        "err": Dummy(want_err=RuntimeError("err")),
        "drop": Dummy(drop_r=True),
        "nop": Dummy(),
        "true": Dummy(matched=True),
        "false": Dummy(matched=False),
    }


def rules(*specs):
    out = []
    for spec in specs:
        if isinstance(spec, tuple):
            out.append(RuleArgs(matches=list(spec[0]), exec=spec[1]))
        else:
            out.append(RuleArgs(exec=spec))
    return out


SEQUENCE_CASES = [
    ("exec", rules("$nop", "$target", "return", "$err"), None, "target"),
    (
        "match",
        rules(
            (["$true", "$false", "$err"], "$err"),
            (["$false", "$err"], "$err"),
            (["$true", "$true"], "$target"),
        ),
        None,
        "target",
    ),
    ("goto return", rules("goto seq2", "$err"), rules("$target", "return", "$err"), "target"),
    ("jump return", rules("jump seq2", "$target"), rules("$nop", "return", "$err"), "target"),
    ("jump accept", rules("jump seq2", "$err"), rules("$target", "accept", "$err"), "target"),
    ("jump end", rules("jump seq2", "$target"), rules("$nop"), "target"),
    ("reject", rules("reject", "$err"), None, "reject"),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("name,ra,ra2,expected", SEQUENCE_CASES, ids=[c[0] for c in SEQUENCE_CASES])
async def test_sequence_exec(name, ra, ra2, expected):
    plugins = prepare_plugins()
    bq = BQ(plugins=plugins)
    if ra2:
        plugins["seq2"] = Sequence(bq, ra2)
    seq = Sequence(bq, ra)
    qctx = QueryContext(dns.message.Message())
    await seq.exec(qctx)
    if expected == "target":
        assert qctx.response is plugins["target"].want_r
    else:
        assert qctx.response.rcode() == dns.rcode.REFUSED


@pytest.mark.asyncio
async def test_exec_error_propagates():
    bq = BQ(plugins=prepare_plugins())
    seq = Sequence(bq, rules("$nop", "$err"))
    with pytest.raises(RuntimeError, match="err"):
        await seq.exec(QueryContext(dns.message.Message()))


@pytest.mark.asyncio
async def test_matcher_error_propagates():
    bq = BQ(plugins=prepare_plugins())
    seq = Sequence(bq, rules((["$err"], "$target")))
    qctx = QueryContext(dns.message.Message())
    with pytest.raises(RuntimeError, match="err"):
        await seq.exec(qctx)
    assert qctx.response is None


@pytest.mark.asyncio
async def test_drop_response():
    bq = BQ(plugins=prepare_plugins())
    seq = Sequence(bq, rules("$target", "$drop"))
    qctx = QueryContext(dns.message.Message())
    await seq.exec(qctx)
    assert qctx.response is None


@pytest.mark.asyncio
async def test_reverse_match_and_builtin_matchers():
    plugins = prepare_plugins()
    bq = BQ(plugins=plugins)
    seq = Sequence(bq, rules((["!$false", "_true", "!_false"], "$target")))
    qctx = QueryContext(dns.message.Message())
    await seq.exec(qctx)
    assert qctx.response is plugins["target"].want_r

    seq2 = Sequence(bq, rules((["_false"], "$target")))
    qctx2 = QueryContext(dns.message.Message())
    await seq2.exec(qctx2)
    assert qctx2.response is None


@pytest.mark.asyncio
async def test_reject_default_rcode_and_question():
    q = dns.message.make_query("example.com.", dns.rdatatype.A)
    seq = Sequence(BQ(), rules("reject"))
    qctx = QueryContext(q)
    await seq.exec(qctx)
    r = qctx.response
    assert r.rcode() == dns.rcode.REFUSED
    assert r.id == q.id
    assert [str(x.name) for x in r.question] == ["example.com."]


@pytest.mark.asyncio
async def test_reject_custom_rcode():
    seq = Sequence(BQ(), rules("reject 3"))
    qctx = QueryContext(dns.message.make_query("example.com.", dns.rdatatype.A))
    await seq.exec(qctx)
    assert qctx.response.rcode() == dns.rcode.NXDOMAIN


@pytest.mark.parametrize("arg", ["4096", "-1", "abc"])
def test_reject_invalid_rcode(arg):
    with pytest.raises(ValueError, match="invalid rcode"):
        Sequence(BQ(), rules(f"reject {arg}"))


@pytest.mark.parametrize(
    "spec,message",
    [
        ("jump missing", "can not find jump target missing"),
        ("goto missing", "can not find goto target missing"),
        ("$missing", "can not find executable missing"),
        ("no_such_type", "invalid executable type no_such_type"),
        ("", "missing args"),
    ],
)
def test_build_errors(spec, message):
    with pytest.raises(ValueError, match=message):
        Sequence(BQ(plugins=prepare_plugins()), rules(spec))


def test_not_executable_plugin():
    with pytest.raises(ValueError, match="not executable"):
        Sequence(BQ(plugins={"x": object()}), rules("$x"))


def test_unknown_matcher():
    with pytest.raises(ValueError, match="can not find matcher nop2"):
        Sequence(BQ(plugins=prepare_plugins()), rules((["$nop2"], "$nop")))
    with pytest.raises(ValueError, match="invalid matcher type nothing"):
        Sequence(BQ(plugins=prepare_plugins()), rules((["nothing"], "$nop")))


@pytest.mark.asyncio
async def test_close_closes_anonymous_plugins():
    Closable.instances.clear()
    seq = Sequence(BQ(), rules("test_chain_closable", "test_chain_closable"))
    qctx = QueryContext(dns.message.Message())
    await seq.exec(qctx)
    assert qctx.has_mark(7)
    assert [c.closed for c in Closable.instances] == [False, False]
    seq.close()
    assert [c.closed for c in Closable.instances] == [True, True]


def test_failed_build_closes_created_plugins():
    Closable.instances.clear()
    with pytest.raises(ValueError):
        Sequence(BQ(), rules("test_chain_closable", "$missing"))
    assert [c.closed for c in Closable.instances] == [True]


@pytest.mark.asyncio
async def test_walker_runs_from_position():
    plugins = prepare_plugins()
    chain = [
        ChainNode(recursive=plugins["err"]),
        ChainNode(recursive=plugins["target"]),
    ]
    qctx = QueryContext(dns.message.Message())
    await ChainWalker(chain, None, 1).exec_next(qctx)
    assert qctx.response is plugins["target"].want_r


@pytest.mark.asyncio
async def test_executable_preferred_and_node_without_exec_raises():
    qctx = QueryContext(dns.message.Message())
    await ChainWalker([ChainNode(executable=Closable(), recursive=Dummy(want_err=RuntimeError("x")))]).exec_next(qctx)
    assert qctx.has_mark(7)
    with pytest.raises(RuntimeError, match="cannot be executed"):
        await ChainWalker([ChainNode()]).exec_next(QueryContext(dns.message.Message()))


@pytest.mark.asyncio
async def test_actions_directly():
    target = Dummy(want_r=dns.message.Message())
    after = ChainWalker([ChainNode(recursive=target)])

    qctx = QueryContext(dns.message.Message())
    await ActionReturn().exec(qctx, ChainWalker([], after))
    assert qctx.response is target.want_r

    qctx = QueryContext(dns.message.Message())
    await ActionAccept().exec(qctx, after)
    assert qctx.response is None

    qctx = QueryContext(dns.message.Message())
    await ActionJump([ChainNode(recursive=Dummy())]).exec(qctx, after)
    assert qctx.response is target.want_r

    qctx = QueryContext(dns.message.Message())
    await ActionGoto([ChainNode(recursive=Dummy())]).exec(qctx, after)
    assert qctx.response is None


@pytest.mark.asyncio
async def test_action_reject_direct():
    qctx = QueryContext(dns.message.Message())
    await ActionReject(2).exec(qctx, ChainWalker())
    assert qctx.response.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_builtin_matchers_direct():
    qctx = QueryContext(dns.message.Message())
    assert await MatchAlwaysTrue().match(qctx) is True
    assert await MatchAlwaysFalse().match(qctx) is False


@pytest.mark.asyncio
async def test_to_executable():
    c = Closable()
    assert to_executable(c) is c
    assert to_executable(object()) is None
    target = Dummy(want_r=dns.message.Message())
    wrapped = to_executable(target)
    qctx = QueryContext(dns.message.Message())
    await wrapped.exec(qctx)
    assert qctx.response is target.want_r