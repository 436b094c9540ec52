"""Rule chains: nodes, the walker that runs them, built-in actions and sequences."""

from __future__ import annotations

import contextlib
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

import dns.flags
import dns.message
import dns.opcode
import dns.rcode

from .config import MatchConfig, RuleArgs, RuleConfig, parse_args
from .core import (
    BQ,
    Executable,
    Matcher,
    QueryContext,
    QuickConfigurableExec,
    QuickConfigurableMatch,
    RecursiveExecutable,
    get_exec_quick_setup,
    get_match_quick_setup,
    register_exec_quick_setup,
    register_match_quick_setup,
)

_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class ChainNode:
    """One rule: optional matchers and exactly one thing to run.

    If both ``executable`` and ``recursive`` are set, ``executable`` wins.
    """

    matches: List[Matcher] = field(default_factory=list)
    executable: Optional[Executable] = None
    recursive: Optional[RecursiveExecutable] = None


@dataclass(frozen=True)
class ChainWalker:
    """A position in a chain, with an optional walker to resume at its end."""

    chain: List[ChainNode] = field(default_factory=list)
    jump_back: Optional["ChainWalker"] = None
    position: int = 0

    async def exec_next(self, qctx: QueryContext) -> None:
        """Run the chain from the current position."""
        for index, node in enumerate(self.chain[self.position:], start=self.position):
            if not await _all_match(node.matches, qctx):
                continue
            if node.executable is not None:
                await node.executable.exec(qctx)
                continue
            if node.recursive is not None:
                rest = ChainWalker(self.chain, self.jump_back, index + 1)
                await node.recursive.exec(qctx, rest)
                return
            raise RuntimeError("chain node cannot be executed")

        if self.jump_back is not None:
            await self.jump_back.exec_next(qctx)


async def _all_match(matchers: List[Matcher], qctx: QueryContext) -> bool:
    for m in matchers:
        if not await m.match(qctx):
            return False
    return True


class _ReverseMatch(Matcher):
    def __init__(self, m: Matcher) -> None:
        self._m = m

    async def match(self, qctx: QueryContext) -> bool:
        return not await self._m.match(qctx)


def _make_reply(q: dns.message.Message) -> dns.message.Message:
    r = dns.message.Message(id=q.id)
    flags = dns.flags.QR
    if q.opcode() == dns.opcode.QUERY:
        flags |= q.flags & (dns.flags.RD | dns.flags.CD)
    r.flags = flags
    r.set_opcode(q.opcode())
    r.question = list(q.question)[:1]
    return r


def _close_plugin(p: Any) -> None:
    close = getattr(p, "close", None)
    if callable(close):
        with contextlib.suppress(Exception):
            close()


class Sequence(Executable):
    """An executable built from a list of rules."""

    def __init__(self, bq: BQ, rule_args: List[RuleArgs]) -> None:
        self.chain: List[ChainNode] = []
        self._anonymous_plugins: List[Any] = []
        configs = [parse_args(ra) for ra in rule_args]
        try:
            self.chain = [self._new_node(bq, rc, ri) for ri, rc in enumerate(configs)]
        except Exception:
            self.close()
            raise

    async def exec(self, qctx: QueryContext) -> None:
        await ChainWalker(self.chain).exec_next(qctx)

    def close(self) -> None:
        """Close every plugin this sequence created itself."""
        for plugin in self._anonymous_plugins:
            _close_plugin(plugin)

    def _new_node(self, bq: BQ, rc: RuleConfig, ri: int) -> ChainNode:
        try:
            matches = []
            for mi, mc in enumerate(rc.matches):
                try:
                    matches.append(self._new_matcher(bq, mc, ri, mi))
                except Exception as e:
                    raise ValueError(f"failed to init matcher #{mi}, {e}") from e
            try:
                executable, recursive = self._new_exec(bq, rc, ri)
            except Exception as e:
                raise ValueError(f"failed to init exec, {e}") from e
        except Exception as e:
            raise ValueError(f"failed to init rule #{ri}, {e}") from e
        return ChainNode(matches=matches, executable=executable, recursive=recursive)

    def _new_matcher(self, bq: BQ, mc: MatchConfig, ri: int, mi: int) -> Matcher:
        m: Optional[Matcher] = None
        if mc.tag:
            plugin = bq.get_plugin(mc.tag)
            if not isinstance(plugin, Matcher):
                raise ValueError(f"can not find matcher {mc.tag}")
            m = plugin
            if isinstance(plugin, QuickConfigurableMatch):
                try:
                    m = plugin.quick_configure_match(mc.args)
                except Exception as e:
                    raise ValueError(f"fail to configure plugin {mc.tag}, {e}") from e
        elif mc.type:
            setup = get_match_quick_setup(mc.type)
            if setup is None:
                raise ValueError(f"invalid matcher type {mc.type}")
            child = BQ(plugins=bq.plugins, logger=bq.logger.getChild(f"r{ri}.m{mi}"))
            try:
                m = setup(child, mc.args)
            except Exception as e:
                raise ValueError(f"failed to init matcher, {e}") from e
            self._anonymous_plugins.append(m)
        if m is None:
            raise ValueError("missing args")
        if mc.reverse:
            m = _ReverseMatch(m)
        return m

    def _new_exec(
        self, bq: BQ, rc: RuleConfig, ri: int
    ) -> Tuple[Optional[Executable], Optional[RecursiveExecutable]]:
        if rc.tag:
            plugin = bq.get_plugin(rc.tag)
            if plugin is None:
                raise ValueError(f"can not find executable {rc.tag}")
            if isinstance(plugin, QuickConfigurableExec):
                try:
                    obj = plugin.quick_configure_exec(rc.args)
                except Exception as e:
                    raise ValueError(f"fail to configure plugin {rc.tag}, {e}") from e
            else:
                obj = plugin
        elif rc.type:
            setup = get_exec_quick_setup(rc.type)
            if setup is None:
                raise ValueError(f"invalid executable type {rc.type}")
            child = BQ(plugins=bq.plugins, logger=bq.logger.getChild(f"r{ri}"))
            try:
                obj = setup(child, rc.args)
            except Exception as e:
                raise ValueError(f"failed to init executable, {e}") from e
            self._anonymous_plugins.append(obj)
        else:
            raise ValueError("missing args")

        executable = obj if isinstance(obj, Executable) else None
        recursive = obj if isinstance(obj, RecursiveExecutable) else None
        if executable is None and recursive is None:
            raise ValueError("invalid args, initialized object is not executable")
        return executable, recursive


class ActionAccept(RecursiveExecutable):
    """Stop the chain here."""

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        return None


@dataclass
class ActionReject(RecursiveExecutable):
    """Answer with an empty reply carrying ``rcode`` and stop."""

    rcode: int = int(dns.rcode.REFUSED)

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        r = _make_reply(qctx.query)
        r.set_rcode(self.rcode)
        qctx.set_response(r)


class ActionReturn(RecursiveExecutable):
    """Leave the current sequence, resuming the one that jumped here."""

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        if walker.jump_back is not None:
            await walker.jump_back.exec_next(qctx)


@dataclass
class ActionJump(RecursiveExecutable):
    """Run another chain, then continue after this node."""

    to: List[ChainNode]

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        await ChainWalker(self.to, walker).exec_next(qctx)


@dataclass
class ActionGoto(RecursiveExecutable):
    """Run another chain and never come back."""

    to: List[ChainNode]

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        await ChainWalker(self.to).exec_next(qctx)


class MatchAlwaysTrue(Matcher):
    async def match(self, qctx: QueryContext) -> bool:
        return True


class MatchAlwaysFalse(Matcher):
    async def match(self, qctx: QueryContext) -> bool:
        return False


class _RecursiveWrapper(Executable):
    def __init__(self, re_exec: RecursiveExecutable) -> None:
        self._re = re_exec

    async def exec(self, qctx: QueryContext) -> None:
        await self._re.exec(qctx, ChainWalker())


def to_executable(v: Any) -> Optional[Executable]:
    """Return ``v`` as an Executable, wrapping a RecursiveExecutable, or None."""
    if isinstance(v, Executable):
        return v
    if isinstance(v, RecursiveExecutable):
        return _RecursiveWrapper(v)
    return None


def _setup_accept(bq: BQ, s: str) -> ActionAccept:
    return ActionAccept()


def _setup_reject(bq: BQ, s: str) -> ActionReject:
    if not s:
        return ActionReject()
    if not _INT_RE.fullmatch(s) or not 0 <= int(s) <= 0xFFF:
        raise ValueError(f"invalid rcode [{s}]")
    return ActionReject(int(s))


def _setup_return(bq: BQ, s: str) -> ActionReturn:
    return ActionReturn()


def _find_sequence(bq: BQ, tag: str, what: str) -> Sequence:
    target = bq.get_plugin(tag)
    if not isinstance(target, Sequence):
        raise ValueError(f"can not find {what} target {tag}")
    return target


def _setup_jump(bq: BQ, s: str) -> ActionJump:
    return ActionJump(_find_sequence(bq, s, "jump").chain)


def _setup_goto(bq: BQ, s: str) -> ActionGoto:
    return ActionGoto(_find_sequence(bq, s, "goto").chain)


def _setup_true(bq: BQ, s: str) -> Matcher:
    return MatchAlwaysTrue()


def _setup_false(bq: BQ, s: str) -> Matcher:
    return MatchAlwaysFalse()


register_exec_quick_setup("accept", _setup_accept)
register_exec_quick_setup("reject", _setup_reject)
register_exec_quick_setup("return", _setup_return)
register_exec_quick_setup("goto", _setup_goto)
register_exec_quick_setup("jump", _setup_jump)
# The leading underscore keeps these from being read as booleans in config files.
register_match_quick_setup("_true", _setup_true)
register_match_quick_setup("_false", _setup_false)

Action = Union[ActionAccept, ActionReject, ActionReturn, ActionJump, ActionGoto]