"""Prefer one address family: answer the other family's queries with an
empty reply when the domain is known to have the preferred records."""

from __future__ import annotations

import asyncio
from typing import Optional, Set

import dns.message
import dns.rdatatype
import dns.rrset

from .cache import _Store
from .chain import ChainWalker, _make_reply
from .core import BQ, QueryContext, RecursiveExecutable, register_exec_quick_setup

REFERENCE_WAIT_TIMEOUT = 0.5
SUB_ROUTINE_TIMEOUT = 5.0
CACHE_SIZE = 64 * 1024
CACHE_TTL = 3600.0

_A = dns.rdatatype.A
_AAAA = dns.rdatatype.AAAA


def msg_answer_has_rr(m: Optional[dns.message.Message], t: int) -> bool:
    """True if the answer section of ``m`` holds a record of type ``t``."""
    if m is None:
        return False
    return any(rrset.rdtype == t and len(rrset) > 0 for rrset in m.answer)


def _should_block(task: "asyncio.Future[bool]") -> bool:
    return task.done() and not task.cancelled() and task.result()


class Selector(RecursiveExecutable):
    """Blocks queries of the non-preferred type (A or AAAA) for domains that
    have records of the preferred type."""

    def __init__(self, bq: BQ, prefer: int) -> None:
        if prefer not in (_A, _AAAA):
            raise ValueError("dual_selector: invalid dns qtype")
        self.logger = bq.logger
        self.prefer = dns.rdatatype.RdataType.make(prefer)
        self._prefer_ok = _Store(CACHE_SIZE)
        self._tasks: Set["asyncio.Future"] = set()

    def _remember(self, name: str) -> None:
        self._prefer_ok.store(name, True, _now() + CACHE_TTL)

    def _spawn(self, coro) -> "asyncio.Future":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _reference(self, qctx: QueryContext, walker: ChainWalker, name: str) -> bool:
        """Query the preferred type; True if the domain has such records."""
        try:
            await asyncio.wait_for(walker.exec_next(qctx), SUB_ROUTINE_TIMEOUT)
        except Exception as e:
            self.logger.warning("reference query routine err, %s: %s", qctx, e)
            return False
        if msg_answer_has_rr(qctx.response, self.prefer):
            self._remember(name)
            return True
        return False

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        q = qctx.query
        if len(q.question) != 1:
            await walker.exec_next(qctx)
            return
        question = q.question[0]
        qtype = question.rdtype
        if qtype not in (_A, _AAAA):
            await walker.exec_next(qctx)
            return

        name = question.name.to_text()
        if qtype == self.prefer:
            await walker.exec_next(qctx)
            if msg_answer_has_rr(qctx.response, self.prefer):
                self._remember(name)
            return

        if self._prefer_ok.get(name):
            qctx.set_response(_make_reply(q))
            return

        qctx_pref = qctx.copy()
        qctx_pref.query.question = [dns.rrset.RRset(question.name, question.rdclass, self.prefer)]
        qctx_org = qctx.copy()

        ref = self._spawn(self._reference(qctx_pref, walker, name))
        org = self._spawn(asyncio.wait_for(walker.exec_next(qctx_org), SUB_ROUTINE_TIMEOUT))

        pending = {ref, org}
        while not org.done():
            await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if _should_block(ref):
                qctx.set_response(_make_reply(q))
                return
            pending = {org} if ref.done() else {ref, org}

        if not ref.done():
            await asyncio.wait({ref}, timeout=REFERENCE_WAIT_TIMEOUT)
        if _should_block(ref):
            qctx.set_response(_make_reply(q))
            return

        # Accept the original query's outcome.
        vars(qctx).update(vars(qctx_org))
        error = org.exception()
        if error is not None:
            raise error

    def close(self) -> None:
        """Cancel background queries and forget known domains."""
        for task in list(self._tasks):
            task.cancel()
        self._prefer_ok.flush()


def _now() -> float:
    import time

    return time.time()


def new_prefer_ipv4(bq: BQ) -> Selector:
    return Selector(bq, _A)


def new_prefer_ipv6(bq: BQ) -> Selector:
    return Selector(bq, _AAAA)


register_exec_quick_setup("prefer_ipv4", lambda bq, s: new_prefer_ipv4(bq))
register_exec_quick_setup("prefer_ipv6", lambda bq, s: new_prefer_ipv6(bq))