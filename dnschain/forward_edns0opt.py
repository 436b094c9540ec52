"""Pass selected EDNS0 options between client and upstream."""

from __future__ import annotations

import re
from typing import Iterable, Set

from .chain import ChainWalker
from .core import BQ, QueryContext, RecursiveExecutable, register_exec_quick_setup

_UINT_RE = re.compile(r"[0-9]+")


class EDNS0Forwarder(RecursiveExecutable):
    """Copies options with the given codes from the client to the upstream
    query, and from the upstream response back to the client."""

    def __init__(self, codes: Iterable[int]) -> None:
        self.codes: Set[int] = set(codes)

    def _wanted(self, option) -> bool:
        return int(option.otype) in self.codes

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        query_opt = qctx.query_opt()
        if qctx.client_opt is not None:
            query_opt.extend(o for o in qctx.client_opt if self._wanted(o))

        await walker.exec_next(qctx)

        upstream_opt = qctx.upstream_opt()
        resp_opt = qctx.response_opt()
        if upstream_opt is not None and resp_opt is not None:
            resp_opt.extend(o for o in upstream_opt if self._wanted(o))


def _parse_uint16(s: str) -> int:
    if not _UINT_RE.fullmatch(s) or int(s) > 0xFFFF:
        raise ValueError(f"invalid edns0 option code {s!r}")
    return int(s)


def quick_setup(bq: BQ, numbers: str) -> EDNS0Forwarder:
    """Format: ``[option code] ...`` in decimal."""
    return EDNS0Forwarder(_parse_uint16(s) for s in numbers.split())


register_exec_quick_setup("forward_edns0opt", quick_setup)