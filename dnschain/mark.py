"""Setting and testing integer marks on a query context."""

from __future__ import annotations

import re
from typing import List

from .core import (
    BQ,
    Executable,
    Matcher,
    QueryContext,
    register_exec_quick_setup,
    register_match_quick_setup,
)

_UINT_RE = re.compile(r"[0-9]+")
_UINT32_MAX = 0xFFFFFFFF


class Marker(Executable, Matcher):
    """Sets all its marks when executed; matches if any of them is set."""

    def __init__(self, marks: List[int]) -> None:
        self.marks = list(marks)

    async def match(self, qctx: QueryContext) -> bool:
        return any(qctx.has_mark(m) for m in self.marks)

    async def exec(self, qctx: QueryContext) -> None:
        for m in self.marks:
            qctx.set_mark(m)


def _parse_uint32(s: str) -> int:
    if not _UINT_RE.fullmatch(s):
        raise ValueError(f"invalid mark {s!r}: not a decimal unsigned integer")
    n = int(s)
    if n > _UINT32_MAX:
        raise ValueError(f"invalid mark {s!r}: value out of range")
    return n


def new_marker(s: str) -> Marker:
    """Build a Marker from whitespace separated decimal uint32 values."""
    return Marker([_parse_uint32(field) for field in s.split()])


def _setup(bq: BQ, args: str) -> Marker:
    return new_marker(args)


register_exec_quick_setup("mark", _setup)
register_match_quick_setup("mark", _setup)