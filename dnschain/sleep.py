"""Delay the chain for a fixed time."""

from __future__ import annotations

import asyncio
import re

from .core import BQ, Executable, QueryContext, register_exec_quick_setup

_INT_RE = re.compile(r"[+-]?[0-9]+")


class Sleep(Executable):
    """Waits ``duration`` seconds; a non-positive duration does nothing."""

    def __init__(self, duration: float) -> None:
        self.duration = duration

    async def exec(self, qctx: QueryContext) -> None:
        if self.duration > 0:
            await asyncio.sleep(self.duration)


def quick_setup(bq: BQ, s: str) -> Sleep:
    """``s`` is the duration in milliseconds."""
    if not _INT_RE.fullmatch(s):
        raise ValueError(f"invalid duration {s!r}, expect an integer in milliseconds")
    return Sleep(int(s) / 1000)


register_exec_quick_setup("sleep", quick_setup)