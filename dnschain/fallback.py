"""Run a primary executable, falling back to a secondary one when the
primary fails or is slow."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional

import dns.message

from .chain import to_executable
from .core import BQ, Executable, QueryContext

PARALLEL_TIMEOUT = 3.0
DEFAULT_THRESHOLD = 0.5


@dataclass
class FallbackArgs:
    """``primary`` and ``secondary`` are plugin tags; ``threshold`` is in
    milliseconds (default 500)."""

    primary: str = ""
    secondary: str = ""
    threshold: int = 0
    always_standby: bool = False


async def _wait_any(events: Iterable[asyncio.Event], timeout: float) -> None:
    events = list(events)
    if timeout <= 0 or any(e.is_set() for e in events):
        return
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()


class Fallback(Executable):
    """Takes the primary's response, or the secondary's if the primary fails
    or does not answer within the threshold."""

    def __init__(self, bq: BQ, args: FallbackArgs) -> None:
        if not args.primary or not args.secondary:
            raise ValueError("args missing primary or secondary")
        primary = to_executable(bq.get_plugin(args.primary))
        if primary is None:
            raise ValueError(f"can not find primary executable {args.primary}")
        secondary = to_executable(bq.get_plugin(args.secondary))
        if secondary is None:
            raise ValueError(f"can not find secondary executable {args.secondary}")
        self.logger = bq.logger
        self.primary = primary
        self.secondary = secondary
        self.threshold = args.threshold / 1000 if args.threshold > 0 else DEFAULT_THRESHOLD
        self.always_standby = args.always_standby

    async def exec(self, qctx: QueryContext) -> None:
        responses: "asyncio.Queue[Optional[dns.message.Message]]" = asyncio.Queue()
        prim_done = asyncio.Event()
        prim_failed = asyncio.Event()
        tasks = [
            asyncio.ensure_future(self._run_primary(qctx.copy(), responses, prim_done, prim_failed)),
            asyncio.ensure_future(self._run_secondary(qctx.copy(), responses, prim_done, prim_failed)),
        ]
        try:
            for _ in range(2):
                r = await responses.get()
                if r is not None:
                    qctx.set_response(r)
                    return
            raise RuntimeError("no valid response from both primary and secondary")
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_primary(self, qctx, responses, prim_done, prim_failed) -> None:
        failed = False
        try:
            await asyncio.wait_for(self.primary.exec(qctx), PARALLEL_TIMEOUT)
        except Exception as e:
            failed = True
            self.logger.warning("primary error, %s: %s", qctx, e)
        r = qctx.response
        if failed or r is None:
            prim_failed.set()
            responses.put_nowait(None)
        else:
            prim_done.set()
            responses.put_nowait(r)

    async def _run_secondary(self, qctx, responses, prim_done, prim_failed) -> None:
        loop = asyncio.get_running_loop()
        timer_at = loop.time() + self.threshold
        if not self.always_standby:
            await _wait_any((prim_done, prim_failed), timer_at - loop.time())
            if prim_done.is_set():
                return

        deadline = loop.time() + PARALLEL_TIMEOUT
        try:
            await asyncio.wait_for(self.secondary.exec(qctx), PARALLEL_TIMEOUT)
        except Exception as e:
            self.logger.warning("secondary error, %s: %s", qctx, e)
            responses.put_nowait(None)
            return

        r = qctx.response
        if self.always_standby and r is not None:
            # Hold the standby answer until the primary fails or is too slow.
            await _wait_any((prim_done, prim_failed), min(timer_at, deadline) - loop.time())
        responses.put_nowait(r)