"""Log the query and response as they pass."""

from __future__ import annotations

from .core import BQ, Executable, QueryContext, register_exec_quick_setup

_DEFAULT_MSG = "debug print"


class DebugPrint(Executable):
    """Logs the query, and the response if there is one, at INFO level."""

    def __init__(self, bq: BQ, msg: str = _DEFAULT_MSG) -> None:
        self.logger = bq.logger
        self.msg = msg or _DEFAULT_MSG

    async def exec(self, qctx: QueryContext) -> None:
        self.logger.info("%s, query: %s", self.msg, qctx.query)
        if qctx.response is not None:
            self.logger.info("%s, response: %s", self.msg, qctx.response)


def quick_setup(bq: BQ, s: str) -> DebugPrint:
    """``s`` is the log message; an empty string means "debug print"."""
    return DebugPrint(bq, s)


register_exec_quick_setup("debug_print", quick_setup)