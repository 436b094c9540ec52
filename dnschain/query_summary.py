"""Log a one-line summary of each query after the chain has run."""

from __future__ import annotations

import logging
from typing import Optional

from .chain import ChainWalker
from .core import BQ, QueryContext, RecursiveExecutable, register_exec_quick_setup

_DEFAULT_MSG = "query summary"


class SummaryLogger(RecursiveExecutable):
    """Runs the rest of the chain, then logs the query context and any error."""

    def __init__(self, logger: logging.Logger, msg: str = "") -> None:
        self.logger = logger
        self.msg = msg or _DEFAULT_MSG

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        error: Optional[BaseException] = None
        try:
            await walker.exec_next(qctx)
        except Exception as e:
            error = e
            raise
        finally:
            if error is None:
                self.logger.info("%s: %s", self.msg, qctx)
            else:
                self.logger.info("%s: %s error=%s", self.msg, qctx, error)


def quick_setup(bq: BQ, s: str) -> SummaryLogger:
    """``s`` is the log message title."""
    return SummaryLogger(bq.logger, s)


register_exec_quick_setup("query_summary", quick_setup)