"""Remove the current response."""

from __future__ import annotations

from .core import BQ, Executable, QueryContext, register_exec_quick_setup


class DropResp(Executable):
    """Clears the response of the query context."""

    async def exec(self, qctx: QueryContext) -> None:
        qctx.set_response(None)


def quick_setup(bq: BQ, s: str) -> DropResp:
    return DropResp()


register_exec_quick_setup("drop_resp", quick_setup)