import logging

import dns.message
import pytest

from dnschain.chain import ChainNode, ChainWalker
from dnschain.core import BQ, Executable, QueryContext, get_exec_quick_setup
from dnschain.query_summary import SummaryLogger, quick_setup

LOGGER_NAME = "test.query_summary"


class _Fail(Executable):
    async def exec(self, qctx):
        raise RuntimeError("boom")


class _Respond(Executable):
    async def exec(self, qctx):
        qctx.set_response(dns.message.make_response(qctx.query))


def test_default_message():
    assert SummaryLogger(logging.getLogger(LOGGER_NAME), "").msg == "query summary"


def test_quick_setup_uses_bq_logger():
    logger = logging.getLogger(LOGGER_NAME)
    s = quick_setup(BQ(logger=logger), "title")
    assert s.msg == "title"
    assert s.logger is logger
    assert get_exec_quick_setup("query_summary") is quick_setup


@pytest.mark.asyncio
async def test_logs_after_chain(caplog):
    s = SummaryLogger(logging.getLogger(LOGGER_NAME))
    qctx = QueryContext(dns.message.make_query("example.", "A"))
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        await s.exec(qctx, ChainWalker([ChainNode(executable=_Respond())]))
    assert qctx.response is not None
    assert len(caplog.records) == 1
    text = caplog.records[0].getMessage()
    assert text.startswith("query summary")
    assert "qname=example." in text


@pytest.mark.asyncio
async def test_error_is_logged_and_raised(caplog):
    s = SummaryLogger(logging.getLogger(LOGGER_NAME), "title")
    qctx = QueryContext(dns.message.make_query("example.", "A"))
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        with pytest.raises(RuntimeError, match="boom"):
            await s.exec(qctx, ChainWalker([ChainNode(executable=_Fail())]))
    assert len(caplog.records) == 1
    assert "boom" in caplog.records[0].getMessage()
    assert caplog.records[0].getMessage().startswith("title")