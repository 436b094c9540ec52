"""Answer A/AAAA queries with a fixed set of addresses."""

from __future__ import annotations

import ipaddress
from typing import List, Optional

import dns.message
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from .chain import _make_reply
from .core import BQ, Executable, QueryContext, register_exec_quick_setup

_TTL = 300


def _addr_text(addr) -> str:
    return str(addr).split("%", 1)[0]


class BlackHole(Executable):
    """Replies to A and AAAA queries with the configured addresses."""

    def __init__(self, ips: List[str]) -> None:
        self.ipv4: List[ipaddress.IPv4Address] = []
        self.ipv6: List[ipaddress.IPv6Address] = []
        for s in ips:
            try:
                addr = ipaddress.ip_address(s)
            except ValueError as e:
                raise ValueError(f"invalid ipv4 addr {s}, {e}") from e
            if isinstance(addr, ipaddress.IPv4Address):
                self.ipv4.append(addr)
            else:
                self.ipv6.append(addr)

    def response(self, q: dns.message.Message) -> Optional[dns.message.Message]:
        """Return a reply for ``q``, or None if it is not an A/AAAA query
        for which addresses are configured."""
        if len(q.question) != 1:
            return None
        question = q.question[0]
        if question.rdtype == dns.rdatatype.A and self.ipv4:
            addrs, rdtype = self.ipv4, dns.rdatatype.A
        elif question.rdtype == dns.rdatatype.AAAA and self.ipv6:
            addrs, rdtype = self.ipv6, dns.rdatatype.AAAA
        else:
            return None
        r = _make_reply(q)
        r.answer.append(
            dns.rrset.from_text_list(
                question.name,
                _TTL,
                dns.rdataclass.IN,
                rdtype,
                [_addr_text(a) for a in addrs],
            )
        )
        return r

    async def exec(self, qctx: QueryContext) -> None:
        r = self.response(qctx.query)
        if r is not None:
            qctx.set_response(r)


def quick_setup(bq: BQ, s: str) -> BlackHole:
    """Format: ``[ipv4|ipv6] ...``."""
    return BlackHole(s.split())


register_exec_quick_setup("black_hole", quick_setup)