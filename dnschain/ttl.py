"""TTL rewriting of responses, and TTL helpers for DNS messages."""

from __future__ import annotations

import re
from typing import Iterator

import dns.message
import dns.rdatatype
import dns.rrset

from .core import BQ, Executable, QueryContext, register_exec_quick_setup

_UINT_RE = re.compile(r"[0-9]+")
_UINT32_MAX = 0xFFFFFFFF


def _records(msg: dns.message.Message) -> Iterator[dns.rrset.RRset]:
    for section in (msg.answer, msg.authority, msg.additional):
        for rrset in section:
            if rrset.rdtype != dns.rdatatype.OPT:
                yield rrset


def set_ttl(msg: dns.message.Message, ttl: int) -> None:
    """Set the TTL of every record to ``ttl``."""
    for rrset in _records(msg):
        rrset.ttl = ttl


def apply_minimal_ttl(msg: dns.message.Message, ttl: int) -> None:
    """Raise every TTL lower than ``ttl`` to ``ttl``."""
    for rrset in _records(msg):
        if rrset.ttl < ttl:
            rrset.ttl = ttl


def apply_maximum_ttl(msg: dns.message.Message, ttl: int) -> None:
    """Lower every TTL higher than ``ttl`` to ``ttl``."""
    for rrset in _records(msg):
        if rrset.ttl > ttl:
            rrset.ttl = ttl


def subtract_ttl(msg: dns.message.Message, delta: int) -> None:
    """Subtract ``delta`` from every TTL; a TTL that would reach zero or
    below becomes 1."""
    for rrset in _records(msg):
        rrset.ttl = rrset.ttl - delta if rrset.ttl > delta else 1


def minimal_ttl(msg: dns.message.Message) -> int:
    """The lowest TTL of all records, or 0 if there are none."""
    return min((rrset.ttl for rrset in _records(msg)), default=0)


class TTL(Executable):
    """Rewrites response TTLs: a fixed value, or clamping to a range.

    A zero value disables the corresponding rule; ``fix`` wins over the range.
    """

    def __init__(self, fix: int = 0, minimum: int = 0, maximum: int = 0) -> None:
        self.fix = fix
        self.minimum = minimum
        self.maximum = maximum

    async def exec(self, qctx: QueryContext) -> None:
        r = qctx.response
        if r is None:
            return
        if self.fix > 0:
            set_ttl(r, self.fix)
            return
        if self.minimum > 0:
            apply_minimal_ttl(r, self.minimum)
        if self.maximum > 0:
            apply_maximum_ttl(r, self.maximum)


def _parse_uint32(s: str, what: str) -> int:
    if not _UINT_RE.fullmatch(s) or int(s) > _UINT32_MAX:
        raise ValueError(f"invalid {what}, {s!r} is not an unsigned 32-bit integer")
    return int(s)


def quick_setup(bq: BQ, s: str) -> TTL:
    """Format: ``min-max`` for a range or ``fix`` for a fixed TTL."""
    lower, sep, upper = s.partition("-")
    if sep:
        return TTL(
            0,
            _parse_uint32(lower, "lower bound"),
            _parse_uint32(upper, "upper bound"),
        )
    return TTL(_parse_uint32(s, "ttl"), 0, 0)


register_exec_quick_setup("ttl", quick_setup)