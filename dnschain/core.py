"""Query context, plugin interfaces and the quick-setup registries."""

from __future__ import annotations

import abc
import copy
import ipaddress
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import dns.edns
import dns.message
import dns.rdataclass
import dns.rdatatype

if TYPE_CHECKING:
    from .chain import ChainWalker

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_context_ids = itertools.count(1)


def _copy_message(msg: dns.message.Message) -> dns.message.Message:
    """Return an independent deep copy of a DNS message."""
    return dns.message.from_wire(msg.to_wire())


class QueryContext:
    """State of one query while it travels through a chain of plugins.

    The EDNS options the client sent are kept in ``client_opt``. Options that
    plugins want to send upstream are collected in :meth:`query_opt`; options
    received from upstream are in :meth:`upstream_opt` and options destined
    for the client are collected in :meth:`response_opt`.
    """

    def __init__(
        self,
        query: dns.message.Message,
        client_addr: Union[IPAddress, str, None] = None,
    ) -> None:
        self.query = query
        if isinstance(client_addr, str):
            client_addr = ipaddress.ip_address(client_addr)
        self.client_addr: Optional[IPAddress] = client_addr
        self.id = next(_context_ids) & 0xFFFFFFFF
        self.start_time = time.monotonic()
        self.client_opt: Optional[Tuple[dns.edns.Option, ...]] = (
            tuple(query.options) if query.edns >= 0 else None
        )
        self._response: Optional[dns.message.Message] = None
        self._marks: set = set()
        self._query_opt: List[dns.edns.Option] = []
        self._response_opt: Optional[List[dns.edns.Option]] = None
        self._upstream_opt: Optional[List[dns.edns.Option]] = None

    @property
    def response(self) -> Optional[dns.message.Message]:
        """The current response, or None."""
        return self._response

    @property
    def question(self):
        """The first question of the query."""
        return self.query.question[0]

    def copy(self) -> "QueryContext":
        """Return a deep copy that shares nothing mutable with this one."""
        new = copy.copy(self)
        new.query = _copy_message(self.query)
        new._response = _copy_message(self._response) if self._response is not None else None
        new._marks = set(self._marks)
        new._query_opt = list(self._query_opt)
        new._response_opt = list(self._response_opt) if self._response_opt is not None else None
        new._upstream_opt = list(self._upstream_opt) if self._upstream_opt is not None else None
        return new

    def set_response(self, r: Optional[dns.message.Message]) -> None:
        """Replace the response. None removes it."""
        self._response = r
        if r is None:
            self._upstream_opt = None
            self._response_opt = None
            return
        self._upstream_opt = list(r.options) if r.edns >= 0 else None
        self._response_opt = [] if self.client_opt is not None else None

    def set_mark(self, mark: int) -> None:
        self._marks.add(mark)

    def has_mark(self, mark: int) -> bool:
        return mark in self._marks

    def query_opt(self) -> List[dns.edns.Option]:
        """EDNS options to send upstream. Always a list, mutable in place."""
        return self._query_opt

    def response_opt(self) -> Optional[List[dns.edns.Option]]:
        """EDNS options for the client, or None if there is no response or
        the client did not use EDNS."""
        return self._response_opt

    def upstream_opt(self) -> Optional[List[dns.edns.Option]]:
        """EDNS options received with the response, or None."""
        return self._upstream_opt

    def __str__(self) -> str:
        parts = [f"qid={self.id}"]
        if len(self.query.question) == 1:
            q = self.query.question[0]
            parts.append(f"qname={q.name}")
            parts.append(f"qtype={dns.rdatatype.to_text(q.rdtype)}")
            parts.append(f"qclass={dns.rdataclass.to_text(q.rdclass)}")
        else:
            parts.append(f"questions={len(self.query.question)}")
        if self.client_addr is not None:
            parts.append(f"client={self.client_addr}")
        if self._response is not None:
            parts.append(f"rcode={self._response.rcode()}")
        parts.append(f"elapsed={time.monotonic() - self.start_time:.3f}s")
        return " ".join(parts)


class Executable(abc.ABC):
    """Something that acts on a query context."""

    @abc.abstractmethod
    async def exec(self, qctx: QueryContext) -> None:
        ...


class RecursiveExecutable(abc.ABC):
    """Something that acts on a query context and decides how the rest of
    the chain runs."""

    @abc.abstractmethod
    async def exec(self, qctx: QueryContext, walker: "ChainWalker") -> None:
        ...


class Matcher(abc.ABC):
    """Something that tests a query context."""

    @abc.abstractmethod
    async def match(self, qctx: QueryContext) -> bool:
        ...


class QuickConfigurableExec(abc.ABC):
    """A plugin that can produce an executable from an extra argument string."""

    @abc.abstractmethod
    def quick_configure_exec(self, args: str) -> Union[Executable, RecursiveExecutable]:
        ...


class QuickConfigurableMatch(abc.ABC):
    """A plugin that can produce a matcher from an extra argument string."""

    @abc.abstractmethod
    def quick_configure_match(self, args: str) -> Matcher:
        ...


@dataclass
class BQ:
    """What a plugin gets at setup: the named plugins and a logger."""

    plugins: Mapping[str, Any] = field(default_factory=dict)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("dnschain"))

    def get_plugin(self, tag: str) -> Any:
        return self.plugins.get(tag)


ExecQuickSetup = Callable[[BQ, str], Any]
MatchQuickSetup = Callable[[BQ, str], Matcher]


class _Registry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._funcs: Dict[str, Callable] = {}

    def register(self, typ: str, func: Callable) -> None:
        with self._lock:
            if typ in self._funcs:
                raise ValueError(f"type {typ} has already been registered")
            self._funcs[typ] = func

    def get(self, typ: str) -> Optional[Callable]:
        with self._lock:
            return self._funcs.get(typ)


_exec_registry = _Registry()
_match_registry = _Registry()


def register_exec_quick_setup(typ: str, func: ExecQuickSetup) -> None:
    """Register a setup function for an executable type. Raises ValueError
    if the type is already registered."""
    _exec_registry.register(typ, func)


def get_exec_quick_setup(typ: str) -> Optional[ExecQuickSetup]:
    return _exec_registry.get(typ)


def register_match_quick_setup(typ: str, func: MatchQuickSetup) -> None:
    """Register a setup function for a matcher type. Raises ValueError
    if the type is already registered."""
    _match_registry.register(typ, func)


def get_match_quick_setup(typ: str) -> Optional[MatchQuickSetup]:
    return _match_registry.get(typ)