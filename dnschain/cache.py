"""Response cache with optional lazy (stale) answers and dump files."""

from __future__ import annotations

import asyncio
import dataclasses
import gzip
import logging
import re
import struct
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode

from .chain import ChainWalker
from .core import BQ, QueryContext, RecursiveExecutable, _copy_message, register_exec_quick_setup
from .ttl import minimal_ttl, set_ttl, subtract_ttl

LAZY_UPDATE_TIMEOUT = 5.0
EXPIRED_MSG_TTL = 5
MINIMUM_CHANGES_TO_DUMP = 1024
DUMP_HEADER = "dnschain_cache_v2"
DUMP_BLOCK_SIZE = 128
DUMP_MAXIMUM_BLOCK_LENGTH = 1 << 20
MAX_EMPTY_ANSWER_TTL = 300

_INT_RE = re.compile(r"[+-]?[0-9]+")
_U32 = struct.Struct(">I")
_TIMES = struct.Struct(">qqq")
_BLOCK_HEADER = struct.Struct(">Q")

_AD_BIT = 1
_CD_BIT = 2
_DO_BIT = 4


@dataclass
class CacheArgs:
    """Settings of a Cache. ``size`` defaults to 1024 entries and
    ``dump_interval`` to 600 seconds when not positive."""

    size: int = 0
    lazy_cache_ttl: int = 0
    dump_file: str = ""
    dump_interval: int = 0


@dataclass
class _Item:
    resp: dns.message.Message
    stored_time: float
    expiration_time: float


class _Store:
    """A size-bounded LRU map whose entries carry an expiration time."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._lock = threading.Lock()
        self._data: "OrderedDict[bytes, Tuple[_Item, float]]" = OrderedDict()

    def store(self, key: bytes, value: _Item, expiration: float) -> None:
        with self._lock:
            self._data[key] = (value, expiration)
            self._data.move_to_end(key)
            while len(self._data) > self._size:
                self._data.popitem(last=False)

    def get(self, key: bytes) -> Optional[_Item]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expiration = entry
            if expiration < time.time():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def items(self) -> Iterator[Tuple[bytes, _Item, float]]:
        with self._lock:
            snapshot = [(k, v, e) for k, (v, e) in self._data.items()]
        return iter(snapshot)

    def flush(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def get_msg_key(q: dns.message.Message) -> Optional[bytes]:
    """Return the cache key of a query, or None if it must not be cached."""
    if q.flags & dns.flags.QR or q.opcode() != dns.opcode.QUERY or len(q.question) != 1:
        return None
    question = q.question[0]
    bits = 0
    # RFC 6840 5.7: AD in a query signals interest in AD in the response.
    if q.flags & dns.flags.AD:
        bits |= _AD_BIT
    if q.flags & dns.flags.CD:
        bits |= _CD_BIT
    if q.edns >= 0 and q.ednsflags & dns.flags.DO:
        bits |= _DO_BIT
    name = question.name.to_text().encode("ascii")
    qtype = int(question.rdtype)
    return bytes([bits, (qtype >> 8) & 0xFF, qtype & 0xFF, len(name) & 0xFF]) + name


def copy_no_opt(m: Optional[dns.message.Message]) -> Optional[dns.message.Message]:
    """Return a deep copy of ``m`` without its EDNS OPT record."""
    if m is None:
        return None
    m2 = _copy_message(m)
    m2.use_edns(False)
    return m2


def _save_resp(store: _Store, key: bytes, r: dns.message.Message, lazy_cache_ttl: int) -> bool:
    """Store ``r``; return False if it should not be cached."""
    if r.flags & dns.flags.TC:
        return False
    rcode = r.rcode()
    msg_ttl = cache_ttl = 0
    if rcode == dns.rcode.NXDOMAIN:
        msg_ttl = cache_ttl = 30
    elif rcode == dns.rcode.SERVFAIL:
        msg_ttl = cache_ttl = 5
    elif rcode == dns.rcode.NOERROR:
        min_ttl = minimal_ttl(r)
        if not r.answer:
            msg_ttl = cache_ttl = min(min_ttl, MAX_EMPTY_ANSWER_TTL)
        else:
            msg_ttl = min_ttl
            cache_ttl = lazy_cache_ttl if lazy_cache_ttl > 0 else msg_ttl
    if msg_ttl <= 0 or cache_ttl <= 0:
        return False
    now = time.time()
    item = _Item(resp=copy_no_opt(r), stored_time=now, expiration_time=now + msg_ttl)
    store.store(key, item, now + cache_ttl)
    return True


def _gzip_name(data: bytes) -> str:
    if len(data) < 10 or data[:2] != b"\x1f\x8b" or data[2] != 8:
        raise ValueError("failed to read gzip header, not a gzip stream")
    flags = data[3]
    pos = 10
    if flags & 0x04:
        if len(data) < pos + 2:
            raise ValueError("failed to read gzip header, truncated extra field")
        pos += 2 + int.from_bytes(data[pos:pos + 2], "little")
    if not flags & 0x08:
        return ""
    end = data.find(b"\0", pos)
    if end < 0:
        raise ValueError("failed to read gzip header, unterminated name")
    return data[pos:end].decode("latin-1")


def _encode_entry(key: bytes, cache_exp: float, item: _Item) -> bytes:
    try:
        msg = item.resp.to_wire()
    except dns.exception.DNSException as e:
        raise ValueError(f"failed to pack msg, {e}") from e
    return b"".join(
        (
            _U32.pack(len(key)),
            key,
            _TIMES.pack(int(cache_exp), int(item.expiration_time), int(item.stored_time)),
            _U32.pack(len(msg)),
            msg,
        )
    )


def _decode_block(block: bytes) -> List[Tuple[bytes, int, int, int, bytes]]:
    entries = []
    pos = 0
    try:
        while pos < len(block):
            (key_len,) = _U32.unpack_from(block, pos)
            pos += _U32.size
            key = block[pos:pos + key_len]
            if len(key) != key_len:
                raise ValueError("truncated key")
            pos += key_len
            cache_exp, msg_exp, stored = _TIMES.unpack_from(block, pos)
            pos += _TIMES.size
            (msg_len,) = _U32.unpack_from(block, pos)
            pos += _U32.size
            msg = block[pos:pos + msg_len]
            if len(msg) != msg_len:
                raise ValueError("truncated msg")
            pos += msg_len
            entries.append((key, cache_exp, msg_exp, stored, msg))
    except (struct.error, ValueError) as e:
        raise ValueError(f"failed to decode block data, {e}") from e
    return entries


class Cache(RecursiveExecutable):
    """Answers repeated queries from a cache and stores fresh responses."""

    def __init__(self, args: Optional[CacheArgs] = None, logger: Optional[logging.Logger] = None) -> None:
        args = dataclasses.replace(args) if args is not None else CacheArgs()
        if args.size <= 0:
            args.size = 1024
        if args.dump_interval <= 0:
            args.dump_interval = 600
        self.args = args
        self.logger = logger or logging.getLogger("dnschain.cache")
        self._backend = _Store(args.size)
        self._lazy_tasks: Dict[bytes, "asyncio.Future[None]"] = {}
        self._counter_lock = threading.Lock()
        self._updated_keys = 0
        self._closed = threading.Event()
        self.query_total = 0
        self.hit_total = 0
        self.lazy_hit_total = 0

        try:
            self._load_dump()
        except Exception as e:
            self.logger.error("failed to load cache dump: %s", e)
        self._start_dump_loop()

    def __len__(self) -> int:
        return len(self._backend)

    def _key_updated(self) -> None:
        with self._counter_lock:
            self._updated_keys += 1

    def _get_resp(self, key: bytes) -> Tuple[Optional[dns.message.Message], bool]:
        item = self._backend.get(key)
        if item is None:
            return None, False
        now = time.time()
        if now < item.expiration_time:
            r = _copy_message(item.resp)
            subtract_ttl(r, int(now - item.stored_time))
            return r, False
        if self.args.lazy_cache_ttl > 0:
            r = _copy_message(item.resp)
            set_ttl(r, EXPIRED_MSG_TTL)
            return r, True
        return None, False

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        self.query_total += 1
        q = qctx.query
        key = get_msg_key(q)
        if key is None:
            await walker.exec_next(qctx)
            return

        cached, lazy_hit = self._get_resp(key)
        if lazy_hit:
            self.lazy_hit_total += 1
            self._lazy_update(key, qctx, walker)
        if cached is not None:
            self.hit_total += 1
            cached.id = q.id
            qctx.set_response(cached)
            self.logger.debug("cache hit: %s", q.question[0])

        try:
            await walker.exec_next(qctx)
        finally:
            r = qctx.response
            if r is not None and r is not cached:
                _save_resp(self._backend, key, r, self.args.lazy_cache_ttl)
                self._key_updated()

    def _lazy_update(self, key: bytes, qctx: QueryContext, walker: ChainWalker) -> None:
        """Refresh ``key`` in the background; concurrent refreshes of the
        same key are merged into one."""
        if key in self._lazy_tasks:
            return
        task = asyncio.ensure_future(self._do_lazy_update(key, qctx.copy(), walker))
        self._lazy_tasks[key] = task
        task.add_done_callback(lambda _: self._lazy_tasks.pop(key, None))

    async def _do_lazy_update(self, key: bytes, qctx: QueryContext, walker: ChainWalker) -> None:
        try:
            await asyncio.wait_for(walker.exec_next(qctx), LAZY_UPDATE_TIMEOUT)
        except Exception as e:
            self.logger.warning("failed to update lazy cache, %s: %s", qctx, e)
        r = qctx.response
        if r is not None:
            _save_resp(self._backend, key, r, self.args.lazy_cache_ttl)
            self._key_updated()

    def flush(self) -> None:
        """Remove every entry."""
        self._backend.flush()

    def close(self) -> None:
        """Write the dump file, if any, and stop the dump loop."""
        try:
            self._dump_cache()
        except Exception as e:
            self.logger.error("failed to dump cache: %s", e)
        self._closed.set()

    def _load_dump(self) -> None:
        if not self.args.dump_file:
            return
        with open(self.args.dump_file, "rb") as f:
            n = self.read_dump(f)
        self.logger.info("cache dump loaded, entries: %d", n)

    def _start_dump_loop(self) -> None:
        if not self.args.dump_file:
            return
        threading.Thread(target=self._dump_loop, name="cache-dump", daemon=True).start()

    def _dump_loop(self) -> None:
        while not self._closed.wait(self.args.dump_interval):
            with self._counter_lock:
                if self._updated_keys < MINIMUM_CHANGES_TO_DUMP:
                    continue
                self._updated_keys = 0
            try:
                self._dump_cache()
            except Exception as e:
                self.logger.error("dump cache: %s", e)

    def _dump_cache(self) -> None:
        if not self.args.dump_file:
            return
        with open(self.args.dump_file, "wb") as f:
            try:
                n = self.write_dump(f)
            except Exception as e:
                raise ValueError(f"failed to write dump, {e}") from e
        self.logger.info("cache dumped, entries: %d", n)

    def write_dump(self, stream: BinaryIO) -> int:
        """Write all unexpired entries to ``stream``; return how many."""
        now = time.time()
        count = 0
        with gzip.GzipFile(filename=DUMP_HEADER, mode="wb", fileobj=stream, compresslevel=1, mtime=0) as gz:
            block: List[bytes] = []

            def write_block() -> None:
                nonlocal count, block
                data = b"".join(block)
                gz.write(_BLOCK_HEADER.pack(len(data)))
                gz.write(data)
                count += len(block)
                block = []

            for key, item, cache_exp in self._backend.items():
                if cache_exp < now:
                    continue
                block.append(_encode_entry(key, cache_exp, item))
                if len(block) >= DUMP_BLOCK_SIZE:
                    write_block()
            if block:
                write_block()
        return count

    def read_dump(self, stream: BinaryIO) -> int:
        """Load entries from a dump in ``stream``; return how many were read."""
        raw = stream.read()
        name = _gzip_name(raw)
        if name != DUMP_HEADER:
            raise ValueError(f"invalid or old cache dump, header is {name}, want {DUMP_HEADER}")
        try:
            data = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as e:
            raise ValueError(f"failed to read gzip data, {e}") from e

        count = 0
        pos = 0
        while pos < len(data):
            if len(data) - pos < _BLOCK_HEADER.size:
                raise ValueError("failed to read block header, unexpected end of data")
            (length,) = _BLOCK_HEADER.unpack_from(data, pos)
            pos += _BLOCK_HEADER.size
            if length > DUMP_MAXIMUM_BLOCK_LENGTH:
                raise ValueError(f"invalid header, block length is big, {length}")
            block = data[pos:pos + length]
            if len(block) != length:
                raise ValueError("failed to read block data, unexpected end of data")
            pos += length

            entries = _decode_block(block)
            count += len(entries)
            for key, cache_exp, msg_exp, stored, msg in entries:
                try:
                    resp = dns.message.from_wire(msg)
                except dns.exception.DNSException as e:
                    raise ValueError(f"failed to decode dns msg, {e}") from e
                item = _Item(resp=resp, stored_time=float(stored), expiration_time=float(msg_exp))
                self._backend.store(key, item, float(cache_exp))
        return count


def quick_setup(bq: BQ, s: str) -> Cache:
    """Format: ``[size]``; an empty string means the default size."""
    size = 0
    if s:
        if not _INT_RE.fullmatch(s):
            raise ValueError(f"invalid size, {s!r} is not an integer")
        size = int(s)
    return Cache(CacheArgs(size=size), bq.logger)


register_exec_quick_setup("cache", quick_setup)