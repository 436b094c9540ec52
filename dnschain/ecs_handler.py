"""EDNS Client Subnet (ECS) handling for outgoing queries."""

from __future__ import annotations

import dataclasses
import ipaddress
from dataclasses import dataclass
from typing import Optional, Union

import dns.edns
import dns.rdataclass

from .chain import ChainWalker
from .core import BQ, IPAddress, QueryContext, RecursiveExecutable, register_exec_quick_setup

_ECS = dns.edns.OptionType.ECS


def _is_ecs(option: dns.edns.Option) -> bool:
    return option.otype == _ECS


def _unmap(addr: IPAddress) -> IPAddress:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _mask_ok(value: int, low: int, high: int) -> bool:
    return low <= value <= high


@dataclass
class ECSArgs:
    """Settings of an ECSHandler. A zero mask means the default (24/48)."""

    forward: bool = False
    send: bool = False
    preset: str = ""
    mask4: int = 0
    mask6: int = 0


def new_subnet(ip: Union[IPAddress, str, bytes], mask: int, v6: bool) -> dns.edns.ECSOption:
    """Build an ECS option for ``ip`` with source prefix ``mask`` and scope 0.

    ``v6`` selects the address family (1 for IPv4, 2 for IPv6).
    """
    addr = ip if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(ip)
    if v6 and isinstance(addr, ipaddress.IPv4Address):
        addr = ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + addr.packed)
    elif not v6 and isinstance(addr, ipaddress.IPv6Address):
        mapped = addr.ipv4_mapped
        if mapped is None:
            raise ValueError(f"{addr} is not an ipv4 address")
        addr = mapped
    # Scope prefix length must be 0 in queries (RFC 7871).
    return dns.edns.ECSOption(str(addr), mask, 0)


class ECSHandler(RecursiveExecutable):
    """Adds an ECS option to the upstream query and, when the client's ECS
    was forwarded, passes the upstream's ECS back to the client."""

    def __init__(self, args: ECSArgs) -> None:
        args = dataclasses.replace(args)
        self.preset: Optional[IPAddress] = None
        if args.preset:
            try:
                self.preset = _unmap(ipaddress.ip_address(args.preset))
            except ValueError as e:
                raise ValueError(f"invalid preset address, {e}") from e

        if not _mask_ok(args.mask4, 0, 32):
            raise ValueError("invalid mask4")
        if args.mask4 == 0:
            args.mask4 = 24
        if not _mask_ok(args.mask6, 0, 128):
            raise ValueError("invalid mask6")
        if args.mask6 == 0:
            args.mask6 = 48
        self.args = args

    async def exec(self, qctx: QueryContext, walker: ChainWalker) -> None:
        forwarded = self._add_ecs(qctx)
        await walker.exec_next(qctx)
        if not forwarded:
            return
        resp_opt = qctx.response_opt()
        upstream_opt = qctx.upstream_opt()
        if resp_opt is None or upstream_opt is None:
            return
        ecs = next((o for o in upstream_opt if _is_ecs(o)), None)
        if ecs is not None:
            resp_opt.append(ecs)

    def _subnet_for(self, addr: IPAddress) -> dns.edns.ECSOption:
        if isinstance(addr, ipaddress.IPv4Address):
            return new_subnet(addr, self.args.mask4, False)
        return new_subnet(addr, self.args.mask6, True)

    def _add_ecs(self, qctx: QueryContext) -> bool:
        """Append an ECS option to the query. Returns True if it was
        forwarded from the client."""
        query_opt = qctx.query_opt()
        if any(_is_ecs(o) for o in query_opt):
            return False
        if not qctx.query.question or qctx.question.rdclass != dns.rdataclass.IN:
            # ECS is only defined for the IN class (RFC 7871 5).
            return False

        if self.args.forward and qctx.client_opt is not None:
            client_ecs = next((o for o in qctx.client_opt if _is_ecs(o)), None)
            if client_ecs is not None:
                query_opt.append(client_ecs)
                return True

        if self.preset is not None:
            query_opt.append(self._subnet_for(self.preset))
            return False

        if self.args.send and qctx.client_addr is not None:
            query_opt.append(self._subnet_for(_unmap(qctx.client_addr)))
        return False


def quick_setup_old_ecs(bq: BQ, s: str) -> ECSHandler:
    """Format: ``[ip[/mask]] ...``. Only the first address is used as the
    preset; masks and further addresses are ignored."""
    args = ECSArgs()
    fields = s.split()
    if fields:
        preset, sep, _ = fields[0].partition("/")
        args.preset = preset
        if sep:
            bq.logger.warning(
                "ip mask value is deprecated and will be ignored. "
                "The default value (24/48) will be used"
            )
        if len(fields) > 1:
            bq.logger.warning(
                "Dual-stack ecs is deprecated. Only the first ip will be used "
                "as preset ecs address. Others will be simply ignored"
            )
    return ECSHandler(args)


register_exec_quick_setup("ecs", quick_setup_old_ecs)