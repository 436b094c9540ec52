"""Parsing of sequence rule strings into rule configurations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass
class RuleArgs:
    """A rule as written by the user: match strings and one exec string."""

    matches: List[str] = field(default_factory=list)
    exec: str = ""


@dataclass
class MatchConfig:
    tag: str = ""
    type: str = ""
    args: str = ""
    reverse: bool = False


@dataclass
class RuleConfig:
    matches: List[MatchConfig] = field(default_factory=list)
    tag: str = ""
    type: str = ""
    args: str = ""


def _trim_prefix_field(s: str, prefix: str) -> Tuple[str, bool]:
    if s.startswith(prefix):
        return s[len(prefix):].strip(), True
    return s, False


def parse_args(ra: RuleArgs) -> RuleConfig:
    tag, typ, args = parse_exec(ra.exec)
    return RuleConfig(
        matches=[parse_match(s) for s in ra.matches],
        tag=tag,
        type=typ,
        args=args,
    )


def parse_match(s: str) -> MatchConfig:
    """Parse ``[!] {$tag|type} [args]``."""
    s, reverse = _trim_prefix_field(s.strip(), "!")
    head, _, args = s.partition(" ")
    tag, is_tag = _trim_prefix_field(head, "$")
    if is_tag:
        return MatchConfig(tag=tag, args=args.strip(), reverse=reverse)
    return MatchConfig(type=head, args=args.strip(), reverse=reverse)


def parse_exec(s: str) -> Tuple[str, str, str]:
    """Parse ``{$tag|type} [args]`` into (tag, type, args)."""
    head, _, args = s.strip().partition(" ")
    tag, is_tag = _trim_prefix_field(head, "$")
    if is_tag:
        return tag, "", args.strip()
    return "", head, args.strip()