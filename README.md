# dnschain

`dnschain` builds DNS query processing pipelines out of small plugins that
you can combine. A pipeline is a `Sequence` of rules. A rule can have
matchers, and it runs one executable if all of its matchers agree. Queries
and responses are `dns.message.Message` objects from dnspython. They travel
through the chain inside a `QueryContext`. Every `exec` and `match` method
is a coroutine, so chains run under `asyncio`.

## Installation

```
pip install dnschain
```

To install the test dependencies as well:

```
pip install "dnschain[test]"
```

## Concepts (`dnschain.core`)

- **`QueryContext(query, client_addr=None)`** holds the query and the
  current `response`. It also holds the numeric marks set along the way
  (`set_mark`, `has_mark`) and the EDNS0 options:
  - `client_opt`: the options the client sent, or `None`.
  - `query_opt()`: the options that plugins collect for the upstream query.
  - `upstream_opt()`: the options that came with the response.
  - `response_opt()`: the options that plugins collect for the client.

  `set_response(r)` replaces the response, and `None` removes it.
  `copy()` returns an independent deep copy.
- **`Executable`** has `async exec(qctx)`. After it returns, the chain
  carries on.
- **`RecursiveExecutable`** has `async exec(qctx, walker)`. It decides
  whether and when the rest of the chain runs, by awaiting
  `walker.exec_next(qctx)`.
- **`Matcher`** has `async match(qctx) -> bool`.
- **`QuickConfigurableExec`** and **`QuickConfigurableMatch`** are for
  tagged plugins that build a new executable or matcher from the argument
  string of a rule.
- **`BQ(plugins={...}, logger=...)`** is handed to plugins when they are
  set up. `get_plugin(tag)` looks up a plugin by its tag.

Setup functions are registered by type name with
`register_exec_quick_setup` and `register_match_quick_setup`. Registering
the same name twice raises `ValueError`. `get_exec_quick_setup` and
`get_match_quick_setup` look them up. Each plugin module registers its
types when it is imported, so import a module before you use its type in a
rule.

## Rules (`dnschain.config`, `dnschain.chain`)

`Sequence(bq, rule_args)` is built from a list of `RuleArgs`. Each has
`matches`, a list of match strings, and `exec`, one exec string:

- `$tag args` refers to a plugin in `bq.plugins`.
- `type args` creates an anonymous plugin through a registered setup
  function. `Sequence.close()` closes these plugins.
- A leading `!` on a match string negates it.

Setup errors are raised as `ValueError` and name the rule that failed.
`parse_args`, `parse_match` and `parse_exec` show how a string is split,
for example `parse_exec(" $t1   a 1  ")` returns `("t1", "", "a 1")`.

The built-in actions are:

| Type     | Effect                                                                  |
|----------|-------------------------------------------------------------------------|
| `accept` | Stop processing.                                                        |
| `reject` | Reply with an rcode (0–4095, default REFUSED) and stop.                 |
| `return` | Resume the sequence that jumped here, or stop.                          |
| `jump`   | Run the sequence with the given tag, then continue after this rule.     |
| `goto`   | Run the sequence with the given tag and do not come back.               |

The built-in matchers are `_true` and `_false`. `to_executable(v)` turns a
`RecursiveExecutable` into a plain `Executable`, and returns `None` for
anything that cannot run.

## Plugins

Each entry gives the module, what it provides, and the type name it
registers, if it registers one.

- `dnschain.mark`, type `mark` (executable and matcher): `Marker` sets
  decimal uint32 marks, or matches if any of them is set. Build one with
  `new_marker("1 2 3")`.
- `dnschain.black_hole`, type `black_hole`: `BlackHole(ips)` answers A and
  AAAA queries with the given addresses, with TTL 300. `response(q)` builds
  the reply without a context.
- `dnschain.drop_resp`, type `drop_resp`: `DropResp` clears the response.
- `dnschain.debug_print`, type `debug_print`: `DebugPrint` logs the query
  and the response at INFO level.
- `dnschain.ttl`, type `ttl`: `TTL(fix, minimum, maximum)` rewrites
  response TTLs. The argument is `"300-600"` for a range or `"5"` for a
  fixed value. The helpers `set_ttl`, `apply_minimal_ttl`,
  `apply_maximum_ttl`, `subtract_ttl` and `minimal_ttl` work on any
  message.
- `dnschain.sleep`, type `sleep`: `Sleep(seconds)`. The rule argument is
  in milliseconds.
- `dnschain.ecs_handler`, type `ecs`: `ECSHandler(ECSArgs(...))` adds an
  EDNS Client Subnet option to `query_opt()`. The option is the client's
  own ECS (`forward`), a `preset` address, or the client address (`send`).
  The default masks are 24 and 48. `new_subnet(ip, mask, v6)` builds the
  option.
- `dnschain.forward_edns0opt`, type `forward_edns0opt`: `EDNS0Forwarder`
  copies the options with the listed codes from the client to the upstream,
  and from the upstream back to the client.
- `dnschain.query_summary`, type `query_summary`: `SummaryLogger` logs one
  line per query after the rest of the chain has run.
- `dnschain.fallback`: `Fallback(bq, FallbackArgs(primary=..., secondary=...))`
  runs the primary plugin. If the primary fails, returns no response, or
  takes longer than `threshold` milliseconds (default 500), it races the
  secondary plugin against it. With `always_standby` the secondary starts
  at once.
- `dnschain.cache`, type `cache`: `Cache(CacheArgs(...), logger)` is an
  LRU response cache. The default size is 1024. NXDOMAIN is cached for
  30 s, SERVFAIL for 5 s, and answers for their smallest TTL. With
  `lazy_cache_ttl`, expired answers are served with TTL 5 while a
  background refresh runs. `write_dump` and `read_dump` save and restore
  the entries as a gzip stream. With `dump_file`, the cache is loaded at
  start, saved on `close()`, and saved periodically. The counters are
  `query_total`, `hit_total` and `lazy_hit_total`. `flush()` empties the
  cache. `get_msg_key` and `copy_no_opt` are available on their own.
- `dnschain.dual_selector`, types `prefer_ipv4` and `prefer_ipv6`:
  `Selector` answers the non-preferred address type with an empty reply
  when the domain has records of the preferred type. Build one with
  `new_prefer_ipv4` or `new_prefer_ipv6`. `msg_answer_has_rr(m, t)` tests
  an answer section.

## Example

```python
import asyncio

import dns.message
import dns.rdatatype

import dnschain.black_hole  # registers "black_hole"
from dnschain.chain import Sequence
from dnschain.config import RuleArgs
from dnschain.core import BQ, QueryContext

seq = Sequence(BQ(), [
    RuleArgs(exec="black_hole 0.0.0.0 ::"),
    RuleArgs(exec="accept"),
])

qctx = QueryContext(dns.message.make_query("example.com.", dns.rdatatype.A))
asyncio.run(seq.exec(qctx))
print(qctx.response)
```

## What it does not do

`dnschain` only processes messages. It does not listen for queries, and it
has no plugin that sends queries to upstream servers: whatever answers in
your chain is a plugin you supply. EDNS options gathered in `query_opt()`
and `response_opt()` are not written into messages for you. There is no
command-line program, no configuration-file loader, and no HTTP API for the
cache. Use `flush`, `write_dump` and `read_dump` directly instead.