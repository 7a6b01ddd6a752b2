# nodesocket

An asyncio UDP transport for peer-to-peer nodes. Every unsolicited inbound
datagram passes a packet filter before it reaches your code. The filter
applies GCRA rate limits per IP address, per node id and in total. It keeps
permit and ban lists. It bans IPs that present too many node ids, and IPs
that have too many of their nodes banned.

The package has no runtime dependencies and needs Python 3.11 or later.

## Durations

Wherever a duration is taken, you can pass either a number of seconds
(`int` or `float`) or a `datetime.timedelta`.

## Rate limiting (`nodesocket.rate_limiter`)

`RateLimiterBuilder` builds a `RateLimiter`. The total quota is required.
The node and IP quotas are optional.

- `total_one_every`, `node_one_every` and `ip_one_every` set hard limits of
  one token per period.
- `total_n_every`, `node_n_every` and `ip_n_every` allow bursts of up to `n`
  tokens, with one token coming back every `period / n`.

`build()` raises `ValueError` in these cases:

- the total quota is missing;
- a quota has no tokens;
- a quota has a zero period.

`RateLimiter.allows(kind, key=None)` counts one request against a limit.
The `kind` is a `LimitKind`: `TOTAL`, `NODE_ID` or `IP`. If no quota is set
for `NODE_ID` or `IP`, those requests are always allowed. A refused request
raises a subclass of `RateLimitedError`:

- `TooLargeError`: the request asks for more tokens than the bucket can ever hold.
- `TooSoonError`: the request came too early. Its `retry_after` is a
  `timedelta` that says how long to wait.

```python
from datetime import timedelta
from nodesocket.rate_limiter import LimitKind, RateLimitedError, RateLimiterBuilder

limiter = (
    RateLimiterBuilder()
    .total_n_every(10, timedelta(seconds=1))
    .ip_one_every(timedelta(milliseconds=500))
    .build()
)

try:
    limiter.allows(LimitKind.IP, "192.0.2.1")
except RateLimitedError:
    ...  # drop or ban
```

`total_requests_per_second()` estimates the expected request rate. For a
burst quota the estimate is doubled. `prune()` forgets keys whose bucket has
refilled.

The lower-level `Limiter` is built with `Limiter.from_quota(Quota(period, max_tokens))`.
It is driven with an explicit time since start: `allows(time_since_start, key, tokens)`
and `prune(time_limit)`.

## Packet cache (`nodesocket.cache`)

`ReceivedPacketCache(target, time_window)` keeps `time_window` seconds of
`ReceivedPacket` entries. `cache_insert` returns `False`, and stores nothing,
once `target` entries have arrived within the last second
(`ENFORCED_SIZE_TIME`). You can iterate the cache and take its `len()`.

## Filtering (`nodesocket.filter`)

A `Filter` is built from a `FilterConfig` and an optional ban duration.
`FilterConfig` has these settings:

- `enabled`: defaults to `True`.
- `rate_limiter`: defaults to `None`.
- `max_nodes_per_ip`: defaults to 10.
- `max_bans_per_ip`: defaults to 5.

Either limit can be set to `None` to switch it off. The filter checks
packets in two steps:

- `initial_pass(src)` runs before decoding. Permitted IPs always pass and
  banned IPs never do. It records the packet for the metrics. When the filter
  is enabled, it applies the per-IP limit, which bans the IP if broken, and
  then the total limit.
- `final_pass(node_address, packet)` runs once the sender's `NodeAddress` is
  known. It checks the permitted and banned node ids. It applies the per-node
  limit, which bans the node and counts the ban against its IP. It also bans
  an IP that presents too many node ids.

Bans go into a `PermitBanList`. You can pass one in to share it. A ban's
value is the monotonic time it expires at, or `None`. The filter records this
time but does not lift bans itself. Statistics on unsolicited requests are
kept in `FilterMetrics`. `prune_limiter()` prunes the rate limiter.

## Sockets (`nodesocket.transport`)

`Socket.open(SocketConfig(...))` binds a UDP socket and starts a receive
handler (`nodesocket.recv.RecvHandler`) and a send handler
(`nodesocket.send.SendHandler`). Use the socket as an async context manager,
or call `close()`. Either way, both handlers stop.

```python
from nodesocket.transport import Socket, SocketConfig

config = SocketConfig(
    socket_addr=("127.0.0.1", 9000),
    local_node_id=b"\x01" * 32,
    decode=my_decoder,
)

async with await Socket.open(config) as sock:
    await sock.send(outbound_packet)   # an OutboundPacket
    inbound = await sock.recv()        # an InboundPacket
```

The socket behaves as follows:

- Datagrams from addresses listed in `expected_responses` skip the filter.
- While the filter is enabled, the receive handler prunes the rate limiter
  every 30 seconds.
- Decoded packets wait in a queue of up to 30.
- The send handler logs a warning for encoded packets larger than 1280 bytes.

## What the package does not do

The package has no wire format of its own, no node discovery logic and no
command-line program. You supply the packet format yourself:

- `decode(local_node_id, datagram)` must return a pair: a packet with
  `header`, `message` and `src_id()`, and its authenticated data. It must raise
  `ValueError` on malformed input.
- An outbound packet must provide `encode(dst_node_id)`, which returns bytes.

## Tests

```
pip install -e .[test]
pytest
```