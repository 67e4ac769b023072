# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Ordered header lists with case-insensitive lookup, and the header filter.

Headers travel through the proxy as a sequence of ``(name, value)`` pairs.
Order and the original spelling of names are kept because the outbound
signature is computed over exactly the headers that are sent; lookups
ignore case per RFC 7230.
"""

from collections.abc import Iterable, Sequence


Header = tuple[str, str]

#: Headers injected by the hosting layer on the client-facing hop.
FORWARDING_HEADERS = (
    "x-forwarded-proto",
    "x-real-ip",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-port",
)

#: RFC 7230 hop-by-hop headers, plus ``expect`` which the upstream
#: client does not honour.
HOP_BY_HOP_HEADERS = (
    "connection",
    "keep-alive",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "expect",
)

DEFAULT_DENY_HEADERS = FORWARDING_HEADERS + HOP_BY_HOP_HEADERS

#: Edge platform headers (e.g. ``cf-connecting-ip``, ``cf-ray``).
DEFAULT_DENY_PREFIXES = ("cf-",)


def get_header(headers: Sequence[Header], name: str) -> str | None:
    """Return the value of a header, case-insensitively.

    Repeated headers are joined with ``,``.

    Args:
        headers: Ordered (name, value) pairs.
        name: Header name in any case.

    Returns:
        The value, or None if the header is absent.
    """
    wanted = name.lower()
    values = [v for k, v in headers if k.lower() == wanted]
    if not values:
        return None
    return ",".join(values)


def remove_headers(
    headers: Iterable[Header], names: Iterable[str]
) -> list[Header]:
    """Drop every header whose name is in names (case-insensitive)."""
    drop = {n.lower() for n in names}
    return [(k, v) for k, v in headers if k.lower() not in drop]


def filter_headers(
    headers: Iterable[Header],
    deny: Iterable[str] = DEFAULT_DENY_HEADERS,
    prefixes: Iterable[str] = DEFAULT_DENY_PREFIXES,
) -> list[Header]:
    """Remove headers that exist only on the client-facing hop.

    The upstream rejects a signature whose signed header set names headers
    it never received, so these must not reach the outbound signing step.
    Remaining headers keep their relative order and spelling.  Filtering
    an already filtered list returns it unchanged.

    Args:
        headers: Inbound (name, value) pairs.
        deny: Header names to drop (case-insensitive).
        prefixes: Name prefixes to drop (case-insensitive).

    Returns:
        The filtered header list.
    """
    deny_set = {d.lower() for d in deny}
    prefix_tuple = tuple(p.lower() for p in prefixes)
    result: list[Header] = []
    for name, value in headers:
        lower = name.lower()
        if lower in deny_set:
            continue
        if prefix_tuple and lower.startswith(prefix_tuple):
            continue
        result.append((name, value))
    return result
