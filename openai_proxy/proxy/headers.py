"""
Header rules shared by the request and response directions of the proxy.

Hop-by-hop headers only describe a single connection and are never relayed
(RFC 9110 section 7.6.1). The ``Connection`` header may name additional
hop-by-hop headers, which are dropped as well.
"""

from typing import Iterable, List, Optional, Set, Tuple

HeaderPairs = Iterable[Tuple[str, Optional[str]]]

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Client credentials are replaced by the proxy's own token, never relayed
CREDENTIAL_HEADERS = frozenset({"authorization", "api-key"})


def parse_connection_tokens(values: Iterable[Optional[str]]) -> Set[str]:
    """Collect the header names listed by one or more ``Connection`` values."""
    combined = ",".join(value for value in values if value)
    return {token.strip().lower() for token in combined.split(",") if token.strip()}


def should_skip_header(name: str, connection_tokens: Set[str]) -> bool:
    normalized = name.lower()
    return normalized in HOP_BY_HOP_HEADERS or normalized in connection_tokens


def sanitize_headers(headers: HeaderPairs) -> List[Tuple[str, str]]:
    """
    Filter a header list for relaying to the other side of the proxy.

    Input is a sequence of ``(name, value)`` pairs so repeated headers such as
    ``set-cookie`` survive as separate entries, in their original order.
    Names are lower-cased, values are kept verbatim.
    """
    pairs = list(headers)
    connection_tokens = parse_connection_tokens(
        value for name, value in pairs if name.lower() == "connection"
    )

    sanitized = []
    for name, value in pairs:
        normalized = name.lower()
        if not value or normalized in CREDENTIAL_HEADERS:
            continue
        if should_skip_header(normalized, connection_tokens):
            continue
        sanitized.append((normalized, value))
    return sanitized


def build_outbound_headers(
    headers: HeaderPairs, token: str, target_host: str
) -> List[Tuple[str, str]]:
    """
    Build the header list sent upstream: sanitized inbound headers with the
    ``host`` pointing at the upstream and a single bearer ``authorization``.
    """
    outbound = [(name, value) for name, value in sanitize_headers(headers) if name != "host"]
    outbound.append(("host", target_host))
    outbound.append(("authorization", f"Bearer {token}"))
    return outbound
