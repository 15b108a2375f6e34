"""
client_ip.py — resolve the real client address behind proxies and CDNs.

Headers are checked in priority order; each candidate must parse as an IP
address or the next one is tried:

  1. CF-Connecting-IP      (Cloudflare)
  2. True-Client-IP        (Cloudflare Enterprise, some CDNs)
  3. X-Real-IP             (nginx)
  4. X-Forwarded-For       (first hop)
  5. X-Cluster-Client-IP   (some Kubernetes ingresses)
  6. X-Forwarded: for=...
  7. Forwarded: for=...    (RFC 7239)
  8. ASGI connection address
"""

import ipaddress

from starlette.types import Scope

_SIMPLE_HEADERS = (
    b"cf-connecting-ip",
    b"true-client-ip",
    b"x-real-ip",
)


def _parse_ip(value: str) -> str | None:
    value = value.strip()
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def _parse_for_value(value: str) -> str | None:
    """Parse the value of a for= parameter: bare, quoted, bracketed or with port."""
    value = value.strip().strip('"')
    if value.startswith("["):
        # "[2001:db8::1]:4711"
        value = value[1:].split("]", 1)[0]
    elif value.count(":") == 1:
        # "192.0.2.60:8080"
        value = value.split(":", 1)[0]
    return _parse_ip(value)


def _forwarded_for(header: str) -> str | None:
    first_element = header.split(",", 1)[0]
    for part in first_element.split(";"):
        part = part.strip()
        if part.lower().startswith("for="):
            ip = _parse_for_value(part[4:])
            if ip:
                return ip
    return None


def get_client_ip(scope: Scope) -> str | None:
    """Return the client IP for an HTTP scope, or None if nothing parses."""
    headers: dict[bytes, bytes] = {}
    for key, value in scope.get("headers", []):
        headers.setdefault(key.lower(), value)

    def header(name: bytes) -> str:
        return headers.get(name, b"").decode("latin-1")

    for name in _SIMPLE_HEADERS:
        ip = _parse_ip(header(name))
        if ip:
            return ip

    xff = header(b"x-forwarded-for")
    if xff:
        ip = _parse_ip(xff.split(",", 1)[0])
        if ip:
            return ip

    ip = _parse_ip(header(b"x-cluster-client-ip"))
    if ip:
        return ip

    xf = header(b"x-forwarded").strip()
    if xf.lower().startswith("for="):
        ip = _parse_for_value(xf.split(";", 1)[0][4:])
        if ip:
            return ip

    fwd = header(b"forwarded")
    if fwd:
        ip = _forwarded_for(fwd)
        if ip:
            return ip

    client = scope.get("client")
    if client:
        return _parse_ip(str(client[0]))
    return None


def is_ip_allowed(client_ip: str | None, allowed: list[str]) -> bool:
    """Check an address against an allowlist of addresses and CIDR networks.

    An empty allowlist allows everything. An unknown address is never
    allowed by a non-empty list.
    """
    if not allowed:
        return True
    if not client_ip:
        return False
    try:
        addr = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        entry = entry.strip()
        if "/" in entry:
            try:
                if addr in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
        elif entry == client_ip or _parse_ip(entry) == str(addr):
            return True
    return False
