# safe_audit/address.py
"""
Address classification.

Decides, without any I/O, whether a literal IP address or a hostname denotes
something private, loopback, link-local or otherwise internal.

- Literal IPv4/IPv6 addresses are checked against fixed ranges.
- IPv4-mapped IPv6 addresses are classified by their embedded IPv4 address.
- Hostnames are matched against a small blocklist by exact name or by
  label suffix. Substring matching is never used: "notlocalhost.com" and
  "locally.example.com" are public.
- Anything that cannot be parsed is private (fail closed).
"""
from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Iterable, Union
from urllib.parse import urlsplit

from safe_audit.models import AddressVerdict

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

IPV4_RULES: list[tuple[ipaddress.IPv4Network, str]] = [
    (ipaddress.IPv4Network("0.0.0.0/8"), "unspecified"),  # "this network"
    (ipaddress.IPv4Network("127.0.0.0/8"), "loopback"),
    (ipaddress.IPv4Network("10.0.0.0/8"), "rfc1918"),
    (ipaddress.IPv4Network("172.16.0.0/12"), "rfc1918"),
    (ipaddress.IPv4Network("192.168.0.0/16"), "rfc1918"),
    (ipaddress.IPv4Network("169.254.0.0/16"), "link-local"),
]

IPV6_RULES: list[tuple[ipaddress.IPv6Network, str]] = [
    (ipaddress.IPv6Network("::1/128"), "loopback"),
    (ipaddress.IPv6Network("::/128"), "unspecified"),
    (ipaddress.IPv6Network("fc00::/7"), "unique-local"),
    (ipaddress.IPv6Network("fe80::/10"), "link-local"),
]

# Exact names; every entry also blocks its subdomains ("a.b.local").
BLOCKED_HOSTNAMES = ("localhost", "local", "internal")

PUBLIC = AddressVerdict(is_private=False, reason="public")

# Hostname characters we accept before handing a name to DNS. Unicode letters
# are allowed for IDNs; URL delimiters and whitespace are not.
_FORBIDDEN_HOST_CHARS = re.compile(r"[\s/\\@?#\[\]%:<>\"'`^{}|]")
# Legacy inet_aton forms ("127.1", "0x7f.0.0.1", "2130706433").
_LEGACY_IPV4 = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$")


def _private(reason: str) -> AddressVerdict:
    return AddressVerdict(is_private=True, reason=reason)  # type: ignore[arg-type]


def classify_ip(ip: IPAddress) -> AddressVerdict:
    """Classify an already-parsed IP address."""
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return classify_ip(ip.ipv4_mapped)
        for network, reason in IPV6_RULES:
            if ip in network:
                return _private(reason)
        return PUBLIC

    for network, reason in IPV4_RULES:
        if ip in network:
            return _private(reason)
    return PUBLIC


def normalize_host(host_or_ip: str) -> str:
    host = (host_or_ip or "").strip().lower()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    # A single trailing dot is the fully-qualified form of the same name.
    if host.endswith(".") and not host.endswith(".."):
        host = host[:-1]
    return host


def parse_ip(host: str) -> IPAddress | None:
    """
    Parse ``host`` as a literal IP address, including legacy IPv4 spellings
    that resolvers and browsers still accept. Returns None for hostnames.
    """
    candidate = host.split("%", 1)[0] if ":" in host else host  # drop IPv6 zone id
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        pass
    if _LEGACY_IPV4.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def is_valid_hostname(host: str) -> bool:
    if not host or len(host) > 253:
        return False
    if _FORBIDDEN_HOST_CHARS.search(host):
        return False
    labels = host.split(".")
    return all(0 < len(label) <= 63 for label in labels)


def matches_blocklist(host: str, blocked: Iterable[str] = BLOCKED_HOSTNAMES) -> bool:
    """Exact or label-suffix match; "foo.local" matches, "foolocal.com" does not."""
    return any(host == name or host.endswith("." + name) for name in blocked)


def classify(host_or_ip: str) -> AddressVerdict:
    """Classify a literal IP address or a hostname. No I/O."""
    host = normalize_host(host_or_ip)
    if not host:
        return _private("malformed")

    ip = parse_ip(host)
    if ip is not None:
        return classify_ip(ip)

    if ":" in host or not is_valid_hostname(host):
        log.debug("Malformed host treated as private: %r", host_or_ip)
        return _private("malformed")

    if matches_blocklist(host):
        return _private("suffix-blocklisted")

    return PUBLIC


def is_private_host(host_or_ip: str) -> bool:
    return classify(host_or_ip).is_private


def is_private_url(url: str) -> bool:
    """Literal check of a URL's host. Unparseable URLs are private."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return True
    if not host:
        return True
    return is_private_host(host)
