# safe_audit/dns_safety.py
"""
DNS-backed hostname safety checks with a short-lived verdict cache.

A hostname is unsafe when the lookup fails, returns nothing, or when ANY of
the returned addresses is private. Checking every address (not just the
first) closes the multi-homed bypass where a name resolves to one public and
one private address.

Verdicts are cached briefly: long enough to spare the resolver when the
browser fires dozens of sub-requests at the same host, short enough to keep
the DNS-rebinding window small. Failed lookups expire sooner than safe ones.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from safe_audit.address import PUBLIC, classify, classify_ip, normalize_host, parse_ip
from safe_audit.models import AddressVerdict, VerdictReason

log = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[Iterable[str]]]
Clock = Callable[[], float]

RESOLUTION_FAILED = AddressVerdict(is_private=True, reason="resolution-failed")
MALFORMED_ANSWER = AddressVerdict(is_private=True, reason="malformed")


@dataclass
class DnsSafetyCacheEntry:
    hostname: str
    resolves_to_private: bool
    expires_at: float
    reason: VerdictReason = "public"


async def system_resolver(hostname: str) -> List[str]:
    """Resolve every A/AAAA address for ``hostname`` through the OS resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return sorted({sockaddr[0] for _family, _type, _proto, _canon, sockaddr in infos})


class DnsSafetyResolver:
    """
    Process-wide hostname safety oracle. Construct one per process and pass it
    to whatever needs it; tests build isolated instances with a fake resolver
    and clock.
    """

    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        *,
        clock: Clock = time.monotonic,
        safe_ttl: float = 60.0,
        failed_ttl: float = 30.0,
        max_entries: int = 10_000,
        evict_fraction: float = 0.25,
        lookup_timeout: float = 5.0,
        prune_interval: float = 5.0,
    ):
        self._resolver = resolver or system_resolver
        self._clock = clock
        self.safe_ttl = safe_ttl
        self.failed_ttl = failed_ttl
        self.max_entries = max(1, max_entries)
        self.evict_fraction = min(1.0, max(0.01, evict_fraction))
        self.lookup_timeout = lookup_timeout
        self.prune_interval = prune_interval

        self._cache: "OrderedDict[str, DnsSafetyCacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._last_prune = float("-inf")

    @classmethod
    def from_config(
        cls, config: Dict[str, Any], resolver: Optional[Resolver] = None
    ) -> "DnsSafetyResolver":
        dns_cfg = config.get("dns", {})
        return cls(
            resolver,
            safe_ttl=float(dns_cfg.get("safe_ttl_seconds", 60.0)),
            failed_ttl=float(dns_cfg.get("failed_ttl_seconds", 30.0)),
            max_entries=int(dns_cfg.get("max_entries", 10_000)),
            evict_fraction=float(dns_cfg.get("evict_fraction", 0.25)),
            lookup_timeout=float(dns_cfg.get("timeout_seconds", 5.0)),
        )

    # ---- Cache ---------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _get_live(self, hostname: str, now: float) -> Optional[DnsSafetyCacheEntry]:
        with self._lock:
            if now - self._last_prune >= self.prune_interval:
                self._prune_expired(now)
            entry = self._cache.get(hostname)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._cache[hostname]
                return None
            return entry

    def _prune_expired(self, now: float) -> None:
        # Caller holds the lock.
        expired = [h for h, e in self._cache.items() if e.expires_at <= now]
        for h in expired:
            del self._cache[h]
        self._last_prune = now
        if expired:
            log.debug("Pruned %d expired DNS safety entries.", len(expired))

    def _store(self, hostname: str, verdict: AddressVerdict, ttl: float) -> AddressVerdict:
        now = self._clock()
        with self._lock:
            self._cache.pop(hostname, None)
            self._cache[hostname] = DnsSafetyCacheEntry(
                hostname=hostname,
                resolves_to_private=verdict.is_private,
                expires_at=now + ttl,
                reason=verdict.reason,
            )
            if len(self._cache) > self.max_entries:
                self._prune_expired(now)
            if len(self._cache) > self.max_entries:
                evict = max(1, int(len(self._cache) * self.evict_fraction))
                for _ in range(evict):
                    self._cache.popitem(last=False)
                log.info("DNS safety cache over capacity; evicted %d oldest entries.", evict)
        return verdict

    # ---- Public API ----------------------------------------------------------

    async def verdict(self, hostname: str) -> AddressVerdict:
        """
        Classify ``hostname`` by its literal form first, then by every address
        it resolves to. Failed or empty lookups come back as
        ``resolution-failed``; a private answer carries the reason of the first
        private address.
        """
        host = normalize_host(hostname)

        # Literal addresses need no lookup.
        ip = parse_ip(host)
        if ip is not None:
            return classify_ip(ip)

        literal = classify(host)
        if literal.is_private:
            return literal

        entry = self._get_live(host, self._clock())
        if entry is not None:
            return AddressVerdict(is_private=entry.resolves_to_private, reason=entry.reason)

        try:
            addresses = list(
                await asyncio.wait_for(self._resolver(host), timeout=self.lookup_timeout)
            )
        except (OSError, asyncio.TimeoutError, UnicodeError, ValueError) as e:
            log.info("DNS lookup failed for %s: %s", host, e)
            return self._store(host, RESOLUTION_FAILED, self.failed_ttl)

        if not addresses:
            log.info("DNS lookup for %s returned no addresses.", host)
            return self._store(host, RESOLUTION_FAILED, self.failed_ttl)

        private = [a for a in addresses if _address_verdict(a).is_private]
        if private:
            log.warning("Hostname %s resolves to private address(es) %s", host, private)
            return self._store(host, _address_verdict(private[0]), self.safe_ttl)

        return self._store(host, PUBLIC, self.safe_ttl)

    async def is_hostname_safe(self, hostname: str) -> bool:
        """True when ``hostname`` is safe to contact right now."""
        return not (await self.verdict(hostname)).is_private


def _address_verdict(address: str) -> AddressVerdict:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return MALFORMED_ANSWER
    return classify_ip(ip)
