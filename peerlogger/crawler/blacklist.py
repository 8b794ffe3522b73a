"""
IP / public key blacklist.

The active rules live in one immutable snapshot. `reload` parses the new
lists into a fresh snapshot and swaps the reference, so concurrent readers
see either the old rules or the new ones, never a mix.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from peerlogger.common.enr import Node

logger = logging.getLogger(__name__)


IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _normalize_ip(addr: IPAddress) -> IPAddress:
    """Map IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) to plain IPv4."""
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def normalize_pubkey(key: str) -> str:
    """Hex keys compare case-insensitively, with or without a 0x prefix."""
    key = key.strip().lower()
    return key[2:] if key.startswith("0x") else key


@dataclass(frozen=True)
class BlacklistStats:
    ips: int
    networks: int
    pubkeys: int


@dataclass(frozen=True)
class _Rules:
    ips: frozenset
    networks: tuple
    pubkeys: frozenset

    @classmethod
    def parse(cls, ip_list: Iterable[str], pubkey_list: Iterable[str]) -> _Rules:
        ips: set[IPAddress] = set()
        networks: list[IPNetwork] = []
        for entry in ip_list:
            entry = entry.strip()
            if not entry:
                continue
            # CIDR notation
            if "/" in entry:
                try:
                    networks.append(ipaddress.ip_network(entry, strict=False))
                except ValueError as e:
                    logger.warning("Invalid CIDR in blacklist, skipping: %s (%s)", entry, e)
                continue
            # Single address
            try:
                ips.add(_normalize_ip(ipaddress.ip_address(entry)))
            except ValueError:
                logger.warning("Invalid IP address in blacklist, skipping: %s", entry)

        pubkeys = set()
        for key in pubkey_list:
            key = normalize_pubkey(key)
            if key:
                pubkeys.add(key)
        return cls(ips=frozenset(ips), networks=tuple(networks), pubkeys=frozenset(pubkeys))

    def match_ip(self, ip: str, fail_closed: bool = False) -> bool:
        try:
            addr = _normalize_ip(ipaddress.ip_address(ip.strip()))
        except (ValueError, AttributeError):
            logger.warning("Invalid IP address format for blacklist check: %r", ip)
            return fail_closed
        if addr in self.ips:
            return True
        for network in self.networks:
            if addr.version == network.version and addr in network:
                return True
        return False


class BlacklistFilter:
    """Exclusion rules for single IPs, CIDR ranges and node public keys.

    Lookups may run from any number of threads while the scheduler reloads.
    With `fail_closed`, addresses that cannot be parsed count as blacklisted.
    """

    def __init__(
        self,
        ip_list: Optional[Iterable[str]] = None,
        pubkey_list: Optional[Iterable[str]] = None,
        fail_closed: bool = False,
    ) -> None:
        self.fail_closed = fail_closed
        self._reload_lock = threading.Lock()
        self._rules = _Rules.parse(ip_list or [], pubkey_list or [])
        stats = self.get_stats()
        logger.info(
            "Blacklist loaded: single_ips=%d cidr_blocks=%d pubkeys=%d",
            stats.ips, stats.networks, stats.pubkeys,
        )

    def reload(self, ip_list: Iterable[str], pubkey_list: Iterable[str]) -> None:
        """Replace all rules with freshly parsed lists."""
        with self._reload_lock:
            rules = _Rules.parse(ip_list, pubkey_list)
            self._rules = rules
        logger.info(
            "Blacklist reloaded: single_ips=%d cidr_blocks=%d pubkeys=%d",
            len(rules.ips), len(rules.networks), len(rules.pubkeys),
        )

    def is_ip_blacklisted(self, ip: str) -> bool:
        """Exact address match or containment in a blacklisted range.

        Unparsable input is reported as not blacklisted unless the filter
        was built with `fail_closed`.
        """
        return self._rules.match_ip(ip, self.fail_closed)

    def is_pubkey_blacklisted(self, key: str) -> bool:
        if not key:
            return False
        return normalize_pubkey(key) in self._rules.pubkeys

    def is_node_blacklisted(self, node: Node) -> bool:
        """Check a node's address, public key and node ID against one snapshot."""
        rules = self._rules
        if rules.pubkeys and (
            node.pubkey.hex() in rules.pubkeys or node.id_hex in rules.pubkeys
        ):
            return True
        if not node.ip or not (rules.ips or rules.networks):
            return False
        return rules.match_ip(node.ip, self.fail_closed)

    def get_stats(self) -> BlacklistStats:
        rules = self._rules
        return BlacklistStats(
            ips=len(rules.ips),
            networks=len(rules.networks),
            pubkeys=len(rules.pubkeys),
        )
