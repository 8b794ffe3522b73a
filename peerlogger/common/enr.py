"""
Node identities: Ethereum Node Records (EIP-778) and enode URLs.

A node is identified by its secp256k1 public key; the node ID is
keccak256(pubkey). Signed records carry a sequence number that the owner
bumps whenever the record changes, so the highest `seq` is the freshest copy.

Text forms:
  enr:<base64url(rlp([signature, seq, k1, v1, ...]))>   (signed, "v4" scheme)
  enode://<pubkey hex>@<ip>:<tcp port>[?discport=<udp port>]
"""

from __future__ import annotations

import base64
import ipaddress
from dataclasses import dataclass, field, replace
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import rlp
from eth_utils import big_endian_to_int

from peerlogger.common.crypto import (
    compress_pubkey,
    decompress_pubkey,
    keccak256,
    private_key_to_public_key,
    sign_compact,
    verify_compact,
)


MAX_RECORD_SIZE = 300
ID_SCHEME_V4 = b"v4"

ENR_PREFIX = "enr:"
ENODE_PREFIX = "enode://"


class ENRError(ValueError):
    """Malformed or badly signed node record."""


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

@dataclass
class Node:
    """A network node, optionally backed by a signed record."""
    pubkey: bytes          # 64-byte public key (uncompressed, without 0x04 prefix)
    ip: str = ""
    udp_port: int = 0
    tcp_port: int = 0
    seq: int = 0
    signature: bytes = b""
    # Record entries other than identity and endpoint (raw RLP items)
    extra: dict[bytes, Any] = field(default_factory=dict)
    # Encoded record as received or last signed
    raw: bytes = field(default=b"", repr=False, compare=False)

    @property
    def id(self) -> bytes:
        """32-byte node ID = keccak256(pubkey)."""
        return keccak256(self.pubkey)

    @property
    def id_hex(self) -> str:
        return self.id.hex()

    @property
    def signed(self) -> bool:
        return bool(self.signature)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return (
            self.pubkey == other.pubkey
            and self.seq == other.seq
            and self.ip == other.ip
            and self.udp_port == other.udp_port
            and self.tcp_port == other.tcp_port
        )

    def __hash__(self) -> int:
        return hash((self.pubkey, self.seq))

    # -----------------------------------------------------------------
    # Record construction
    # -----------------------------------------------------------------

    def _pairs(self) -> list[tuple[bytes, Any]]:
        pairs: dict[bytes, Any] = dict(self.extra)
        pairs[b"id"] = ID_SCHEME_V4
        pairs[b"secp256k1"] = compress_pubkey(self.pubkey)
        if self.ip:
            addr = ipaddress.ip_address(self.ip)
            if addr.version == 4:
                pairs[b"ip"] = addr.packed
                if self.udp_port:
                    pairs[b"udp"] = self.udp_port
                if self.tcp_port:
                    pairs[b"tcp"] = self.tcp_port
            else:
                pairs[b"ip6"] = addr.packed
                if self.udp_port:
                    pairs[b"udp6"] = self.udp_port
                if self.tcp_port:
                    pairs[b"tcp6"] = self.tcp_port
        return sorted(pairs.items())

    def _content(self) -> list:
        content: list = [self.seq]
        for key, value in self._pairs():
            content.extend([key, value])
        return content

    def sign(self, private_key: bytes, seq: Optional[int] = None) -> Node:
        """Return a copy of the record signed with the node's private key.

        The copy's `seq` is the given value, or this record's seq plus one.
        The receiver is left unchanged, so nodes already held in a registry
        stay consistent with their records.
        """
        if private_key_to_public_key(private_key) != self.pubkey:
            raise ENRError("private key does not match node public key")
        node = replace(self, seq=self.seq + 1 if seq is None else seq, extra=dict(self.extra))
        content = node._content()
        node.signature = sign_compact(keccak256(rlp.encode(content)), private_key)
        node.raw = rlp.encode([node.signature] + content)
        if len(node.raw) > MAX_RECORD_SIZE:
            raise ENRError(f"record too large: {len(node.raw)} bytes")
        return node

    @classmethod
    def create(
        cls,
        private_key: bytes,
        ip: str = "",
        udp_port: int = 0,
        tcp_port: int = 0,
        seq: int = 1,
    ) -> Node:
        """Build and sign a fresh record for a local identity."""
        node = cls(
            pubkey=private_key_to_public_key(private_key),
            ip=ip,
            udp_port=udp_port,
            tcp_port=tcp_port,
        )
        return node.sign(private_key, seq=seq)

    # -----------------------------------------------------------------
    # Encoding
    # -----------------------------------------------------------------

    def encode(self) -> bytes:
        """RLP-encode the signed record."""
        if not self.signed:
            raise ENRError("node record is not signed")
        if not self.raw:
            self.raw = rlp.encode([self.signature] + self._content())
        return self.raw

    def to_enr(self) -> str:
        b64 = base64.urlsafe_b64encode(self.encode()).rstrip(b"=")
        return ENR_PREFIX + b64.decode("ascii")

    def to_enode(self) -> str:
        host = self.ip or "0.0.0.0"
        if ":" in host:
            host = f"[{host}]"
        url = f"{ENODE_PREFIX}{self.pubkey.hex()}@{host}:{self.tcp_port}"
        if self.udp_port and self.udp_port != self.tcp_port:
            url += f"?discport={self.udp_port}"
        return url

    def text(self) -> str:
        """Canonical text form: the ENR when signed, otherwise an enode URL."""
        return self.to_enr() if self.signed else self.to_enode()

    def __repr__(self) -> str:
        return f"Node({self.id_hex[:16]}... {self.ip}:{self.tcp_port} seq={self.seq})"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _port(value: Any) -> int:
    if not isinstance(value, bytes) or len(value) > 2:
        raise ENRError("invalid port entry")
    return big_endian_to_int(value)


def decode_enr(raw: bytes) -> Node:
    """Decode and verify an RLP-encoded record."""
    if len(raw) > MAX_RECORD_SIZE:
        raise ENRError(f"record too large: {len(raw)} bytes")
    try:
        items = rlp.decode(raw)
    except rlp.DecodingError as e:
        raise ENRError(f"invalid record RLP: {e}") from e

    if not isinstance(items, (list, tuple)) or len(items) < 2 or len(items) % 2 != 0:
        raise ENRError("record must hold a signature, seq and key/value pairs")

    signature, seq_bytes = items[0], items[1]
    if not isinstance(signature, bytes):
        raise ENRError("invalid signature entry")
    if not isinstance(seq_bytes, bytes) or len(seq_bytes) > 8:
        raise ENRError("invalid seq")
    seq = big_endian_to_int(seq_bytes)

    pairs: dict[bytes, Any] = {}
    prev: Optional[bytes] = None
    for i in range(2, len(items), 2):
        key, value = items[i], items[i + 1]
        if not isinstance(key, bytes):
            raise ENRError("record key must be a byte string")
        if prev is not None and key <= prev:
            raise ENRError("record keys must be sorted and unique")
        prev = key
        pairs[key] = value

    if pairs.get(b"id") != ID_SCHEME_V4:
        raise ENRError("unsupported identity scheme")
    compressed = pairs.get(b"secp256k1")
    if not isinstance(compressed, bytes) or len(compressed) != 33:
        raise ENRError("missing secp256k1 public key")

    content = rlp.encode(list(items[1:]))
    if not verify_compact(keccak256(content), signature, compressed):
        raise ENRError("invalid record signature")

    node = Node(pubkey=decompress_pubkey(compressed), seq=seq, signature=signature, raw=raw)
    if b"ip" in pairs and isinstance(pairs[b"ip"], bytes) and len(pairs[b"ip"]) == 4:
        node.ip = str(ipaddress.IPv4Address(pairs[b"ip"]))
        node.udp_port = _port(pairs.get(b"udp", b""))
        node.tcp_port = _port(pairs.get(b"tcp", b""))
    elif b"ip6" in pairs and isinstance(pairs[b"ip6"], bytes) and len(pairs[b"ip6"]) == 16:
        node.ip = str(ipaddress.IPv6Address(pairs[b"ip6"]))
        node.udp_port = _port(pairs.get(b"udp6", b""))
        node.tcp_port = _port(pairs.get(b"tcp6", b""))

    known = {b"id", b"secp256k1", b"ip", b"udp", b"tcp", b"ip6", b"udp6", b"tcp6"}
    node.extra = {k: v for k, v in pairs.items() if k not in known}
    return node


def parse_enr(text: str) -> Node:
    """Parse the `enr:` text form."""
    if not text.startswith(ENR_PREFIX):
        raise ENRError("missing 'enr:' prefix")
    b64 = text[len(ENR_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(b64 + "=" * (-len(b64) % 4))
    except ValueError as e:
        raise ENRError(f"invalid base64: {e}") from e
    return decode_enr(raw)


def parse_enode(url: str) -> Node:
    """Parse an enode URL into an unsigned Node (seq 0)."""
    if not url.startswith(ENODE_PREFIX):
        raise ENRError("missing 'enode://' prefix")
    parsed = urlparse(url)
    try:
        pubkey = bytes.fromhex(parsed.username or "")
        host = parsed.hostname or ""
        tcp_port = parsed.port or 0
    except ValueError as e:
        raise ENRError(f"invalid enode URL: {e}") from e
    if len(pubkey) != 64:
        raise ENRError("enode public key must be 64 bytes")
    try:
        ipaddress.ip_address(host)
    except ValueError as e:
        raise ENRError(f"invalid enode host: {host!r}") from e

    udp_port = tcp_port
    discport = parse_qs(parsed.query).get("discport")
    if discport:
        try:
            udp_port = int(discport[0])
        except ValueError as e:
            raise ENRError("invalid discport") from e
    return Node(pubkey=pubkey, ip=host, udp_port=udp_port, tcp_port=tcp_port)


def parse_node(text: str) -> Node:
    """Parse either text form."""
    text = text.strip()
    if text.startswith(ENR_PREFIX):
        return parse_enr(text)
    return parse_enode(text)
