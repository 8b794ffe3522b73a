"""
Discovery v4 client — UDP peer discovery used by the crawler.

Packet types:
  0x01 Ping
  0x02 Pong
  0x03 FindNeighbours (FindNode)
  0x04 Neighbours (Nodes)
  0x05 ENRRequest   (EIP-868)
  0x06 ENRResponse  (EIP-868)

Packet structure:
  hash(32) || signature(65) || packet-type(1) || rlp-data(...)
  hash = keccak256(signature || packet-type || rlp-data)

The crawler only needs the client half of the protocol: it answers pings so
remote nodes accept its requests, but never serves neighbours itself.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import rlp
from coincurve import PrivateKey, PublicKey
from eth_utils import big_endian_to_int

from peerlogger.common.crypto import keccak256, private_key_to_public_key
from peerlogger.common.enr import ENRError, Node, decode_enr
from peerlogger.crawler.discovery import Discovery
from peerlogger.crawler.registry import CheckResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Packet types
# ---------------------------------------------------------------------------

PING = 0x01
PONG = 0x02
FIND_NEIGHBOURS = 0x03
NEIGHBOURS = 0x04
ENR_REQUEST = 0x05
ENR_RESPONSE = 0x06

# Expiration window (60 seconds)
EXPIRATION_WINDOW = 60

BUCKET_SIZE = 16      # nodes returned per FindNeighbours
ALPHA = 3             # concurrent queries per lookup step
LOOKUP_ROUNDS = 8
NEIGHBOURS_WAIT = 0.5


# ---------------------------------------------------------------------------
# Distance utilities
# ---------------------------------------------------------------------------

def distance(a: bytes, b: bytes) -> int:
    """XOR distance between two 32-byte node IDs."""
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def log_distance(a: bytes, b: bytes) -> int:
    """log2 of the XOR distance; 0 when the IDs are equal."""
    return distance(a, b).bit_length()


# ---------------------------------------------------------------------------
# Packet encoding/decoding
# ---------------------------------------------------------------------------

def _uint(value) -> int:
    return big_endian_to_int(value) if isinstance(value, bytes) else int(value)


def _ip_bytes(ip: str) -> bytes:
    if not ip:
        return b"\x00\x00\x00\x00"
    return ipaddress.ip_address(ip).packed


def _ip_str(data: bytes) -> str:
    if isinstance(data, bytes) and len(data) in (4, 16):
        return str(ipaddress.ip_address(data))
    return ""


@dataclass
class Endpoint:
    ip: str
    udp_port: int
    tcp_port: int = 0

    def encode(self) -> list:
        return [_ip_bytes(self.ip), self.udp_port, self.tcp_port]

    @classmethod
    def decode(cls, items: list) -> Endpoint:
        return cls(ip=_ip_str(items[0]), udp_port=_uint(items[1]), tcp_port=_uint(items[2]))


def _expiration() -> int:
    return int(time.time()) + EXPIRATION_WINDOW


def encode_packet(private_key: bytes, packet_type: int, payload: list) -> bytes:
    """Encode a discovery packet: hash || signature || type || data."""
    sig_input = bytes([packet_type]) + rlp.encode(payload)
    sig = PrivateKey(private_key).sign_recoverable(keccak256(sig_input), hasher=None)
    return keccak256(sig + sig_input) + sig + sig_input


def decode_packet(data: bytes) -> Optional[tuple[int, list, bytes, bytes]]:
    """Decode a discovery packet.

    Returns (packet_type, rlp_items, sender_pubkey_64, packet_hash) or None.
    """
    if len(data) < 32 + 65 + 1:
        return None
    packet_hash = data[:32]
    if packet_hash != keccak256(data[32:]):
        return None
    try:
        sig_input = data[97:]
        pubkey = PublicKey.from_signature_and_message(
            data[32:97], keccak256(sig_input), hasher=None,
        )
        items = rlp.decode(data[98:], strict=False)
    except Exception:
        return None
    if not isinstance(items, (list, tuple)):
        return None
    return data[97], list(items), pubkey.format(compressed=False)[1:], packet_hash


def ping_payload(from_ep: Endpoint, to_ep: Endpoint, enr_seq: int = 0) -> list:
    return [4, from_ep.encode(), to_ep.encode(), _expiration(), enr_seq]


def pong_payload(to_ep: Endpoint, ping_hash: bytes, enr_seq: int = 0) -> list:
    return [to_ep.encode(), ping_hash, _expiration(), enr_seq]


def find_neighbours_payload(target: bytes) -> list:
    return [target, _expiration()]


def enr_request_payload() -> list:
    return [_expiration()]


def decode_neighbours(items: list) -> list[Node]:
    """Decode the node list of a Neighbours packet, skipping bad entries."""
    nodes = []
    for entry in items[0]:
        try:
            pubkey = entry[3]
            if len(pubkey) != 64:
                continue
            nodes.append(Node(
                pubkey=pubkey,
                ip=_ip_str(entry[0]),
                udp_port=_uint(entry[1]),
                tcp_port=_uint(entry[2]),
            ))
        except (IndexError, TypeError, ValueError):
            continue
    return nodes


def _expired(value) -> bool:
    return _uint(value) < int(time.time())


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class DiscoveryProtocol(asyncio.DatagramProtocol):
    """UDP handler that matches replies to outstanding requests."""

    def __init__(self, private_key: bytes, local: Endpoint) -> None:
        self.private_key = private_key
        self.local = local
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._pending_pongs: dict[bytes, asyncio.Future] = {}   # ping_hash -> Future
        self._pending_enr: dict[bytes, asyncio.Future] = {}     # request_hash -> Future
        self._neighbours: dict[tuple[str, int], list[Node]] = {}

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self.transport = transport
        logger.info("Discovery UDP socket ready on port %d", self.local.udp_port)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        for fut in list(self._pending_pongs.values()) + list(self._pending_enr.values()):
            if not fut.done():
                fut.set_exception(ConnectionError("discovery socket closed"))
        self._pending_pongs.clear()
        self._pending_enr.clear()
        self.transport = None

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        result = decode_packet(data)
        if result is None:
            return
        packet_type, items, pubkey, packet_hash = result
        try:
            if packet_type == PING:
                self._handle_ping(items, packet_hash, addr)
            elif packet_type == PONG:
                self._handle_pong(items, pubkey)
            elif packet_type == NEIGHBOURS:
                self._handle_neighbours(items, addr)
            elif packet_type == ENR_RESPONSE:
                self._handle_enr_response(items, pubkey)
        except (IndexError, TypeError, ValueError) as e:
            logger.debug("Malformed packet 0x%02x from %s:%d: %s", packet_type, addr[0], addr[1], e)

    def _handle_ping(self, items: list, packet_hash: bytes, addr: tuple[str, int]) -> None:
        if _expired(items[3]):
            return
        self._send(PONG, pong_payload(Endpoint(addr[0], addr[1]), packet_hash), addr)

    def _handle_pong(self, items: list, pubkey: bytes) -> None:
        if _expired(items[2]):
            return
        fut = self._pending_pongs.pop(items[1], None)
        if fut is not None and not fut.done():
            seq = _uint(items[3]) if len(items) > 3 else 0
            fut.set_result((pubkey, seq))

    def _handle_neighbours(self, items: list, addr: tuple[str, int]) -> None:
        if _expired(items[1]):
            return
        bucket = self._neighbours.get(addr)
        if bucket is not None:
            bucket.extend(decode_neighbours(items))

    def _handle_enr_response(self, items: list, pubkey: bytes) -> None:
        fut = self._pending_enr.pop(items[0], None)
        if fut is None or fut.done():
            return
        try:
            node = decode_enr(rlp.encode(items[1]))
        except ENRError as e:
            fut.set_exception(e)
            return
        if node.pubkey != pubkey:
            fut.set_exception(ENRError("record key does not match sender"))
            return
        fut.set_result(node)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _send(self, packet_type: int, payload: list, addr: tuple[str, int]) -> bytes:
        if self.transport is None:
            raise ConnectionError("discovery socket not open")
        packet = encode_packet(self.private_key, packet_type, payload)
        self.transport.sendto(packet, addr)
        return packet[:32]

    async def ping(self, node: Node, timeout: float) -> tuple[bytes, int]:
        """Ping a node and wait for its pong. Returns (pubkey, enr_seq)."""
        to_ep = Endpoint(node.ip, node.udp_port, node.tcp_port)
        ping_hash = self._send(PING, ping_payload(self.local, to_ep), (node.ip, node.udp_port))
        fut = asyncio.get_running_loop().create_future()
        self._pending_pongs[ping_hash] = fut
        try:
            return await asyncio.wait_for(fut, timeout)
        finally:
            self._pending_pongs.pop(ping_hash, None)

    async def request_enr(self, node: Node, timeout: float) -> Node:
        """Ask a bonded node for its current signed record."""
        req_hash = self._send(ENR_REQUEST, enr_request_payload(), (node.ip, node.udp_port))
        fut = asyncio.get_running_loop().create_future()
        self._pending_enr[req_hash] = fut
        try:
            return await asyncio.wait_for(fut, timeout)
        finally:
            self._pending_enr.pop(req_hash, None)

    async def find_neighbours(self, node: Node, target: bytes, wait: float = NEIGHBOURS_WAIT) -> list[Node]:
        """Send FindNeighbours and collect whatever arrives within `wait`."""
        addr = (node.ip, node.udp_port)
        bucket = self._neighbours.setdefault(addr, [])
        try:
            self._send(FIND_NEIGHBOURS, find_neighbours_payload(target), addr)
            await asyncio.sleep(wait)
            return list(bucket)
        finally:
            self._neighbours.pop(addr, None)


# ---------------------------------------------------------------------------
# Discovery v4 client
# ---------------------------------------------------------------------------

class Discv4Discovery(Discovery):
    """Discovery backed by the discv4 UDP protocol."""

    def __init__(
        self,
        private_key: Optional[bytes] = None,
        listen_port: int = 30303,
        bootnodes: Optional[list[Node]] = None,
        listen_host: str = "0.0.0.0",
    ) -> None:
        self.private_key = private_key or os.urandom(32)
        self.pubkey = private_key_to_public_key(self.private_key)
        self.local_id = keccak256(self.pubkey)
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.bootnodes = list(bootnodes or [])
        self.protocol: Optional[DiscoveryProtocol] = None
        self._transport: Optional[asyncio.DatagramTransport] = None

    async def start(self) -> None:
        if self.protocol is not None:
            return
        loop = asyncio.get_running_loop()
        local = Endpoint("", self.listen_port, self.listen_port)
        self._transport, self.protocol = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self.private_key, local),
            local_addr=(self.listen_host, self.listen_port),
        )

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self.protocol = None

    def _require_protocol(self) -> DiscoveryProtocol:
        if self.protocol is None:
            raise ConnectionError("discovery not started")
        return self.protocol

    async def find_nodes(self, timeout: float) -> list[Node]:
        """Iterative lookup towards a random target, seeded by the bootnodes."""
        proto = self._require_protocol()
        target_pub = os.urandom(64)
        target_id = keccak256(target_pub)
        deadline = time.monotonic() + timeout

        seen: dict[bytes, Node] = {n.id: n for n in self.bootnodes}
        asked: set[bytes] = {self.local_id}
        closest = sorted(seen.values(), key=lambda n: distance(n.id, target_id))

        for _ in range(LOOKUP_ROUNDS):
            to_ask = [n for n in closest if n.id not in asked][:ALPHA]
            remaining = deadline - time.monotonic()
            if not to_ask or remaining <= 0:
                break
            wait = min(NEIGHBOURS_WAIT, remaining)
            replies = await asyncio.gather(
                *(proto.find_neighbours(n, target_pub, wait) for n in to_ask),
                return_exceptions=True,
            )
            for node, reply in zip(to_ask, replies):
                asked.add(node.id)
                if isinstance(reply, Exception):
                    logger.debug("FindNeighbours to %s failed: %s", node.id_hex[:16], reply)
                    continue
                for found in reply:
                    if found.id != self.local_id:
                        seen.setdefault(found.id, found)
            closest = sorted(seen.values(), key=lambda n: distance(n.id, target_id))[:BUCKET_SIZE]

        found = [n for n in seen.values() if n.id != self.local_id]
        logger.debug("Lookup finished: %d nodes seen, %d queried", len(found), len(asked) - 1)
        return found

    async def check_node(self, node: Node, timeout: float) -> CheckResult:
        """Bond with a ping, then ask for the node's current record.

        Nodes that answer the ping but not the ENR request are still alive;
        the known record is kept for them.
        """
        proto = self._require_protocol()
        deadline = time.monotonic() + timeout
        pubkey, enr_seq = await proto.ping(node, timeout)
        if pubkey != node.pubkey:
            return CheckResult(node_id=node.id_hex, ok=False, error="unexpected responder key")

        fresh = node
        remaining = deadline - time.monotonic()
        if (enr_seq > node.seq or not node.signed) and remaining > 0:
            try:
                # The ENR request only gets what the ping left of the budget.
                record = await proto.request_enr(node, remaining)
            except (asyncio.TimeoutError, ENRError) as e:
                logger.debug("No record from %s: %s", node.id_hex[:16], e)
            else:
                if record.seq >= node.seq and record.ip:
                    fresh = record
        return CheckResult(node_id=node.id_hex, ok=True, node=fresh)
