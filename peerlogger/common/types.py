"""
Shared data types for crawled peers.

ClientInfo is what a peer reports about itself during the devp2p/eth
handshake; GeoData is what the geolocation databases know about its address.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ForkID:
    """EIP-2124 fork identifier."""
    hash: bytes = b"\x00" * 4
    next: int = 0

    def __str__(self) -> str:
        return f"Hash: 0x{self.hash.hex()}, Next {self.next}"


@dataclass
class ClientInfo:
    """Metadata about the remote client, attached to a peer record."""
    client_type: str = ""
    software_version: int = 0
    capabilities: list[str] = field(default_factory=list)
    network_id: int = 0
    fork_id: ForkID = field(default_factory=ForkID)
    blockheight: str = ""
    total_difficulty: int = 0
    head_hash: bytes = b"\x00" * 32

    def to_json(self) -> dict:
        return {
            "clientType": self.client_type,
            "softwareVersion": self.software_version,
            "capabilities": list(self.capabilities),
            "networkID": self.network_id,
            "forkID": {"hash": "0x" + self.fork_id.hash.hex(), "next": self.fork_id.next},
            "blockheight": self.blockheight,
            "totalDifficulty": str(self.total_difficulty),
            "headHash": "0x" + self.head_hash.hex(),
        }

    @classmethod
    def from_json(cls, data: dict) -> ClientInfo:
        fork = data.get("forkID") or {}
        return cls(
            client_type=data.get("clientType", ""),
            software_version=int(data.get("softwareVersion", 0)),
            capabilities=[str(c) for c in data.get("capabilities") or []],
            network_id=int(data.get("networkID", 0)),
            fork_id=ForkID(
                hash=bytes.fromhex(fork.get("hash", "0x00000000").removeprefix("0x")),
                next=int(fork.get("next", 0)),
            ),
            blockheight=data.get("blockheight", ""),
            total_difficulty=int(data.get("totalDifficulty", "0")),
            head_hash=bytes.fromhex(data.get("headHash", "0x" + "00" * 32).removeprefix("0x")),
        )


@dataclass
class GeoData:
    """Geolocation of a peer address. Unknown fields are None."""
    country_name: Optional[str] = None
    country_code: Optional[str] = None
    city_name: Optional[str] = None
    as_number: Optional[int] = None

    def is_empty(self) -> bool:
        return (
            self.country_name is None
            and self.country_code is None
            and self.city_name is None
            and self.as_number is None
        )
