"""
Store interface — persistence contract for crawled nodes.

Rows are keyed by node ID; `upsert_node` must be idempotent so that a
crawl round can report the same node any number of times.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from peerlogger.common.types import GeoData
from peerlogger.crawler.registry import PeerRecord


class NodeStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ERROR = "error"


@dataclass
class NodeUpsert:
    """Values written for one execution-layer node."""
    node_id: str
    ip_address: str
    tcp_port: int = 0
    udp_port: int = 0
    client_name: str = ""
    client_version: str = ""
    protocol_version: int = 0
    fork_id: Optional[str] = None
    head_hash: Optional[str] = None
    network_id: Optional[int] = None
    chain_id: Optional[int] = None
    seq: int = 0
    score: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    country_code: Optional[str] = None
    city_name: Optional[str] = None
    as_number: Optional[int] = None
    connection_status: NodeStatus = NodeStatus.UNKNOWN
    failure_count: int = 0
    ping_rtt: Optional[int] = None  # microseconds


@dataclass
class StoredNode(NodeUpsert):
    """A node row as read back from the store."""
    id: int = 0
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class NodeStore(ABC):
    """Abstract node repository.

    Implementations must tolerate concurrent callers; the crawler treats the
    store as shared and append/update only.
    """

    @abstractmethod
    def upsert_node(self, node: NodeUpsert) -> None:
        """Insert or update the row for node.node_id."""
        ...

    @abstractmethod
    def get_node(self, node_id: str) -> Optional[StoredNode]:
        ...

    @abstractmethod
    def get_all_nodes(self, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        """Nodes ordered by last_seen, most recent first."""
        ...

    @abstractmethod
    def get_active_nodes(self, since_seconds: float) -> list[StoredNode]:
        """Nodes seen within the last `since_seconds`."""
        ...

    @abstractmethod
    def update_node_status(self, node_id: str, status: NodeStatus, failure_count: int) -> None:
        ...

    @abstractmethod
    def delete_old_nodes(self, older_than_seconds: float) -> int:
        """Delete nodes not seen for `older_than_seconds`; returns rows removed."""
        ...

    @abstractmethod
    def get_nodes_by_client(self, client_name: str, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        ...

    @abstractmethod
    def get_nodes_by_country(self, country_code: str, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        ...

    @abstractmethod
    def get_node_stats(self) -> dict[str, int]:
        ...

    @abstractmethod
    def get_online_nodes_count(self) -> int:
        ...

    @abstractmethod
    def get_client_distribution(self) -> dict[str, int]:
        ...

    @abstractmethod
    def get_country_distribution(self) -> dict[str, int]:
        ...

    def close(self) -> None:
        """Release resources. Default: no-op."""


def node_upsert_from_record(record: PeerRecord, geo: Optional[GeoData] = None) -> NodeUpsert:
    """Derive the stored row for a registry record."""
    info = record.info
    geo = geo or GeoData()
    client_name, client_version = "", ""
    if info is not None and info.client_type:
        client_name, _, client_version = info.client_type.partition("/")
    if not client_name and record.too_many_peers:
        client_name = "tmp"

    online = record.last_response is not None and record.last_response == record.last_check
    return NodeUpsert(
        node_id=record.id,
        ip_address=record.node.ip,
        tcp_port=record.node.tcp_port,
        udp_port=record.node.udp_port,
        client_name=client_name,
        client_version=client_version,
        protocol_version=info.software_version if info else 0,
        fork_id=str(info.fork_id) if info else None,
        head_hash="0x" + info.head_hash.hex() if info else None,
        network_id=info.network_id if info else None,
        seq=record.seq,
        score=record.score,
        first_seen=record.first_response,
        last_seen=record.last_response,
        country_code=geo.country_code,
        city_name=geo.city_name,
        as_number=geo.as_number,
        connection_status=NodeStatus.ONLINE if online else NodeStatus.OFFLINE,
        failure_count=0 if online else 1,
    )
