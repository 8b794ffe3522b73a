"""
Node registry — the crawler's working set of peer records.

Records are keyed by hex node ID. Each record tracks a liveness score that
is incremented by one when the node passes a check and halved every time it
doesn't, so nodes that stop answering sink quickly but are not forgotten;
eviction is left to the caller via `top_n`.

The registry serializes to a JSON object (`nodes.json`) keyed by node ID.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional

from peerlogger.common.enr import ENRError, Node, parse_node
from peerlogger.common.types import ClientInfo

logger = logging.getLogger(__name__)


STDOUT_PATH = "-"


class IntegrityError(ValueError):
    """A registry entry disagrees with the node record it holds."""

    def __init__(self, node_id: str, message: str) -> None:
        super().__init__(f"invalid node {node_id}: {message}")
        self.node_id = node_id


class SnapshotError(ValueError):
    """A node-set snapshot could not be read or parsed."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class PeerRecord:
    """One tracked peer."""
    node: Node
    seq: int = 0
    # Liveness tracker: +1 when the node passes a check, halved when it doesn't
    score: int = 0
    # Successful contacts
    first_response: Optional[datetime] = None
    last_response: Optional[datetime] = None
    # Last attempt to contact the node
    last_check: Optional[datetime] = None
    info: Optional[ClientInfo] = None
    too_many_peers: bool = False

    @property
    def id(self) -> str:
        return self.node.id_hex

    def to_json(self) -> dict:
        data: dict = {
            "seq": self.seq,
            "record": self.node.text(),
        }
        if self.score:
            data["score"] = self.score
        data["firstResponse"] = _format_time(self.first_response)
        data["lastResponse"] = _format_time(self.last_response)
        data["lastCheck"] = _format_time(self.last_check)
        if self.info is not None:
            data["clientInfo"] = self.info.to_json()
        if self.too_many_peers:
            data["tooManyPeers"] = True
        return data

    @classmethod
    def from_json(cls, data: dict) -> PeerRecord:
        info = data.get("clientInfo")
        return cls(
            node=parse_node(data["record"]),
            seq=int(data.get("seq", 0)),
            score=int(data.get("score", 0)),
            first_response=_parse_time(data.get("firstResponse")),
            last_response=_parse_time(data.get("lastResponse")),
            last_check=_parse_time(data.get("lastCheck")),
            info=ClientInfo.from_json(info) if info else None,
            too_many_peers=bool(data.get("tooManyPeers", False)),
        )


@dataclass
class CheckResult:
    """Outcome of one liveness check against a node."""
    node_id: str
    ok: bool
    # Freshest record obtained from the node (success only)
    node: Optional[Node] = None
    info: Optional[ClientInfo] = None
    too_many_peers: bool = False
    error: str = ""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class NodeRegistry:
    """Deduplicated, scored set of peer records keyed by hex node ID.

    All access goes through one re-entrant lock so that snapshots never
    observe a partially applied score update.
    """

    def __init__(self, records: Optional[dict[str, PeerRecord]] = None) -> None:
        self._records: dict[str, PeerRecord] = dict(records or {})
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._records

    def __iter__(self) -> Iterator[PeerRecord]:
        return iter(self.all_records())

    def get(self, node_id: str) -> Optional[PeerRecord]:
        with self._lock:
            return self._records.get(node_id)

    # -----------------------------------------------------------------
    # Set operations
    # -----------------------------------------------------------------

    def add(self, *nodes: Node) -> None:
        """Ensure the given nodes are present in the set.

        Existing entries keep their score and timestamps; the node record and
        seq are replaced unless the supplied copy is older than the stored one.
        """
        with self._lock:
            for node in nodes:
                key = node.id_hex
                record = self._records.get(key)
                if record is None:
                    self._records[key] = PeerRecord(node=node, seq=node.seq)
                    continue
                if node.seq < record.seq:
                    logger.debug("Ignoring stale record for %s (seq %d < %d)", key[:16], node.seq, record.seq)
                    continue
                record.node = node
                record.seq = node.seq

    def all_records(self) -> list[PeerRecord]:
        """Point-in-time copy of all records, sorted by ID."""
        with self._lock:
            return [dataclasses.replace(self._records[k]) for k in sorted(self._records)]

    def nodes(self) -> list[Node]:
        """Node records contained in the set, sorted by ID."""
        return [r.node for r in self.all_records()]

    def top_n(self, n: int) -> NodeRegistry:
        """Return the top n nodes by score as a new set."""
        records = self.all_records()
        if n >= len(records):
            return NodeRegistry({r.id: r for r in records})
        # Sort is stable over the ID-ordered input, so ties resolve by ID.
        by_score = sorted(records, key=lambda r: r.score, reverse=True)
        return NodeRegistry({r.id: r for r in by_score[:max(n, 0)]})

    def verify(self) -> None:
        """Perform integrity checks on the node set."""
        with self._lock:
            for node_id, record in self._records.items():
                if record.node.id_hex != node_id:
                    raise IntegrityError(
                        node_id, f"ID does not match ID {record.node.id_hex} in record",
                    )
                if record.node.seq != record.seq:
                    raise IntegrityError(
                        node_id, f"'seq' does not match seq {record.node.seq} from record",
                    )

    # -----------------------------------------------------------------
    # Scoring
    # -----------------------------------------------------------------

    def update_score(
        self,
        node_id: str,
        ok: bool,
        now: Optional[datetime] = None,
        info: Optional[ClientInfo] = None,
        too_many_peers: bool = False,
    ) -> Optional[PeerRecord]:
        """Record the outcome of one contact attempt with a known node."""
        now = now or _now()
        with self._lock:
            record = self._records.get(node_id)
            if record is None:
                return None
            record.last_check = now
            record.too_many_peers = too_many_peers
            if ok:
                record.score += 1
                record.last_response = now
                if record.first_response is None:
                    record.first_response = now
                if info is not None:
                    record.info = info
            else:
                record.score //= 2
            return dataclasses.replace(record)

    def apply_checks(
        self, results: Iterable[CheckResult], now: Optional[datetime] = None,
    ) -> list[PeerRecord]:
        """Merge a round's check results in one step.

        Nodes not yet in the set are only admitted on a successful check.
        Returns the records of every node that responded.
        """
        now = now or _now()
        alive: list[PeerRecord] = []
        with self._lock:
            for result in results:
                if result.ok and result.node is not None:
                    self.add(result.node)
                if result.node_id not in self._records:
                    continue
                updated = self.update_score(
                    result.node_id,
                    result.ok,
                    now=now,
                    info=result.info,
                    too_many_peers=result.too_many_peers,
                )
                if result.ok and updated is not None:
                    alive.append(updated)
        return alive

    # -----------------------------------------------------------------
    # Serialization
    # -----------------------------------------------------------------

    def to_json(self) -> dict:
        return {r.id: r.to_json() for r in self.all_records()}

    @classmethod
    def from_json(cls, data: dict) -> NodeRegistry:
        if not isinstance(data, dict):
            raise SnapshotError("node set must be a JSON object")
        records: dict[str, PeerRecord] = {}
        for node_id, entry in data.items():
            try:
                records[node_id] = PeerRecord.from_json(entry)
            except (ENRError, KeyError, TypeError, ValueError, AttributeError) as e:
                raise SnapshotError(f"invalid entry {node_id}: {e}") from e
        return cls(records)

    def write_nodes_json(self, path: str) -> None:
        """Write the set to `path`, or to standard output when path is "-"."""
        text = json.dumps(self.to_json(), indent=2, sort_keys=True) + "\n"
        if path == STDOUT_PATH:
            sys.stdout.write(text)
            sys.stdout.flush()
            return
        # Write then rename, so `path` never holds a partial snapshot.
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def load_nodes_json(path: str) -> NodeRegistry:
    """Load and verify a node-set snapshot.

    Raises SnapshotError for unreadable files and IntegrityError for
    entries that disagree with their records.
    """
    try:
        with open(path, "rb") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise SnapshotError(f"cannot load {path}: {e}") from e
    registry = NodeRegistry.from_json(data)
    registry.verify()
    return registry
