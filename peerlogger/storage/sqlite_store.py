"""SQLite-based persistent storage for crawled nodes."""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from peerlogger.storage.store import NodeStatus, NodeStore, NodeUpsert, StoredNode


_COLUMNS = """
    id, node_id, ip_address, tcp_port, udp_port, client_name, client_version,
    protocol_version, fork_id, head_hash, network_id, chain_id, seq, score,
    first_seen, last_seen, country_code, city_name, as_number,
    connection_status, failure_count, ping_rtt, updated_at, created_at
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


class SQLiteStore(NodeStore):
    """SQLite-based node repository."""

    def __init__(self, db_path: str = "peerlogger.db"):
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file. Use ":memory:" for in-memory database.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self):
        """Initialize database tables."""
        conn = self._get_conn()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS el_nodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT UNIQUE NOT NULL,
                ip_address TEXT NOT NULL,
                tcp_port INTEGER NOT NULL DEFAULT 0,
                udp_port INTEGER NOT NULL DEFAULT 0,
                client_name TEXT NOT NULL DEFAULT '',
                client_version TEXT NOT NULL DEFAULT '',
                protocol_version INTEGER NOT NULL DEFAULT 0,
                fork_id TEXT,
                head_hash TEXT,
                network_id INTEGER,
                chain_id INTEGER,
                seq INTEGER NOT NULL DEFAULT 0,
                score INTEGER NOT NULL DEFAULT 0,
                first_seen TEXT,
                last_seen TEXT,
                country_code TEXT,
                city_name TEXT,
                as_number INTEGER,
                connection_status TEXT NOT NULL DEFAULT 'unknown',
                failure_count INTEGER NOT NULL DEFAULT 0,
                ping_rtt INTEGER,
                updated_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_el_nodes_last_seen ON el_nodes(last_seen)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_el_nodes_country ON el_nodes(country_code)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_el_nodes_client ON el_nodes(client_name)
        """)

        conn.commit()

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> StoredNode:
        return StoredNode(
            id=row["id"],
            node_id=row["node_id"],
            ip_address=row["ip_address"],
            tcp_port=row["tcp_port"],
            udp_port=row["udp_port"],
            client_name=row["client_name"],
            client_version=row["client_version"],
            protocol_version=row["protocol_version"],
            fork_id=row["fork_id"],
            head_hash=row["head_hash"],
            network_id=row["network_id"],
            chain_id=row["chain_id"],
            seq=row["seq"],
            score=row["score"],
            first_seen=_parse_ts(row["first_seen"]),
            last_seen=_parse_ts(row["last_seen"]),
            country_code=row["country_code"],
            city_name=row["city_name"],
            as_number=row["as_number"],
            connection_status=NodeStatus(row["connection_status"]),
            failure_count=row["failure_count"],
            ping_rtt=row["ping_rtt"],
            updated_at=_parse_ts(row["updated_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def _query(self, sql: str, params: tuple = ()) -> list[StoredNode]:
        with self._lock:
            rows = self._get_conn().execute(sql, params).fetchall()
        return [self._row_to_node(row) for row in rows]

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def upsert_node(self, node: NodeUpsert) -> None:
        now = _now()
        status = NodeStatus(node.connection_status).value
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                """
                INSERT INTO el_nodes (
                    node_id, ip_address, tcp_port, udp_port, client_name, client_version,
                    protocol_version, fork_id, head_hash, network_id, chain_id, seq, score,
                    first_seen, last_seen, country_code, city_name, as_number,
                    connection_status, failure_count, ping_rtt, updated_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(node_id) DO UPDATE SET
                    ip_address = excluded.ip_address,
                    tcp_port = excluded.tcp_port,
                    udp_port = excluded.udp_port,
                    client_name = excluded.client_name,
                    client_version = excluded.client_version,
                    protocol_version = excluded.protocol_version,
                    fork_id = excluded.fork_id,
                    head_hash = excluded.head_hash,
                    network_id = excluded.network_id,
                    chain_id = excluded.chain_id,
                    seq = excluded.seq,
                    score = excluded.score,
                    first_seen = COALESCE(el_nodes.first_seen, excluded.first_seen),
                    last_seen = COALESCE(excluded.last_seen, el_nodes.last_seen),
                    country_code = excluded.country_code,
                    city_name = excluded.city_name,
                    as_number = excluded.as_number,
                    connection_status = excluded.connection_status,
                    failure_count = CASE
                        WHEN excluded.connection_status = 'online' THEN 0
                        ELSE el_nodes.failure_count + excluded.failure_count
                    END,
                    ping_rtt = excluded.ping_rtt,
                    updated_at = excluded.updated_at
                """,
                (
                    node.node_id, node.ip_address, node.tcp_port, node.udp_port,
                    node.client_name, node.client_version, node.protocol_version,
                    node.fork_id, node.head_hash, node.network_id, node.chain_id,
                    node.seq, node.score,
                    _ts(node.first_seen), _ts(node.last_seen),
                    node.country_code, node.city_name, node.as_number,
                    status, node.failure_count, node.ping_rtt, now, now,
                ),
            )
            conn.commit()

    def update_node_status(self, node_id: str, status: NodeStatus, failure_count: int) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "UPDATE el_nodes SET connection_status = ?, failure_count = ?, updated_at = ? "
                "WHERE node_id = ?",
                (NodeStatus(status).value, failure_count, _now(), node_id),
            )
            conn.commit()

    def delete_old_nodes(self, older_than_seconds: float) -> int:
        cutoff = _ts(datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds))
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute("DELETE FROM el_nodes WHERE last_seen < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[StoredNode]:
        rows = self._query(f"SELECT {_COLUMNS} FROM el_nodes WHERE node_id = ?", (node_id,))
        return rows[0] if rows else None

    def get_all_nodes(self, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        return self._query(
            f"SELECT {_COLUMNS} FROM el_nodes ORDER BY last_seen DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )

    def get_active_nodes(self, since_seconds: float) -> list[StoredNode]:
        cutoff = _ts(datetime.now(timezone.utc) - timedelta(seconds=since_seconds))
        return self._query(
            f"SELECT {_COLUMNS} FROM el_nodes WHERE last_seen >= ? ORDER BY last_seen DESC",
            (cutoff,),
        )

    def get_nodes_by_client(self, client_name: str, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        return self._query(
            f"SELECT {_COLUMNS} FROM el_nodes WHERE client_name LIKE ? "
            "ORDER BY last_seen DESC LIMIT ? OFFSET ?",
            (client_name, limit, offset),
        )

    def get_nodes_by_country(self, country_code: str, limit: int = 100, offset: int = 0) -> list[StoredNode]:
        return self._query(
            f"SELECT {_COLUMNS} FROM el_nodes WHERE country_code = ? "
            "ORDER BY last_seen DESC LIMIT ? OFFSET ?",
            (country_code, limit, offset),
        )

    def get_node_stats(self) -> dict[str, int]:
        with self._lock:
            row = self._get_conn().execute("""
                SELECT
                    COUNT(*) AS total_nodes,
                    COUNT(CASE WHEN connection_status = 'online' THEN 1 END) AS online_nodes,
                    COUNT(CASE WHEN connection_status = 'offline' THEN 1 END) AS offline_nodes,
                    COUNT(DISTINCT NULLIF(client_name, '')) AS unique_clients,
                    COUNT(DISTINCT country_code) AS unique_countries
                FROM el_nodes
            """).fetchone()
        return {key: row[key] for key in row.keys()}

    def get_online_nodes_count(self) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COUNT(*) FROM el_nodes WHERE connection_status = 'online'"
            ).fetchone()
        return row[0]

    def _distribution(self, column: str) -> dict[str, int]:
        with self._lock:
            rows = self._get_conn().execute(
                f"SELECT {column} AS bucket, COUNT(*) AS total FROM el_nodes "
                f"WHERE {column} IS NOT NULL AND {column} != '' "
                f"GROUP BY {column} ORDER BY total DESC"
            ).fetchall()
        return {row["bucket"]: row["total"] for row in rows}

    def get_client_distribution(self) -> dict[str, int]:
        return self._distribution("client_name")

    def get_country_distribution(self) -> dict[str, int]:
        return self._distribution("country_code")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
