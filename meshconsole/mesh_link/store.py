# Copyright © 2025-26 l5yth & contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""SQLite persistence for one meshconsole session.

Each session owns a single database file under :data:`config.CONFIG_DIR`.
The file runs in WAL mode so the operator console can read while the
synchronisation driver writes, and a busy timeout makes competing writers
wait instead of failing immediately.
"""

from __future__ import annotations

import os
import re
import sqlite3
import threading
import time
from typing import Any, Iterable, Mapping

from . import config, delivery
from .serialization import BROADCAST_NUM, _json_list, _load_json_list, _merge_fields

SESSION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_SESSION_NAME_LENGTH = 100
DB_SIDECAR_SUFFIXES = ("", "-wal", "-shm")

NODE_COLUMNS: tuple[str, ...] = (
    "num",
    "user_id",
    "long_name",
    "short_name",
    "hw_model",
    "role",
    "latitude_i",
    "longitude_i",
    "altitude",
    "snr",
    "rssi",
    "last_heard",
    "battery_level",
    "voltage",
    "channel_utilization",
    "air_util_tx",
    "channel",
    "via_mqtt",
    "hops_away",
    "is_favorite",
    "is_muted",
    "public_key",
)
_NODE_BOOL_COLUMNS = ("via_mqtt", "is_favorite", "is_muted")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    num INTEGER PRIMARY KEY,
    user_id TEXT,
    long_name TEXT,
    short_name TEXT,
    hw_model INTEGER,
    role INTEGER,
    latitude_i INTEGER,
    longitude_i INTEGER,
    altitude INTEGER,
    snr REAL,
    rssi INTEGER,
    last_heard REAL,
    battery_level INTEGER,
    voltage REAL,
    channel_utilization REAL,
    air_util_tx REAL,
    channel INTEGER,
    via_mqtt INTEGER,
    hops_away INTEGER,
    is_favorite INTEGER,
    is_muted INTEGER,
    public_key BLOB,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    packet_id INTEGER,
    from_node INTEGER,
    to_node INTEGER,
    channel INTEGER,
    text TEXT,
    timestamp REAL,
    rx_time INTEGER,
    rx_snr REAL,
    rx_rssi INTEGER,
    hop_limit INTEGER,
    hop_start INTEGER,
    status TEXT DEFAULT 'received',
    reply_id INTEGER,
    error_reason TEXT
);

CREATE TABLE IF NOT EXISTS packets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    packet_id INTEGER,
    from_node INTEGER,
    to_node INTEGER,
    channel INTEGER,
    portnum INTEGER,
    timestamp REAL,
    rx_time INTEGER,
    rx_snr REAL,
    rx_rssi INTEGER,
    raw BLOB
);

CREATE TABLE IF NOT EXISTS position_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    packet_id INTEGER,
    from_node INTEGER,
    requested_by INTEGER,
    latitude_i INTEGER,
    longitude_i INTEGER,
    altitude INTEGER,
    sats_in_view INTEGER,
    timestamp REAL
);

CREATE TABLE IF NOT EXISTS traceroute_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    packet_id INTEGER,
    from_node INTEGER,
    requested_by INTEGER,
    route TEXT,
    snr_towards TEXT,
    snr_back TEXT,
    hop_limit INTEGER,
    timestamp REAL
);

CREATE TABLE IF NOT EXISTS nodeinfo_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    packet_id INTEGER,
    from_node INTEGER,
    requested_by INTEGER,
    long_name TEXT,
    short_name TEXT,
    hw_model INTEGER,
    timestamp REAL
);

CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_packet_id ON messages(packet_id);
CREATE INDEX IF NOT EXISTS idx_packets_timestamp ON packets(timestamp);
CREATE INDEX IF NOT EXISTS idx_position_responses_ts ON position_responses(timestamp);
CREATE INDEX IF NOT EXISTS idx_traceroute_responses_ts ON traceroute_responses(timestamp);
CREATE INDEX IF NOT EXISTS idx_nodeinfo_responses_ts ON nodeinfo_responses(timestamp);
"""

_MIGRATIONS: dict[str, list[tuple[str, str]]] = {
    "nodes": [
        ("role", "INTEGER"),
        ("rssi", "INTEGER"),
        ("public_key", "BLOB"),
        ("is_muted", "INTEGER"),
    ],
    "messages": [
        ("rx_rssi", "INTEGER"),
        ("status", "TEXT DEFAULT 'received'"),
        ("reply_id", "INTEGER"),
        ("error_reason", "TEXT"),
    ],
}
"""Columns added after the first schema revision, applied to older files."""


class InvalidSessionName(ValueError):
    """Raised when a session name could escape the configuration directory."""


def validate_session_name(session: str) -> str:
    """Return ``session`` when it is safe to use as a file name.

    Raises:
        InvalidSessionName: If the name is empty, too long or contains
            anything but letters, digits, ``_`` and ``-``.
    """

    if not isinstance(session, str) or not SESSION_NAME_PATTERN.match(session):
        raise InvalidSessionName(
            "Session name may only contain letters, digits, '_' and '-'"
        )
    if len(session) > MAX_SESSION_NAME_LENGTH:
        raise InvalidSessionName(
            f"Session name must be at most {MAX_SESSION_NAME_LENGTH} characters"
        )
    return session


def session_db_path(session: str, config_dir: str | None = None) -> str:
    """Return the database path for ``session`` inside ``config_dir``."""

    validate_session_name(session)
    directory = config.CONFIG_DIR if config_dir is None else config_dir
    return os.path.join(os.path.expanduser(directory), f"{session}.db")


def clear_session(session: str, config_dir: str | None = None) -> list[str]:
    """Delete the database file of ``session`` and its WAL sidecars.

    Returns:
        Paths that were removed.
    """

    base = session_db_path(session, config_dir)
    removed = []
    for suffix in DB_SIDECAR_SUFFIXES:
        path = base + suffix
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        removed.append(path)
    config._debug_log(
        "Cleared session database",
        context="store.clear",
        severity="info",
        session=session,
        removed=len(removed),
    )
    return removed


def _node_row(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    node = {column: row[column] for column in NODE_COLUMNS}
    for column in _NODE_BOOL_COLUMNS:
        if node[column] is not None:
            node[column] = bool(node[column])
    if node["public_key"] is not None:
        node["public_key"] = bytes(node["public_key"])
    return node


def _traceroute_row(row: sqlite3.Row) -> dict:
    entry = dict(row)
    entry["route"] = _load_json_list(entry.get("route"))
    entry["snr_towards"] = _load_json_list(entry.get("snr_towards"))
    entry["snr_back"] = _load_json_list(entry.get("snr_back"))
    return entry


class MeshStore:
    """Durable storage for nodes, messages, packets and diagnostic responses.

    The store is shared by the caches and the synchronisation driver. All
    statements are serialised through one re-entrant lock so the write-behind
    worker and reader threads can use the same connection.

    Parameters:
        path: Database file, or ``":memory:"``.
        retention_limit: Maximum number of packet rows kept.
        busy_timeout: Seconds to wait on a locked database.
    """

    def __init__(
        self,
        path: str,
        *,
        retention_limit: int | None = None,
        busy_timeout: float | None = None,
    ) -> None:
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self.path = path
        self.retention_limit = (
            config.PACKET_RETENTION_LIMIT if retention_limit is None else retention_limit
        )
        if self.retention_limit < 1:
            raise ValueError("retention_limit must be positive")
        if busy_timeout is None:
            busy_timeout = config.DB_BUSY_TIMEOUT_SECS
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path, timeout=busy_timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
        self.ensure_schema()

    @classmethod
    def for_session(
        cls, session: str, config_dir: str | None = None, **kwargs: Any
    ) -> "MeshStore":
        """Open the database belonging to ``session``."""

        return cls(session_db_path(session, config_dir), **kwargs)

    def ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)
            for table, columns in _MIGRATIONS.items():
                existing = {
                    row["name"]
                    for row in self._conn.execute(f"PRAGMA table_info({table})")
                }
                for name, column_type in columns:
                    if name not in existing:
                        self._conn.execute(
                            f"ALTER TABLE {table} ADD COLUMN {name} {column_type}"
                        )
                        config._debug_log(
                            "Migrated column",
                            context="store.migrate",
                            table=table,
                            column=name,
                        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _query(
        self, sql: str, params: Iterable[Any] | Mapping[str, Any] = ()
    ) -> list[sqlite3.Row]:
        if not isinstance(params, Mapping):
            params = tuple(params)
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Nodes -----------------------------------------------------------------

    def upsert_node(self, node: Mapping[str, Any]) -> dict:
        """Insert or update a node, keeping stored values ``node`` leaves empty.

        Parameters:
            node: Partial node record keyed by :data:`NODE_COLUMNS`. ``num``
                is required.

        Returns:
            The merged record as stored.
        """

        num = node.get("num")
        if not isinstance(num, int) or isinstance(num, bool):
            raise ValueError(f"node num must be an integer, got {num!r}")
        updates = {key: node.get(key) for key in NODE_COLUMNS if key in node}
        with self._lock, self._conn:
            existing = _node_row(
                self._conn.execute("SELECT * FROM nodes WHERE num = ?", (num,)).fetchone()
            )
            merged = _merge_fields(existing, updates)
            values = [merged.get(column) for column in NODE_COLUMNS]
            placeholders = ", ".join("?" for _ in NODE_COLUMNS)
            assignments = ", ".join(
                f"{column}=excluded.{column}" for column in NODE_COLUMNS[1:]
            )
            self._conn.execute(
                f"INSERT INTO nodes ({', '.join(NODE_COLUMNS)}, updated_at) "
                f"VALUES ({placeholders}, ?) "
                f"ON CONFLICT(num) DO UPDATE SET {assignments}, "
                "updated_at=excluded.updated_at",
                (*values, time.time()),
            )
        return {column: merged.get(column) for column in NODE_COLUMNS}

    def get_node(self, num: int) -> dict | None:
        rows = self._query("SELECT * FROM nodes WHERE num = ?", (num,))
        return _node_row(rows[0]) if rows else None

    def get_all_nodes(self) -> list[dict]:
        """Return every node, nearest first, then most recently heard."""

        rows = self._query(
            "SELECT * FROM nodes "
            "ORDER BY COALESCE(hops_away, 999) ASC, COALESCE(last_heard, 0) DESC, num"
        )
        return [_node_row(row) for row in rows]

    def delete_node(self, num: int) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM nodes WHERE num = ?", (num,))
        return cursor.rowcount > 0

    def update_node_public_key(self, num: int, public_key: bytes) -> None:
        self.upsert_node({"num": num, "public_key": bytes(public_key)})

    def get_node_name(self, num: int) -> str | None:
        rows = self._query(
            "SELECT short_name, long_name FROM nodes WHERE num = ?", (num,)
        )
        if not rows:
            return None
        return rows[0]["short_name"] or rows[0]["long_name"]

    # Messages --------------------------------------------------------------

    def insert_message(self, message: Mapping[str, Any]) -> int:
        """Append a message and return its internal row id."""

        timestamp = message.get("timestamp")
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO messages (
                    packet_id, from_node, to_node, channel, text, timestamp,
                    rx_time, rx_snr, rx_rssi, hop_limit, hop_start, status,
                    reply_id, error_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.get("packet_id"),
                    message.get("from_node"),
                    message.get("to_node"),
                    message.get("channel", 0),
                    message.get("text"),
                    time.time() if timestamp is None else timestamp,
                    message.get("rx_time"),
                    message.get("rx_snr"),
                    message.get("rx_rssi"),
                    message.get("hop_limit"),
                    message.get("hop_start"),
                    message.get("status") or delivery.RECEIVED,
                    message.get("reply_id"),
                    message.get("error_reason"),
                ),
            )
        return cursor.lastrowid

    def update_message_status(
        self,
        packet_id: int,
        status: str,
        error_reason: str | None = None,
        *,
        ack_timeout: float | None = None,
        now: float | None = None,
    ) -> bool:
        """Move the latest outbound message with ``packet_id`` to ``status``.

        The update is skipped unless it moves the message forward, so
        duplicate acknowledgments and late routing packets after a final
        state leave the row untouched. With ``ack_timeout`` a pending row
        that has already expired is first stored as a timeout error, which
        then rejects the late acknowledgment.

        Returns:
            ``True`` when the row moved to ``status``.
        """

        outbound = delivery.OUTBOUND_STATUSES
        with self._lock, self._conn:
            row = self._conn.execute(
                f"SELECT id, status, error_reason, timestamp FROM messages "
                f"WHERE packet_id = ? AND status IN ({', '.join('?' for _ in outbound)}) "
                "ORDER BY id DESC LIMIT 1",
                (packet_id, *outbound),
            ).fetchone()
            if row is None:
                return False
            previous = row["status"]
            if ack_timeout is not None:
                current, reason = delivery.effective_status(
                    dict(row), now=now, timeout=ack_timeout
                )
                if current != previous:
                    self._conn.execute(
                        "UPDATE messages SET status = ?, error_reason = ? WHERE id = ?",
                        (current, reason, row["id"]),
                    )
                    config._debug_log(
                        "Message expired before acknowledgment",
                        context="store.message_status",
                        packet_id=packet_id,
                        status=current,
                        error_reason=reason,
                    )
                    previous = current
            if not delivery.can_transition(previous, status):
                return False
            self._conn.execute(
                "UPDATE messages SET status = ?, error_reason = ? WHERE id = ?",
                (status, error_reason, row["id"]),
            )
        config._debug_log(
            "Message status updated",
            context="store.message_status",
            packet_id=packet_id,
            previous=previous,
            status=status,
            error_reason=error_reason,
        )
        return True

    def get_message_by_packet_id(self, packet_id: int) -> dict | None:
        rows = self._query(
            "SELECT * FROM messages WHERE packet_id = ? ORDER BY id DESC LIMIT 1",
            (packet_id,),
        )
        return dict(rows[0]) if rows else None

    def get_messages(self, channel: int | None = None, limit: int = 100) -> list[dict]:
        """Return the newest broadcast messages, oldest first.

        Direct messages are excluded.
        """

        if channel is None:
            rows = self._query(
                "SELECT * FROM messages WHERE to_node = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (BROADCAST_NUM, limit),
            )
        else:
            rows = self._query(
                "SELECT * FROM messages WHERE channel = ? AND to_node = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (channel, BROADCAST_NUM, limit),
            )
        return [dict(row) for row in reversed(rows)]

    def get_dm_conversations(self, my_node: int) -> list[dict]:
        """Summarise direct-message conversations of ``my_node``.

        Returns:
            One entry per counterpart with ``node_num``, ``last_message``,
            ``last_timestamp``, ``message_count`` and ``unread_count``,
            most recent conversation first.
        """

        rows = self._query(
            """
            WITH dm AS (
                SELECT
                    id,
                    CASE WHEN from_node = :me THEN to_node ELSE from_node END
                        AS other_node,
                    from_node,
                    text,
                    timestamp,
                    status
                FROM messages
                WHERE to_node != :broadcast
                  AND (from_node = :me OR to_node = :me)
            )
            SELECT
                other_node,
                (
                    SELECT last.text FROM dm AS last
                    WHERE last.other_node = dm.other_node
                    ORDER BY last.timestamp DESC, last.id DESC
                    LIMIT 1
                ) AS last_message,
                MAX(timestamp) AS last_timestamp,
                COUNT(*) AS message_count,
                SUM(
                    CASE WHEN from_node != :me AND status = 'received' THEN 1 ELSE 0 END
                ) AS unread_count
            FROM dm
            GROUP BY other_node
            ORDER BY last_timestamp DESC, MAX(id) DESC
            """,
            {"me": my_node, "broadcast": BROADCAST_NUM},
        )
        return [
            {
                "node_num": row["other_node"],
                "last_message": row["last_message"],
                "last_timestamp": row["last_timestamp"],
                "message_count": row["message_count"],
                "unread_count": row["unread_count"] or 0,
            }
            for row in rows
        ]

    def get_dm_messages(
        self, my_node: int, other_node: int, limit: int = 100
    ) -> list[dict]:
        """Return the newest messages exchanged with ``other_node``, oldest first."""

        rows = self._query(
            """
            SELECT * FROM messages
            WHERE to_node != ?
              AND ((from_node = ? AND to_node = ?) OR (from_node = ? AND to_node = ?))
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            (BROADCAST_NUM, my_node, other_node, other_node, my_node, limit),
        )
        return [dict(row) for row in reversed(rows)]

    def mark_dm_read(self, my_node: int, other_node: int) -> int:
        """Mark received messages from ``other_node`` as read."""

        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE messages SET status = ? "
                "WHERE from_node = ? AND to_node = ? AND status = ?",
                (delivery.READ, other_node, my_node, delivery.RECEIVED),
            )
        return cursor.rowcount

    def delete_dm_conversation(self, my_node: int, other_node: int) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                DELETE FROM messages
                WHERE to_node != ?
                  AND ((from_node = ? AND to_node = ?) OR (from_node = ? AND to_node = ?))
                """,
                (BROADCAST_NUM, my_node, other_node, other_node, my_node),
            )
        return cursor.rowcount

    # Packets ---------------------------------------------------------------

    def insert_packet(self, packet: Mapping[str, Any]) -> int:
        """Append a raw packet record and enforce the retention limit."""

        timestamp = packet.get("timestamp")
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO packets (
                    packet_id, from_node, to_node, channel, portnum, timestamp,
                    rx_time, rx_snr, rx_rssi, raw
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    packet.get("packet_id") or 0,
                    packet.get("from_node") or 0,
                    packet.get("to_node") or 0,
                    packet.get("channel") or 0,
                    packet.get("portnum"),
                    time.time() if timestamp is None else timestamp,
                    packet.get("rx_time"),
                    packet.get("rx_snr"),
                    packet.get("rx_rssi"),
                    sqlite3.Binary(bytes(packet.get("raw") or b"")),
                ),
            )
            self._prune_packets_locked()
        return cursor.lastrowid

    def _prune_packets_locked(self) -> int:
        cursor = self._conn.execute(
            "DELETE FROM packets WHERE id IN ("
            "SELECT id FROM packets ORDER BY timestamp DESC, id DESC "
            "LIMIT -1 OFFSET ?)",
            (self.retention_limit,),
        )
        if cursor.rowcount > 0:
            config._debug_log(
                "Pruned packets",
                context="store.prune",
                removed=cursor.rowcount,
                limit=self.retention_limit,
            )
        return cursor.rowcount

    def prune_packets(self) -> int:
        """Delete the oldest packets beyond the retention limit."""

        with self._lock, self._conn:
            return self._prune_packets_locked()

    def set_retention_limit(self, limit: int) -> int:
        """Change the retention limit and prune immediately.

        Returns:
            Number of rows removed.
        """

        if limit < 1:
            raise ValueError("retention limit must be positive")
        self.retention_limit = limit
        return self.prune_packets()

    def get_packets(self, limit: int = 1000) -> list[dict]:
        """Return the newest ``limit`` packets, oldest first."""

        rows = self._query(
            "SELECT * FROM ("
            "SELECT * FROM packets ORDER BY timestamp DESC, id DESC LIMIT ?"
            ") ORDER BY timestamp ASC, id ASC",
            (limit,),
        )
        packets = []
        for row in rows:
            entry = dict(row)
            if entry["raw"] is not None:
                entry["raw"] = bytes(entry["raw"])
            packets.append(entry)
        return packets

    def get_packet_count(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM packets")[0]["n"]

    # Diagnostic responses --------------------------------------------------

    def insert_position_response(self, response: Mapping[str, Any]) -> int:
        timestamp = response.get("timestamp")
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO position_responses (
                    packet_id, from_node, requested_by, latitude_i, longitude_i,
                    altitude, sats_in_view, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    response.get("packet_id"),
                    response.get("from_node"),
                    response.get("requested_by"),
                    response.get("latitude_i"),
                    response.get("longitude_i"),
                    response.get("altitude"),
                    response.get("sats_in_view"),
                    time.time() if timestamp is None else timestamp,
                ),
            )
        return cursor.lastrowid

    def insert_traceroute_response(self, response: Mapping[str, Any]) -> int:
        timestamp = response.get("timestamp")
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO traceroute_responses (
                    packet_id, from_node, requested_by, route, snr_towards,
                    snr_back, hop_limit, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    response.get("packet_id"),
                    response.get("from_node"),
                    response.get("requested_by"),
                    _json_list(response.get("route") or []),
                    _json_list(response.get("snr_towards") or []),
                    _json_list(response.get("snr_back") or []),
                    response.get("hop_limit"),
                    time.time() if timestamp is None else timestamp,
                ),
            )
        return cursor.lastrowid

    def insert_nodeinfo_response(self, response: Mapping[str, Any]) -> int:
        timestamp = response.get("timestamp")
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO nodeinfo_responses (
                    packet_id, from_node, requested_by, long_name, short_name,
                    hw_model, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    response.get("packet_id"),
                    response.get("from_node"),
                    response.get("requested_by"),
                    response.get("long_name"),
                    response.get("short_name"),
                    response.get("hw_model"),
                    time.time() if timestamp is None else timestamp,
                ),
            )
        return cursor.lastrowid

    def _recent(self, table: str, limit: int) -> list[sqlite3.Row]:
        rows = self._query(
            f"SELECT * FROM {table} ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return list(reversed(rows))

    def get_position_responses(self, limit: int = 100) -> list[dict]:
        return [dict(row) for row in self._recent("position_responses", limit)]

    def get_traceroute_responses(self, limit: int = 100) -> list[dict]:
        return [_traceroute_row(row) for row in self._recent("traceroute_responses", limit)]

    def get_nodeinfo_responses(self, limit: int = 100) -> list[dict]:
        return [dict(row) for row in self._recent("nodeinfo_responses", limit)]

    def get_log_responses(self, limit: int = 100) -> list[dict]:
        """Return the newest diagnostic responses of every kind, oldest first.

        Each entry carries a ``type`` of ``position``, ``traceroute`` or
        ``nodeinfo``.
        """

        entries: list[dict] = []
        for kind, rows in (
            ("position", self.get_position_responses(limit)),
            ("traceroute", self.get_traceroute_responses(limit)),
            ("nodeinfo", self.get_nodeinfo_responses(limit)),
        ):
            for row in rows:
                row["type"] = kind
                entries.append(row)
        entries.sort(key=lambda entry: (entry["timestamp"] or 0, entry["id"]))
        return entries[-limit:] if limit > 0 else []


__all__ = [
    "InvalidSessionName",
    "MeshStore",
    "NODE_COLUMNS",
    "clear_session",
    "session_db_path",
    "validate_session_name",
]
