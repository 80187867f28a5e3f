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
"""Unit tests for :mod:`meshconsole.mesh_link.store`."""

from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from meshconsole.mesh_link import store as store_mod
from meshconsole.mesh_link.store import InvalidSessionName, MeshStore

BROADCAST = 0xFFFFFFFF
ME = 100


@pytest.fixture
def mesh_store(tmp_path):
    """Session database in a temporary directory."""

    db = MeshStore(str(tmp_path / "test.db"), retention_limit=1000)
    yield db
    db.close()


def _message(**overrides) -> dict:
    message = {
        "packet_id": 1,
        "from_node": 200,
        "to_node": BROADCAST,
        "channel": 0,
        "text": "hello",
        "timestamp": 1.0,
        "status": "received",
    }
    message.update(overrides)
    return message


def test_database_uses_wal_and_busy_timeout(mesh_store):
    mode = mesh_store._query("PRAGMA journal_mode")[0][0]
    timeout = mesh_store._query("PRAGMA busy_timeout")[0][0]

    assert mode.lower() == "wal"
    assert timeout == 5000


@pytest.mark.parametrize("name", ["default", "field-kit_2", "A" * 100])
def test_valid_session_names(name):
    assert store_mod.validate_session_name(name) == name


@pytest.mark.parametrize("name", ["", "../etc", "a/b", "with space", "A" * 101, "ñ"])
def test_invalid_session_names(name):
    with pytest.raises(InvalidSessionName):
        store_mod.validate_session_name(name)


def test_session_path_and_clear(tmp_path):
    path = store_mod.session_db_path("field", str(tmp_path))
    assert path == str(tmp_path / "field.db")

    db = MeshStore.for_session("field", str(tmp_path))
    db.insert_message(_message())
    db.close()
    Path(path + "-wal").write_bytes(b"")
    Path(path + "-shm").write_bytes(b"")

    removed = store_mod.clear_session("field", str(tmp_path))

    assert sorted(removed) == sorted([path, path + "-wal", path + "-shm"])
    assert not Path(path).exists()
    assert store_mod.clear_session("field", str(tmp_path)) == []


def test_upsert_node_null_does_not_clobber(mesh_store):
    """Later partial updates never erase populated columns."""

    mesh_store.upsert_node({"num": 5, "short_name": "AB"})
    mesh_store.upsert_node({"num": 5, "snr": 3.2})
    mesh_store.upsert_node({"num": 5, "short_name": None})

    node = mesh_store.get_node(5)
    assert node["short_name"] == "AB"
    assert node["snr"] == pytest.approx(3.2)


def test_upsert_node_round_trips_flags_and_key(mesh_store):
    key = bytes(range(32))
    mesh_store.upsert_node({"num": 7, "via_mqtt": False, "is_favorite": True})
    mesh_store.update_node_public_key(7, key)

    node = mesh_store.get_node(7)
    assert node["via_mqtt"] is False
    assert node["is_favorite"] is True
    assert node["is_muted"] is None
    assert node["public_key"] == key


def test_upsert_node_requires_integer_num(mesh_store):
    with pytest.raises(ValueError):
        mesh_store.upsert_node({"short_name": "X"})


def test_nodes_sorted_by_hops_then_last_heard(mesh_store):
    mesh_store.upsert_node({"num": 1, "hops_away": 2, "last_heard": 50})
    mesh_store.upsert_node({"num": 2, "hops_away": 0, "last_heard": 10})
    mesh_store.upsert_node({"num": 3, "last_heard": 99})
    mesh_store.upsert_node({"num": 4, "hops_away": 2, "last_heard": 80})

    assert [n["num"] for n in mesh_store.get_all_nodes()] == [2, 4, 1, 3]


def test_node_name_and_delete(mesh_store):
    mesh_store.upsert_node({"num": 9, "long_name": "Ridge Relay"})
    assert mesh_store.get_node_name(9) == "Ridge Relay"
    mesh_store.upsert_node({"num": 9, "short_name": "RR"})
    assert mesh_store.get_node_name(9) == "RR"

    assert mesh_store.delete_node(9) is True
    assert mesh_store.get_node(9) is None
    assert mesh_store.get_node_name(9) is None
    assert mesh_store.delete_node(9) is False


def test_packet_retention_keeps_newest(mesh_store):
    """Inserting 1200 packets with limit 1000 keeps timestamps 201..1200."""

    for ts in range(1, 1201):
        mesh_store.insert_packet(
            {"packet_id": ts, "from_node": 1, "timestamp": float(ts), "raw": b"\x00"}
        )

    assert mesh_store.get_packet_count() == 1000
    packets = mesh_store.get_packets(2000)
    timestamps = [p["timestamp"] for p in packets]
    assert timestamps[0] == 201.0
    assert timestamps[-1] == 1200.0
    assert timestamps == sorted(timestamps)
    assert isinstance(packets[0]["raw"], bytes)


def test_retention_evicts_by_timestamp_not_insert_order(mesh_store):
    mesh_store.set_retention_limit(2)
    mesh_store.insert_packet({"timestamp": 30.0, "raw": b"c"})
    mesh_store.insert_packet({"timestamp": 10.0, "raw": b"a"})
    mesh_store.insert_packet({"timestamp": 20.0, "raw": b"b"})

    assert [p["raw"] for p in mesh_store.get_packets()] == [b"b", b"c"]


def test_set_retention_limit_prunes_immediately(mesh_store):
    for ts in range(10):
        mesh_store.insert_packet({"timestamp": float(ts), "raw": b"x"})

    assert mesh_store.set_retention_limit(4) == 6
    assert mesh_store.get_packet_count() == 4
    with pytest.raises(ValueError):
        mesh_store.set_retention_limit(0)


def test_get_messages_is_broadcast_only_oldest_first(mesh_store):
    mesh_store.insert_message(_message(packet_id=1, timestamp=1.0, text="one"))
    mesh_store.insert_message(_message(packet_id=2, timestamp=2.0, to_node=ME))
    mesh_store.insert_message(_message(packet_id=3, timestamp=3.0, text="three"))
    mesh_store.insert_message(
        _message(packet_id=4, timestamp=4.0, text="other", channel=1)
    )

    assert [m["text"] for m in mesh_store.get_messages()] == ["one", "three", "other"]
    assert [m["text"] for m in mesh_store.get_messages(channel=0)] == ["one", "three"]
    assert [m["text"] for m in mesh_store.get_messages(limit=2)] == ["three", "other"]


def test_dm_messages_exclude_broadcast_and_are_chronological(mesh_store):
    mesh_store.insert_message(_message(packet_id=1, from_node=ME, to_node=300, timestamp=5.0, text="b"))
    mesh_store.insert_message(_message(packet_id=2, from_node=300, to_node=ME, timestamp=1.0, text="a"))
    mesh_store.insert_message(_message(packet_id=3, from_node=300, to_node=BROADCAST, timestamp=3.0, text="public"))
    mesh_store.insert_message(_message(packet_id=4, from_node=400, to_node=ME, timestamp=4.0, text="other"))

    texts = [m["text"] for m in mesh_store.get_dm_messages(ME, 300)]
    assert texts == ["a", "b"]


def test_dm_conversations_group_by_counterpart(mesh_store):
    mesh_store.insert_message(_message(packet_id=1, from_node=300, to_node=ME, timestamp=1.0, text="hi"))
    mesh_store.insert_message(_message(packet_id=2, from_node=300, to_node=ME, timestamp=2.0, text="you there?"))
    mesh_store.insert_message(_message(packet_id=3, from_node=ME, to_node=300, timestamp=3.0, text="yes", status="acked"))
    mesh_store.insert_message(_message(packet_id=4, from_node=400, to_node=ME, timestamp=5.0, text="newer"))
    mesh_store.insert_message(_message(packet_id=5, from_node=500, to_node=BROADCAST, timestamp=9.0, text="bcast"))

    conversations = mesh_store.get_dm_conversations(ME)

    assert [c["node_num"] for c in conversations] == [400, 300]
    by_node = {c["node_num"]: c for c in conversations}
    assert by_node[300]["last_message"] == "yes"
    assert by_node[300]["last_timestamp"] == 3.0
    assert by_node[300]["unread_count"] == 2
    assert by_node[300]["message_count"] == 3
    assert by_node[400]["unread_count"] == 1


def test_mark_read_and_delete_conversation(mesh_store):
    mesh_store.insert_message(_message(packet_id=1, from_node=300, to_node=ME))
    mesh_store.insert_message(_message(packet_id=2, from_node=ME, to_node=300, status="pending"))
    mesh_store.insert_message(_message(packet_id=3, from_node=300, to_node=BROADCAST))

    assert mesh_store.mark_dm_read(ME, 300) == 1
    assert mesh_store.get_dm_conversations(ME)[0]["unread_count"] == 0

    assert mesh_store.delete_dm_conversation(ME, 300) == 2
    assert mesh_store.get_dm_conversations(ME) == []
    assert len(mesh_store.get_messages()) == 1


def test_update_message_status_moves_forward_only(mesh_store):
    mesh_store.insert_message(_message(packet_id=42, from_node=ME, status="pending"))

    assert mesh_store.update_message_status(42, "acked") is True
    assert mesh_store.update_message_status(42, "acked") is False
    assert mesh_store.update_message_status(42, "delivered") is True
    assert mesh_store.update_message_status(42, "error", "no_route") is False

    message = mesh_store.get_message_by_packet_id(42)
    assert message["status"] == "delivered"
    assert message["error_reason"] is None


def test_update_message_status_records_error_reason(mesh_store):
    mesh_store.insert_message(_message(packet_id=43, from_node=ME, status="pending"))

    assert mesh_store.update_message_status(43, "error", "too_large") is True
    message = mesh_store.get_message_by_packet_id(43)
    assert (message["status"], message["error_reason"]) == ("error", "too_large")


def test_update_message_status_ignores_received_messages(mesh_store):
    mesh_store.insert_message(_message(packet_id=44, status="received"))

    assert mesh_store.update_message_status(44, "acked") is False
    assert mesh_store.update_message_status(999, "acked") is False


def test_update_message_status_targets_latest_outbound_row(mesh_store):
    """Packet ids repeat across sessions; only the newest send is updated."""

    mesh_store.insert_message(_message(packet_id=50, from_node=ME, status="pending", timestamp=1.0))
    mesh_store.insert_message(_message(packet_id=50, from_node=ME, status="pending", timestamp=2.0))

    assert mesh_store.update_message_status(50, "acked") is True
    rows = mesh_store._query("SELECT status FROM messages WHERE packet_id = 50 ORDER BY id")
    assert [row["status"] for row in rows] == ["pending", "acked"]


def test_log_responses_merge_chronologically(mesh_store):
    mesh_store.insert_position_response(
        {"packet_id": 1, "from_node": 5, "requested_by": ME, "latitude_i": 1, "longitude_i": 2, "altitude": 3, "sats_in_view": 4, "timestamp": 30.0}
    )
    mesh_store.insert_traceroute_response(
        {"packet_id": 2, "from_node": 6, "requested_by": ME, "route": [7, 8], "snr_towards": [12, -4], "snr_back": [], "hop_limit": 3, "timestamp": 10.0}
    )
    mesh_store.insert_nodeinfo_response(
        {"packet_id": 3, "from_node": 9, "requested_by": ME, "long_name": "Nine", "short_name": "N9", "hw_model": 4, "timestamp": 20.0}
    )

    log = mesh_store.get_log_responses()
    assert [entry["type"] for entry in log] == ["traceroute", "nodeinfo", "position"]
    assert log[0]["route"] == [7, 8]
    assert log[0]["snr_towards"] == [12, -4]
    assert mesh_store.get_log_responses(limit=2)[0]["type"] == "nodeinfo"


def test_migrates_older_schema(tmp_path):
    """Files created before later columns existed gain them on open."""

    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE nodes (num INTEGER PRIMARY KEY, user_id TEXT, long_name TEXT,
            short_name TEXT, hw_model INTEGER, latitude_i INTEGER, longitude_i INTEGER,
            altitude INTEGER, snr REAL, last_heard REAL, battery_level INTEGER,
            voltage REAL, channel_utilization REAL, air_util_tx REAL, channel INTEGER,
            via_mqtt INTEGER, hops_away INTEGER, is_favorite INTEGER, updated_at REAL);
        CREATE TABLE messages (id INTEGER PRIMARY KEY AUTOINCREMENT, packet_id INTEGER,
            from_node INTEGER, to_node INTEGER, channel INTEGER, text TEXT,
            timestamp REAL, rx_time INTEGER, rx_snr REAL, hop_limit INTEGER,
            hop_start INTEGER);
        INSERT INTO messages (packet_id, from_node, to_node, channel, text, timestamp)
            VALUES (1, 2, 4294967295, 0, 'legacy', 1.0);
        """
    )
    conn.commit()
    conn.close()

    db = MeshStore(str(path))
    try:
        db.upsert_node({"num": 1, "role": 2, "is_muted": True, "public_key": b"k" * 32})
        assert db.get_node(1)["is_muted"] is True
        legacy = db.get_messages()[0]
        assert legacy["status"] == "received"
        assert legacy["error_reason"] is None
    finally:
        db.close()


def test_update_message_status_rejects_ack_for_expired_message(mesh_store):
    """An expired pending row is stored as a timeout before the ack is judged."""

    mesh_store.insert_message(_message(packet_id=60, from_node=ME, status="pending", timestamp=100.0))
    mesh_store.insert_message(_message(packet_id=61, from_node=ME, status="pending", timestamp=100.0))

    assert mesh_store.update_message_status(60, "acked", ack_timeout=30, now=140.0) is False
    assert mesh_store.update_message_status(61, "acked", ack_timeout=30, now=110.0) is True

    expired = mesh_store.get_message_by_packet_id(60)
    assert (expired["status"], expired["error_reason"]) == ("error", "timeout")
    assert mesh_store.get_message_by_packet_id(61)["status"] == "acked"
