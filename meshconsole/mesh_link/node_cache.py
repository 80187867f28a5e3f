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

"""In-memory view of every node heard on the mesh.

Updates arrive from several independent sources: the device's node database
dump, user broadcasts, the envelope of any received packet, position and
telemetry payloads and bulk imports from an external directory. Each update
is partial. :func:`merge_node` overlays it field by field so that a missing
value never erases one that is already known.
"""

from __future__ import annotations

import dataclasses
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from meshtastic.protobuf import config_pb2, mesh_pb2
from pubsub import pub

from . import config
from .serialization import (
    MAX_NODE_NUM,
    _canonical_node_id,
    _coerce_bool,
    _coerce_float,
    _coerce_int,
    _first,
    _merge_fields,
)
from .writer import _NODE_WRITE_PRIORITY, WriteQueue

PUBLIC_KEY_LENGTH = 32
_UNKNOWN_HOPS = 999

NodeListener = Callable[..., None]


class NodeSource:
    """Origins of partial node updates."""

    NODE_INFO = "node_info"
    USER = "user"
    PACKET = "packet"
    POSITION = "position"
    TELEMETRY = "telemetry"
    DIRECTORY = "directory"


_SOURCES_WITH_OWN_LAST_HEARD = {NodeSource.NODE_INFO, NodeSource.DIRECTORY}


@dataclass(frozen=True)
class NodeInfo:
    """Snapshot of one mesh participant."""

    num: int
    user_id: str | None = None
    long_name: str | None = None
    short_name: str | None = None
    hw_model: int | None = None
    role: int | None = None
    latitude_i: int | None = None
    longitude_i: int | None = None
    altitude: int | None = None
    snr: float | None = None
    rssi: int | None = None
    last_heard: float | None = None
    battery_level: int | None = None
    voltage: float | None = None
    channel_utilization: float | None = None
    air_util_tx: float | None = None
    channel: int | None = None
    via_mqtt: bool | None = None
    hops_away: int | None = None
    is_favorite: bool | None = None
    is_muted: bool | None = None
    public_key: bytes | None = None

    @property
    def node_id(self) -> str:
        return _canonical_node_id(self.num)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


NODE_FIELDS = tuple(f.name for f in dataclasses.fields(NodeInfo))


def validate_node_num(num) -> int:
    """Return ``num`` when it is a valid 32-bit node number.

    Raises:
        ValueError: If ``num`` is not an integer in ``0..0xFFFFFFFF``.
    """

    if not isinstance(num, int) or isinstance(num, bool) or not 0 <= num <= MAX_NODE_NUM:
        raise ValueError(f"invalid node number: {num!r}")
    return num


def merge_node(existing: NodeInfo | None, num: int, updates: Mapping[str, Any]) -> NodeInfo:
    """Overlay ``updates`` onto ``existing``.

    ``None`` values in ``updates`` never replace populated fields and
    ``last_heard`` only moves forward.
    """

    base = existing.to_dict() if existing is not None else {"num": num}
    merged = _merge_fields(base, {k: v for k, v in updates.items() if k in NODE_FIELDS})
    merged["num"] = num
    if existing is not None and existing.last_heard is not None:
        new_heard = merged.get("last_heard")
        if new_heard is None or new_heard < existing.last_heard:
            merged["last_heard"] = existing.last_heard
    return NodeInfo(**merged)


def _sort_key(node: NodeInfo):
    hops = node.hops_away if node.hops_away is not None else _UNKNOWN_HOPS
    return (hops, -(node.last_heard or 0), node.num)


def _proto_value(message, name: str):
    """Return a protobuf field value, or ``None`` when the field is unset.

    Fields without presence tracking report their zero value as unset.
    """

    if message is None:
        return None
    if isinstance(message, Mapping):
        return _first(message, name)
    try:
        if not message.HasField(name):
            return None
    except ValueError:
        value = getattr(message, name, None)
        return value if value else None
    return getattr(message, name)


def _sub_message(message, name: str):
    if message is None:
        return None
    if isinstance(message, Mapping):
        return message.get(name)
    try:
        return getattr(message, name) if message.HasField(name) else None
    except ValueError:
        return None


def _user_fields(user) -> dict:
    if user is None:
        return {}
    return {
        "user_id": _proto_value(user, "id"),
        "long_name": _proto_value(user, "long_name"),
        "short_name": _proto_value(user, "short_name"),
        "hw_model": _proto_value(user, "hw_model"),
        "role": _proto_value(user, "role"),
        "public_key": _proto_value(user, "public_key"),
    }


def _position_fields(position) -> dict:
    if position is None:
        return {}
    return {
        "latitude_i": _proto_value(position, "latitude_i"),
        "longitude_i": _proto_value(position, "longitude_i"),
        "altitude": _proto_value(position, "altitude"),
    }


def _metrics_fields(metrics) -> dict:
    if metrics is None:
        return {}
    return {
        "battery_level": _proto_value(metrics, "battery_level"),
        "voltage": _proto_value(metrics, "voltage"),
        "channel_utilization": _proto_value(metrics, "channel_utilization"),
        "air_util_tx": _proto_value(metrics, "air_util_tx"),
    }


def _enum_value(enum_type, name) -> int | None:
    if name is None:
        return None
    if isinstance(name, int):
        return name
    try:
        return enum_type.Value(str(name).strip().upper())
    except ValueError:
        return None


class NodeCache:
    """Authoritative node map for the running session.

    Parameters:
        store: :class:`~.store.MeshStore` used for rehydration and
            write-through, or ``None`` for a purely in-memory cache.
        writer: Queue executing store writes off the caller's thread.
        notify_delay: Seconds over which change notifications are coalesced.
    """

    _instances = itertools.count(1)

    def __init__(
        self,
        store=None,
        writer: WriteQueue | None = None,
        *,
        notify_delay: float | None = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.notify_delay = (
            config.NODE_NOTIFY_DELAY_SECS if notify_delay is None else notify_delay
        )
        self.topic = f"meshconsole.nodes.cache{next(self._instances)}"
        self._nodes: dict[int, NodeInfo] = {}
        self._lock = threading.RLock()
        self._listeners: list[NodeListener] = []
        self._notify_timer: threading.Timer | None = None
        self._load()

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            rows = self.store.get_all_nodes()
        except Exception as exc:
            config._debug_log(
                "Failed to load nodes from store",
                context="node_cache.load",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            return
        for row in rows:
            try:
                node = NodeInfo(**{k: v for k, v in row.items() if k in NODE_FIELDS})
                validate_node_num(node.num)
            except (TypeError, ValueError) as exc:
                config._debug_log(
                    "Skipping unreadable node row",
                    context="node_cache.load",
                    severity="warn",
                    error_message=str(exc),
                )
                continue
            self._nodes[node.num] = node
        config._debug_log(
            "Loaded nodes from store", context="node_cache.load", count=len(self._nodes)
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, num: int) -> bool:
        with self._lock:
            return num in self._nodes

    def get(self, num: int) -> NodeInfo | None:
        with self._lock:
            return self._nodes.get(num)

    def all(self) -> list[NodeInfo]:
        """Return the nodes ordered by hop distance, then most recently heard."""

        with self._lock:
            nodes = list(self._nodes.values())
        return sorted(nodes, key=_sort_key)

    def node_name(self, num: int) -> str:
        """Return a short label for ``num`` suitable for list views."""

        node = self.get(num)
        if node is not None and node.short_name:
            return node.short_name
        if node is not None and node.long_name:
            return node.long_name[:8]
        return _canonical_node_id(num)

    def merge(
        self,
        num: int,
        updates: Mapping[str, Any],
        source: str = NodeSource.PACKET,
        *,
        now: float | None = None,
    ) -> NodeInfo:
        """Apply a partial update from ``source`` and return the merged node.

        Raises:
            ValueError: If ``num`` is not a valid node number. The cache is
                left untouched.
        """

        validate_node_num(num)
        clean = {k: v for k, v in updates.items() if k in NODE_FIELDS and k != "num"}
        public_key = clean.get("public_key")
        if public_key is not None:
            public_key = bytes(public_key)
            if len(public_key) != PUBLIC_KEY_LENGTH:
                config._debug_log(
                    "Ignoring malformed public key",
                    context="node_cache.merge",
                    severity="warn",
                    node_id=_canonical_node_id(num),
                    length=len(public_key),
                )
                public_key = None
            clean["public_key"] = public_key
        if source not in _SOURCES_WITH_OWN_LAST_HEARD or clean.get("last_heard") is None:
            clean["last_heard"] = time.time() if now is None else now

        with self._lock:
            merged = merge_node(self._nodes.get(num), num, clean)
            self._nodes[num] = merged
        self._persist(merged)
        self._schedule_notify()
        return merged

    def update_from_node_info(self, info) -> NodeInfo:
        """Merge a ``NodeInfo`` record from the device's node database."""

        num = _proto_value(info, "num")
        if num is None and isinstance(info, Mapping):
            num = _coerce_int(info.get("num"))
        updates = {
            "snr": _proto_value(info, "snr"),
            "last_heard": _proto_value(info, "last_heard"),
            "channel": _proto_value(info, "channel"),
            "via_mqtt": _proto_value(info, "via_mqtt"),
            "hops_away": _proto_value(info, "hops_away"),
            "is_favorite": _proto_value(info, "is_favorite"),
        }
        updates.update(_user_fields(_sub_message(info, "user")))
        updates.update(_position_fields(_sub_message(info, "position")))
        updates.update(_metrics_fields(_sub_message(info, "device_metrics")))
        return self.merge(num, updates, NodeSource.NODE_INFO)

    def update_from_user(self, num: int, user) -> NodeInfo:
        return self.merge(num, _user_fields(user), NodeSource.USER)

    def update_from_packet(
        self,
        num: int,
        *,
        snr: float | None = None,
        rssi: int | None = None,
        hops_away: int | None = None,
        via_mqtt: bool | None = None,
    ) -> NodeInfo:
        """Record that ``num`` was heard, touching only link-quality fields."""

        return self.merge(
            num,
            {"snr": snr, "rssi": rssi, "hops_away": hops_away, "via_mqtt": via_mqtt},
            NodeSource.PACKET,
        )

    def update_position(self, num: int, position) -> NodeInfo:
        return self.merge(num, _position_fields(position), NodeSource.POSITION)

    def update_device_metrics(self, num: int, metrics) -> NodeInfo:
        return self.merge(num, _metrics_fields(metrics), NodeSource.TELEMETRY)

    def update_from_directory(self, entry: Mapping[str, Any]) -> NodeInfo:
        """Merge one record exported by an external node directory.

        Hardware model and role names are mapped to their numeric codes;
        ``last_seen`` is given in microseconds since the epoch.
        """

        num = _coerce_int(_first(entry, "node_num", "num", "nodeNum"))
        if num is None:
            raise ValueError(f"directory entry has no node number: {entry!r}")
        last_seen = _coerce_float(_first(entry, "last_seen", "lastSeen"))
        updates = {
            "long_name": _first(entry, "long_name", "longName"),
            "short_name": _first(entry, "short_name", "shortName"),
            "hw_model": _enum_value(
                mesh_pb2.HardwareModel, _first(entry, "hw_model", "hwModel")
            ),
            "role": _enum_value(
                config_pb2.Config.DeviceConfig.Role, _first(entry, "role")
            ),
            "latitude_i": _coerce_int(_first(entry, "last_lat", "lastLat")),
            "longitude_i": _coerce_int(_first(entry, "last_long", "lastLong")),
            "last_heard": last_seen / 1_000_000 if last_seen else None,
        }
        return self.merge(num, updates, NodeSource.DIRECTORY)

    def set_favorite(self, num: int, favorite: bool) -> NodeInfo:
        return self.merge(num, {"is_favorite": _coerce_bool(favorite)}, NodeSource.USER)

    def set_muted(self, num: int, muted: bool) -> NodeInfo:
        return self.merge(num, {"is_muted": _coerce_bool(muted)}, NodeSource.USER)

    def remove(self, num: int) -> bool:
        """Forget ``num`` in memory and in the store."""

        with self._lock:
            removed = self._nodes.pop(num, None) is not None
        if self.store is not None:
            self._submit(self.store.delete_node, num, label="delete_node")
        if removed:
            self._schedule_notify()
        return removed

    def _submit(self, fn, *args, label: str) -> None:
        if self.writer is None:
            try:
                fn(*args)
            except Exception as exc:
                config._debug_log(
                    "Store write failed",
                    context="node_cache.persist",
                    severity="warn",
                    label=label,
                    error_class=exc.__class__.__name__,
                    error_message=str(exc),
                )
            return
        self.writer.submit(fn, *args, priority=_NODE_WRITE_PRIORITY, label=label)

    def _persist(self, node: NodeInfo) -> None:
        if self.store is None:
            return
        self._submit(self.store.upsert_node, node.to_dict(), label="upsert_node")

    def subscribe(self, listener: NodeListener) -> None:
        """Register ``listener(nodes=...)`` and call it with the current snapshot."""

        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
        pub.subscribe(listener, self.topic)
        listener(nodes=self.all())

    def unsubscribe(self, listener: NodeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
        if pub.isSubscribed(listener, self.topic):
            pub.unsubscribe(listener, self.topic)

    def _schedule_notify(self) -> None:
        with self._lock:
            if self._notify_timer is not None or not self._listeners:
                return
            timer = threading.Timer(self.notify_delay, self._fire)
            timer.daemon = True
            self._notify_timer = timer
        timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._notify_timer = None
        try:
            pub.sendMessage(self.topic, nodes=self.all())
        except Exception as exc:
            config._debug_log(
                "Node listener failed",
                context="node_cache.notify",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )

    def flush_notifications(self) -> bool:
        """Deliver a pending notification now.

        Returns:
            ``True`` when a notification was pending.
        """

        with self._lock:
            timer = self._notify_timer
            if timer is None:
                return False
            timer.cancel()
        self._fire()
        return True

    def close(self) -> None:
        with self._lock:
            timer = self._notify_timer
            self._notify_timer = None
        if timer is not None:
            timer.cancel()


__all__ = [
    "NODE_FIELDS",
    "NodeCache",
    "NodeInfo",
    "NodeSource",
    "merge_node",
    "validate_node_num",
]
