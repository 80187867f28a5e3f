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

"""Bounded history of decoded packets for the packet inspector."""

from __future__ import annotations

import itertools
import threading
from collections import deque
from typing import Callable

from pubsub import pub

from . import config
from .codec import DecodedPacket, decode_from_radio
from .writer import _PACKET_WRITE_PRIORITY, WriteQueue


def _packet_row(packet: DecodedPacket) -> dict:
    return {
        "packet_id": packet.packet_id,
        "from_node": packet.from_node,
        "to_node": packet.to_node,
        "channel": packet.channel,
        "portnum": packet.portnum,
        "timestamp": packet.timestamp,
        "rx_time": packet.rx_time,
        "rx_snr": packet.rx_snr,
        "rx_rssi": packet.rx_rssi,
        "raw": packet.raw,
    }


class PacketCache:
    """FIFO buffer holding the most recent ``capacity`` packets.

    Every added packet is also appended to the store, which prunes itself
    to its own retention limit. Once the row is written the packet takes the
    store row id, so live and reloaded packets share one id space.
    """

    _instances = itertools.count(1)

    def __init__(
        self,
        store=None,
        writer: WriteQueue | None = None,
        *,
        capacity: int | None = None,
    ) -> None:
        self.capacity = config.PACKET_CACHE_SIZE if capacity is None else capacity
        if self.capacity < 1:
            raise ValueError("capacity must be positive")
        self.store = store
        self.writer = writer
        self.topic = f"meshconsole.packets.cache{next(self._instances)}"
        self._packets: deque[DecodedPacket] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()
        self._listeners: list[Callable[..., None]] = []
        self.skipped = 0
        self._load()

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            rows = self.store.get_packets(self.capacity)
        except Exception as exc:
            config._debug_log(
                "Failed to load packets from store",
                context="packet_cache.load",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            return
        for row in rows:
            try:
                packet = decode_from_radio(
                    row["raw"], timestamp=row["timestamp"], record_id=row["id"]
                )
            except Exception as exc:
                self.skipped += 1
                config._debug_log(
                    "Skipping unreadable packet row",
                    context="packet_cache.load",
                    severity="warn",
                    row_id=row.get("id"),
                    error_class=exc.__class__.__name__,
                )
                continue
            if packet.decode_error:
                self.skipped += 1
                continue
            self._packets.append(packet)
        config._debug_log(
            "Loaded packets from store",
            context="packet_cache.load",
            count=len(self._packets),
            skipped=self.skipped,
        )

    def _persist(self, packet: DecodedPacket, row: dict) -> None:
        row_id = self.store.insert_packet(row)
        with self._lock:
            packet.id = row_id

    def add(self, packet: DecodedPacket) -> None:
        """Append ``packet``, evicting the oldest entry when full."""

        with self._lock:
            self._packets.append(packet)
            notify = bool(self._listeners)
        if self.store is not None:
            row = _packet_row(packet)
            if self.writer is None:
                try:
                    self._persist(packet, row)
                except Exception as exc:
                    config._debug_log(
                        "Store write failed",
                        context="packet_cache.persist",
                        severity="warn",
                        error_class=exc.__class__.__name__,
                        error_message=str(exc),
                    )
            else:
                self.writer.submit(
                    self._persist,
                    packet,
                    row,
                    priority=_PACKET_WRITE_PRIORITY,
                    label="insert_packet",
                )
        if notify:
            try:
                pub.sendMessage(self.topic, packet=packet)
            except Exception as exc:
                config._debug_log(
                    "Packet listener failed",
                    context="packet_cache.notify",
                    severity="warn",
                    error_class=exc.__class__.__name__,
                    error_message=str(exc),
                )

    def all(self) -> list[DecodedPacket]:
        with self._lock:
            return list(self._packets)

    def get(self, record_id: int) -> DecodedPacket | None:
        with self._lock:
            for packet in self._packets:
                if packet.id == record_id:
                    return packet
        return None

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._packets)

    def __len__(self) -> int:
        return self.count

    def clear(self) -> None:
        """Drop the in-memory history; stored rows are kept."""

        with self._lock:
            self._packets.clear()

    def subscribe(self, listener: Callable[..., None]) -> Callable[[], None]:
        """Register ``listener(packet=...)`` for every added packet.

        Returns:
            A callable that removes the subscription.
        """

        with self._lock:
            self._listeners.append(listener)
        pub.subscribe(listener, self.topic)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
            if pub.isSubscribed(listener, self.topic):
                pub.unsubscribe(listener, self.topic)

        return _unsubscribe


__all__ = ["PacketCache"]
