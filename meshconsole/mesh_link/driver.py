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

"""Glue between the transport event stream and the local state.

:class:`SyncDriver` is the only writer of the caches and the message and
diagnostic tables. It consumes transport events on one thread, feeds the
node and packet caches, records text messages and applies routing
acknowledgments to outbound messages. The operator console sends through
the driver and reads snapshots from it.
"""

from __future__ import annotations

import itertools
import sqlite3
import time
from typing import Any, Callable, Iterable, Mapping

from meshtastic.protobuf import mesh_pb2, telemetry_pb2
from pubsub import pub

from . import codec, config, delivery
from .codec import DecodedPacket, PortNum
from .events import DeviceStatus, PacketEvent, StatusEvent, TransportEvent
from .node_cache import NodeCache
from .packet_cache import PacketCache
from .serialization import BROADCAST_NUM, _canonical_node_id
from .transport import SendError
from .writer import WriteQueue


class SyncDriver:
    """Apply transport events to the caches and store.

    Parameters:
        transport: Started :class:`~.transport.HttpTransport` or a compatible
            object providing iteration, ``send``, ``disconnect`` and
            ``fetch_owner``.
        store: :class:`~.store.MeshStore` of the current session.
        node_cache: Cache receiving node updates.
        packet_cache: Cache receiving every decoded frame.
        writer: Write-behind queue shared with the caches, flushed on stop.
        my_node_num: Local node number when already known.
        request_config: Ask the radio for its configuration dump once the
            link is up. Defaults to ``not config.SKIP_CONFIG``.
        ack_timeout: Seconds after which pending messages read as timed out.
    """

    _instances = itertools.count(1)

    def __init__(
        self,
        transport,
        store,
        node_cache: NodeCache,
        packet_cache: PacketCache,
        *,
        writer: WriteQueue | None = None,
        my_node_num: int | None = None,
        request_config: bool | None = None,
        ack_timeout: float | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.node_cache = node_cache
        self.packet_cache = packet_cache
        self.writer = writer
        self.my_node_num = my_node_num
        self.request_config = (
            not config.SKIP_CONFIG if request_config is None else request_config
        )
        self.ack_timeout = (
            config.MESSAGE_ACK_TIMEOUT_SECS if ack_timeout is None else ack_timeout
        )
        self.status: str | None = None
        self.disconnect_reason: str | None = None
        self.status_topic = f"meshconsole.status.driver{next(self._instances)}"
        self._status_listeners: list[Callable[..., None]] = []
        self._config_requested = False
        self.processed = 0
        self.failed = 0

    # Event loop ------------------------------------------------------------

    def run(self) -> str | None:
        """Consume transport events until the stream ends.

        Returns:
            The disconnect reason reported by the transport.
        """

        for event in self.transport:
            self.handle_event(event)
        return self.disconnect_reason

    def handle_event(self, event: TransportEvent) -> None:
        if isinstance(event, StatusEvent):
            self._on_status(event)
            return
        if isinstance(event, PacketEvent):
            try:
                self.process_raw(event.data)
            except Exception as exc:
                self.failed += 1
                config._debug_log(
                    "Failed to process packet",
                    context="driver.handle_event",
                    severity="warn",
                    error_class=exc.__class__.__name__,
                    error_message=str(exc),
                )

    def subscribe_status(self, listener: Callable[..., None]) -> None:
        """Register ``listener(event=...)`` for connection status changes."""

        self._status_listeners.append(listener)
        pub.subscribe(listener, self.status_topic)

    def _on_status(self, event: StatusEvent) -> None:
        self.status = event.status
        if event.status == DeviceStatus.DISCONNECTED:
            self.disconnect_reason = event.reason
        config._debug_log(
            "Connection status",
            context="driver.status",
            severity="info",
            status=event.status,
            reason=event.reason,
        )
        if self._status_listeners:
            try:
                pub.sendMessage(self.status_topic, event=event)
            except Exception as exc:
                config._debug_log(
                    "Status listener failed",
                    context="driver.status",
                    severity="warn",
                    error_class=exc.__class__.__name__,
                    error_message=str(exc),
                )
        if event.status == DeviceStatus.CONNECTED and not self._config_requested:
            self._config_requested = True
            self._on_first_connect()

    def _on_first_connect(self) -> None:
        if self.request_config:
            try:
                self.transport.send(codec.encode_want_config())
            except SendError as exc:
                config._debug_log(
                    "Config request failed",
                    context="driver.connect",
                    severity="warn",
                    error_message=str(exc),
                )
        if self.my_node_num is not None:
            return
        owner = self.transport.fetch_owner()
        if owner is None:
            return
        self.my_node_num = owner.node_num
        self.node_cache.merge(
            owner.node_num,
            {
                "user_id": owner.user_id,
                "long_name": owner.long_name,
                "short_name": owner.short_name,
                "hops_away": 0,
            },
        )

    # Inbound ---------------------------------------------------------------

    def process_raw(self, raw: bytes) -> DecodedPacket:
        """Decode ``raw``, record it and apply it to the caches."""

        packet = codec.decode_from_radio(raw)
        self.packet_cache.add(packet)
        if packet.decode_error:
            config._debug_log(
                "Discarding undecodable frame",
                context="driver.decode",
                severity="warn",
                error_message=packet.decode_error,
                size=len(raw),
            )
            return packet
        self.process_packet(packet)
        self.processed += 1
        return packet

    def process_packet(self, packet: DecodedPacket) -> None:
        variant = packet.variant
        if variant == "my_info":
            self.my_node_num = packet.from_radio.my_info.my_node_num
            config._debug_log(
                "Local node identified",
                context="driver.my_info",
                severity="info",
                node_id=_canonical_node_id(self.my_node_num),
            )
        elif variant == "node_info":
            self.node_cache.update_from_node_info(packet.from_radio.node_info)
        elif variant == "packet":
            self._process_mesh_packet(packet)

    def _addressed_to_me(self, packet: DecodedPacket) -> bool:
        return self.my_node_num is not None and packet.to_node == self.my_node_num

    def _process_mesh_packet(self, packet: DecodedPacket) -> None:
        sender = packet.from_node
        if sender:
            self.node_cache.update_from_packet(
                sender,
                snr=packet.rx_snr,
                rssi=packet.rx_rssi,
                hops_away=packet.hops_away,
                via_mqtt=packet.via_mqtt or None,
            )

        payload = packet.payload
        port = packet.portnum
        if port == PortNum.TEXT_MESSAGE_APP and isinstance(payload, str):
            self._record_text(packet, payload)
        elif port == PortNum.NODEINFO_APP and isinstance(payload, mesh_pb2.User):
            self.node_cache.update_from_user(sender, payload)
            if self._addressed_to_me(packet):
                self.store.insert_nodeinfo_response(
                    {
                        "packet_id": packet.packet_id,
                        "from_node": sender,
                        "requested_by": self.my_node_num,
                        "long_name": payload.long_name or None,
                        "short_name": payload.short_name or None,
                        "hw_model": payload.hw_model,
                    }
                )
        elif port == PortNum.POSITION_APP and isinstance(payload, mesh_pb2.Position):
            self.node_cache.update_position(sender, payload)
            if self._addressed_to_me(packet):
                self.store.insert_position_response(
                    {
                        "packet_id": packet.packet_id,
                        "from_node": sender,
                        "requested_by": self.my_node_num,
                        "latitude_i": payload.latitude_i,
                        "longitude_i": payload.longitude_i,
                        "altitude": payload.altitude,
                        "sats_in_view": payload.sats_in_view,
                    }
                )
        elif port == PortNum.TELEMETRY_APP and isinstance(
            payload, telemetry_pb2.Telemetry
        ):
            if payload.HasField("device_metrics"):
                self.node_cache.update_device_metrics(sender, payload.device_metrics)
        elif port == PortNum.TRACEROUTE_APP and isinstance(
            payload, mesh_pb2.RouteDiscovery
        ):
            if self._addressed_to_me(packet):
                self.store.insert_traceroute_response(
                    {
                        "packet_id": packet.packet_id,
                        "from_node": sender,
                        "requested_by": self.my_node_num,
                        "route": list(payload.route),
                        "snr_towards": list(payload.snr_towards),
                        "snr_back": list(payload.snr_back),
                        "hop_limit": packet.hop_limit,
                    }
                )
        elif port == PortNum.ROUTING_APP and isinstance(payload, mesh_pb2.Routing):
            self._apply_routing(packet, payload)

    def _record_text(self, packet: DecodedPacket, text: str) -> None:
        reply_id = packet.mesh_packet.decoded.reply_id or None
        self.store.insert_message(
            {
                "packet_id": packet.packet_id,
                "from_node": packet.from_node,
                "to_node": packet.to_node,
                "channel": packet.channel,
                "text": text,
                "timestamp": packet.timestamp,
                "rx_time": packet.rx_time,
                "rx_snr": packet.rx_snr,
                "rx_rssi": packet.rx_rssi,
                "hop_limit": packet.hop_limit,
                "hop_start": packet.hop_start,
                "status": delivery.RECEIVED,
                "reply_id": reply_id,
            }
        )

    def _apply_routing(self, packet: DecodedPacket, routing) -> None:
        if not packet.request_id or routing.WhichOneof("variant") != "error_reason":
            return
        if self.my_node_num is not None and packet.to_node != self.my_node_num:
            return
        status, reason = delivery.status_from_routing(
            routing.error_reason,
            ack_from=packet.from_node,
            my_node_num=self.my_node_num,
        )
        self.store.update_message_status(
            packet.request_id, status, reason, ack_timeout=self.ack_timeout
        )

    # Outbound --------------------------------------------------------------

    def _send(self, data: bytes, *, kind: str, to_node: int) -> None:
        self.transport.send(data)
        config._debug_log(
            "Sent request",
            context="driver.send",
            kind=kind,
            to=_canonical_node_id(to_node),
        )

    def send_text(
        self,
        text: str,
        *,
        to_node: int = BROADCAST_NUM,
        channel: int = 0,
        reply_id: int | None = None,
    ) -> int:
        """Send ``text`` and record it as a pending message.

        Returns:
            The packet id acknowledgments will reference.

        Raises:
            ValueError: If ``text`` is empty.
            SendError: If the radio did not accept the frame. Nothing is
                recorded in that case.
        """

        if not text:
            raise ValueError("text must not be empty")
        packet_id = codec.new_packet_id()
        data = codec.encode_text_message(
            text,
            packet_id=packet_id,
            from_node=self.my_node_num,
            to_node=to_node,
            channel=channel,
            reply_id=reply_id,
        )
        self._send(data, kind="text", to_node=to_node)
        try:
            self.store.insert_message(
                {
                    "packet_id": packet_id,
                    "from_node": self.my_node_num,
                    "to_node": to_node,
                    "channel": channel,
                    "text": text,
                    "timestamp": time.time(),
                    "status": delivery.PENDING,
                    "reply_id": reply_id,
                }
            )
        except sqlite3.Error as exc:
            config._debug_log(
                "Failed to record sent message",
                context="driver.send_text",
                severity="error",
                always=True,
                packet_id=packet_id,
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
        return packet_id

    def send_traceroute(self, to_node: int, *, hop_limit: int | None = None) -> int:
        """Start a route discovery towards ``to_node``.

        ``hop_limit=0`` sends a direct ping that is not relayed.
        """

        packet_id = codec.new_packet_id()
        self._send(
            codec.encode_traceroute_request(
                to_node,
                from_node=self.my_node_num,
                hop_limit=hop_limit,
                packet_id=packet_id,
            ),
            kind="traceroute",
            to_node=to_node,
        )
        return packet_id

    def send_position_request(self, to_node: int) -> int:
        packet_id = codec.new_packet_id()
        self._send(
            codec.encode_position_request(
                to_node, from_node=self.my_node_num, packet_id=packet_id
            ),
            kind="position",
            to_node=to_node,
        )
        return packet_id

    def send_telemetry_request(self, to_node: int) -> int:
        packet_id = codec.new_packet_id()
        self._send(
            codec.encode_telemetry_request(
                to_node, from_node=self.my_node_num, packet_id=packet_id
            ),
            kind="telemetry",
            to_node=to_node,
        )
        return packet_id

    # Read side -------------------------------------------------------------

    def _effective(self, rows: Iterable[Mapping[str, Any]]) -> list[dict]:
        now = time.time()
        return [
            delivery.apply_effective_status(row, now=now, timeout=self.ack_timeout)
            for row in rows
        ]

    def messages(self, channel: int | None = None, limit: int = 100) -> list[dict]:
        return self._effective(self.store.get_messages(channel, limit))

    def dm_conversations(self) -> list[dict]:
        if self.my_node_num is None:
            return []
        return self.store.get_dm_conversations(self.my_node_num)

    def dm_messages(self, other_node: int, limit: int = 100) -> list[dict]:
        if self.my_node_num is None:
            return []
        return self._effective(
            self.store.get_dm_messages(self.my_node_num, other_node, limit)
        )

    def mark_dm_read(self, other_node: int) -> int:
        if self.my_node_num is None:
            return 0
        return self.store.mark_dm_read(self.my_node_num, other_node)

    def log_responses(self, limit: int = 100) -> list[dict]:
        return self.store.get_log_responses(limit)

    def message_status(self, packet_id: int) -> tuple[str, str | None] | None:
        """Return ``(status, reason)`` for the latest message with ``packet_id``."""

        message = self.store.get_message_by_packet_id(packet_id)
        if message is None:
            return None
        return delivery.effective_status(message, timeout=self.ack_timeout)

    def nodes(self):
        return self.node_cache.all()

    def packets(self):
        return self.packet_cache.all()

    def import_directory(self, entries: Iterable[Mapping[str, Any]]) -> int:
        """Merge node records from an external directory.

        Returns:
            Number of entries merged. Malformed entries are skipped.
        """

        merged = 0
        for entry in entries:
            try:
                self.node_cache.update_from_directory(entry)
            except (TypeError, ValueError) as exc:
                config._debug_log(
                    "Skipping directory entry",
                    context="driver.import_directory",
                    severity="warn",
                    error_message=str(exc),
                )
                continue
            merged += 1
        return merged

    # Shutdown --------------------------------------------------------------

    def stop(self, timeout: float | None = None) -> None:
        """Disconnect the transport and wait for queued store writes."""

        self.transport.disconnect()
        if self.writer is not None:
            self.writer.flush(timeout)
        self.node_cache.flush_notifications()


__all__ = ["SyncDriver"]
