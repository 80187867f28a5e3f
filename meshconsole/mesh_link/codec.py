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

"""Adapter around the Meshtastic protobuf codec.

Frames read from the device are decoded into :class:`DecodedPacket` records
that expose the handful of envelope fields the caches need. Outbound helpers
serialise ``ToRadio`` frames for :meth:`HttpTransport.send`.
"""

from __future__ import annotations

import itertools
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

from google.protobuf.message import DecodeError
from meshtastic.protobuf import (
    admin_pb2,
    mesh_pb2,
    portnums_pb2,
    storeforward_pb2,
    telemetry_pb2,
)

from .serialization import BROADCAST_NUM

DEFAULT_HOP_LIMIT = 7
"""Hop limit applied to traceroute requests when none is given."""

PortNum = portnums_pb2.PortNum

PORTNUM_MAP: Dict[int, Tuple[str, Callable[[], Any]]] = {
    PortNum.POSITION_APP: ("POSITION_APP", mesh_pb2.Position),
    PortNum.NODEINFO_APP: ("NODEINFO_APP", mesh_pb2.User),
    PortNum.ROUTING_APP: ("ROUTING_APP", mesh_pb2.Routing),
    PortNum.ADMIN_APP: ("ADMIN_APP", admin_pb2.AdminMessage),
    PortNum.WAYPOINT_APP: ("WAYPOINT_APP", mesh_pb2.Waypoint),
    PortNum.STORE_FORWARD_APP: (
        "STORE_FORWARD_APP",
        storeforward_pb2.StoreAndForward,
    ),
    PortNum.TELEMETRY_APP: ("TELEMETRY_APP", telemetry_pb2.Telemetry),
    PortNum.TRACEROUTE_APP: ("TRACEROUTE_APP", mesh_pb2.RouteDiscovery),
    PortNum.NEIGHBORINFO_APP: ("NEIGHBORINFO_APP", mesh_pb2.NeighborInfo),
}
"""Payload message classes keyed by application port number."""

_record_lock = threading.Lock()
_last_record_id = 0


def _next_record_id() -> int:
    """Return a process-unique, increasing identifier for a decoded frame."""

    global _last_record_id
    with _record_lock:
        _last_record_id = max(_last_record_id + 1, time.time_ns() // 1_000_000)
        return _last_record_id


@dataclass
class DecodedPacket:
    """A ``FromRadio`` frame together with its decoded payload.

    ``payload`` is a protobuf message for the ports in :data:`PORTNUM_MAP`,
    a ``str`` for text messages and the raw payload bytes otherwise.
    ``decode_error`` is set instead of raising when the frame is malformed.
    """

    raw: bytes
    id: int = field(default_factory=_next_record_id)
    timestamp: float = field(default_factory=time.time)
    from_radio: mesh_pb2.FromRadio | None = None
    mesh_packet: mesh_pb2.MeshPacket | None = None
    portnum: int | None = None
    payload: Any = None
    request_id: int | None = None
    decode_error: str | None = None

    @property
    def variant(self) -> str | None:
        if self.from_radio is None:
            return None
        return self.from_radio.WhichOneof("payload_variant")

    @property
    def from_node(self) -> int | None:
        return getattr(self.mesh_packet, "from") if self.mesh_packet else None

    @property
    def to_node(self) -> int | None:
        return self.mesh_packet.to if self.mesh_packet else None

    @property
    def channel(self) -> int:
        return self.mesh_packet.channel if self.mesh_packet else 0

    @property
    def packet_id(self) -> int:
        return self.mesh_packet.id if self.mesh_packet else 0

    @property
    def rx_time(self) -> int | None:
        return (self.mesh_packet.rx_time or None) if self.mesh_packet else None

    @property
    def rx_snr(self) -> float | None:
        return (self.mesh_packet.rx_snr or None) if self.mesh_packet else None

    @property
    def rx_rssi(self) -> int | None:
        return (self.mesh_packet.rx_rssi or None) if self.mesh_packet else None

    @property
    def hop_limit(self) -> int | None:
        return self.mesh_packet.hop_limit if self.mesh_packet else None

    @property
    def hop_start(self) -> int | None:
        return (self.mesh_packet.hop_start or None) if self.mesh_packet else None

    @property
    def hops_away(self) -> int | None:
        """Relays traversed, when the sender advertised its starting hop limit."""

        if not self.mesh_packet or not self.mesh_packet.hop_start:
            return None
        hops = self.mesh_packet.hop_start - self.mesh_packet.hop_limit
        return hops if hops >= 0 else None

    @property
    def via_mqtt(self) -> bool | None:
        return self.mesh_packet.via_mqtt if self.mesh_packet else None

    @property
    def is_broadcast(self) -> bool:
        return self.to_node == BROADCAST_NUM

    @property
    def portnum_name(self) -> str | None:
        if self.portnum is None:
            return None
        try:
            return PortNum.Name(self.portnum)
        except ValueError:
            return str(self.portnum)


def _decode_payload(portnum: int, payload: bytes) -> Any:
    if portnum == PortNum.TEXT_MESSAGE_APP:
        return payload.decode("utf-8", errors="replace")
    entry = PORTNUM_MAP.get(portnum)
    if entry is None:
        return payload
    _name, message_cls = entry
    message = message_cls()
    try:
        message.ParseFromString(payload)
    except DecodeError:
        return payload
    return message


def decode_from_radio(
    raw: bytes, timestamp: float | None = None, record_id: int | None = None
) -> DecodedPacket:
    """Decode one serialised ``FromRadio`` frame.

    Parameters:
        raw: Frame bytes exactly as returned by the device.
        timestamp: Reception time in epoch seconds. Defaults to now.
        record_id: Identifier to reuse, e.g. when rehydrating stored frames.

    Returns:
        The decoded packet. Failures are reported through
        :attr:`DecodedPacket.decode_error` rather than raised.
    """

    packet = DecodedPacket(raw=bytes(raw))
    if timestamp is not None:
        packet.timestamp = timestamp
    if record_id is not None:
        packet.id = record_id

    from_radio = mesh_pb2.FromRadio()
    try:
        from_radio.ParseFromString(packet.raw)
    except DecodeError as exc:
        packet.decode_error = str(exc) or "decode failed"
        return packet
    packet.from_radio = from_radio

    if from_radio.WhichOneof("payload_variant") != "packet":
        return packet
    mesh_packet = from_radio.packet
    packet.mesh_packet = mesh_packet
    if mesh_packet.WhichOneof("payload_variant") != "decoded":
        return packet

    decoded = mesh_packet.decoded
    packet.portnum = decoded.portnum
    packet.payload = _decode_payload(decoded.portnum, decoded.payload)
    if decoded.request_id:
        packet.request_id = decoded.request_id
    return packet


def new_packet_id() -> int:
    """Return a random non-zero 32-bit packet identifier."""

    return random.randint(1, 0xFFFFFFFF)


def _wrap_mesh_packet(mesh_packet: mesh_pb2.MeshPacket) -> bytes:
    to_radio = mesh_pb2.ToRadio()
    to_radio.packet.CopyFrom(mesh_packet)
    return to_radio.SerializeToString()


def _build_mesh_packet(
    *,
    from_node: int | None,
    to_node: int,
    portnum: int,
    payload: bytes,
    packet_id: int | None = None,
    channel: int = 0,
    want_ack: bool = True,
    want_response: bool = False,
    hop_limit: int | None = None,
    reply_id: int | None = None,
) -> mesh_pb2.MeshPacket:
    mesh_packet = mesh_pb2.MeshPacket()
    if from_node:
        setattr(mesh_packet, "from", from_node)
    mesh_packet.to = to_node
    mesh_packet.channel = channel
    mesh_packet.want_ack = want_ack
    if packet_id is not None:
        mesh_packet.id = packet_id
    if hop_limit is not None:
        mesh_packet.hop_limit = hop_limit
    mesh_packet.decoded.portnum = portnum
    mesh_packet.decoded.payload = payload
    if want_response:
        mesh_packet.decoded.want_response = True
    if reply_id:
        mesh_packet.decoded.reply_id = reply_id
    return mesh_packet


def encode_text_message(
    text: str,
    *,
    packet_id: int,
    from_node: int | None = None,
    to_node: int = BROADCAST_NUM,
    channel: int = 0,
    reply_id: int | None = None,
) -> bytes:
    """Serialise a ``TEXT_MESSAGE_APP`` frame requesting an acknowledgment."""

    return _wrap_mesh_packet(
        _build_mesh_packet(
            from_node=from_node,
            to_node=to_node,
            portnum=PortNum.TEXT_MESSAGE_APP,
            payload=text.encode("utf-8"),
            packet_id=packet_id,
            channel=channel,
            reply_id=reply_id,
        )
    )


def encode_want_config(config_id: int | None = None) -> bytes:
    """Serialise the ``want_config_id`` request that triggers a config dump."""

    to_radio = mesh_pb2.ToRadio()
    to_radio.want_config_id = config_id if config_id is not None else new_packet_id()
    return to_radio.SerializeToString()


def encode_traceroute_request(
    to_node: int,
    *,
    from_node: int | None = None,
    hop_limit: int | None = None,
    packet_id: int | None = None,
) -> bytes:
    """Serialise a route discovery request.

    A ``hop_limit`` of ``0`` turns the traceroute into a direct ping.
    """

    return _wrap_mesh_packet(
        _build_mesh_packet(
            from_node=from_node,
            to_node=to_node,
            portnum=PortNum.TRACEROUTE_APP,
            payload=mesh_pb2.RouteDiscovery().SerializeToString(),
            packet_id=packet_id,
            want_response=True,
            hop_limit=DEFAULT_HOP_LIMIT if hop_limit is None else hop_limit,
        )
    )


def encode_position_request(
    to_node: int, *, from_node: int | None = None, packet_id: int | None = None
) -> bytes:
    return _wrap_mesh_packet(
        _build_mesh_packet(
            from_node=from_node,
            to_node=to_node,
            portnum=PortNum.POSITION_APP,
            payload=mesh_pb2.Position().SerializeToString(),
            packet_id=packet_id,
            want_response=True,
        )
    )


def encode_telemetry_request(
    to_node: int, *, from_node: int | None = None, packet_id: int | None = None
) -> bytes:
    return _wrap_mesh_packet(
        _build_mesh_packet(
            from_node=from_node,
            to_node=to_node,
            portnum=PortNum.TELEMETRY_APP,
            payload=telemetry_pb2.Telemetry().SerializeToString(),
            packet_id=packet_id,
            want_response=True,
        )
    )


__all__ = [
    "DEFAULT_HOP_LIMIT",
    "DecodedPacket",
    "PORTNUM_MAP",
    "PortNum",
    "decode_from_radio",
    "encode_position_request",
    "encode_telemetry_request",
    "encode_text_message",
    "encode_traceroute_request",
    "encode_want_config",
    "new_packet_id",
]
