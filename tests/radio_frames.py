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

"""Builders for serialised ``FromRadio`` frames used across the unit tests."""

from __future__ import annotations

from meshtastic.protobuf import mesh_pb2, portnums_pb2, telemetry_pb2

BROADCAST = 0xFFFFFFFF
MY_NODE = 0x0A0B0C0D


def mesh_frame(
    *,
    from_node: int,
    to_node: int = BROADCAST,
    portnum: int,
    payload: bytes,
    packet_id: int = 1,
    channel: int = 0,
    rx_snr: float = 0.0,
    rx_rssi: int = 0,
    hop_start: int = 0,
    hop_limit: int = 0,
    request_id: int = 0,
) -> bytes:
    """Return a ``FromRadio`` frame wrapping a decoded mesh packet."""

    frame = mesh_pb2.FromRadio()
    packet = frame.packet
    setattr(packet, "from", from_node)
    packet.to = to_node
    packet.id = packet_id
    packet.channel = channel
    packet.rx_snr = rx_snr
    packet.rx_rssi = rx_rssi
    packet.hop_start = hop_start
    packet.hop_limit = hop_limit
    packet.decoded.portnum = portnum
    packet.decoded.payload = payload
    if request_id:
        packet.decoded.request_id = request_id
    return frame.SerializeToString()


def text_frame(text: str, **kwargs) -> bytes:
    return mesh_frame(
        portnum=portnums_pb2.PortNum.TEXT_MESSAGE_APP,
        payload=text.encode("utf-8"),
        **kwargs,
    )


def position_frame(latitude_i: int, longitude_i: int, altitude: int, **kwargs) -> bytes:
    position = mesh_pb2.Position()
    position.latitude_i = latitude_i
    position.longitude_i = longitude_i
    position.altitude = altitude
    position.sats_in_view = 7
    return mesh_frame(
        portnum=portnums_pb2.PortNum.POSITION_APP,
        payload=position.SerializeToString(),
        **kwargs,
    )


def user_frame(user_id: str, long_name: str, short_name: str, **kwargs) -> bytes:
    user = mesh_pb2.User()
    user.id = user_id
    user.long_name = long_name
    user.short_name = short_name
    user.hw_model = mesh_pb2.HardwareModel.TBEAM
    return mesh_frame(
        portnum=portnums_pb2.PortNum.NODEINFO_APP,
        payload=user.SerializeToString(),
        **kwargs,
    )


def telemetry_frame(battery_level: int, voltage: float, **kwargs) -> bytes:
    telemetry = telemetry_pb2.Telemetry()
    telemetry.device_metrics.battery_level = battery_level
    telemetry.device_metrics.voltage = voltage
    return mesh_frame(
        portnum=portnums_pb2.PortNum.TELEMETRY_APP,
        payload=telemetry.SerializeToString(),
        **kwargs,
    )


def traceroute_frame(route: list[int], snr_towards: list[int], **kwargs) -> bytes:
    discovery = mesh_pb2.RouteDiscovery()
    discovery.route.extend(route)
    discovery.snr_towards.extend(snr_towards)
    return mesh_frame(
        portnum=portnums_pb2.PortNum.TRACEROUTE_APP,
        payload=discovery.SerializeToString(),
        **kwargs,
    )


def routing_frame(error_reason: int, *, request_id: int, **kwargs) -> bytes:
    routing = mesh_pb2.Routing()
    routing.error_reason = error_reason
    return mesh_frame(
        portnum=portnums_pb2.PortNum.ROUTING_APP,
        payload=routing.SerializeToString(),
        request_id=request_id,
        **kwargs,
    )


def my_info_frame(node_num: int) -> bytes:
    frame = mesh_pb2.FromRadio()
    frame.my_info.my_node_num = node_num
    return frame.SerializeToString()


def node_info_frame(
    node_num: int,
    *,
    short_name: str = "",
    long_name: str = "",
    last_heard: int = 0,
    hops_away: int | None = None,
    battery_level: int = 0,
) -> bytes:
    frame = mesh_pb2.FromRadio()
    info = frame.node_info
    info.num = node_num
    if short_name or long_name:
        info.user.id = f"!{node_num:08x}"
        info.user.short_name = short_name
        info.user.long_name = long_name
    if last_heard:
        info.last_heard = last_heard
    if hops_away is not None:
        info.hops_away = hops_away
    if battery_level:
        info.device_metrics.battery_level = battery_level
    return frame.SerializeToString()
