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

"""Outbound message delivery states.

A message sent from this terminal starts ``pending``. Routing packets that
reference its packet id move it forward to ``acked`` (the local radio took
it), ``delivered`` (the destination acknowledged it) or ``error``. Once a
message is ``delivered`` or ``error`` it never changes again. Timeouts are
not stored: :func:`effective_status` reports an old ``pending`` message as
an ``error`` with reason ``timeout`` at read time.
"""

from __future__ import annotations

import time
from typing import Mapping

from meshtastic.protobuf import mesh_pb2

from . import config

PENDING = "pending"
ACKED = "acked"
DELIVERED = "delivered"
ERROR = "error"
RECEIVED = "received"
READ = "read"

OUTBOUND_STATUSES = (PENDING, ACKED, DELIVERED, ERROR)

REASON_TIMEOUT = "timeout"

_RANK = {PENDING: 0, ACKED: 1, DELIVERED: 2, ERROR: 2}

_ROUTING_REASONS = {
    "NO_ROUTE": "no_route",
    "GOT_NAK": "rejected",
    "TIMEOUT": "timeout",
    "NO_INTERFACE": "no_interface",
    "MAX_RETRANSMIT": "max_retransmit",
    "NO_CHANNEL": "no_channel",
    "TOO_LARGE": "too_large",
    "NO_RESPONSE": "no_response",
    "DUTY_CYCLE_LIMIT": "duty_cycle_limit",
    "BAD_REQUEST": "bad_request",
    "NOT_AUTHORIZED": "not_authorized",
    "PKI_FAILED": "pki_failed",
    "PKI_UNKNOWN_PUBKEY": "pki_unknown_pubkey",
    "ADMIN_BAD_SESSION_KEY": "admin_bad_session_key",
    "ADMIN_PUBLIC_KEY_UNAUTHORIZED": "admin_unauthorized",
    "RATE_LIMIT_EXCEEDED": "rate_limited",
}
"""Short reason codes keyed by ``Routing.Error`` member name."""


def error_reason(code: int) -> str | None:
    """Return the stored reason string for a ``Routing.Error`` value.

    ``NONE`` maps to ``None``. Values unknown to the installed protobuf
    definitions are kept as ``error_<code>``.
    """

    if code == mesh_pb2.Routing.Error.NONE:
        return None
    try:
        name = mesh_pb2.Routing.Error.Name(code)
    except ValueError:
        return f"error_{code}"
    return _ROUTING_REASONS.get(name, name.lower())


def can_transition(current: str | None, new: str) -> bool:
    """Return whether a stored outbound status may move to ``new``.

    Only strictly forward moves are allowed, so re-applying the same
    acknowledgment is a no-op and final states stay final.
    """

    if current not in _RANK or new not in _RANK:
        return False
    return _RANK[new] > _RANK[current]


def status_from_routing(
    error_code: int, *, ack_from: int | None, my_node_num: int | None
) -> tuple[str, str | None]:
    """Derive the status a routing packet implies for the referenced message.

    Parameters:
        error_code: ``Routing.error_reason`` carried by the packet.
        ack_from: Node that emitted the routing packet.
        my_node_num: Local node number, when known.

    Returns:
        ``(status, reason)`` where ``reason`` is ``None`` unless the status
        is :data:`ERROR`.
    """

    reason = error_reason(error_code)
    if reason is not None:
        return ERROR, reason
    if my_node_num is not None and ack_from is not None and ack_from != my_node_num:
        return DELIVERED, None
    return ACKED, None


def effective_status(
    message: Mapping,
    *,
    now: float | None = None,
    timeout: float | None = None,
) -> tuple[str, str | None]:
    """Return the status a reader should see for ``message``.

    Pending messages older than ``timeout`` seconds read as a timeout error.
    """

    status = message.get("status") or RECEIVED
    reason = message.get("error_reason")
    if status != PENDING:
        return status, reason
    if timeout is None:
        timeout = config.MESSAGE_ACK_TIMEOUT_SECS
    if now is None:
        now = time.time()
    sent_at = message.get("timestamp")
    if sent_at is not None and now - sent_at >= timeout:
        return ERROR, REASON_TIMEOUT
    return status, reason


def apply_effective_status(
    message: Mapping, *, now: float | None = None, timeout: float | None = None
) -> dict:
    """Return a copy of ``message`` with its effective status filled in."""

    status, reason = effective_status(message, now=now, timeout=timeout)
    updated = dict(message)
    updated["status"] = status
    updated["error_reason"] = reason
    return updated


__all__ = [
    "ACKED",
    "DELIVERED",
    "ERROR",
    "OUTBOUND_STATUSES",
    "PENDING",
    "READ",
    "REASON_TIMEOUT",
    "RECEIVED",
    "apply_effective_status",
    "can_transition",
    "effective_status",
    "error_reason",
    "status_from_routing",
]
