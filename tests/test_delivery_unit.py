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
"""Unit tests for :mod:`meshconsole.mesh_link.delivery`."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from meshtastic.protobuf import mesh_pb2

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from meshconsole.mesh_link import delivery


@pytest.mark.parametrize(
    "current, new, allowed",
    [
        ("pending", "acked", True),
        ("pending", "delivered", True),
        ("pending", "error", True),
        ("acked", "delivered", True),
        ("acked", "error", True),
        ("acked", "acked", False),
        ("delivered", "error", False),
        ("error", "delivered", False),
        ("delivered", "pending", False),
        ("received", "acked", False),
    ],
)
def test_can_transition(current, new, allowed):
    """Stored statuses only ever move forward."""

    assert delivery.can_transition(current, new) is allowed


def test_error_reason_codes():
    Error = mesh_pb2.Routing.Error
    assert delivery.error_reason(Error.NONE) is None
    assert delivery.error_reason(Error.NO_ROUTE) == "no_route"
    assert delivery.error_reason(Error.GOT_NAK) == "rejected"
    assert delivery.error_reason(Error.TIMEOUT) == "timeout"
    assert delivery.error_reason(Error.TOO_LARGE) == "too_large"
    assert delivery.error_reason(Error.NOT_AUTHORIZED) == "not_authorized"
    assert delivery.error_reason(9999) == "error_9999"


def test_status_from_routing_distinguishes_local_and_remote_acks():
    NONE = mesh_pb2.Routing.Error.NONE
    assert delivery.status_from_routing(NONE, ack_from=1, my_node_num=1) == (
        "acked",
        None,
    )
    assert delivery.status_from_routing(NONE, ack_from=2, my_node_num=1) == (
        "delivered",
        None,
    )
    assert delivery.status_from_routing(NONE, ack_from=2, my_node_num=None) == (
        "acked",
        None,
    )
    assert delivery.status_from_routing(
        mesh_pb2.Routing.Error.NO_ROUTE, ack_from=2, my_node_num=1
    ) == ("error", "no_route")


def test_pending_message_times_out_lazily():
    message = {"status": "pending", "timestamp": 1000.0, "error_reason": None}

    assert delivery.effective_status(message, now=1029.0, timeout=30.0) == (
        "pending",
        None,
    )
    assert delivery.effective_status(message, now=1030.0, timeout=30.0) == (
        "error",
        "timeout",
    )
    assert message["status"] == "pending"


def test_final_states_are_reported_unchanged():
    acked = {"status": "acked", "timestamp": 0.0}
    failed = {"status": "error", "timestamp": 0.0, "error_reason": "no_route"}

    assert delivery.effective_status(acked, now=10_000.0, timeout=30.0) == (
        "acked",
        None,
    )
    assert delivery.effective_status(failed, now=10_000.0, timeout=30.0) == (
        "error",
        "no_route",
    )


def test_apply_effective_status_returns_copy():
    message = {"status": "pending", "timestamp": 0.0, "text": "hi"}
    updated = delivery.apply_effective_status(message, now=100.0, timeout=30.0)

    assert updated["status"] == "error"
    assert updated["error_reason"] == "timeout"
    assert message["status"] == "pending"


def test_exported_names_are_the_outbound_state_machine():
    assert set(delivery.__all__) == {
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
    }
    assert all(hasattr(delivery, name) for name in delivery.__all__)
