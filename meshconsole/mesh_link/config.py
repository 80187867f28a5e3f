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

"""Configuration helpers for the meshconsole synchronisation core."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

DEFAULT_CONNECTION = "192.168.0.123"
"""Radio address used when no connection target is configured."""

DEFAULT_SESSION = "default"
"""Session name selecting the database file when none is specified."""

DEFAULT_POLL_INTERVAL_MS = 3000
"""Delay between poll cycles while the link is healthy."""

DEFAULT_REQUEST_TIMEOUT_MS = 5000
"""Per-request HTTP timeout applied to every device call."""

DEFAULT_MAX_CONSECUTIVE_ERRORS = 10
"""Number of back-to-back poll failures treated as a terminal link loss."""

DEFAULT_PACKET_RETENTION = 50000
"""Maximum number of raw packet records kept in the session database."""

DEFAULT_REACHABILITY_TIMEOUT_SECS = 3.0
"""Timeout for the best-effort reachability check issued on connect."""

DEFAULT_BACKOFF_MAX_SECS = 30.0
"""Upper bound for the exponential backoff delay between failed polls."""

DEFAULT_POLL_BATCH_LIMIT = 50
"""Maximum number of packets drained from the device in one cycle."""

DEFAULT_POLL_YIELD_EVERY = 10
"""Number of drained packets after which the poller pauses briefly."""

DEFAULT_POLL_YIELD_SECS = 0.05
"""Length of the cooperative pause inside a drain batch."""

DEFAULT_EVENT_QUEUE_SIZE = 1000
"""Capacity of the transport event queue before the oldest event is shed."""

DEFAULT_PACKET_CACHE_SIZE = 1000
"""Number of decoded packets retained by the in-memory packet cache."""

DEFAULT_MESSAGE_ACK_TIMEOUT_SECS = 30.0
"""Age after which an unacknowledged outbound message reads as timed out."""

DEFAULT_DB_BUSY_TIMEOUT_SECS = 5.0
"""SQLite lock wait applied before a write fails with ``database is locked``."""

DEFAULT_NODE_NOTIFY_DELAY_SECS = 0.05
"""Coalescing window for node cache change notifications."""

DEFAULT_WRITE_QUEUE_SIZE = 10000
"""Pending store writes held before the oldest queued write is dropped."""


def _env_flag(name: str) -> bool:
    return os.environ.get(name) == "1"


def _env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Read an integer from the environment and enforce its bounds.

    Parameters:
        name: Environment variable to consult.
        default: Value used when the variable is unset or blank.
        minimum: Optional inclusive lower bound.
        maximum: Optional inclusive upper bound.

    Returns:
        The parsed integer.

    Raises:
        ValueError: If the value is not an integer or falls outside the bounds.
    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw, 10)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got {value}")
    return value


CONNECTION = (
    os.environ.get("CONNECTION") or os.environ.get("MESH_HOST") or DEFAULT_CONNECTION
).strip()
"""Host (optionally ``host:port``) of the radio's HTTP API, without a scheme."""

HTTP_TLS = _env_flag("MESH_TLS")
"""When ``True``, talk to the radio over HTTPS."""

_port_value = _env_int("MESH_PORT", 0, minimum=0, maximum=65535)
HTTP_PORT: int | None = _port_value or None
"""Explicit port overriding any port embedded in :data:`CONNECTION`."""

INSECURE_TLS = _env_flag("MESH_INSECURE")
"""Accept self-signed certificates for non-loopback hosts."""

SESSION = os.environ.get("MESH_SESSION", "").strip() or DEFAULT_SESSION
"""Name of the session whose database file is opened."""

CONFIG_DIR = os.path.expanduser(
    os.environ.get("MESH_CONFIG_DIR", "").strip() or "~/.config/meshconsole"
)
"""Directory holding one ``<session>.db`` file per session."""

DEBUG = _env_flag("DEBUG")
SKIP_CONFIG = _env_flag("MESH_SKIP_CONFIG")
"""When ``True``, do not request the device configuration after connecting."""

CLEAR_SESSION = _env_flag("MESH_CLEAR")
"""When ``True``, delete the session database and exit without syncing."""

POLL_INTERVAL_SECS = (
    _env_int(
        "MESHTASTIC_POLL_INTERVAL_MS",
        DEFAULT_POLL_INTERVAL_MS,
        minimum=100,
        maximum=60000,
    )
    / 1000.0
)
"""Delay between poll cycles, in seconds."""

REQUEST_TIMEOUT_SECS = (
    _env_int(
        "MESHTASTIC_TIMEOUT_MS",
        DEFAULT_REQUEST_TIMEOUT_MS,
        minimum=1000,
        maximum=60000,
    )
    / 1000.0
)
"""Per-request HTTP timeout, in seconds."""

MAX_CONSECUTIVE_ERRORS = _env_int(
    "MESHTASTIC_MAX_ERRORS", DEFAULT_MAX_CONSECUTIVE_ERRORS, minimum=1, maximum=1000
)
"""Consecutive poll failures after which the transport gives up."""

PACKET_RETENTION_LIMIT = _env_int(
    "MESH_PACKET_RETENTION", DEFAULT_PACKET_RETENTION, minimum=1
)
"""Maximum number of raw packet rows kept in the store."""

REACHABILITY_TIMEOUT_SECS = DEFAULT_REACHABILITY_TIMEOUT_SECS
BACKOFF_MAX_SECS = DEFAULT_BACKOFF_MAX_SECS
POLL_BATCH_LIMIT = DEFAULT_POLL_BATCH_LIMIT
POLL_YIELD_EVERY = DEFAULT_POLL_YIELD_EVERY
POLL_YIELD_SECS = DEFAULT_POLL_YIELD_SECS
EVENT_QUEUE_SIZE = DEFAULT_EVENT_QUEUE_SIZE
PACKET_CACHE_SIZE = DEFAULT_PACKET_CACHE_SIZE
MESSAGE_ACK_TIMEOUT_SECS = DEFAULT_MESSAGE_ACK_TIMEOUT_SECS
DB_BUSY_TIMEOUT_SECS = DEFAULT_DB_BUSY_TIMEOUT_SECS
NODE_NOTIFY_DELAY_SECS = DEFAULT_NODE_NOTIFY_DELAY_SECS
WRITE_QUEUE_SIZE = DEFAULT_WRITE_QUEUE_SIZE


def _debug_log(
    message: str,
    *,
    context: str | None = None,
    severity: str = "debug",
    always: bool = False,
    **metadata: Any,
) -> None:
    """Print ``message`` with a UTC timestamp when ``DEBUG`` is enabled.

    Parameters:
        message: Text to display when debug logging is active.
        context: Optional logical component emitting the message.
        severity: Log level label to embed in the formatted output.
        always: When ``True``, bypasses the :data:`DEBUG` guard.
        **metadata: Additional structured log metadata.
    """

    normalized_severity = severity.lower()

    if not DEBUG and not always and normalized_severity == "debug":
        return

    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    timestamp = timestamp.replace("+00:00", "Z")
    parts = [f"[{timestamp}]", "[meshconsole]", f"[{normalized_severity}]"]
    if context:
        parts.append(f"context={context}")
    for key, value in sorted(metadata.items()):
        parts.append(f"{key}={value!r}")
    parts.append(message)
    print(" ".join(parts))


__all__ = [
    "CONNECTION",
    "HTTP_TLS",
    "HTTP_PORT",
    "INSECURE_TLS",
    "SESSION",
    "CONFIG_DIR",
    "DEBUG",
    "SKIP_CONFIG",
    "CLEAR_SESSION",
    "POLL_INTERVAL_SECS",
    "REQUEST_TIMEOUT_SECS",
    "MAX_CONSECUTIVE_ERRORS",
    "PACKET_RETENTION_LIMIT",
    "REACHABILITY_TIMEOUT_SECS",
    "BACKOFF_MAX_SECS",
    "POLL_BATCH_LIMIT",
    "POLL_YIELD_EVERY",
    "POLL_YIELD_SECS",
    "EVENT_QUEUE_SIZE",
    "PACKET_CACHE_SIZE",
    "MESSAGE_ACK_TIMEOUT_SECS",
    "DB_BUSY_TIMEOUT_SECS",
    "NODE_NOTIFY_DELAY_SECS",
    "WRITE_QUEUE_SIZE",
    "_debug_log",
]
