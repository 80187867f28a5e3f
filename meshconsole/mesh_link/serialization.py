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

"""Helpers for normalising decoded Meshtastic structures.

Payloads reach the caches either as protobuf messages, as plain mappings
keyed by proto field names, or as camel-cased JSON from the device's
``/json/nodes`` directory. The helpers below let callers read any of them
through one set of field names and coerce the values into the column types
the store expects.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping

BROADCAST_NUM = 0xFFFFFFFF
"""Reserved destination meaning every node on the channel."""

MAX_NODE_NUM = 0xFFFFFFFF


def _first(d, *names, default=None):
    """Return the first populated attribute or key from ``d``.

    Parameters:
        d: Mapping or object providing nested attributes.
        *names: Candidate names, optionally using ``dot.separated`` notation
            for nested lookups.
        default: Value returned when no candidates succeed.

    Returns:
        The first value that is neither ``None`` nor an empty string, or
        ``default``.
    """

    def _lookup(obj, key):
        if isinstance(obj, Mapping):
            if key in obj:
                return True, obj[key]
            return False, None
        if obj is not None and hasattr(obj, key):
            return True, getattr(obj, key)
        return False, None

    for name in names:
        cur = d
        found = True
        for part in name.split("."):
            found, cur = _lookup(cur, part)
            if not found:
                break
        if not found or cur is None:
            continue
        if isinstance(cur, str) and cur == "":
            continue
        return cur
    return default


def _coerce_int(value):
    """Best-effort conversion of ``value`` to an integer.

    Returns:
        An integer or ``None`` when conversion is not possible.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, (str, bytes, bytearray)):
        text = value.decode() if isinstance(value, (bytes, bytearray)) else value
        stripped = text.strip()
        if not stripped:
            return None
        try:
            if stripped.lower().startswith("0x"):
                return int(stripped, 16)
            return int(stripped, 10)
        except ValueError:
            try:
                return int(float(stripped))
            except ValueError:
                return None
    return None


def _coerce_float(value):
    """Best-effort conversion of ``value`` to a finite float."""

    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        result = float(value)
        return result if math.isfinite(result) else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            result = float(stripped)
        except ValueError:
            return None
        return result if math.isfinite(result) else None
    return None


def _coerce_bool(value):
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes"}:
            return True
        if lowered in {"0", "false", "no"}:
            return False
        return None
    return bool(value)


def _canonical_node_id(num: int) -> str:
    """Render a numeric node identifier in the ``!xxxxxxxx`` notation."""

    return f"!{num & 0xFFFFFFFF:08x}"


def _node_num_from_id(node_id) -> int | None:
    """Extract a numeric node identifier from an int or ``!hex`` string.

    Parameters:
        node_id: Integer, ``!xxxxxxxx``, ``0x`` prefixed or decimal string.

    Returns:
        The node number, or ``None`` when parsing fails or the value is out
        of the 32-bit range.
    """

    if node_id is None or isinstance(node_id, bool):
        return None
    if isinstance(node_id, int):
        num = node_id
    elif isinstance(node_id, float):
        if not math.isfinite(node_id) or not node_id.is_integer():
            return None
        num = int(node_id)
    elif isinstance(node_id, str):
        trimmed = node_id.strip()
        if not trimmed:
            return None
        try:
            if trimmed.startswith("!"):
                num = int(trimmed[1:], 16)
            elif trimmed.lower().startswith("0x"):
                num = int(trimmed[2:], 16)
            else:
                num = int(trimmed, 10)
        except ValueError:
            return None
    else:
        return None
    if num < 0 or num > MAX_NODE_NUM:
        return None
    return num


def _json_list(values) -> str | None:
    """Serialise ``values`` into a compact JSON array, or ``None`` when absent."""

    if values is None:
        return None
    return json.dumps([v for v in values], separators=(",", ":"))


def _load_json_list(text) -> list:
    if not text:
        return []
    try:
        loaded = json.loads(text)
    except (TypeError, ValueError):
        return []
    return loaded if isinstance(loaded, list) else []


def _merge_fields(existing, updates) -> dict:
    """Overlay ``updates`` on ``existing`` without letting ``None`` erase values.

    Parameters:
        existing: Current record, or ``None`` for a new one.
        updates: Partial record. Keys mapped to ``None`` are ignored.

    Returns:
        A new dictionary holding the merged record.
    """

    merged = dict(existing or {})
    for key, value in updates.items():
        if value is None:
            continue
        merged[key] = value
    return merged


__all__ = [
    "BROADCAST_NUM",
    "MAX_NODE_NUM",
    "_canonical_node_id",
    "_coerce_bool",
    "_coerce_float",
    "_coerce_int",
    "_first",
    "_json_list",
    "_load_json_list",
    "_merge_fields",
    "_node_num_from_id",
]
