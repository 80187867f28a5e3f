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

"""Transport event types and the bounded channel that carries them.

The polling thread produces events and a single consumer pulls them. The
channel never blocks the producer: when it is full the oldest queued event
is discarded so the consumer always sees the freshest state.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterator, Union

from . import config


class DeviceStatus:
    """Connection states reported by the transport."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class StatusEvent:
    """Connection status change.

    ``reason`` is only populated for :data:`DeviceStatus.DISCONNECTED`.
    """

    status: str
    reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status == DeviceStatus.DISCONNECTED


@dataclass(frozen=True)
class PacketEvent:
    """Raw ``FromRadio`` bytes drained from the device."""

    data: bytes


TransportEvent = Union[StatusEvent, PacketEvent]


class EventChannel:
    """Single-consumer queue with drop-oldest overflow and explicit close.

    Parameters:
        maxsize: Number of events held before the oldest is shed. Defaults
            to :data:`config.EVENT_QUEUE_SIZE`.
    """

    def __init__(self, maxsize: int | None = None) -> None:
        if maxsize is None:
            maxsize = config.EVENT_QUEUE_SIZE
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._events: deque[TransportEvent] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._events)

    def _append(self, event: TransportEvent) -> None:
        if len(self._events) >= self.maxsize:
            self._events.popleft()
            self.dropped += 1
            config._debug_log(
                "Event queue full; dropped oldest event",
                context="events.put",
                severity="warn",
                dropped=self.dropped,
            )
        self._events.append(event)

    def put(self, event: TransportEvent) -> bool:
        """Queue ``event`` for the consumer.

        Returns:
            ``False`` when the channel is already closed and the event was
            discarded, ``True`` otherwise.
        """

        with self._cond:
            if self._closed:
                return False
            self._append(event)
            self._cond.notify()
            return True

    def close(self, final_event: TransportEvent | None = None) -> bool:
        """Close the channel, optionally queuing one last event.

        Waiting consumers are woken. Events put after closing are ignored.

        Returns:
            ``True`` if this call closed the channel, ``False`` if it was
            already closed.
        """

        with self._cond:
            if self._closed:
                return False
            if final_event is not None:
                self._append(final_event)
            self._closed = True
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> TransportEvent | None:
        """Return the next event, waiting up to ``timeout`` seconds.

        Returns:
            The next event, or ``None`` when the wait timed out or the
            channel is closed and fully drained.
        """

        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait_for(
                    lambda: self._events or self._closed, timeout=timeout
                )
            if self._events:
                return self._events.popleft()
            return None

    def __iter__(self) -> Iterator[TransportEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


__all__ = [
    "DeviceStatus",
    "EventChannel",
    "PacketEvent",
    "StatusEvent",
    "TransportEvent",
]
