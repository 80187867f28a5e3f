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

"""Priority queue for write-behind store operations."""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from . import config

_NODE_WRITE_PRIORITY = 50
_PACKET_WRITE_PRIORITY = 60
_DEFAULT_WRITE_PRIORITY = 90


@dataclass
class QueueState:
    """Mutable state for the write-behind priority queue."""

    cond: threading.Condition = field(default_factory=threading.Condition)
    queue: list[tuple[int, int, str, Callable[..., Any], tuple]] = field(
        default_factory=list
    )
    counter: Iterable[int] = field(default_factory=itertools.count)
    active: bool = False
    closed: bool = False


class WriteQueue:
    """Run store writes on a background thread in priority order.

    Callers never wait for a write to complete. Failures are logged and
    dropped because the in-memory caches stay authoritative for the session.

    Parameters:
        start: Launch the worker thread immediately. With ``False`` the
            queue only runs when :meth:`drain` is called, which tests use to
            execute writes deterministically.
        maxsize: Maximum number of pending writes. When full, the oldest
            queued write is dropped to admit the new one. Defaults to
            :data:`config.WRITE_QUEUE_SIZE`.
    """

    def __init__(
        self,
        *,
        start: bool = True,
        name: str = "meshconsole-writer",
        maxsize: int | None = None,
    ) -> None:
        self.state = QueueState()
        self.failures = 0
        self.dropped = 0
        self.maxsize = config.WRITE_QUEUE_SIZE if maxsize is None else maxsize
        self._thread: threading.Thread | None = None
        if start:
            self._thread = threading.Thread(target=self._run, name=name, daemon=True)
            self._thread.start()

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        priority: int = _DEFAULT_WRITE_PRIORITY,
        label: str | None = None,
    ) -> bool:
        """Queue ``fn(*args)``; lower ``priority`` values run first.

        Returns:
            ``False`` when the queue is closed and the write was discarded.
        """

        state = self.state
        with state.cond:
            if state.closed:
                config._debug_log(
                    "Write queue closed; dropping write",
                    context="writer.submit",
                    severity="warn",
                    label=label or getattr(fn, "__name__", "write"),
                )
                return False
            if self.maxsize > 0 and len(state.queue) >= self.maxsize:
                self._drop_oldest()
            counter = next(state.counter)
            heapq.heappush(
                state.queue,
                (priority, counter, label or getattr(fn, "__name__", "write"), fn, args),
            )
            state.cond.notify_all()
        return True

    def _drop_oldest(self) -> None:
        queue = self.state.queue
        oldest = min(range(len(queue)), key=lambda idx: queue[idx][1])
        _priority, _idx, label, _fn, _args = queue.pop(oldest)
        heapq.heapify(queue)
        self.dropped += 1
        config._debug_log(
            "Write queue full; dropped oldest write",
            context="writer.submit",
            severity="warn",
            label=label,
            dropped=self.dropped,
        )

    def _execute(self, label: str, fn: Callable[..., Any], args: tuple) -> None:
        try:
            fn(*args)
        except Exception as exc:
            self.failures += 1
            config._debug_log(
                "Store write failed",
                context="writer.execute",
                severity="warn",
                label=label,
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )

    def _pop(self, *, block: bool):
        state = self.state
        with state.cond:
            while not state.queue:
                state.active = False
                state.cond.notify_all()
                if not block or state.closed:
                    return None
                state.cond.wait()
            state.active = True
            return heapq.heappop(state.queue)

    def drain(self) -> None:
        """Run every queued write in the calling thread."""

        try:
            while True:
                item = self._pop(block=False)
                if item is None:
                    return
                _priority, _idx, label, fn, args = item
                self._execute(label, fn, args)
        finally:
            with self.state.cond:
                if not self.state.queue:
                    self.state.active = False
                self.state.cond.notify_all()

    def _run(self) -> None:
        while True:
            item = self._pop(block=True)
            if item is None:
                return
            _priority, _idx, label, fn, args = item
            self._execute(label, fn, args)

    def pending(self) -> int:
        with self.state.cond:
            return len(self.state.queue)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued write has run.

        Returns:
            ``True`` if the queue went idle within ``timeout``.
        """

        if self._thread is None:
            self.drain()
            return True
        state = self.state
        with state.cond:
            return state.cond.wait_for(
                lambda: not state.queue and not state.active, timeout=timeout
            )

    def close(self, timeout: float | None = None) -> None:
        """Run outstanding writes, then stop accepting new ones."""

        state = self.state
        with state.cond:
            if state.closed:
                return
            state.closed = True
            state.cond.notify_all()
        if self._thread is None:
            self.drain()
            return
        self._thread.join(timeout)


__all__ = [
    "QueueState",
    "WriteQueue",
    "_DEFAULT_WRITE_PRIORITY",
    "_NODE_WRITE_PRIORITY",
    "_PACKET_WRITE_PRIORITY",
]
