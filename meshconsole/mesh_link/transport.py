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

"""HTTP polling transport for a Meshtastic radio.

The radio exposes ``/api/v1/fromradio`` which returns at most one protobuf
``FromRadio`` frame per request and ``/api/v1/toradio`` which accepts one
``ToRadio`` frame per ``PUT``. :class:`HttpTransport` polls the former on a
background thread and publishes raw frames and connection status changes
through an :class:`~.events.EventChannel`.
"""

from __future__ import annotations

import http.client
import json
import re
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from . import config
from .events import DeviceStatus, EventChannel, PacketEvent, StatusEvent
from .events import TransportEvent
from .serialization import _coerce_int, _first, _node_num_from_id

API_PREFIX = "/api/v1"
FROM_RADIO_PATH = f"{API_PREFIX}/fromradio?all=false"
TO_RADIO_PATH = f"{API_PREFIX}/toradio"
NODES_JSON_PATH = "/json/nodes"
PROTOBUF_CONTENT_TYPE = "application/x-protobuf"

_PORT_SUFFIX = re.compile(r"^(?P<host>.+):(?P<port>\d+)$")
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "[::1]"}

Opener = Callable[..., Any]


class TransportError(RuntimeError):
    """Base class for failures talking to the radio."""


class ConnectError(TransportError):
    """Raised when a transport cannot be created for the given address."""


class SendError(TransportError):
    """Raised when an outbound frame could not be delivered to the radio."""


class PollError(TransportError):
    """Raised for a non-2xx response while polling."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class OwnerInfo:
    """Identity of the radio the transport is attached to."""

    node_num: int
    user_id: str | None = None
    long_name: str | None = None
    short_name: str | None = None
    hw_model: str | None = None


def build_base_url(address: str, tls: bool = False, port: int | None = None) -> str:
    """Return the scheme-qualified base URL for ``address``.

    Parameters:
        address: Host name or IP, optionally suffixed with ``:port``. Must not
            carry a scheme.
        tls: Use ``https`` when ``True``.
        port: Explicit port. Replaces a port already present in ``address``.

    Raises:
        ConnectError: If ``address`` is empty, carries a scheme or does not
            form a valid URL.
    """

    address = (address or "").strip().rstrip("/")
    if not address:
        raise ConnectError("Address must not be empty")
    if "://" in address:
        raise ConnectError(
            "Address should not include protocol (http:// or https://)"
        )
    if port is not None and not 0 < port < 65536:
        raise ConnectError(f"Port out of range: {port}")

    match = _PORT_SUFFIX.match(address)
    if match and (":" not in match.group("host") or match.group("host").endswith("]")):
        host = match.group("host")
        if port is not None:
            address = f"{host}:{port}"
    elif port is not None:
        address = f"{address}:{port}"

    url = f"{'https' if tls else 'http'}://{address}"
    try:
        parsed = urllib.parse.urlsplit(url)
        parsed.port
    except ValueError as exc:
        raise ConnectError(f"Invalid URL {url!r}: {exc}") from exc
    if not parsed.hostname or parsed.path or parsed.query:
        raise ConnectError(f"Invalid URL {url!r}")
    return url


def _is_loopback(url: str) -> bool:
    hostname = urllib.parse.urlsplit(url).hostname or ""
    return hostname in _LOOPBACK_HOSTS or hostname.startswith("127.")


def _ssl_context_for(url: str, insecure: bool) -> ssl.SSLContext | None:
    """Return a non-verifying TLS context for loopback or insecure targets."""

    if not url.startswith("https://"):
        return None
    if not (insecure or _is_loopback(url)):
        return None
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def backoff_delay(
    errors: int, interval: float, maximum: float = config.BACKOFF_MAX_SECS
) -> float:
    """Return the wait before the next poll after ``errors`` consecutive failures."""

    if errors <= 0:
        return interval
    return min(interval * (2 ** min(errors - 1, 5)), maximum)


class HttpTransport:
    """Poll a radio over HTTP and expose its output as an event stream.

    Use :meth:`connect` to build and start an instance. Consumers iterate the
    transport (or call :meth:`next_event`) from a single thread; iteration
    ends after the final ``disconnected`` status.
    """

    def __init__(
        self,
        base_url: str,
        *,
        insecure: bool = False,
        opener: Opener | None = None,
        channel: EventChannel | None = None,
        poll_interval: float | None = None,
        request_timeout: float | None = None,
        reachability_timeout: float | None = None,
        max_errors: int | None = None,
        backoff_max: float | None = None,
        batch_limit: int | None = None,
        yield_every: int | None = None,
        yield_secs: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.insecure = insecure
        self._opener = opener or urllib.request.urlopen
        self._ssl_context = _ssl_context_for(self.base_url, insecure)
        self.channel = channel or EventChannel()
        self.poll_interval = (
            config.POLL_INTERVAL_SECS if poll_interval is None else poll_interval
        )
        self.request_timeout = (
            config.REQUEST_TIMEOUT_SECS if request_timeout is None else request_timeout
        )
        self.reachability_timeout = (
            config.REACHABILITY_TIMEOUT_SECS
            if reachability_timeout is None
            else reachability_timeout
        )
        self.max_errors = (
            config.MAX_CONSECUTIVE_ERRORS if max_errors is None else max_errors
        )
        self.backoff_max = config.BACKOFF_MAX_SECS if backoff_max is None else backoff_max
        self.batch_limit = config.POLL_BATCH_LIMIT if batch_limit is None else batch_limit
        self.yield_every = config.POLL_YIELD_EVERY if yield_every is None else yield_every
        self.yield_secs = config.POLL_YIELD_SECS if yield_secs is None else yield_secs

        self.consecutive_errors = 0
        self._status: str | None = None
        self._closed = False
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def connect(
        cls,
        address: str,
        tls: bool = False,
        port: int | None = None,
        insecure: bool = False,
        *,
        start: bool = True,
        **kwargs: Any,
    ) -> "HttpTransport":
        """Create a transport for ``address`` and start polling.

        Raises:
            ConnectError: If the address cannot be turned into a device URL.
        """

        url = build_base_url(address, tls, port)
        config._debug_log(
            "Attempting connection",
            context="transport.connect",
            severity="info",
            address=address,
            tls=tls,
            url=url,
        )
        transport = cls(url, insecure=insecure, **kwargs)
        if start:
            transport.start()
        return transport

    @property
    def status(self) -> str | None:
        return self._status

    @property
    def running(self) -> bool:
        return not self._closed

    def start(self) -> None:
        """Check the device is reachable once and launch the polling thread."""

        if self._thread is not None or self._closed:
            return
        self._check_reachable()
        self._emit_status(DeviceStatus.CONNECTING)
        self._thread = threading.Thread(
            target=self._run, name="meshconsole-poll", daemon=True
        )
        self._thread.start()

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, bytes]:
        request = urllib.request.Request(
            f"{self.base_url}{path}",
            data=data,
            headers=headers or {},
            method=method,
        )
        if timeout is None:
            timeout = self.request_timeout
        try:
            with self._opener(
                request, timeout=timeout, context=self._ssl_context
            ) as response:
                status = getattr(response, "status", None) or response.getcode()
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise PollError(f"HTTP {exc.code}: {exc.reason}", status=exc.code) from exc
        if not 200 <= status < 300:
            raise PollError(f"HTTP {status}", status=status)
        return status, body or b""

    def _check_reachable(self) -> None:
        try:
            self._request(
                "GET",
                FROM_RADIO_PATH,
                headers={"Accept": PROTOBUF_CONTENT_TYPE},
                timeout=self.reachability_timeout,
            )
        except (TransportError, OSError, http.client.HTTPException) as exc:
            config._debug_log(
                "Initial connection test failed; polling will retry",
                context="transport.reachability",
                severity="warn",
                url=self.base_url,
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
        else:
            config._debug_log(
                "Initial connection test succeeded",
                context="transport.reachability",
                url=self.base_url,
            )

    def _fetch_once(self) -> bytes:
        _status, body = self._request(
            "GET", FROM_RADIO_PATH, headers={"Accept": PROTOBUF_CONTENT_TYPE}
        )
        return body

    def _emit_status(self, status: str) -> None:
        with self._lock:
            if self._closed or status == self._status:
                return
            self._status = status
            self.channel.put(StatusEvent(status))
        config._debug_log(
            "Device status changed", context="transport.status", status=status
        )

    def _finish(self, reason: str) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._status = DeviceStatus.DISCONNECTED
            self._stop.set()
            self.channel.close(StatusEvent(DeviceStatus.DISCONNECTED, reason))
        config._debug_log(
            "Transport stopped",
            context="transport.disconnect",
            severity="info",
            reason=reason,
        )
        return True

    def _on_success(self) -> None:
        if self.consecutive_errors:
            config._debug_log(
                "Poll recovered",
                context="transport.poll",
                severity="info",
                previous_errors=self.consecutive_errors,
            )
        self.consecutive_errors = 0
        self._emit_status(DeviceStatus.CONNECTED)

    def _on_failure(self, exc: BaseException) -> float | None:
        self.consecutive_errors += 1
        config._debug_log(
            "Poll failed",
            context="transport.poll",
            severity="warn",
            consecutive_errors=self.consecutive_errors,
            error_class=exc.__class__.__name__,
            error_message=str(exc),
        )
        if self.consecutive_errors >= self.max_errors:
            self._finish(
                f"Connection lost after {self.consecutive_errors} consecutive "
                f"errors: {exc}"
            )
            return None
        self._emit_status(DeviceStatus.CONNECTING)
        return backoff_delay(
            self.consecutive_errors, self.poll_interval, self.backoff_max
        )

    def _poll_cycle(self) -> float | None:
        """Drain one batch from the device.

        Returns:
            Seconds to wait before the next cycle, or ``None`` when polling
            must stop.
        """

        drained = 0
        try:
            while drained < self.batch_limit and not self._stop.is_set():
                body = self._fetch_once()
                self._on_success()
                if not body:
                    break
                self.channel.put(PacketEvent(body))
                drained += 1
                if drained % self.yield_every == 0 and self._stop.wait(
                    self.yield_secs
                ):
                    break
        except (TransportError, OSError, http.client.HTTPException) as exc:
            if self._stop.is_set():
                return None
            return self._on_failure(exc)
        if self._stop.is_set():
            return None
        return self.poll_interval

    def _run(self) -> None:
        delay = 0.0
        while not self._stop.is_set():
            if delay and self._stop.wait(delay):
                break
            delay = self._poll_cycle()
            if delay is None:
                break

    def next_event(self, timeout: float | None = None) -> TransportEvent | None:
        """Return the next event or ``None`` once the stream has ended."""

        return self.channel.get(timeout)

    def __iter__(self) -> Iterator[TransportEvent]:
        return iter(self.channel)

    def send(self, data: bytes) -> None:
        """Transmit one serialised ``ToRadio`` frame.

        Raises:
            SendError: If the transport is closed or the device rejected or
                could not be reached for the request. No retry is attempted.
        """

        if self._closed:
            raise SendError("Transport is disconnected")
        try:
            self._request(
                "PUT",
                TO_RADIO_PATH,
                data=bytes(data),
                headers={"Content-Type": PROTOBUF_CONTENT_TYPE},
            )
        except (TransportError, OSError, http.client.HTTPException) as exc:
            config._debug_log(
                "Send failed",
                context="transport.send",
                severity="error",
                always=True,
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            raise SendError(f"Send failed: {exc}") from exc
        config._debug_log("Frame sent", context="transport.send", size=len(data))

    def disconnect(self, join_timeout: float | None = None) -> None:
        """Stop polling and emit the final ``disconnected`` status.

        Calling it again is a no-op.
        """

        self._finish("user")
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.request_timeout if join_timeout is None else join_timeout)

    def fetch_owner(self) -> OwnerInfo | None:
        """Look up the local node in the device's ``/json/nodes`` directory.

        The node reporting ``hopsAway == 0`` is preferred, otherwise the first
        entry is used. Failures are logged and yield ``None``.
        """

        try:
            _status, body = self._request(
                "GET", NODES_JSON_PATH, headers={"Accept": "application/json"}
            )
            data = json.loads(body.decode("utf-8"))
        except (TransportError, OSError, http.client.HTTPException, ValueError) as exc:
            config._debug_log(
                "Failed to fetch owner",
                context="transport.fetch_owner",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            return None

        nodes = data.get("nodes", data) if isinstance(data, dict) else data
        if isinstance(nodes, dict):
            candidates = list(nodes.values())
        elif isinstance(nodes, list):
            candidates = nodes
        else:
            candidates = []
        candidates = [entry for entry in candidates if isinstance(entry, dict)]
        local = next(
            (entry for entry in candidates if entry.get("hopsAway") == 0),
            candidates[0] if candidates else None,
        )
        if local is None:
            config._debug_log(
                "No local node found", context="transport.fetch_owner", severity="warn"
            )
            return None

        user = local.get("user") if isinstance(local.get("user"), dict) else local
        node_num = _coerce_int(local.get("num"))
        if node_num is None:
            node_num = _node_num_from_id(_first(user, "id", default=local.get("id")))
        if node_num is None:
            return None
        owner = OwnerInfo(
            node_num=node_num,
            user_id=_first(user, "id", default=local.get("id")),
            long_name=_first(user, "longName", "long_name"),
            short_name=_first(user, "shortName", "short_name"),
            hw_model=_first(user, "hwModel", "hw_model"),
        )
        config._debug_log(
            "Owner info fetched",
            context="transport.fetch_owner",
            severity="info",
            node_num=owner.node_num,
            short_name=owner.short_name,
        )
        return owner


__all__ = [
    "API_PREFIX",
    "ConnectError",
    "HttpTransport",
    "OwnerInfo",
    "PollError",
    "SendError",
    "TransportError",
    "backoff_delay",
    "build_base_url",
]
