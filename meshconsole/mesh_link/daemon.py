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

"""Headless runner that keeps a session database in sync with a radio."""

from __future__ import annotations

import signal
import threading

from . import config, store
from .driver import SyncDriver
from .node_cache import NodeCache
from .packet_cache import PacketCache
from .transport import ConnectError, HttpTransport
from .writer import WriteQueue

_MAIN_LOOP_WAIT_SECS = 1.0
_SHUTDOWN_TIMEOUT_SECS = 5.0


def _run_driver(driver: SyncDriver, stop: threading.Event) -> None:
    try:
        driver.run()
    except Exception as exc:
        config._debug_log(
            "Synchronisation loop crashed",
            context="daemon.run",
            severity="error",
            always=True,
            error_class=exc.__class__.__name__,
            error_message=str(exc),
        )
    finally:
        stop.set()


def main() -> int:
    """Synchronise the configured session until interrupted or disconnected.

    Returns:
        ``0`` after a user-requested stop or a session clear, ``1`` after the
        link was lost and ``2`` when the connection target is invalid.
    """

    if config.CLEAR_SESSION:
        removed = store.clear_session(config.SESSION)
        config._debug_log(
            "Session cleared; exiting",
            context="daemon.main",
            severity="info",
            session=config.SESSION,
            removed=len(removed),
        )
        return 0

    mesh_store = store.MeshStore.for_session(config.SESSION)
    writer = WriteQueue()
    node_cache = NodeCache(mesh_store, writer)
    packet_cache = PacketCache(mesh_store, writer)

    config._debug_log(
        "Mesh sync starting",
        context="daemon.main",
        severity="info",
        target=config.CONNECTION,
        session=config.SESSION,
        nodes=len(node_cache),
        packets=packet_cache.count,
    )

    try:
        transport = HttpTransport.connect(
            config.CONNECTION,
            config.HTTP_TLS,
            config.HTTP_PORT,
            config.INSECURE_TLS,
        )
    except ConnectError as exc:
        config._debug_log(
            "Invalid connection target",
            context="daemon.main",
            severity="error",
            always=True,
            error_message=str(exc),
        )
        writer.close(_SHUTDOWN_TIMEOUT_SECS)
        mesh_store.close()
        return 2

    driver = SyncDriver(
        transport, mesh_store, node_cache, packet_cache, writer=writer
    )
    stop = threading.Event()

    def handle_sigterm(*_args) -> None:
        stop.set()

    def handle_sigint(signum, frame) -> None:
        if stop.is_set():
            signal.default_int_handler(signum, frame)
            return
        stop.set()

    if threading.current_thread() == threading.main_thread():
        signal.signal(signal.SIGINT, handle_sigint)
        signal.signal(signal.SIGTERM, handle_sigterm)

    worker = threading.Thread(
        target=_run_driver, args=(driver, stop), name="meshconsole-sync", daemon=True
    )
    worker.start()
    try:
        while not stop.is_set():
            stop.wait(_MAIN_LOOP_WAIT_SECS)
    finally:
        driver.stop(_SHUTDOWN_TIMEOUT_SECS)
        worker.join(_SHUTDOWN_TIMEOUT_SECS)
        writer.close(_SHUTDOWN_TIMEOUT_SECS)
        node_cache.close()
        mesh_store.close()

    reason = driver.disconnect_reason
    config._debug_log(
        "Mesh sync stopped",
        context="daemon.main",
        severity="info",
        reason=reason,
        processed=driver.processed,
        failed=driver.failed,
    )
    return 0 if reason in (None, "user") else 1


__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
