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

"""Device-connection and state-synchronisation core for the meshconsole terminal.

The ``meshconsole.mesh_link`` package polls a Meshtastic radio over HTTP,
keeps node and packet caches current and persists them to a per-session
SQLite database that the operator console reads from.
"""

VERSION = "0.3.2"
"""Semantic version identifier of the synchronisation core."""

__version__ = VERSION
