# Copyright 2024 The HuggingFace Inc. team. All rights reserved.
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

"""
Serial link lifecycle for the follower and leader arms.

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED
                                     |
                                     +-> ERROR -> DISCONNECTED

An I/O failure while connected drops the link; there is no automatic
reconnect. Closing waits for the request in flight on the bus, so no write
reaches the port once a disconnect has been accepted.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config_bambot import ServoBusConfig
from .errors import DeviceAlreadyConnectedError, DeviceNotConnectedError
from .servo_bus import STS3215, ServoBusClient, ServoFamily
from .transport import PySerialTransport, SerialTransport

logger = logging.getLogger(__name__)

FOLLOWER = "follower"
LEADER = "leader"

TransportFactory = Callable[[str, ServoBusConfig], SerialTransport]
StateListener = Callable[[str, "ConnectionState"], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


def pyserial_transport(port: str, bus_config: ServoBusConfig) -> SerialTransport:
    return PySerialTransport(port, bus_config.baudrate, bus_config.write_timeout_ms / 1000.0)


class RobotLink:
    """One physical serial link and the bus client speaking on it."""

    def __init__(
        self,
        role: str,
        transport: SerialTransport,
        bus_config: Optional[ServoBusConfig] = None,
        family: ServoFamily = STS3215,
    ):
        self.role = role
        self.transport = transport
        self.bus_config = bus_config or ServoBusConfig()
        self.family = family
        self.last_error: Optional[BaseException] = None
        self._state = ConnectionState.DISCONNECTED
        self._bus: Optional[ServoBusClient] = None
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def bus(self) -> ServoBusClient:
        if not self.is_connected or self._bus is None:
            raise DeviceNotConnectedError(f"The {self.role} link is not connected.")
        return self._bus

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        logger.debug(f"{self.role} link -> {state.value}")
        for listener in list(self._listeners):
            listener(self.role, state)

    def connect(self) -> None:
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                raise DeviceAlreadyConnectedError(f"The {self.role} link is already connected.")
            self._set_state(ConnectionState.CONNECTING)
            try:
                self.transport.open()
            except Exception as e:
                self.last_error = e
                self._set_state(ConnectionState.ERROR)
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(f"❌ Failed to connect {self.role} on {self.transport.port}: {e}")
                raise
            self._bus = ServoBusClient(self.transport, self.family, self.bus_config.timeout_ms)
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)
        logger.info(f"✅ {self.role.capitalize()} connected on {self.transport.port}")

    def fail(self, error: BaseException) -> None:
        """Report an I/O failure seen while connected; the link is dropped."""
        with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            self.last_error = error
            self._set_state(ConnectionState.ERROR)
            logger.error(f"❌ {self.role.capitalize()} link failed: {error}")
            self._release()
            self._set_state(ConnectionState.DISCONNECTED)

    def disconnect(self) -> None:
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED:
                return
            self._set_state(ConnectionState.DISCONNECTING)
            self._release()
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"🔌 {self.role.capitalize()} disconnected")

    def _release(self) -> None:
        if self._bus is not None:
            # Blocks until the request in flight completes
            self._bus.close()
            self._bus = None
        self.transport.close()


class RobotConnectionManager:
    """Independent follower and leader links."""

    def __init__(
        self,
        transport_factory: TransportFactory = pyserial_transport,
        bus_config: Optional[ServoBusConfig] = None,
        family: ServoFamily = STS3215,
    ):
        self.transport_factory = transport_factory
        self.bus_config = bus_config or ServoBusConfig()
        self.family = family
        self._links: Dict[str, RobotLink] = {}

    def connect(self, role: str, port: str) -> RobotLink:
        current = self._links.get(role)
        if current is not None and current.state is not ConnectionState.DISCONNECTED:
            raise DeviceAlreadyConnectedError(f"The {role} link is already connected.")
        transport = self.transport_factory(port, self.bus_config)
        link = RobotLink(role, transport, self.bus_config, self.family)
        self._links[role] = link
        link.connect()
        return link

    def disconnect(self, role: str) -> None:
        link = self._links.get(role)
        if link is not None:
            link.disconnect()

    def disconnect_all(self) -> None:
        for link in list(self._links.values()):
            link.disconnect()

    def link(self, role: str) -> Optional[RobotLink]:
        return self._links.get(role)

    def state(self, role: str) -> ConnectionState:
        link = self._links.get(role)
        return link.state if link is not None else ConnectionState.DISCONNECTED

    def is_connected(self, role: str) -> bool:
        return self.state(role) is ConnectionState.CONNECTED
