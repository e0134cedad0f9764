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
Raw byte transports for the servo bus.
"""

import errno
import logging
from typing import List, Optional, Sequence

import serial
import serial.tools.list_ports

from .errors import (
    DeviceAlreadyConnectedError,
    DeviceNotFoundError,
    DevicePermissionError,
    TransportError,
    TransportTimeout,
)

logger = logging.getLogger(__name__)

# USB-serial bridges found on Feetech driver boards (CH340 / CH343 / CP210x)
FEETECH_BOARD_VIDS = (0x1A86, 0x10C4)


class SerialTransport:
    """Byte channel the servo bus frames on top of."""

    port: str = ""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def read(self, size: int, timeout_s: float) -> bytes:
        """Read up to `size` bytes, waiting at most `timeout_s`."""
        raise NotImplementedError

    def reset_input_buffer(self) -> None:
        raise NotImplementedError


class PySerialTransport(SerialTransport):
    def __init__(self, port: str, baudrate: int = 1_000_000, write_timeout_s: float = 0.05):
        self.port = port
        self.baudrate = baudrate
        self.write_timeout_s = write_timeout_s
        self._serial: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> None:
        if self.is_open:
            raise DeviceAlreadyConnectedError(f"{self.port} is already open.")
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=0,
                write_timeout=self.write_timeout_s,
            )
        except serial.SerialException as e:
            code = getattr(e, "errno", None)
            if code in (errno.ENOENT, errno.ENODEV, errno.ENXIO):
                raise DeviceNotFoundError(f"Serial device {self.port} not found.") from e
            if code in (errno.EACCES, errno.EPERM):
                raise DevicePermissionError(f"Permission denied opening {self.port}.") from e
            if code == errno.EBUSY:
                raise DeviceAlreadyConnectedError(f"{self.port} is in use by another process.") from e
            raise TransportError(f"Could not open {self.port}: {e}") from e
        logger.debug(f"Opened {self.port} at {self.baudrate} baud")

    def close(self) -> None:
        if self._serial is None:
            return
        try:
            self._serial.close()
        except (serial.SerialException, OSError) as e:
            logger.warning(f"⚠️  Error closing {self.port}: {e}")
        finally:
            self._serial = None

    def _require_open(self) -> serial.Serial:
        if self._serial is None:
            raise TransportError(f"{self.port} is not open.")
        return self._serial

    def write(self, data: bytes) -> None:
        port = self._require_open()
        try:
            port.write(data)
            port.flush()
        except serial.SerialTimeoutException as e:
            raise TransportTimeout(f"Write to {self.port} timed out.") from e
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def read(self, size: int, timeout_s: float) -> bytes:
        port = self._require_open()
        try:
            port.timeout = max(0.0, timeout_s)
            return port.read(size)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    def reset_input_buffer(self) -> None:
        port = self._require_open()
        try:
            port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Could not reset {self.port}: {e}") from e


def find_ports(vids: Sequence[int] = FEETECH_BOARD_VIDS) -> List[str]:
    """Serial devices whose USB vendor id matches one of `vids`."""
    found = []
    for port in serial.tools.list_ports.comports():
        logger.debug(f"{port.description}, {port.device} - {port.manufacturer} - {port.product}")
        if port.vid is not None and port.vid in vids:
            found.append(port.device)
    return found
