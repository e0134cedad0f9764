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
Bambot error types.

Connection lifecycle errors reuse LeRobot's device errors so a bambot link
behaves like any other LeRobot device to calling code.
"""

from lerobot.utils.errors import DeviceAlreadyConnectedError, DeviceNotConnectedError

__all__ = [
    "ConfigurationError",
    "FormulaError",
    "TransportError",
    "TransportTimeout",
    "DeviceNotFoundError",
    "DevicePermissionError",
    "DeviceAlreadyConnectedError",
    "DeviceNotConnectedError",
]


class ConfigurationError(ValueError):
    """Invalid robot profile, joint set or compound movement definition."""


class FormulaError(ConfigurationError):
    """A compound movement formula failed to parse or references an unknown variable."""

    def __init__(self, formula: str, message: str):
        self.formula = formula
        super().__init__(f"{message} in formula {formula!r}")


class TransportError(ConnectionError):
    """I/O failure on an open serial link."""


class TransportTimeout(TransportError):
    """A write did not complete within the port's write timeout."""


class DeviceNotFoundError(TransportError):
    """The requested serial device does not exist."""

    def __init__(self, message: str = "Serial device not found."):
        super().__init__(message)


class DevicePermissionError(TransportError):
    """The process is not allowed to open the serial device."""

    def __init__(self, message: str = "Permission denied opening serial device."):
        super().__init__(message)
