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
In-process Feetech bus for running without hardware.

Servos answer PING / READ / WRITE with status packets and apply SYNC_WRITE
silently, like the real bus. Goal positions are reached instantly. Fault
switches let tests exercise timeouts, corrupted replies and servo errors.
"""

import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Set

from .errors import TransportError, TransportTimeout
from .servo_bus import (
    BROADCAST_ID,
    HEADER,
    INST_PING,
    INST_READ,
    INST_SYNC_WRITE,
    INST_WRITE,
    STS3215,
    ServoFamily,
    checksum,
)
from .transport import SerialTransport

logger = logging.getLogger(__name__)


class SimulatedServoTransport(SerialTransport):
    """Mock bus for testing without hardware"""

    def __init__(self, servo_ids: Iterable[int] = (), family: ServoFamily = STS3215, port: str = "sim"):
        self.port = port
        self.family = family
        self.lock = threading.Lock()
        self.memory: Dict[int, bytearray] = {}
        for servo_id in servo_ids:
            self.add_servo(servo_id)
        self._open = False
        self._rx = bytearray()
        # Every packet written, for inspection in tests
        self.written: List[bytes] = []

        # Fault switches
        self.drop_replies: Set[int] = set()
        self.corrupt_replies: Set[int] = set()
        self.error_bytes: Dict[int, int] = {}
        self.fail_io = False
        self.write_timeout = False

    def add_servo(self, servo_id: int, degrees: float = 180.0) -> None:
        memory = bytearray(256)
        steps = self.family.degrees_to_steps(degrees)
        for addr in (self.family.present_position_addr, self.family.goal_position_addr):
            memory[addr] = steps & 0xFF
            memory[addr + 1] = (steps >> 8) & 0xFF
        self.memory[servo_id] = memory

    # Inspection helpers

    def position(self, servo_id: int) -> float:
        mem = self.memory[servo_id]
        addr = self.family.present_position_addr
        return self.family.steps_to_degrees(mem[addr] | (mem[addr + 1] << 8))

    def set_position(self, servo_id: int, degrees: float) -> None:
        """Move a servo by hand (e.g. a leader arm being posed)."""
        steps = self.family.degrees_to_steps(degrees)
        addr = self.family.present_position_addr
        with self.lock:
            self.memory[servo_id][addr] = steps & 0xFF
            self.memory[servo_id][addr + 1] = (steps >> 8) & 0xFF

    def speed(self, servo_id: int) -> int:
        mem = self.memory[servo_id]
        addr = self.family.goal_speed_addr
        return self.family.decode_speed(mem[addr] | (mem[addr + 1] << 8))

    def torque_enabled(self, servo_id: int) -> bool:
        return bool(self.memory[servo_id][self.family.torque_enable_addr])

    # SerialTransport

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if self.fail_io:
            raise TransportError(f"Could not open {self.port}")
        self._open = True

    def close(self) -> None:
        self._open = False
        self._rx.clear()

    def reset_input_buffer(self) -> None:
        with self.lock:
            self._rx.clear()

    def read(self, size: int, timeout_s: float) -> bytes:
        if self.fail_io:
            raise TransportError(f"Read from {self.port} failed")
        with self.lock:
            data = bytes(self._rx[:size])
            del self._rx[:size]
        if not data:
            # Nothing pending: behave like a serial read waiting briefly
            time.sleep(min(max(timeout_s, 0.0), 0.001))
        return data

    def write(self, data: bytes) -> None:
        if not self._open or self.fail_io:
            raise TransportError(f"Write to {self.port} failed")
        if self.write_timeout:
            raise TransportTimeout(f"Write to {self.port} timed out")
        with self.lock:
            self.written.append(bytes(data))
            self._handle(bytes(data))

    # Servo side

    def _handle(self, packet: bytes) -> None:
        if len(packet) < 6 or packet[:2] != HEADER:
            return
        servo_id, length, instruction = packet[2], packet[3], packet[4]
        if len(packet) < 4 + length:
            return
        params = packet[5:3 + length]
        if checksum(packet[2:3 + length]) != packet[3 + length]:
            logger.debug(f"Sim bus dropped packet with bad checksum for servo {servo_id}")
            return

        if instruction == INST_SYNC_WRITE and servo_id == BROADCAST_ID:
            address, data_len = params[0], params[1]
            body = params[2:]
            for i in range(0, len(body), data_len + 1):
                target = body[i]
                if target in self.memory:
                    self._store(target, address, body[i + 1:i + 1 + data_len])
            return

        if servo_id not in self.memory or servo_id == BROADCAST_ID:
            return

        if instruction == INST_PING:
            self._reply(servo_id, b"")
        elif instruction == INST_READ:
            address, size = params[0], params[1]
            self._reply(servo_id, bytes(self.memory[servo_id][address:address + size]))
        elif instruction == INST_WRITE:
            self._store(servo_id, params[0], params[1:])
            self._reply(servo_id, b"")

    def _store(self, servo_id: int, address: int, data: bytes) -> None:
        mem = self.memory[servo_id]
        mem[address:address + len(data)] = data
        if address == self.family.goal_position_addr:
            present = self.family.present_position_addr
            mem[present:present + 2] = data[:2]

    def _reply(self, servo_id: int, params: bytes) -> None:
        if servo_id in self.drop_replies:
            return
        error = self.error_bytes.get(servo_id, 0)
        body = bytes([servo_id, len(params) + 2, error]) + params
        chk = checksum(body)
        if servo_id in self.corrupt_replies:
            chk ^= 0xFF
        self._rx += HEADER + body + bytes([chk])


class SimulatedTransportFactory:
    """Hands out one simulated bus per port, reused across reconnects."""

    def __init__(self, servo_ids: Iterable[int]):
        self.servo_ids = list(servo_ids)
        self.buses: Dict[str, SimulatedServoTransport] = {}

    def __call__(self, port: str, bus_config: Optional[object] = None) -> SimulatedServoTransport:
        if port not in self.buses:
            self.buses[port] = SimulatedServoTransport(self.servo_ids, port=port)
        return self.buses[port]
