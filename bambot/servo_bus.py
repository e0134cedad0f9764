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
Feetech SCS/STS servo bus protocol.

Instruction packet:  FF FF ID LEN INSTR PARAM... CHK
Status packet:       FF FF ID LEN ERROR PARAM... CHK

LEN counts INSTR/ERROR + params + CHK, and CHK = ~(ID + LEN + ... ) & 0xFF.
Multi-byte values are little endian. The bus is half duplex: one request
is in flight per link, guarded by the client's lock.

Protocol failures (timeout, bad checksum, servo error byte) are returned as
a `BusStatus`, never raised. Transport failures (`TransportError`) are
raised so the connection manager can drop the link.
"""

import logging
import math
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import DeviceNotConnectedError, TransportTimeout
from .transport import SerialTransport

logger = logging.getLogger(__name__)

HEADER = b"\xff\xff"
BROADCAST_ID = 0xFE
MAX_SERVO_ID = 0xFD

INST_PING = 0x01
INST_READ = 0x02
INST_WRITE = 0x03
INST_SYNC_WRITE = 0x83

# A status packet's LEN byte is at most this, so whole packets stay small
MAX_PACKET_PARAMS = 250


@dataclass(frozen=True)
class ServoFamily:
    """Control-table layout and resolution of one servo model."""

    name: str
    resolution: int = 4096
    torque_enable_addr: int = 40
    goal_position_addr: int = 42
    goal_speed_addr: int = 46
    present_position_addr: int = 56
    speed_sign_bit: int = 15

    def degrees_to_steps(self, degrees: float) -> int:
        steps = int(round(degrees * self.resolution / 360.0))
        return max(0, min(self.resolution - 1, steps))

    def steps_to_degrees(self, steps: int) -> float:
        return steps * 360.0 / self.resolution

    def encode_speed(self, raw_speed: int) -> int:
        """Sign-magnitude encoding used by Goal_Speed in wheel mode."""
        limit = (1 << self.speed_sign_bit) - 1
        magnitude = min(abs(int(raw_speed)), limit)
        return magnitude | (1 << self.speed_sign_bit) if raw_speed < 0 else magnitude

    def decode_speed(self, value: int) -> int:
        sign = 1 << self.speed_sign_bit
        return -(value & (sign - 1)) if value & sign else value


STS3215 = ServoFamily(name="sts3215")


def checksum(body: bytes) -> int:
    return (~sum(body)) & 0xFF


@dataclass(frozen=True)
class ServoBusFrame:
    servo_id: int
    instruction: int
    params: bytes = b""

    def encode(self) -> bytes:
        if not 0 <= self.servo_id <= BROADCAST_ID:
            raise ValueError(f"Servo id {self.servo_id} out of range")
        if len(self.params) > MAX_PACKET_PARAMS:
            raise ValueError(f"Packet of {len(self.params)} params is too long")
        body = bytes([self.servo_id, len(self.params) + 2, self.instruction]) + bytes(self.params)
        return HEADER + body + bytes([checksum(body)])


@dataclass(frozen=True)
class StatusPacket:
    servo_id: int
    error: int
    params: bytes


class BusStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    NACK = "nack"
    PARTIAL = "partial"


@dataclass(frozen=True)
class BusResult:
    status: BusStatus
    value: Optional[float] = None
    error: int = 0

    @property
    def ok(self) -> bool:
        return self.status is BusStatus.SUCCESS


@dataclass(frozen=True)
class SyncEntry:
    servo_id: int
    kind: str  # "position" or "speed"
    value: float
    speed_hint: int = 0


@dataclass
class SyncWriteResult:
    status: BusStatus
    failed: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is BusStatus.SUCCESS


def _u16(value: int) -> bytes:
    return bytes([value & 0xFF, (value >> 8) & 0xFF])


class ServoBusClient:
    """
    Request/response driver for one Feetech bus.

    Every request waits at most `timeout_ms` for its status packet and is
    never retried here; the caller decides whether to try again next tick.
    """

    def __init__(self, transport: SerialTransport, family: ServoFamily = STS3215, timeout_ms: float = 30.0):
        self.transport = transport
        self.family = family
        self.timeout_ms = timeout_ms
        self.lock = threading.Lock()
        self._closed = False

    def close(self) -> None:
        """Refuse further requests; waits for the request in flight to finish."""
        with self.lock:
            self._closed = True

    # Framing

    def _read_exact(self, size: int, deadline: float) -> Optional[bytes]:
        data = b""
        while len(data) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            chunk = self.transport.read(size - len(data), remaining)
            if not chunk:
                if time.monotonic() >= deadline:
                    return None
                continue
            data += chunk
        return data

    def _read_status(self, expected_id: int, deadline: float) -> Tuple[BusStatus, Optional[StatusPacket]]:
        while True:
            # Sync on the FF FF header, skipping any line noise
            window = self._read_exact(2, deadline)
            if window is None:
                return BusStatus.TIMEOUT, None
            while window != HEADER:
                nxt = self._read_exact(1, deadline)
                if nxt is None:
                    return BusStatus.TIMEOUT, None
                window = window[1:] + nxt

            head = self._read_exact(2, deadline)
            if head is None:
                return BusStatus.TIMEOUT, None
            servo_id, length = head[0], head[1]
            if servo_id == 0xFF:
                # Third FF of a padded header; the real id follows
                rest = self._read_exact(1, deadline)
                if rest is None:
                    return BusStatus.TIMEOUT, None
                servo_id, length = head[1], rest[0]
            if length < 2:
                logger.debug(f"Malformed status length {length} from servo {servo_id}")
                return BusStatus.TIMEOUT, None

            payload = self._read_exact(length, deadline)
            if payload is None:
                return BusStatus.TIMEOUT, None
            body = bytes([servo_id, length]) + payload[:-1]
            if checksum(body) != payload[-1]:
                logger.debug(f"Checksum mismatch in status from servo {servo_id}")
                return BusStatus.TIMEOUT, None
            if servo_id != expected_id:
                logger.debug(f"Skipping stale status from servo {servo_id}, waiting for {expected_id}")
                continue

            packet = StatusPacket(servo_id=servo_id, error=payload[0], params=payload[1:-1])
            if packet.error:
                return BusStatus.NACK, packet
            return BusStatus.SUCCESS, packet

    def _transact(self, frame: ServoBusFrame, expect_reply: bool = True) -> Tuple[BusStatus, Optional[StatusPacket]]:
        data = frame.encode()
        with self.lock:
            if self._closed:
                raise DeviceNotConnectedError("Servo bus is closed.")
            self.transport.reset_input_buffer()
            try:
                self.transport.write(data)
            except TransportTimeout:
                logger.debug(f"Write timed out for servo {frame.servo_id}")
                return BusStatus.TIMEOUT, None
            if not expect_reply:
                return BusStatus.SUCCESS, None
            deadline = time.monotonic() + self.timeout_ms / 1000.0
            return self._read_status(frame.servo_id, deadline)

    def _write(self, servo_id: int, address: int, payload: bytes) -> BusResult:
        status, packet = self._transact(ServoBusFrame(servo_id, INST_WRITE, bytes([address]) + payload))
        return BusResult(status, error=packet.error if packet else 0)

    def _read(self, servo_id: int, address: int, size: int) -> Tuple[BusStatus, Optional[StatusPacket]]:
        status, packet = self._transact(ServoBusFrame(servo_id, INST_READ, bytes([address, size])))
        if status is BusStatus.SUCCESS and len(packet.params) != size:
            logger.debug(f"Servo {servo_id} returned {len(packet.params)} bytes, expected {size}")
            return BusStatus.TIMEOUT, None
        return status, packet

    # Requests

    def ping(self, servo_id: int) -> BusResult:
        status, packet = self._transact(ServoBusFrame(servo_id, INST_PING))
        return BusResult(status, error=packet.error if packet else 0)

    def write_position(self, servo_id: int, degrees: float, speed_hint: int = 0) -> BusResult:
        steps = self.family.degrees_to_steps(degrees)
        # Goal_Position, Goal_Time (unused), Goal_Speed
        payload = _u16(steps) + _u16(0) + _u16(max(0, int(speed_hint)))
        return self._write(servo_id, self.family.goal_position_addr, payload)

    def write_speed(self, servo_id: int, raw_speed: int) -> BusResult:
        return self._write(servo_id, self.family.goal_speed_addr, _u16(self.family.encode_speed(raw_speed)))

    def write_torque_enable(self, servo_id: int, enabled: bool) -> BusResult:
        return self._write(servo_id, self.family.torque_enable_addr, bytes([1 if enabled else 0]))

    def read_position(self, servo_id: int) -> BusResult:
        status, packet = self._read(servo_id, self.family.present_position_addr, 2)
        if status is not BusStatus.SUCCESS:
            return BusResult(status, error=packet.error if packet else 0)
        steps = packet.params[0] | (packet.params[1] << 8)
        return BusResult(BusStatus.SUCCESS, value=self.family.steps_to_degrees(steps))

    def _encode_entry(self, entry: SyncEntry) -> Tuple[int, bytes]:
        if not 0 <= entry.servo_id <= MAX_SERVO_ID:
            raise ValueError(f"Servo id {entry.servo_id} out of range")
        if not math.isfinite(entry.value):
            raise ValueError(f"Non-finite value for servo {entry.servo_id}")
        if entry.kind == "position":
            steps = self.family.degrees_to_steps(entry.value)
            return self.family.goal_position_addr, _u16(steps) + _u16(0) + _u16(max(0, int(entry.speed_hint)))
        if entry.kind == "speed":
            return self.family.goal_speed_addr, _u16(self.family.encode_speed(int(round(entry.value))))
        raise ValueError(f"Unknown sync entry kind {entry.kind!r}")

    def sync_write(self, entries: Sequence[SyncEntry]) -> SyncWriteResult:
        """
        Write many servos in as few broadcast packets as possible.

        Sync writes get no status reply. Entries that cannot be encoded are
        skipped and reported as failed (PARTIAL); a write timeout fails every
        entry of that packet. Other entries are still sent.
        """
        if not entries:
            return SyncWriteResult(BusStatus.SUCCESS)

        failed: List[int] = []
        groups: Dict[Tuple[int, int], List[Tuple[int, bytes]]] = defaultdict(list)
        for entry in entries:
            try:
                address, data = self._encode_entry(entry)
            except ValueError as e:
                logger.debug(f"Skipping sync entry: {e}")
                failed.append(entry.servo_id)
                continue
            groups[(address, len(data))].append((entry.servo_id, data))

        sent_any = False
        for (address, data_len), items in groups.items():
            per_packet = (MAX_PACKET_PARAMS - 2) // (data_len + 1)
            for start in range(0, len(items), per_packet):
                chunk = items[start:start + per_packet]
                params = bytes([address, data_len])
                for servo_id, data in chunk:
                    params += bytes([servo_id]) + data
                status, _ = self._transact(
                    ServoBusFrame(BROADCAST_ID, INST_SYNC_WRITE, params), expect_reply=False
                )
                if status is BusStatus.SUCCESS:
                    sent_any = True
                else:
                    failed.extend(servo_id for servo_id, _ in chunk)

        if not failed:
            return SyncWriteResult(BusStatus.SUCCESS)
        if not sent_any and len(failed) == len(entries) and groups:
            return SyncWriteResult(BusStatus.TIMEOUT, failed)
        return SyncWriteResult(BusStatus.PARTIAL, failed)
