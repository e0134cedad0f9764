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

import asyncio
import logging
import time
from typing import Dict, Iterable, List

from .connection import RobotLink
from .errors import DeviceNotConnectedError, TransportError
from .sources import LeaderMirrorSource

logger = logging.getLogger(__name__)


class LeaderPoller:
    """
    Read-only poll loop for the leader arm.

    Torque is released on start so the arm can be posed by hand. Each cycle
    reads every revolute joint; a joint that times out is skipped for that
    cycle. A transport failure drops the link and ends the loop.
    """

    def __init__(
        self,
        link: RobotLink,
        source: LeaderMirrorSource,
        servo_ids: Iterable[int],
        interval_ms: float = 50.0,
    ):
        self.link = link
        self.source = source
        self.servo_ids: List[int] = list(servo_ids)
        self.interval_ms = interval_ms
        self._stopped = False
        self._read_failures = 0

    def release_torque(self) -> None:
        bus = self.link.bus
        for servo_id in self.servo_ids:
            result = bus.write_torque_enable(servo_id, False)
            if not result.ok:
                logger.warning(f"⚠️  Could not release torque on leader servo {servo_id}: {result.status.value}")

    def read_once(self) -> Dict[int, float]:
        """One blocking pass over the leader servos."""
        try:
            bus = self.link.bus
            positions = {}
            for servo_id in self.servo_ids:
                result = bus.read_position(servo_id)
                if result.ok:
                    positions[servo_id] = result.value
                else:
                    self._read_failures += 1
                    if self._read_failures == 1 or self._read_failures % 100 == 0:
                        logger.warning(
                            f"⚠️  Leader read failed for servo {servo_id}: "
                            f"{result.status.value} ({self._read_failures}x)"
                        )
            return positions
        except TransportError as e:
            self.link.fail(e)
            return {}

    def stop(self) -> None:
        self._stopped = True
        self.source.stop()

    async def run(self) -> None:
        try:
            await asyncio.to_thread(self.release_torque)
        except TransportError as e:
            self.link.fail(e)
            return
        except DeviceNotConnectedError:
            return
        logger.info(f"🚀 Mirroring leader arm ({len(self.servo_ids)} joints)")
        try:
            while not self._stopped and self.link.is_connected:
                positions = await asyncio.to_thread(self.read_once)
                if positions:
                    self.source.update(positions, time.monotonic())
                await asyncio.sleep(self.interval_ms / 1000.0)
        except DeviceNotConnectedError:
            # Link closed underneath us by a disconnect
            pass
        finally:
            self.source.stop()
            logger.info("🛑 Leader mirroring stopped")
