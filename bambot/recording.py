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
from typing import Callable, List, Optional

from .datasets import Dataset
from .integrator import ContinuousJointIntegrator
from .joints import JointKind, JointRegistry
from .sources import TargetSource

logger = logging.getLogger(__name__)


class DatasetRecorder:
    """Samples the integrator snapshot at a fixed interval while recording."""

    def __init__(
        self,
        integrator: ContinuousJointIntegrator,
        interval_ms: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.integrator = integrator
        self.interval_ms = interval_ms
        self._clock = clock
        self._frames: List[List[float]] = []
        self._started_at: Optional[float] = None
        self._next_sample_at = 0.0

    @property
    def recording(self) -> bool:
        return self._started_at is not None

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def start(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        self._frames = []
        self._started_at = now
        self._next_sample_at = now
        logger.info("⏺️  Recording started")

    def sample(self, now: Optional[float] = None) -> bool:
        """Record a frame if the interval has elapsed. Returns True if one was taken."""
        if self._started_at is None:
            return False
        now = self._clock() if now is None else now
        if now < self._next_sample_at:
            return False
        self._frames.append([state.value for state in self.integrator.snapshot()])
        self._next_sample_at += self.interval_ms / 1000.0
        if self._next_sample_at < now:
            # Fell behind; don't burst to catch up
            self._next_sample_at = now + self.interval_ms / 1000.0
        return True

    def stop(self, now: Optional[float] = None, name: str = "") -> Dataset:
        if self._started_at is None:
            raise RuntimeError("Not recording")
        now = self._clock() if now is None else now
        duration_ms = (now - self._started_at) * 1000.0
        self._started_at = None
        details = [
            {"servoId": state.servo_id, "jointType": state.kind.value}
            for state in self.integrator.snapshot()
        ]
        dataset = Dataset(
            frames=self._frames,
            duration_ms=duration_ms,
            name=name,
            joint_details=details,
            recording_interval_ms=self.interval_ms,
        )
        self._frames = []
        logger.info(f"⏹️  Recording stopped: {dataset.frame_count} frames in {duration_ms:.0f}ms")
        return dataset


class ReplayPlayer:
    """
    Plays a dataset back through a `TargetSource` frame by frame.

    Revolute columns become absolute angles, continuous columns become
    speeds. Columns map to joints through the dataset's joint details when
    present, otherwise through registry order. Cancellation is checked
    between frames; continuous joints are stopped when playback ends.
    """

    def __init__(self, source: TargetSource, registry: JointRegistry):
        self.source = source
        self.registry = registry
        self._running = False
        self._cancelled = False
        self._wake: Optional[asyncio.Event] = None
        self.progress = 0

    @property
    def running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        self._cancelled = True
        if self._wake is not None:
            self._wake.set()

    def _columns(self, dataset: Dataset) -> List[Optional[int]]:
        if dataset.joint_details:
            return [int(d["servoId"]) if "servoId" in d else None for d in dataset.joint_details]
        return [joint.servo_id for joint in self.registry.all()]

    async def play(self, dataset: Dataset, interval_ms: Optional[float] = None) -> bool:
        """Returns False if cancelled before the last frame."""
        if self._running:
            raise RuntimeError("A replay is already running")
        interval_ms = dataset.recording_interval_ms if interval_ms is None else interval_ms
        columns = self._columns(dataset)
        continuous_ids = set()

        self._running = True
        self._cancelled = False
        self._wake = asyncio.Event()
        self.progress = 0
        logger.info(f"▶️  Replaying {dataset.frame_count} frames")
        try:
            for index, frame in enumerate(dataset.frames):
                if self._cancelled:
                    return False
                angles, speeds = {}, {}
                for column, value in enumerate(frame):
                    servo_id = columns[column] if column < len(columns) else None
                    joint = self.registry.get(servo_id) if servo_id is not None else None
                    if joint is None:
                        continue
                    if joint.kind is JointKind.CONTINUOUS:
                        speeds[servo_id] = value
                        continuous_ids.add(servo_id)
                    else:
                        angles[servo_id] = value
                if angles:
                    self.source.set_angles(angles)
                if speeds:
                    self.source.set_speeds(speeds)
                self.progress = index + 1

                if index < dataset.frame_count - 1:
                    try:
                        await asyncio.wait_for(self._wake.wait(), timeout=interval_ms / 1000.0)
                    except asyncio.TimeoutError:
                        pass
            return not self._cancelled
        finally:
            if continuous_ids:
                self.source.set_speeds({servo_id: 0.0 for servo_id in continuous_ids})
            self.source.finish()
            self._running = False
            self._wake = None
            logger.info("⏹️  Replay finished")
