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
Joint state integrator.

Revolute joints hold the last absolute angle they were given. Continuous
joints hold a signed speed and their angle is advanced by explicit Euler
steps in `tick`. This object is the only writer of joint state; everything
else requests changes through `set_absolute` / `set_speed` and reads
through `snapshot`.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Mapping, Optional, Tuple

from .joints import JointKind, JointRegistry

logger = logging.getLogger(__name__)

# Fixed visual tuning constant: speed * ms / 500 degrees per tick
DEFAULT_SCALE_FACTOR = 500.0


@dataclass
class JointState:
    servo_id: int
    name: str
    kind: JointKind
    degrees: float = 0.0
    speed: float = 0.0
    updated_at: float = 0.0

    @property
    def value(self) -> float:
        """Commanded value: degrees for revolute joints, speed for continuous ones."""
        return self.speed if self.kind is JointKind.CONTINUOUS else self.degrees


class ContinuousJointIntegrator:
    def __init__(
        self,
        registry: JointRegistry,
        scale_factor: float = DEFAULT_SCALE_FACTOR,
        max_speed: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if scale_factor <= 0:
            raise ValueError("scale_factor must be positive")
        self.registry = registry
        self.scale_factor = scale_factor
        self.max_speed = max_speed
        self._clock = clock
        self._lock = threading.RLock()
        self._states: Dict[int, JointState] = {}
        self.reset()

    def reset(self, initial_degrees: Optional[Mapping[int, float]] = None) -> None:
        """Rebuild state for the joints currently in the registry."""
        initial_degrees = initial_degrees or {}
        now = self._clock()
        states = {}
        for joint in self.registry.all():
            degrees = float(initial_degrees.get(joint.servo_id, 0.0))
            if joint.kind is JointKind.REVOLUTE:
                degrees = joint.limit.clamp(degrees)
            states[joint.servo_id] = JointState(
                servo_id=joint.servo_id,
                name=joint.name,
                kind=joint.kind,
                degrees=degrees,
                updated_at=now,
            )
        with self._lock:
            self._states = states

    def set_absolute(self, servo_id: int, degrees: float) -> bool:
        """Set a revolute joint's angle, clamped to its limits. No-op otherwise."""
        joint = self.registry.get(servo_id)
        if joint is None or joint.kind is not JointKind.REVOLUTE:
            return False
        with self._lock:
            state = self._states.get(servo_id)
            if state is None:
                return False
            state.degrees = joint.limit.clamp(float(degrees))
            state.updated_at = self._clock()
        return True

    def set_speed(self, servo_id: int, speed: float) -> bool:
        """Set a continuous joint's signed speed. No-op for unknown or revolute joints."""
        joint = self.registry.get(servo_id)
        if joint is None or joint.kind is not JointKind.CONTINUOUS:
            return False
        speed = float(speed)
        if self.max_speed is not None:
            speed = max(-self.max_speed, min(self.max_speed, speed))
        with self._lock:
            state = self._states.get(servo_id)
            if state is None:
                return False
            state.speed = speed
            state.updated_at = self._clock()
        return True

    def tick(self, elapsed_ms: float) -> None:
        if elapsed_ms <= 0:
            return
        with self._lock:
            for state in self._states.values():
                if state.kind is JointKind.CONTINUOUS and state.speed:
                    state.degrees += state.speed * elapsed_ms / self.scale_factor

    def snapshot(self) -> Tuple[JointState, ...]:
        """Copies of every joint state, in registry order."""
        with self._lock:
            return tuple(
                replace(self._states[joint.servo_id])
                for joint in self.registry.all()
                if joint.servo_id in self._states
            )

    def degrees(self, servo_id: int) -> Optional[float]:
        with self._lock:
            state = self._states.get(servo_id)
            return None if state is None else state.degrees

    def speed(self, servo_id: int) -> Optional[float]:
        with self._lock:
            state = self._states.get(servo_id)
            return None if state is None else state.speed

    def angles(self) -> Dict[int, float]:
        """Current degrees by servo id, for snapshot-consistent formula evaluation."""
        with self._lock:
            return {servo_id: state.degrees for servo_id, state in self._states.items()}
