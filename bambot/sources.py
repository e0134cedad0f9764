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
Keyboard and set-point input sources.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .arbiter import InputSource
from .base_kinematics import wheel_weights
from .config_bambot import KeyLayout, RobotProfile
from .intents import IntentEvent, IntentKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyBinding:
    servo_id: int
    direction: float
    movement: Optional[str] = None


def normalize_key(key: str) -> str:
    return key.lower() if len(key) == 1 else key


def key_bindings_for(profile: RobotProfile) -> Dict[str, List[KeyBinding]]:
    """
    Key -> bindings for a robot profile.

    The first key of a pair decreases the joint, the second increases it.
    Compound movement keys hold the movement's primary joint, and wheel keys
    hold every base wheel with its mixing weight.
    """
    bindings: Dict[str, List[KeyBinding]] = {}

    def bind(key: str, binding: KeyBinding) -> None:
        bindings.setdefault(normalize_key(key), []).append(binding)

    for servo_id, keys in profile.keyboard_control_map.items():
        if len(keys) != 2:
            logger.warning(f"Ignoring key pair {keys!r} for servo {servo_id}")
            continue
        bind(keys[0], KeyBinding(int(servo_id), -1.0))
        bind(keys[1], KeyBinding(int(servo_id), 1.0))

    for movement in profile.compound_movements:
        if len(movement.keys) != 2:
            logger.warning(f"Ignoring keys {movement.keys!r} of compound movement {movement.name!r}")
            continue
        bind(movement.keys[0], KeyBinding(movement.primary_joint, -1.0, movement.name))
        bind(movement.keys[1], KeyBinding(movement.primary_joint, 1.0, movement.name))

    for key, direction in profile.wheel_control_map.items():
        weights = wheel_weights(direction, profile.wheel_names)
        for wheel_name, weight in weights.items():
            servo_id = profile.joint_name_id_map.get(wheel_name)
            if servo_id is not None and weight:
                bind(key, KeyBinding(servo_id, weight))

    return bindings


def layout_bindings(layout: KeyLayout, profile: RobotProfile) -> Dict[str, List[KeyBinding]]:
    """Key -> bindings for an alternate layout. Joints the profile lacks are skipped."""
    bindings: Dict[str, List[KeyBinding]] = {}
    for key, (joint_name, direction) in layout.keys.items():
        servo_id = profile.joint_name_id_map.get(joint_name)
        if servo_id is None:
            continue
        bindings.setdefault(normalize_key(key), []).append(KeyBinding(servo_id, direction))
    return bindings


class KeyboardSource(InputSource):
    """Hold-to-move keyboard input: every held key nudges its joint each tick."""

    def __init__(self, bindings: Mapping[str, List[KeyBinding]], hold_rate: float = 0.05, source_id: str = "keyboard"):
        super().__init__(source_id)
        self.bindings = dict(bindings)
        self.hold_rate = hold_rate
        self._pressed: Set[str] = set()

    @property
    def pressed(self) -> Set[str]:
        return set(self._pressed)

    def is_bound(self, key: str) -> bool:
        return normalize_key(key) in self.bindings

    def press(self, key: str) -> bool:
        key = normalize_key(key)
        if key not in self.bindings:
            return False
        self._pressed.add(key)
        self._update_claims()
        return True

    def release(self, key: str) -> None:
        self._pressed.discard(normalize_key(key))
        self._update_claims()

    def release_all(self) -> None:
        self._pressed.clear()
        self._claims.clear()

    def stop(self) -> None:
        self.release_all()

    def _update_claims(self) -> None:
        self._claims = {b.servo_id for key in self._pressed for b in self.bindings[key]}

    def poll(self, now: float) -> List[IntentEvent]:
        events = []
        for key in sorted(self._pressed):
            for binding in self.bindings[key]:
                events.append(
                    self._event(
                        binding.servo_id,
                        IntentKind.HOLD,
                        binding.direction * self.hold_rate,
                        now,
                        binding.movement,
                    )
                )
        return events


class TargetSource(InputSource):
    """
    Explicit set-points (absolute angles and speeds), each emitted once.

    The source keeps its claim on the joints it last targeted until it is
    stopped or finished, so the arbiter shows it as active while it is driving them.
    """

    def __init__(self, source_id: str):
        super().__init__(source_id)
        self._pending: Dict[int, IntentEvent] = {}
        self._finishing = False

    def set_angles(self, angles: Mapping[int, float], now: float = 0.0) -> None:
        self._finishing = False
        for servo_id, degrees in angles.items():
            self._pending[servo_id] = self._event(servo_id, IntentKind.ABSOLUTE_ANGLE, degrees, now)
        self._claims.update(angles)

    def set_speeds(self, speeds: Mapping[int, float], now: float = 0.0) -> None:
        self._finishing = False
        for servo_id, speed in speeds.items():
            self._pending[servo_id] = self._event(servo_id, IntentKind.SPEED, speed, now)
        self._claims.update(speeds)

    def release(self, servo_ids: Optional[Iterable[int]] = None) -> None:
        if servo_ids is None:
            self.stop()
            return
        for servo_id in servo_ids:
            self._claims.discard(servo_id)
            self._pending.pop(servo_id, None)

    def finish(self) -> None:
        """Release every claim once the pending set-points have been polled."""
        self._finishing = True

    def stop(self) -> None:
        super().stop()
        self._pending.clear()
        self._finishing = False

    def poll(self, now: float) -> List[IntentEvent]:
        events = list(self._pending.values())
        self._pending.clear()
        if self._finishing:
            self._claims.clear()
            self._finishing = False
        return events


class LeaderMirrorSource(TargetSource):
    """Mirrors leader-arm readings onto revolute joints."""

    def __init__(self, revolute_ids: Iterable[int] = (), source_id: str = "leader"):
        super().__init__(source_id)
        self.revolute_ids = set(revolute_ids)

    def update(self, positions: Mapping[int, float], now: float = 0.0) -> None:
        angles = {sid: deg for sid, deg in positions.items() if sid in self.revolute_ids}
        if angles:
            self.set_angles(angles, now)
