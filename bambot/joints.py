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
Joint metadata for the loaded robot model.

The registry is the read-mostly table every other component consults to
map a servo id to its name, kinematic type and angle limits.
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class JointKind(str, Enum):
    REVOLUTE = "revolute"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class JointLimit:
    lower: Optional[float] = None
    upper: Optional[float] = None

    def clamp(self, degrees: float) -> float:
        """Clamp on each side that has a bound; a missing side is left open."""
        if self.lower is not None and degrees < self.lower:
            return self.lower
        if self.upper is not None and degrees > self.upper:
            return self.upper
        return degrees


@dataclass(frozen=True)
class Joint:
    servo_id: int
    name: str
    kind: JointKind
    limit: JointLimit = JointLimit()

    @property
    def is_continuous(self) -> bool:
        return self.kind is JointKind.CONTINUOUS


class JointRegistry:
    """
    Ordered set of joints for the current robot model.

    `register` swaps the whole table in one assignment, so readers see
    either the previous model or the new one, never a mix.
    """

    def __init__(self, joints: Iterable[Joint] = ()):
        self._lock = threading.Lock()
        self._table: Tuple[Tuple[Joint, ...], Dict[int, Joint]] = ((), {})
        joints = list(joints)
        if joints:
            self.register(joints)

    def register(self, joints: Sequence[Joint]) -> None:
        ordered = tuple(joints)
        by_id: Dict[int, Joint] = {}
        names = set()
        for joint in ordered:
            if joint.servo_id in by_id:
                raise ConfigurationError(f"Duplicate servo id {joint.servo_id} in joint set")
            if joint.name in names:
                raise ConfigurationError(f"Duplicate joint name {joint.name!r} in joint set")
            if (
                joint.limit.lower is not None
                and joint.limit.upper is not None
                and joint.limit.lower > joint.limit.upper
            ):
                raise ConfigurationError(
                    f"Joint {joint.name!r} has lower limit above upper limit"
                )
            by_id[joint.servo_id] = joint
            names.add(joint.name)

        with self._lock:
            self._table = (ordered, by_id)
        logger.debug(f"Registered {len(ordered)} joints")

    def clear(self) -> None:
        with self._lock:
            self._table = ((), {})

    def get(self, servo_id: int) -> Optional[Joint]:
        return self._table[1].get(servo_id)

    def by_name(self, name: str) -> Optional[Joint]:
        for joint in self._table[0]:
            if joint.name == name:
                return joint
        return None

    def all(self) -> Tuple[Joint, ...]:
        return self._table[0]

    def servo_ids(self, kind: Optional[JointKind] = None) -> List[int]:
        return [j.servo_id for j in self._table[0] if kind is None or j.kind is kind]

    def refine_limit(self, servo_id: int, lower: Optional[float] = None, upper: Optional[float] = None) -> Joint:
        """Narrow or set the limits of one joint, keeping registry order."""
        with self._lock:
            joints, by_id = self._table
            joint = by_id.get(servo_id)
            if joint is None:
                raise ConfigurationError(f"Unknown servo id {servo_id}")
            limit = JointLimit(
                lower=joint.limit.lower if lower is None else lower,
                upper=joint.limit.upper if upper is None else upper,
            )
            if limit.lower is not None and limit.upper is not None and limit.lower > limit.upper:
                raise ConfigurationError(f"Joint {joint.name!r} has lower limit above upper limit")
            refined = replace(joint, limit=limit)
            by_id = dict(by_id)
            by_id[servo_id] = refined
            self._table = (tuple(refined if j.servo_id == servo_id else j for j in joints), by_id)
        return refined

    def __len__(self) -> int:
        return len(self._table[0])

    def __contains__(self, servo_id: object) -> bool:
        return servo_id in self._table[1]


def joints_from_model(model_joints, joint_name_id_map: Dict[str, int]) -> List[Joint]:
    """
    Build joints from the model collaborator's joint list.

    Model joints without a servo id in `joint_name_id_map` are fixed or
    decorative and are skipped.
    """
    joints = []
    for model_joint in model_joints:
        servo_id = joint_name_id_map.get(model_joint.name)
        if servo_id is None:
            continue
        try:
            kind = JointKind(model_joint.kinematic_type.lower())
        except ValueError:
            raise ConfigurationError(
                f"Joint {model_joint.name!r} has unsupported type {model_joint.kinematic_type!r}"
            ) from None
        joints.append(
            Joint(
                servo_id=servo_id,
                name=model_joint.name,
                kind=kind,
                limit=JointLimit(model_joint.lower_limit, model_joint.upper_limit),
            )
        )
    return joints
