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

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class IntentKind(str, Enum):
    """What an input source asks for on one joint."""

    ABSOLUTE_ANGLE = "absolute_angle"  # set degrees (revolute)
    SPEED = "speed"  # set signed speed (continuous)
    HOLD = "hold"  # signed magnitude per ms, while held


@dataclass(frozen=True)
class IntentEvent:
    source_id: str
    servo_id: int
    kind: IntentKind
    value: float
    timestamp: float = field(default_factory=time.monotonic)
    # Compound movement to route a HOLD through, if any
    movement: Optional[str] = None

    @property
    def is_explicit(self) -> bool:
        return self.kind is not IntentKind.HOLD


@dataclass(frozen=True)
class JointCommand:
    """Resolved per-joint result of one arbitration tick."""

    servo_id: int
    kind: IntentKind
    value: float
    source_id: str
