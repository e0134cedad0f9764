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
Input arbitration.

Every input (keyboard, gamepad, key-sequence player, leader arm, replay)
is a registered `InputSource`. Once per tick the arbiter polls them all,
resolves conflicts per joint and hands the result to the integrator:

1. drain the submitted queue and poll sources in registration order
2. drop events for unknown joints, wrong kinematic type or unclaimed joints
3. turn holds into deltas and run them through the compound resolver
4. direct holds overwrite compound-derived deltas
5. explicit sets (absolute angle / speed) overwrite holds
6. continuous joints whose hold was released get speed 0
"""

import logging
import time
from collections import deque
from enum import Enum
from typing import Deque, Dict, FrozenSet, Iterable, List, Optional, Set

from .compound import CompoundMotionResolver
from .integrator import ContinuousJointIntegrator
from .intents import IntentEvent, IntentKind, JointCommand
from .joints import JointKind, JointRegistry

logger = logging.getLogger(__name__)

QUEUE_SOURCE_ID = "queue"


class SourceState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class InputSource:
    """
    Base class for arbiter inputs.

    A source is ACTIVE while it claims at least one servo id. Events for
    servo ids the source claimed neither before nor after its poll are
    ignored, so clearing the claims in `stop()` takes effect on the very
    next tick.
    """

    def __init__(self, source_id: str):
        self.source_id = source_id
        self._claims: Set[int] = set()

    @property
    def claims(self) -> FrozenSet[int]:
        return frozenset(self._claims)

    @property
    def state(self) -> SourceState:
        return SourceState.ACTIVE if self._claims else SourceState.IDLE

    def poll(self, now: float) -> List[IntentEvent]:
        raise NotImplementedError

    def stop(self) -> None:
        self._claims.clear()

    def _event(self, servo_id: int, kind: IntentKind, value: float, now: float, movement: Optional[str] = None) -> IntentEvent:
        return IntentEvent(self.source_id, servo_id, kind, float(value), now, movement)


class InputArbiter:
    def __init__(
        self,
        registry: JointRegistry,
        integrator: ContinuousJointIntegrator,
        resolver: Optional[CompoundMotionResolver] = None,
        hold_policy: str = "last",
        continuous_hold_gain: float = 1000.0,
        clock=time.monotonic,
    ):
        if hold_policy not in ("last", "sum"):
            raise ValueError(f"Unknown hold policy {hold_policy!r}")
        self.registry = registry
        self.integrator = integrator
        self.resolver = resolver or CompoundMotionResolver()
        self.hold_policy = hold_policy
        self.continuous_hold_gain = continuous_hold_gain
        self._clock = clock
        self._sources: Dict[str, InputSource] = {}
        self._states: Dict[str, SourceState] = {}
        self._queue: Deque[IntentEvent] = deque()
        self._held_continuous: Set[int] = set()
        self._poll_failures: Dict[str, int] = {}

    # Sources

    def register(self, source: InputSource) -> InputSource:
        if source.source_id in self._sources or source.source_id == QUEUE_SOURCE_ID:
            raise ValueError(f"Input source {source.source_id!r} is already registered")
        self._sources[source.source_id] = source
        self._states[source.source_id] = source.state
        logger.debug(f"Registered input source {source.source_id!r}")
        return source

    def unregister(self, source_id: str) -> None:
        source = self._sources.pop(source_id, None)
        self._states.pop(source_id, None)
        if source is not None:
            source.stop()
            logger.debug(f"Unregistered input source {source_id!r}")

    def sources(self) -> List[InputSource]:
        return list(self._sources.values())

    def source_states(self) -> Dict[str, SourceState]:
        return dict(self._states)

    def stop_all(self) -> None:
        for source in self._sources.values():
            source.stop()
        self._queue.clear()

    def submit(self, event: IntentEvent) -> None:
        """Queue a one-shot intent for the next tick."""
        self._queue.append(event)

    def submit_many(self, events: Iterable[IntentEvent]) -> None:
        self._queue.extend(events)

    # Tick

    def _collect(self, now: float) -> List[IntentEvent]:
        events: List[IntentEvent] = []
        while self._queue:
            events.append(self._queue.popleft())

        for source_id, source in self._sources.items():
            claimed_before = source.claims
            try:
                polled = source.poll(now)
            except Exception as e:
                # A failing device is treated as unavailable for this tick
                count = self._poll_failures.get(source_id, 0) + 1
                self._poll_failures[source_id] = count
                if count == 1 or count % 100 == 0:
                    logger.warning(f"⚠️  Input source {source_id!r} failed ({count}x): {e}")
                polled = []
            else:
                self._poll_failures.pop(source_id, None)

            # A source may hand over its last events and release in the same poll
            claims = claimed_before | source.claims
            for event in polled:
                if event.servo_id not in claims:
                    logger.debug(f"Dropping event from {source_id!r} for unclaimed servo {event.servo_id}")
                    continue
                events.append(event)

            state = source.state
            if state is not self._states.get(source_id):
                logger.debug(f"Input source {source_id!r} is now {state.value}")
                self._states[source_id] = state
        return events

    def _is_valid(self, event: IntentEvent) -> bool:
        joint = self.registry.get(event.servo_id)
        if joint is None:
            logger.debug(f"Dropping intent for unknown servo {event.servo_id} from {event.source_id!r}")
            return False
        if event.kind is IntentKind.ABSOLUTE_ANGLE and joint.kind is not JointKind.REVOLUTE:
            logger.debug(f"Dropping absolute angle for continuous joint {joint.name!r}")
            return False
        if event.kind is IntentKind.SPEED and joint.kind is not JointKind.CONTINUOUS:
            logger.debug(f"Dropping speed for revolute joint {joint.name!r}")
            return False
        return True

    def tick(self, elapsed_ms: float, sensitivity: float = 1.0, now: Optional[float] = None) -> List[JointCommand]:
        """
        Run one arbitration cycle and apply the result to the integrator.

        Returns the commands that were applied, one per joint at most.
        """
        now = self._clock() if now is None else now
        events = [e for e in self._collect(now) if self._is_valid(e)]
        angles = self.integrator.angles()

        # Holds, per source then per joint; one source holding two keys on a joint sums them
        continuous_holds: Dict[str, Dict[int, float]] = {}
        revolute_holds: List[IntentEvent] = []
        explicit: Dict[int, IntentEvent] = {}
        for event in events:
            if event.kind is IntentKind.HOLD:
                joint = self.registry.get(event.servo_id)
                if event.movement is not None or joint.kind is JointKind.REVOLUTE:
                    revolute_holds.append(event)
                else:
                    per_source = continuous_holds.setdefault(event.source_id, {})
                    per_source[event.servo_id] = per_source.get(event.servo_id, 0.0) + event.value
            else:
                explicit[event.servo_id] = event

        # Revolute holds go through the resolver, which may derive deltas on other joints
        direct: Dict[str, Dict[int, float]] = {}
        derived: Dict[int, float] = {}
        dt = elapsed_ms
        for event in revolute_holds:
            delta = event.value * sensitivity * dt
            resolved = self.resolver.resolve(event.servo_id, delta, angles, event.movement)
            (primary_id, primary_delta), dependents = resolved[0], resolved[1:]
            per_source = direct.setdefault(event.source_id, {})
            per_source[primary_id] = per_source.get(primary_id, 0.0) + primary_delta
            for servo_id, dep_delta in dependents:
                derived[servo_id] = derived.get(servo_id, 0.0) + dep_delta

        revolute_deltas = dict(derived)
        revolute_sources = {servo_id: "compound" for servo_id in derived}
        overwritten: Set[int] = set()
        for source_id, deltas in direct.items():
            for servo_id, delta in deltas.items():
                if servo_id in overwritten and self.hold_policy == "sum":
                    revolute_deltas[servo_id] += delta
                else:
                    revolute_deltas[servo_id] = delta
                overwritten.add(servo_id)
                revolute_sources[servo_id] = source_id

        continuous_speeds: Dict[int, float] = {}
        continuous_sources: Dict[int, str] = {}
        for source_id, per_source in continuous_holds.items():
            for servo_id, magnitude in per_source.items():
                speed = magnitude * sensitivity * self.continuous_hold_gain
                if servo_id in continuous_speeds and self.hold_policy == "sum":
                    continuous_speeds[servo_id] += speed
                else:
                    continuous_speeds[servo_id] = speed
                continuous_sources[servo_id] = source_id

        commands: Dict[int, JointCommand] = {}
        for servo_id, delta in revolute_deltas.items():
            if servo_id in explicit or servo_id not in angles:
                continue
            joint = self.registry.get(servo_id)
            if joint is None or joint.kind is not JointKind.REVOLUTE:
                continue
            target = angles[servo_id] + delta
            self.integrator.set_absolute(servo_id, target)
            commands[servo_id] = JointCommand(
                servo_id, IntentKind.ABSOLUTE_ANGLE, self.integrator.degrees(servo_id), revolute_sources[servo_id]
            )

        for servo_id, speed in continuous_speeds.items():
            if servo_id in explicit:
                continue
            self.integrator.set_speed(servo_id, speed)
            commands[servo_id] = JointCommand(
                servo_id, IntentKind.SPEED, self.integrator.speed(servo_id), continuous_sources[servo_id]
            )

        for servo_id, event in explicit.items():
            if event.kind is IntentKind.ABSOLUTE_ANGLE:
                self.integrator.set_absolute(servo_id, event.value)
                value = self.integrator.degrees(servo_id)
            else:
                self.integrator.set_speed(servo_id, event.value)
                value = self.integrator.speed(servo_id)
            commands[servo_id] = JointCommand(servo_id, event.kind, value, event.source_id)

        # Released continuous holds stop the joint
        released = self._held_continuous - set(continuous_speeds) - set(explicit)
        for servo_id in released:
            if self.integrator.set_speed(servo_id, 0.0):
                commands[servo_id] = JointCommand(servo_id, IntentKind.SPEED, 0.0, "release")
        self._held_continuous = set(continuous_speeds) - set(explicit)

        return list(commands.values())
