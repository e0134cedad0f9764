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
Teleoperation session: one robot model, its input sources and its links.

The tick loop (arbitration + integration) and the bus loop (sync writes to
the follower) run at independent rates on one asyncio loop. Bus I/O runs in
worker threads so a slow serial write never stalls arbitration.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .arbiter import InputArbiter
from .compound import CompoundMotionResolver, compile_movement
from .config_bambot import KEY_LAYOUTS, ControlConfig, GamepadConfig, RobotProfile, ServoBusConfig
from .connection import FOLLOWER, LEADER, RobotConnectionManager, RobotLink
from .datasets import Dataset
from .errors import DeviceNotConnectedError, TransportError
from .gamepad import GamepadSource
from .integrator import ContinuousJointIntegrator
from .intents import JointCommand
from .joints import JointKind, JointRegistry, joints_from_model
from .key_sequence import KeySequencePlayer, KeyStep
from .leader import LeaderPoller
from .recording import DatasetRecorder, ReplayPlayer
from .servo_bus import SyncEntry, SyncWriteResult
from .sources import KeyboardSource, LeaderMirrorSource, TargetSource, key_bindings_for, layout_bindings

logger = logging.getLogger(__name__)


class TeleopSession:
    def __init__(
        self,
        profile: RobotProfile,
        control: Optional[ControlConfig] = None,
        connections: Optional[RobotConnectionManager] = None,
        gamepad_config: Optional[GamepadConfig] = None,
        clock=time.monotonic,
    ):
        self.control = control or ControlConfig()
        self.connections = connections or RobotConnectionManager()
        self._clock = clock
        cfg = self.control

        self.registry = JointRegistry()
        self.integrator = ContinuousJointIntegrator(self.registry, cfg.scale_factor, cfg.max_speed, clock)
        self.arbiter = InputArbiter(
            self.registry,
            self.integrator,
            hold_policy=cfg.hold_policy,
            continuous_hold_gain=cfg.continuous_hold_gain,
            clock=clock,
        )

        # Registration order decides which hold wins a joint under the "last" policy
        self.leader_source = LeaderMirrorSource()
        self.keyboard = KeyboardSource({}, cfg.hold_rate_deg_per_ms)
        self.gamepad = GamepadSource({}, gamepad_config, cfg.hold_rate_deg_per_ms)
        self.remote_keys = KeyboardSource({}, cfg.hold_rate_deg_per_ms, source_id="remote_keys")
        self.command = KeySequencePlayer({}, cfg)
        self.replay_source = TargetSource("replay")
        self.remote = TargetSource("remote")
        for source in (
            self.leader_source,
            self.keyboard,
            self.gamepad,
            self.remote_keys,
            self.command,
            self.replay_source,
            self.remote,
        ):
            self.arbiter.register(source)

        self.recorder = DatasetRecorder(self.integrator, cfg.recording_interval_ms, clock)
        self.replayer = ReplayPlayer(self.replay_source, self.registry)

        self.profile: Optional[RobotProfile] = None
        self._last_pushed: Dict[int, Tuple[str, float]] = {}
        # Guards _last_pushed, which push_to_bus updates from a worker thread
        self._push_lock = threading.Lock()
        self._push_generation = 0
        self._bus_failures = 0
        self._leader: Optional[LeaderPoller] = None
        self._leader_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.load_model(profile)

    @property
    def bus_config(self) -> ServoBusConfig:
        return self.connections.bus_config

    def load_model(self, profile: RobotProfile) -> None:
        """
        Switch to a robot model. Everything is validated before anything is
        replaced, so a bad profile leaves the current model in place.
        """
        joints = joints_from_model(profile.model_joints, profile.joint_name_id_map)
        resolver = CompoundMotionResolver([compile_movement(c) for c in profile.compound_movements])
        resolver.validate_joints(JointRegistry(joints))
        bindings = key_bindings_for(profile)

        self.arbiter.stop_all()
        self.registry.register(joints)
        self.arbiter.resolver = resolver
        for source in (self.gamepad, self.remote_keys, self.command):
            source.bindings = bindings
        layout = KEY_LAYOUTS.get(self.control.key_layout)
        if layout is None:
            self.keyboard.bindings = bindings
            self.keyboard.hold_rate = self.control.hold_rate_deg_per_ms
        else:
            self.keyboard.bindings = layout_bindings(layout, profile)
            self.keyboard.hold_rate = layout.hold_rate_deg_per_ms
        self.leader_source.revolute_ids = set(self.registry.servo_ids(JointKind.REVOLUTE))
        self.integrator.reset(profile.initial_angles_by_id())
        self._forget_pushed()
        self.profile = profile
        logger.info(f"🤖 Loaded {profile.name} ({len(joints)} joints)")

    # Tick

    def step(self, elapsed_ms: float, now: Optional[float] = None) -> List[JointCommand]:
        commands = self.arbiter.tick(elapsed_ms, self.control.sensitivity, now)
        self.integrator.tick(elapsed_ms)
        if self.recorder.recording:
            self.recorder.sample(now)
        return commands

    def joint_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            state.name: {
                "id": state.servo_id,
                "kind": state.kind.value,
                "degrees": state.degrees,
                "speed": state.speed,
            }
            for state in self.integrator.snapshot()
        }

    # Follower bus

    def connect_follower(self, port: str) -> RobotLink:
        link = self.connections.connect(FOLLOWER, port)
        self._forget_pushed()
        try:
            for servo_id in self.registry.servo_ids():
                result = link.bus.write_torque_enable(servo_id, True)
                if not result.ok:
                    logger.warning(f"⚠️  Could not enable torque on servo {servo_id}: {result.status.value}")
        except TransportError as e:
            link.fail(e)
            raise
        return link

    def disconnect_follower(self) -> None:
        self.connections.disconnect(FOLLOWER)
        self._forget_pushed()

    def _forget_pushed(self) -> None:
        """Mark every joint as changed so the next push rewrites it."""
        with self._push_lock:
            self._last_pushed.clear()
            self._push_generation += 1

    def _sync_entries(self) -> List[SyncEntry]:
        entries = []
        for state in self.integrator.snapshot():
            if state.kind is JointKind.CONTINUOUS:
                entry = SyncEntry(state.servo_id, "speed", round(state.speed * self.bus_config.speed_raw_per_unit))
            else:
                entry = SyncEntry(
                    state.servo_id, "position", state.degrees, self.bus_config.position_speed_hint
                )
            if self._last_pushed.get(state.servo_id) == (entry.kind, entry.value):
                continue
            entries.append(entry)
        return entries

    def push_to_bus(self) -> Optional[SyncWriteResult]:
        """
        Sync-write joints whose value changed since the last successful push.

        Failed entries are retried on the next push simply because they are
        still marked as changed; successful ones are kept.
        """
        link = self.connections.link(FOLLOWER)
        if link is None or not link.is_connected:
            return None
        with self._push_lock:
            generation = self._push_generation
            entries = self._sync_entries()
        if not entries:
            return None
        try:
            result = link.bus.sync_write(entries)
        except DeviceNotConnectedError:
            return None
        except TransportError as e:
            link.fail(e)
            return None

        failed = set(result.failed)
        with self._push_lock:
            # A model switch or reconnect during the write invalidates these results
            if generation == self._push_generation:
                for entry in entries:
                    if entry.servo_id not in failed:
                        self._last_pushed[entry.servo_id] = (entry.kind, entry.value)
        if failed:
            self._bus_failures += 1
            if self._bus_failures == 1 or self._bus_failures % 100 == 0:
                logger.warning(
                    f"⚠️  Sync write {result.status.value} for servos {sorted(failed)} ({self._bus_failures}x)"
                )
        return result

    # Leader

    async def connect_leader(self, port: str) -> RobotLink:
        link = await asyncio.to_thread(self.connections.connect, LEADER, port)
        self._leader = LeaderPoller(
            link,
            self.leader_source,
            self.registry.servo_ids(JointKind.REVOLUTE),
            self.control.leader_poll_ms,
        )
        self._leader_task = asyncio.create_task(self._leader.run())
        return link

    async def disconnect_leader(self) -> None:
        if self._leader is not None:
            self._leader.stop()
        if self._leader_task is not None:
            await asyncio.gather(self._leader_task, return_exceptions=True)
        self._leader = None
        self._leader_task = None
        await asyncio.to_thread(self.connections.disconnect, LEADER)

    # Command surface

    async def key_press(self, key: str, duration_ms: Optional[float] = None) -> bool:
        return await self.command.key_press(key, duration_ms)

    async def key_sequence(self, steps: List[KeyStep]) -> bool:
        return await self.command.key_sequence(steps)

    def set_joints(self, values: Mapping[Any, float]) -> None:
        """
        One-shot targets by joint name or servo id: degrees for revolute
        joints, speed for continuous ones.
        """
        angles, speeds = {}, {}
        for key, value in values.items():
            if isinstance(key, str) and not key.isdigit():
                joint = self.registry.by_name(key)
            else:
                joint = self.registry.get(int(key))
            if joint is None:
                logger.debug(f"Ignoring target for unknown joint {key!r}")
                continue
            if joint.kind is JointKind.CONTINUOUS:
                speeds[joint.servo_id] = float(value)
            else:
                angles[joint.servo_id] = float(value)
        now = self._clock()
        if angles:
            self.remote.set_angles(angles, now)
        if speeds:
            self.remote.set_speeds(speeds, now)
        self.remote.finish()

    def cancel(self) -> None:
        """Stop the command surface and any replay."""
        self.command.cancel()
        self.remote_keys.release_all()
        self.replayer.cancel()

    # Recording and replay

    def start_recording(self) -> None:
        self.recorder.start(self._clock())

    def stop_recording(self, name: str = "") -> Dataset:
        return self.recorder.stop(self._clock(), name)

    async def replay(self, dataset: Dataset) -> bool:
        if self.connections.is_connected(LEADER):
            logger.info("🔌 Disconnecting leader for replay")
            await self.disconnect_leader()
        return await self.replayer.play(dataset)

    # Loops

    async def _tick_loop(self) -> None:
        period = 1.0 / self.control.tick_hz
        last = self._clock()
        while True:
            now = self._clock()
            self.step((now - last) * 1000.0, now)
            last = now
            await asyncio.sleep(period)

    async def _bus_loop(self) -> None:
        period = 1.0 / self.control.bus_hz
        while True:
            await asyncio.to_thread(self.push_to_bus)
            await asyncio.sleep(period)

    async def run(self) -> None:
        """Run the tick and bus loops until `stop()` is called."""
        self._stop_event = asyncio.Event()
        tasks = [asyncio.create_task(self._tick_loop()), asyncio.create_task(self._bus_loop())]
        logger.info("🚀 Teleoperation loop running")
        try:
            await self._stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._stop_event = None

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def close(self) -> None:
        self.cancel()
        self.arbiter.stop_all()
        await self.disconnect_leader()
        await asyncio.to_thread(self.connections.disconnect_all)
        logger.info("🛑 Session closed")
