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
Bambot Follower Implementation
LeRobot-compatible follower arm (and optional wheel base) on one Feetech bus
"""

import logging
import time
from functools import cached_property
from typing import Any, Dict, Optional

from lerobot.motors import MotorCalibration
from lerobot.robots.robot import Robot
from lerobot.robots.utils import ensure_safe_goal_position

from .config_bambot import BambotFollowerConfig, get_profile
from .connection import FOLLOWER, RobotLink, pyserial_transport
from .errors import DeviceAlreadyConnectedError, DeviceNotConnectedError, TransportError
from .joints import Joint, JointKind, JointRegistry, joints_from_model
from .servo_bus import SyncEntry
from .sim_bus import SimulatedServoTransport

logger = logging.getLogger(__name__)


class BambotFollower(Robot):
    """
    Bambot follower arm.

    Features:
    - Revolute joints as "<joint>.pos" in degrees
    - Continuous joints (wheels) as "<joint>.vel" in integrator speed units
    - Mock mode on a simulated servo bus for testing
    """

    config_class = BambotFollowerConfig
    name = "bambot_follower"

    def __init__(self, config: BambotFollowerConfig):
        super().__init__(config)
        self.config = config
        self.profile = get_profile(config.profile)
        self.registry = JointRegistry(joints_from_model(self.profile.model_joints, self.profile.joint_name_id_map))
        self.link: Optional[RobotLink] = None
        self._last_speeds: Dict[str, float] = {}
        self._read_failures = 0

    def _feature_key(self, joint: Joint) -> str:
        return f"{joint.name}.vel" if joint.is_continuous else f"{joint.name}.pos"

    @property
    def _motors_ft(self) -> Dict[str, type]:
        return {self._feature_key(joint): float for joint in self.registry.all()}

    @cached_property
    def observation_features(self) -> Dict[str, type]:
        return self._motors_ft

    @cached_property
    def action_features(self) -> Dict[str, type]:
        return self._motors_ft

    @property
    def is_connected(self) -> bool:
        return self.link is not None and self.link.is_connected

    @property
    def is_calibrated(self) -> bool:
        return all(joint.name in self.calibration for joint in self.registry.all())

    def connect(self, calibrate: bool = True) -> None:
        """
        Connect to the follower bus
        connect -> calibrate -> configure
        """
        if self.is_connected:
            raise DeviceAlreadyConnectedError(f"{self} already connected")

        logger.info(f"🔌 Connecting to {self}...")
        if self.config.mock:
            logger.info("🎭 Using mock robot mode")
            transport = SimulatedServoTransport(self.registry.servo_ids(), port="mock")
        else:
            transport = pyserial_transport(self.config.port, self.config.bus)
        link = RobotLink(FOLLOWER, transport, self.config.bus)
        link.connect()
        self.link = link

        if calibrate and not self.is_calibrated:
            logger.info("No calibration file found for this follower")
            self.calibrate()
        self.configure()
        logger.info(f"✅ {self} connected")

    def calibrate(self) -> None:
        """
        Record the usable step range of every joint.

        Feetech STS servos report absolute positions, so there is no homing
        pass; revolute joints use their model limits and wheels the full turn.
        """
        logger.info(f"🎯 Calibrating {self}...")
        family = self.link.family if self.link is not None else None
        calibration = {}
        for joint in self.registry.all():
            range_min, range_max = 0, 4095
            if family is not None and not joint.is_continuous:
                if joint.limit.lower is not None:
                    range_min = family.degrees_to_steps(joint.limit.lower)
                if joint.limit.upper is not None:
                    range_max = family.degrees_to_steps(joint.limit.upper)
            calibration[joint.name] = MotorCalibration(
                id=joint.servo_id,
                drive_mode=0,
                homing_offset=0,
                range_min=range_min,
                range_max=range_max,
            )
        self.calibration = calibration
        self._save_calibration()
        logger.info(f"✅ Calibration saved to {self.calibration_fpath}")

    def configure(self) -> None:
        """Enable torque on every joint."""
        bus = self.link.bus
        for joint in self.registry.all():
            result = bus.write_torque_enable(joint.servo_id, True)
            if not result.ok:
                logger.warning(f"⚠️  Torque enable failed on {joint.name}: {result.status.value}")

    def get_observation(self) -> Dict[str, Any]:
        if not self.is_connected:
            raise DeviceNotConnectedError(f"{self} is not connected.")

        start = time.perf_counter()
        observation = {}
        bus = self.link.bus
        try:
            for joint in self.registry.all():
                key = self._feature_key(joint)
                if joint.is_continuous:
                    # Wheels have no speed feedback; report the last command
                    observation[key] = self._last_speeds.get(key, 0.0)
                    continue
                result = bus.read_position(joint.servo_id)
                if result.ok:
                    observation[key] = result.value
                else:
                    self._read_failures += 1
                    if self._read_failures <= 3:
                        logger.warning(f"Read of {joint.name} failed: {result.status.value}")
        except TransportError as e:
            self.link.fail(e)
            raise DeviceNotConnectedError(f"{self} lost its bus: {e}") from e

        dt_ms = (time.perf_counter() - start) * 1e3
        logger.debug(f"{self} read state: {dt_ms:.1f}ms")
        return observation

    def send_action(self, action: Dict[str, Any]) -> Dict[str, Any]:
        """
        Command the follower. Positions are clamped to the joint limits and,
        with max_relative_target set, to a step from the present position.

        Returns the action actually sent.
        """
        if not self.is_connected:
            raise DeviceNotConnectedError(f"{self} is not connected.")

        goal_pos: Dict[str, float] = {}
        speeds: Dict[str, float] = {}
        joints: Dict[str, Joint] = {}
        for joint in self.registry.all():
            key = self._feature_key(joint)
            if key not in action:
                continue
            joints[key] = joint
            if joint.kind is JointKind.CONTINUOUS:
                speeds[key] = float(action[key])
            else:
                goal_pos[key] = joint.limit.clamp(float(action[key]))

        if self.config.max_relative_target is not None and goal_pos:
            present = self.get_observation()
            goal_present_pos = {
                key: (goal, present[key]) for key, goal in goal_pos.items() if key in present
            }
            goal_pos.update(ensure_safe_goal_position(goal_present_pos, self.config.max_relative_target))

        entries = [
            SyncEntry(joints[key].servo_id, "position", goal, self.config.bus.position_speed_hint)
            for key, goal in goal_pos.items()
        ]
        entries += [
            SyncEntry(joints[key].servo_id, "speed", round(speed * self.config.bus.speed_raw_per_unit))
            for key, speed in speeds.items()
        ]
        if not entries:
            return {}

        try:
            result = self.link.bus.sync_write(entries)
        except TransportError as e:
            self.link.fail(e)
            raise DeviceNotConnectedError(f"{self} lost its bus: {e}") from e

        failed = set(result.failed)
        sent = {
            key: value
            for key, value in {**goal_pos, **speeds}.items()
            if joints[key].servo_id not in failed
        }
        for key in speeds:
            if key in sent:
                self._last_speeds[key] = speeds[key]
        if failed:
            logger.warning(f"⚠️  Sync write {result.status.value} for servos {sorted(failed)}")
        return sent

    def stop_base(self) -> None:
        """Stop every wheel."""
        wheels = {
            self._feature_key(joint): 0.0
            for joint in self.registry.all()
            if joint.is_continuous
        }
        if wheels and self.is_connected:
            logger.info("🛑 Stopping base movement")
            self.send_action(wheels)

    def disconnect(self) -> None:
        if not self.is_connected:
            raise DeviceNotConnectedError(f"{self} is not connected.")

        logger.info(f"🔌 Disconnecting {self}...")
        try:
            self.stop_base()
            if self.config.disable_torque_on_disconnect:
                bus = self.link.bus
                for joint in self.registry.all():
                    bus.write_torque_enable(joint.servo_id, False)
        except (TransportError, DeviceNotConnectedError) as e:
            logger.warning(f"⚠️  Error while releasing {self}: {e}")
        finally:
            if self.link is not None:
                self.link.disconnect()
        logger.info(f"✅ {self} disconnected")
