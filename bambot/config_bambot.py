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

from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from lerobot.robots.config import RobotConfig

from .errors import ConfigurationError

FormulaSpec = Union[str, float, Callable[..., float]]


@dataclass
class CompoundDependentConfig:
    joint: int
    # Expression over primary, dependent and deltaPrimary giving this joint's delta
    formula: FormulaSpec


@dataclass
class CompoundMovementConfig:
    name: str
    keys: List[str]
    primary_joint: int
    dependents: List[CompoundDependentConfig] = field(default_factory=list)
    # Expression over the primary angle giving the direction sign (+1 / -1 / 0)
    primary_formula: Optional[FormulaSpec] = None


@dataclass
class ModelJoint:
    """One joint as reported by the robot model (URDF) loader."""

    name: str
    kinematic_type: str  # "revolute" or "continuous"
    lower_limit: Optional[float] = None
    upper_limit: Optional[float] = None


@dataclass
class RobotProfile:
    """
    Per-robot control profile.

    keyboard_control_map maps a servo id to [decrease_key, increase_key].
    wheel_control_map maps a key to a body velocity direction (x, y, theta)
    for robots with an omnidirectional wheel base.
    """

    name: str
    joint_name_id_map: Dict[str, int]
    model_joints: List[ModelJoint]
    initial_joint_angles: Dict[str, float] = field(default_factory=dict)
    keyboard_control_map: Dict[int, List[str]] = field(default_factory=dict)
    compound_movements: List[CompoundMovementConfig] = field(default_factory=list)
    wheel_control_map: Dict[str, Tuple[float, float, float]] = field(default_factory=dict)
    wheel_names: Tuple[str, str, str] = ("left_wheel", "back_wheel", "right_wheel")

    def initial_angles_by_id(self) -> Dict[int, float]:
        return {
            self.joint_name_id_map[name]: degrees
            for name, degrees in self.initial_joint_angles.items()
            if name in self.joint_name_id_map
        }


@dataclass
class ControlConfig:
    """Arbitration, integration and command-surface tuning."""

    # Keyboard hold rate: about 0.15 degrees every 3 ms
    hold_rate_deg_per_ms: float = 0.05
    sensitivity: float = 1.0
    tick_hz: float = 60.0
    bus_hz: float = 20.0
    leader_poll_ms: float = 50.0

    # Continuous joints: angle += speed * elapsed_ms / scale_factor
    scale_factor: float = 500.0
    max_speed: Optional[float] = 100.0
    # Speed given to a continuous joint per unit of hold magnitude (deg/ms)
    continuous_hold_gain: float = 1000.0
    # "last": last registered source wins a joint; "sum": holds add up
    hold_policy: str = "last"
    # "profile" or a name from KEY_LAYOUTS; applies to the local keyboard only
    key_layout: str = "profile"

    # Command surface (voice / LLM key presses)
    min_hold_ms: float = 100.0
    max_hold_ms: float = 5000.0
    default_hold_ms: float = 1000.0
    default_pause_ms: float = 100.0
    min_step_pause_ms: float = 50.0
    max_pause_ms: float = 5000.0
    max_sequence_steps: int = 10
    key_settle_ms: float = 10.0

    recording_interval_ms: float = 20.0

    def __post_init__(self):
        if self.hold_policy not in ("last", "sum"):
            raise ConfigurationError(f"Unknown hold policy {self.hold_policy!r}")
        if self.key_layout != "profile" and self.key_layout not in KEY_LAYOUTS:
            raise ConfigurationError(f"Unknown key layout {self.key_layout!r}")
        if self.scale_factor <= 0:
            raise ConfigurationError("scale_factor must be positive")
        if self.min_hold_ms > self.max_hold_ms:
            raise ConfigurationError("min_hold_ms must not exceed max_hold_ms")

    def merged(self, overrides: Dict[str, Any]) -> "ControlConfig":
        """Copy with known keys replaced; unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if k in known})
        return ControlConfig(**values)


@dataclass
class GamepadAxisBinding:
    axis: str
    servo_id: int
    direction: float = 1.0


def default_gamepad_axes() -> List[GamepadAxisBinding]:
    return [
        GamepadAxisBinding("left_x", 1, 1.0),
        GamepadAxisBinding("left_y", 2, -1.0),
        GamepadAxisBinding("right_x", 5, 1.0),
        GamepadAxisBinding("right_y", 4, -1.0),
        GamepadAxisBinding("left_trigger", 3, -1.0),
        GamepadAxisBinding("right_trigger", 3, 1.0),
    ]


@dataclass
class GamepadConfig:
    sensitivity: float = 1.0
    dead_zone: float = 0.15
    update_rate_ms: float = 50.0
    trigger_threshold: float = 0.1
    # Gamepad speed is a fraction of the keyboard hold rate, floored and capped
    min_speed_fraction: float = 0.1
    max_speed_fraction: float = 1.0
    speed_modifiers: Dict[str, float] = field(
        default_factory=lambda: {"slow": 0.3, "normal": 1.0, "fast": 1.8}
    )
    axes: List[GamepadAxisBinding] = field(default_factory=default_gamepad_axes)
    # Buttons either tap a key or trigger an action ("home", "reset")
    buttons: Dict[str, str] = field(
        default_factory=lambda: {
            "a": "6",
            "b": "y",
            "x": "i",
            "y": "u",
            "dpad_up": "home",
            "dpad_down": "reset",
        }
    )
    slow_button: str = "lb"
    fast_button: str = "rb"
    button_tap_ms: float = 200.0
    home_degrees: float = 180.0
    home_joints: Tuple[int, ...] = (1, 2, 3, 4, 5, 6)


@dataclass
class ServoBusConfig:
    baudrate: int = 1_000_000
    timeout_ms: float = 30.0
    write_timeout_ms: float = 50.0
    # Goal_Speed hint for position writes (0 lets the servo use its maximum)
    position_speed_hint: int = 0
    # Raw Goal_Speed steps per unit of integrator speed
    speed_raw_per_unit: float = 10.0


# Robot profiles

_ARM_JOINTS = ("Rotation", "Pitch", "Elbow", "Wrist_Pitch", "Wrist_Roll", "Jaw")
_WHEELS = ("left_wheel", "back_wheel", "right_wheel")

_ARM_KEYS = {
    1: ["1", "q"],
    2: ["2", "w"],
    3: ["3", "e"],
    4: ["4", "r"],
    5: ["5", "t"],
    6: ["6", "y"],
}

_BASE_KEYS = {
    "ArrowUp": (1.0, 0.0, 0.0),
    "ArrowDown": (-1.0, 0.0, 0.0),
    "ArrowLeft": (0.0, 0.0, 1.0),
    "ArrowRight": (0.0, 0.0, -1.0),
}


@dataclass(frozen=True)
class KeyLayout:
    """Alternate keyboard layout: key -> (joint name, direction), with its own hold rate."""

    name: str
    keys: Dict[str, Tuple[str, float]]
    hold_rate_deg_per_ms: float


# Single-arm layout for WASD players: 0.2 degrees every 16 ms
WASD_LAYOUT = KeyLayout(
    name="wasd",
    keys={
        "w": ("Pitch", 1.0),
        "s": ("Pitch", -1.0),
        "q": ("Rotation", -1.0),
        "d": ("Rotation", 1.0),
        "z": ("Elbow", 1.0),
        "x": ("Elbow", -1.0),
        "c": ("Wrist_Pitch", 1.0),
        "v": ("Wrist_Pitch", -1.0),
        "1": ("Wrist_Roll", 1.0),
        "2": ("Wrist_Roll", -1.0),
        "3": ("Jaw", 1.0),
        "4": ("Jaw", -1.0),
    },
    hold_rate_deg_per_ms=0.2 / 16.0,
)

# "profile" uses the robot profile's own key map
KEY_LAYOUTS: Dict[str, KeyLayout] = {"wasd": WASD_LAYOUT}


def _revolute(name: str) -> ModelJoint:
    # Servo position range 0..4095 maps to 0..360 degrees
    return ModelJoint(name, "revolute", 0.0, 360.0)


def _continuous(name: str) -> ModelJoint:
    return ModelJoint(name, "continuous")


def _so_arm100_compounds() -> List[CompoundMovementConfig]:
    return [
        CompoundMovementConfig(
            name="Jaw down & up",
            keys=["8", "i"],
            primary_joint=2,
            primary_formula="primary < 100 ? 1 : -1",
            dependents=[
                CompoundDependentConfig(3, "primary < 100 ? -1.9 * deltaPrimary : 0.4 * deltaPrimary"),
                CompoundDependentConfig(
                    4, "primary < 100 ? (primary < 10 ? 0 : 0.51 * deltaPrimary) : -0.4 * deltaPrimary"
                ),
            ],
        ),
        CompoundMovementConfig(
            name="Jaw backward & forward",
            keys=["o", "u"],
            primary_joint=2,
            primary_formula="1",
            dependents=[CompoundDependentConfig(3, "-0.9* deltaPrimary")],
        ),
    ]


def so_arm100_profile() -> RobotProfile:
    return RobotProfile(
        name="so-arm100",
        joint_name_id_map={name: i + 1 for i, name in enumerate(_ARM_JOINTS)},
        model_joints=[_revolute(name) for name in _ARM_JOINTS],
        initial_joint_angles={name: 180.0 for name in _ARM_JOINTS},
        keyboard_control_map=dict(_ARM_KEYS),
        compound_movements=_so_arm100_compounds(),
    )


def bambot_b0_profile() -> RobotProfile:
    right = [f"R_{name}" for name in _ARM_JOINTS]
    left = [f"L_{name}" for name in _ARM_JOINTS]
    name_ids = {name: i + 1 for i, name in enumerate(right + left)}
    name_ids.update({name: 13 + i for i, name in enumerate(_WHEELS)})
    keys = dict(_ARM_KEYS)
    keys.update(
        {
            7: ["a", "z"],
            8: ["s", "x"],
            9: ["d", "c"],
            10: ["f", "v"],
            11: ["g", "b"],
            12: ["h", "n"],
        }
    )
    return RobotProfile(
        name="bambot-b0",
        joint_name_id_map=name_ids,
        model_joints=[_revolute(n) for n in right + left] + [_continuous(n) for n in _WHEELS],
        initial_joint_angles={name: 180.0 for name in right + left},
        keyboard_control_map=keys,
        wheel_control_map=dict(_BASE_KEYS),
    )


def bambot_b0_base_profile() -> RobotProfile:
    return RobotProfile(
        name="bambot-b0-base",
        joint_name_id_map={name: 13 + i for i, name in enumerate(_WHEELS)},
        model_joints=[_continuous(n) for n in _WHEELS],
        wheel_control_map=dict(_BASE_KEYS),
    )


def sts3215_profile() -> RobotProfile:
    return RobotProfile(
        name="sts3215",
        joint_name_id_map={"Rotation": 1},
        model_joints=[_revolute("Rotation")],
        initial_joint_angles={"Rotation": 0.0},
        keyboard_control_map={1: ["1", "q"]},
    )


def _unitree_revolute(name: str) -> ModelJoint:
    # Joint angles around the URDF zero pose
    return ModelJoint(name, "revolute", -180.0, 180.0)


def _numbered_keys(pairs: List[Tuple[str, str]]) -> Dict[int, List[str]]:
    return {i + 1: list(pair) for i, pair in enumerate(pairs)}


_GO2_LEGS = ("FL", "FR", "RL", "RR")
_GO2_STANCE = {"hip": 0.0, "thigh": 24.0, "calf": -48.0}


def unitree_go2_profile() -> RobotProfile:
    names = [f"{leg}_{part}_joint" for leg in _GO2_LEGS for part in ("hip", "thigh", "calf")]
    keys = _numbered_keys(
        [("1", "q"), ("2", "w"), ("3", "e"), ("4", "r"), ("5", "t"), ("6", "y"),
         ("a", "z"), ("s", "x"), ("d", "c"), ("f", "v"), ("g", "b"), ("h", "n")]
    )
    return RobotProfile(
        name="unitree-go2",
        joint_name_id_map={name: i + 1 for i, name in enumerate(names)},
        model_joints=[_unitree_revolute(n) for n in names],
        initial_joint_angles={name: _GO2_STANCE[name.split("_")[1]] for name in names},
        keyboard_control_map=keys,
    )


_G1_JOINTS = (
    "left_hip_pitch_joint",
    "left_hip_roll_joint",
    "left_hip_yaw_joint",
    "left_knee_joint",
    "left_ankle_pitch_joint",
    "left_ankle_roll_joint",
    "right_hip_pitch_joint",
    "right_hip_roll_joint",
    "right_hip_yaw_joint",
    "right_knee_joint",
    "right_ankle_pitch_joint",
    "right_ankle_roll_joint",
    "waist_yaw_joint",
    "left_shoulder_pitch_joint",
    "left_shoulder_roll_joint",
    "left_shoulder_yaw_joint",
    "left_elbow_joint",
    "left_wrist_roll_joint",
    "right_shoulder_pitch_joint",
    "right_shoulder_roll_joint",
    "right_shoulder_yaw_joint",
    "right_elbow_joint",
    "right_wrist_roll_joint",
)


def unitree_g1_profile() -> RobotProfile:
    keys = _numbered_keys(
        [("1", "q"), ("2", "w"), ("3", "e"), ("4", "r"), ("5", "t"), ("6", "y"),
         ("7", "u"), ("8", "i"), ("9", "o"), ("0", "p"), ("-", "["), ("=", "]"),
         ("a", "z"), ("s", "x"), ("d", "c"), ("f", "v"), ("g", "b"), ("h", "n"),
         ("j", "m"), ("k", ","), ("l", "."), (";", "/"), (":", "?")]
    )
    return RobotProfile(
        name="unitree-g1",
        joint_name_id_map={name: i + 1 for i, name in enumerate(_G1_JOINTS)},
        model_joints=[_unitree_revolute(n) for n in _G1_JOINTS],
        keyboard_control_map=keys,
    )


ROBOT_PROFILES: Dict[str, Callable[[], RobotProfile]] = {
    "so-arm100": so_arm100_profile,
    "bambot-b0": bambot_b0_profile,
    "bambot-b0-base": bambot_b0_base_profile,
    "sts3215": sts3215_profile,
    "unitree-go2": unitree_go2_profile,
    "unitree-g1": unitree_g1_profile,
}


def get_profile(name: str) -> RobotProfile:
    try:
        return ROBOT_PROFILES[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown robot profile {name!r}, expected one of {sorted(ROBOT_PROFILES)}"
        ) from None


@RobotConfig.register_subclass("bambot_follower")
@dataclass
class BambotFollowerConfig(RobotConfig):
    """
    Configuration for a bambot follower arm driven over a Feetech bus.

    The follower is the torque-enabled arm that receives the arbitrated
    joint targets. Joint names and servo ids come from the robot profile.
    """

    port: str = "/dev/ttyACM0"
    profile: str = "so-arm100"

    disable_torque_on_disconnect: bool = True
    # Reject targets further than this from the present position (degrees)
    max_relative_target: Optional[float] = None

    bus: ServoBusConfig = field(default_factory=ServoBusConfig)

    # Mock mode for testing without hardware
    mock: bool = False


@dataclass
class BambotHostConfig:
    """Configuration for the ZMQ teleoperation host."""

    profile: str = "so-arm100"
    follower_port: Optional[str] = None
    leader_port: Optional[str] = None
    mock: bool = False

    port_zmq_cmd: int = 5555
    port_zmq_observations: int = 5556
    publish_hz: float = 30.0
    heartbeat_timeout_s: float = 1.0

    settings_path: Optional[str] = None
    datasets_dir: Optional[str] = None

    control: ControlConfig = field(default_factory=ControlConfig)
    bus: ServoBusConfig = field(default_factory=ServoBusConfig)


@dataclass
class BambotClientConfig:
    remote_ip: str = "localhost"
    port_zmq_cmd: int = 5555
    port_zmq_observations: int = 5556
    polling_timeout_ms: int = 1000
    connect_timeout_s: int = 5
