#!/usr/bin/env python
"""
Bambot Robot Module
Joint-command arbitration and Feetech servo-bus control for bambot arms,
with a LeRobot-compatible follower
"""

from .arbiter import InputArbiter, InputSource, SourceState
from .bambot_follower import BambotFollower
from .compound import CompoundMotionResolver
from .config_bambot import (
    BambotClientConfig,
    BambotFollowerConfig,
    BambotHostConfig,
    ControlConfig,
    RobotProfile,
    get_profile,
)
from .connection import ConnectionState, RobotConnectionManager
from .integrator import ContinuousJointIntegrator, JointState
from .intents import IntentEvent, IntentKind
from .joints import Joint, JointKind, JointLimit, JointRegistry
from .servo_bus import BusStatus, ServoBusClient, ServoBusFrame
from .session import TeleopSession

__all__ = [
    "BambotFollower",
    "BambotFollowerConfig",
    "BambotHostConfig",
    "BambotClientConfig",
    "BusStatus",
    "CompoundMotionResolver",
    "ConnectionState",
    "ContinuousJointIntegrator",
    "ControlConfig",
    "InputArbiter",
    "InputSource",
    "IntentEvent",
    "IntentKind",
    "Joint",
    "JointKind",
    "JointLimit",
    "JointRegistry",
    "JointState",
    "RobotConnectionManager",
    "RobotProfile",
    "ServoBusClient",
    "ServoBusFrame",
    "SourceState",
    "TeleopSession",
    "get_profile",
]
