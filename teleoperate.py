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
Local teleoperation: keyboard (pynput) and gamepad (pygame) driving a
follower arm, optionally mirroring a leader arm.

    bambot-teleoperate --profile so-arm100 --follower-port /dev/ttyACM0
    bambot-teleoperate --mock --gamepad
"""

import argparse
import asyncio
import logging
from typing import Optional

from bambot.config_bambot import ControlConfig, GamepadConfig, ServoBusConfig, get_profile
from bambot.connection import RobotConnectionManager, pyserial_transport
from bambot.errors import TransportError
from bambot.session import TeleopSession
from bambot.settings import JsonFileSettingsStore, control_config_from_settings
from bambot.sim_bus import SimulatedTransportFactory

logger = logging.getLogger(__name__)

# pynput special keys -> key names used by the robot profiles
SPECIAL_KEYS = {
    "up": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
}


def key_name(key) -> Optional[str]:
    """Name of a pynput key as the profiles spell it, or None if unmapped."""
    char = getattr(key, "char", None)
    if char:
        return char.lower()
    return SPECIAL_KEYS.get(getattr(key, "name", None))


def is_quit_key(key) -> bool:
    return getattr(key, "name", None) == "esc"


def start_keyboard(session: TeleopSession, loop: asyncio.AbstractEventLoop):
    """Forward key edges from the pynput listener thread into the session's loop."""
    from pynput.keyboard import Listener

    def on_press(key):
        if is_quit_key(key):
            loop.call_soon_threadsafe(session.stop)
            return
        name = key_name(key)
        if name is not None:
            loop.call_soon_threadsafe(session.keyboard.press, name)

    def on_release(key):
        name = key_name(key)
        if name is not None:
            loop.call_soon_threadsafe(session.keyboard.release, name)

    listener = Listener(on_press=on_press, on_release=on_release)
    listener.start()
    logger.info("⌨️  Keyboard control active (ESC to quit)")
    return listener


async def gamepad_loop(session: TeleopSession, interval_ms: float) -> None:
    from bambot.gamepad import PygameGamepadReader

    reader = PygameGamepadReader()
    try:
        while True:
            session.gamepad.update(reader.read())
            await asyncio.sleep(interval_ms / 1000.0)
    finally:
        reader.close()


async def teleoperate(args: argparse.Namespace) -> None:
    profile = get_profile(args.profile)
    control = ControlConfig()
    if args.settings:
        control = control_config_from_settings(JsonFileSettingsStore(args.settings), profile.name, control)
    if args.key_layout:
        control = control.merged({"key_layout": args.key_layout})
    if args.mock:
        factory = SimulatedTransportFactory(profile.joint_name_id_map.values())
    else:
        factory = pyserial_transport
    gamepad_config = GamepadConfig()
    session = TeleopSession(
        profile,
        control,
        RobotConnectionManager(factory, ServoBusConfig()),
        gamepad_config=gamepad_config,
    )

    follower_port = args.follower_port or ("mock-follower" if args.mock else None)
    if follower_port:
        session.connect_follower(follower_port)
    else:
        logger.warning("⚠️  No follower port given, running without hardware")
    if args.leader_port:
        try:
            await session.connect_leader(args.leader_port)
        except TransportError as e:
            logger.warning(f"⚠️  Leader not available: {e}")

    loop = asyncio.get_running_loop()
    listener = start_keyboard(session, loop) if not args.no_keyboard else None
    gamepad_task = (
        asyncio.create_task(gamepad_loop(session, gamepad_config.update_rate_ms)) if args.gamepad else None
    )
    try:
        await session.run()
    finally:
        if listener is not None:
            listener.stop()
        if gamepad_task is not None:
            gamepad_task.cancel()
            await asyncio.gather(gamepad_task, return_exceptions=True)
        await session.close()


def main():
    parser = argparse.ArgumentParser(description="Bambot local teleoperation")
    parser.add_argument("--profile", type=str, default="so-arm100", help="Robot profile")
    parser.add_argument("--follower-port", type=str, default=None, help="Follower serial port")
    parser.add_argument("--leader-port", type=str, default=None, help="Leader serial port")
    parser.add_argument("--mock", action="store_true", help="Use a simulated servo bus")
    parser.add_argument("--gamepad", action="store_true", help="Read an Xbox-style gamepad")
    parser.add_argument("--no-keyboard", action="store_true", help="Disable keyboard control")
    parser.add_argument("--key-layout", type=str, default=None, help="Keyboard layout: profile or wasd")
    parser.add_argument("--settings", type=str, default=None, help="JSON settings file")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())
    try:
        asyncio.run(teleoperate(args))
    except KeyboardInterrupt:
        logger.info("🛑 Shutdown requested")


if __name__ == "__main__":
    main()
