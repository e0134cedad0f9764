#!/usr/bin/env python3
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
Bambot ZMQ Host - Teleoperation Server
Runs next to the robot: receives key / joint commands from a voice or LLM
layer (or a remote UI) and publishes joint snapshots.

Sockets:
- PULL  port_zmq_cmd           JSON commands {"cmd": ..., "_seq": n, ...}
- PUB   port_zmq_observations  JSON joint snapshots at publish_hz
"""

import argparse
import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, Optional

import zmq

from .config_bambot import BambotHostConfig, get_profile
from .connection import LEADER, RobotConnectionManager, pyserial_transport
from .datasets import JsonDatasetStore
from .errors import TransportError
from .joints import JointKind
from .key_sequence import KeyStep
from .session import TeleopSession
from .settings import JsonFileSettingsStore, control_config_from_settings
from .sim_bus import SimulatedTransportFactory

logger = logging.getLogger(__name__)


def build_session(config: BambotHostConfig) -> TeleopSession:
    profile = get_profile(config.profile)
    control = config.control
    if config.settings_path:
        control = control_config_from_settings(JsonFileSettingsStore(config.settings_path), profile.name, control)
    if config.mock:
        factory = SimulatedTransportFactory(profile.joint_name_id_map.values())
    else:
        factory = pyserial_transport
    return TeleopSession(profile, control, RobotConnectionManager(factory, config.bus))


class BambotHost:
    """
    ZMQ server in front of a `TeleopSession`.

    Timed key presses and replays run as tasks so the command loop keeps
    draining; a new one cancels the one in progress. When no command arrives
    for heartbeat_timeout_s the watchdog releases remote key holds and stops
    the wheels.
    """

    def __init__(self, config: BambotHostConfig, session: Optional[TeleopSession] = None):
        self.config = config
        self.session = session or build_session(config)
        self.store = JsonDatasetStore(config.datasets_dir) if config.datasets_dir else None

        # ZMQ context and sockets
        self.ctx: Optional[zmq.Context] = None
        self.cmd_pull = None
        self.obs_pub = None

        # State tracking
        self.last_cmd_time = time.time()
        self.last_cmd_seq = 0
        self.seq_counter = 0
        self.watchdog_active = False
        self.running = True
        self._command_task: Optional[asyncio.Task] = None
        self._replay_task: Optional[asyncio.Task] = None

    def initialize(self) -> None:
        """Bind sockets and connect the follower"""
        try:
            self.ctx = zmq.Context()

            self.cmd_pull = self.ctx.socket(zmq.PULL)
            self.cmd_pull.setsockopt(zmq.RCVHWM, 10)
            self.cmd_pull.bind(f"tcp://0.0.0.0:{self.config.port_zmq_cmd}")
            logger.info(f"✅ Command socket bound to tcp://0.0.0.0:{self.config.port_zmq_cmd}")

            self.obs_pub = self.ctx.socket(zmq.PUB)
            self.obs_pub.setsockopt(zmq.SNDHWM, 10)
            self.obs_pub.bind(f"tcp://0.0.0.0:{self.config.port_zmq_observations}")
            logger.info(f"✅ Observation socket bound to tcp://0.0.0.0:{self.config.port_zmq_observations}")

            follower_port = self.config.follower_port or ("mock-follower" if self.config.mock else None)
            if follower_port:
                self.session.connect_follower(follower_port)

            logger.info("✅ Bambot ZMQ Host initialized")

        except Exception as e:
            logger.error(f"❌ Initialization failed: {e}")
            self.cleanup()
            raise

    # Commands

    async def _restart(self, attr: str, coro) -> None:
        """Run `coro` as the task stored in `attr`, cancelling the previous one first."""
        previous: Optional[asyncio.Task] = getattr(self, attr)
        if previous is not None and not previous.done():
            if attr == "_command_task":
                self.session.command.cancel()
            else:
                self.session.replayer.cancel()
            await asyncio.gather(previous, return_exceptions=True)
        setattr(self, attr, asyncio.create_task(coro))

    async def finish_tasks(self) -> None:
        """Cancel and await the running command and replay tasks."""
        self.session.command.cancel()
        self.session.replayer.cancel()
        for attr in ("_command_task", "_replay_task"):
            task: Optional[asyncio.Task] = getattr(self, attr)
            setattr(self, attr, None)
            if task is None:
                continue
            task.cancel()
            try:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            except Exception as e:
                logger.warning(f"⚠️  {attr.strip('_').replace('_', ' ')} failed: {e}")

    async def handle_command(self, msg: Dict[str, Any]) -> Dict[str, Any]:
        """Apply one command. Returns {"ok": bool, ...} for logging and tests."""
        cmd = msg.get("cmd")
        session = self.session

        if cmd == "heartbeat":
            pass
        elif cmd == "key_press":
            await self._restart("_command_task", session.key_press(str(msg["key"]), msg.get("duration")))
        elif cmd == "key_sequence":
            steps = [KeyStep.from_dict(step) for step in msg.get("steps", [])]
            if not steps or len(steps) > session.control.max_sequence_steps:
                return {"ok": False, "error": f"key_sequence needs 1..{session.control.max_sequence_steps} steps"}
            await self._restart("_command_task", session.key_sequence(steps))
        elif cmd == "key_down":
            if not session.remote_keys.press(str(msg["key"])):
                return {"ok": False, "error": f"Key {msg['key']!r} is not bound"}
        elif cmd == "key_up":
            session.remote_keys.release(str(msg["key"]))
        elif cmd == "set_joints":
            session.set_joints(msg.get("joints", {}))
        elif cmd == "cancel":
            session.cancel()
        elif cmd == "replay":
            if self.store is None:
                return {"ok": False, "error": "No dataset store configured"}
            try:
                dataset = self.store.load(str(msg["dataset_id"]))
            except KeyError:
                return {"ok": False, "error": f"Unknown dataset {msg['dataset_id']!r}"}
            await self._restart("_replay_task", session.replay(dataset))
        elif cmd == "record_start":
            session.start_recording()
        elif cmd == "record_stop":
            if not session.recorder.recording:
                return {"ok": False, "error": "Not recording"}
            dataset = session.stop_recording(msg.get("name", ""))
            if self.store is not None:
                return {"ok": True, "dataset_id": self.store.save(dataset)}
        else:
            return {"ok": False, "error": f"Unknown command {cmd!r}"}
        return {"ok": True}

    async def _cmd_loop(self) -> None:
        """Drain and apply commands"""
        while self.running:
            try:
                msg = self.cmd_pull.recv_json(zmq.NOBLOCK)
            except zmq.Again:
                await asyncio.sleep(0.01)
                continue
            except ValueError as e:
                logger.warning(f"⚠️  Dropping malformed command: {e}")
                continue

            seq = msg.get("_seq", 0)
            self.last_cmd_time = time.time()
            self.last_cmd_seq = seq
            if self.watchdog_active:
                logger.info("🎮 Command stream resumed")
            self.watchdog_active = False

            try:
                result = await self.handle_command(msg)
            except (KeyError, TypeError, ValueError) as e:
                result = {"ok": False, "error": str(e)}
            if not result["ok"]:
                logger.warning(f"⚠️  Command #{seq} {msg.get('cmd')!r} rejected: {result['error']}")
            elif seq % 100 == 0 and msg.get("cmd") != "heartbeat":
                logger.info(f"📊 Command #{seq}: {msg.get('cmd')}")

    def snapshot_message(self) -> Dict[str, Any]:
        self.seq_counter += 1
        connections = self.session.connections
        return {
            "seq": self.seq_counter,
            "ts": time.time(),
            "type": "joints",
            "joints": self.session.joint_snapshot(),
            "diagnostics": {
                "last_cmd_seq": self.last_cmd_seq,
                "watchdog_active": self.watchdog_active,
                "follower": connections.state("follower").value,
                "leader": connections.state(LEADER).value,
                "sources": {k: v.value for k, v in self.session.arbiter.source_states().items()},
                "recording": self.session.recorder.recording,
                "replaying": self.session.replayer.running,
            },
        }

    def check_watchdog(self, now: Optional[float] = None) -> bool:
        """Release remote holds once the command stream has been quiet too long."""
        now = time.time() if now is None else now
        if now - self.last_cmd_time > self.config.heartbeat_timeout_s and not self.watchdog_active:
            logger.warning(f"⚠️  No command for {self.config.heartbeat_timeout_s}s - activating watchdog")
            self.watchdog_active = True
            self._stop_robot()
        return self.watchdog_active

    def _stop_robot(self) -> None:
        session = self.session
        session.remote_keys.release_all()
        wheels = session.registry.servo_ids(JointKind.CONTINUOUS)
        if wheels:
            session.set_joints({servo_id: 0.0 for servo_id in wheels})
        logger.info("🛑 Remote holds released by watchdog")

    async def _publish_loop(self) -> None:
        """Publish joint snapshots"""
        period = 1.0 / self.config.publish_hz
        while self.running:
            try:
                self.obs_pub.send_json(self.snapshot_message(), zmq.NOBLOCK)
            except zmq.Again:
                pass
            self.check_watchdog()
            await asyncio.sleep(period)

    async def run(self) -> None:
        """Main run loop"""
        logger.info("🚀 Starting Bambot ZMQ Host...")
        if self.config.leader_port:
            try:
                await self.session.connect_leader(self.config.leader_port)
            except TransportError as e:
                logger.warning(f"⚠️  Leader not available: {e}")

        session_task = asyncio.create_task(self.session.run())
        tasks = [asyncio.create_task(self._cmd_loop()), asyncio.create_task(self._publish_loop())]
        try:
            await asyncio.gather(session_task, *tasks)
        finally:
            self.running = False
            self.session.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(session_task, *tasks, return_exceptions=True)
            await self.finish_tasks()
            await self.session.close()

    def cleanup(self) -> None:
        """Close sockets"""
        if self.cmd_pull is not None:
            self.cmd_pull.close()
        if self.obs_pub is not None:
            self.obs_pub.close()
        if self.ctx is not None:
            self.ctx.term()
        self.cmd_pull = self.obs_pub = self.ctx = None
        logger.info("✅ Cleanup complete")


def main():
    parser = argparse.ArgumentParser(description="Bambot ZMQ Host")
    parser.add_argument("--profile", type=str, default="so-arm100", help="Robot profile")
    parser.add_argument("--follower-port", type=str, default=None, help="Follower serial port")
    parser.add_argument("--leader-port", type=str, default=None, help="Leader serial port")
    parser.add_argument("--mock", action="store_true", help="Use simulated servo buses")
    parser.add_argument("--cmd-port", type=int, default=5555, help="Command port")
    parser.add_argument("--obs-port", type=int, default=5556, help="Observation port")
    parser.add_argument("--publish-hz", type=float, default=30.0, help="Publish rate in Hz")
    parser.add_argument("--heartbeat-timeout", type=float, default=1.0, help="Heartbeat timeout in seconds")
    parser.add_argument("--settings", type=str, default=None, help="JSON settings file")
    parser.add_argument("--datasets-dir", type=str, default=None, help="Directory for recorded datasets")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())

    config = BambotHostConfig(
        profile=args.profile,
        follower_port=args.follower_port,
        leader_port=args.leader_port,
        mock=args.mock,
        port_zmq_cmd=args.cmd_port,
        port_zmq_observations=args.obs_port,
        publish_hz=args.publish_hz,
        heartbeat_timeout_s=args.heartbeat_timeout,
        settings_path=args.settings,
        datasets_dir=args.datasets_dir,
    )

    host = BambotHost(config)
    host.initialize()
    try:
        asyncio.run(host.run())
    except KeyboardInterrupt:
        logger.info("🛑 Shutdown requested")
    finally:
        host.cleanup()


if __name__ == "__main__":
    main()
