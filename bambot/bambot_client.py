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

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import zmq

from .config_bambot import BambotClientConfig
from .errors import DeviceAlreadyConnectedError, DeviceNotConnectedError

logger = logging.getLogger(__name__)


class BambotClient:
    """Command-surface client for a running `bambot-host`."""

    def __init__(self, config: Optional[BambotClientConfig] = None):
        self.config = config or BambotClientConfig()
        self.remote_ip = self.config.remote_ip
        self.port_zmq_cmd = self.config.port_zmq_cmd
        self.port_zmq_observations = self.config.port_zmq_observations
        self.polling_timeout_ms = self.config.polling_timeout_ms
        self.connect_timeout_s = self.config.connect_timeout_s

        self.zmq_context = None
        self.zmq_cmd_socket = None
        self.zmq_observation_socket = None
        self.last_snapshot: Dict[str, Any] = {}
        self._seq = 0
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def connect(self) -> None:
        """Establishes ZMQ sockets with the host and waits for its first snapshot"""
        if self._is_connected:
            raise DeviceAlreadyConnectedError(
                "Bambot client is already connected. Do not run `client.connect()` twice."
            )

        self.zmq_context = zmq.Context()
        self.zmq_cmd_socket = self.zmq_context.socket(zmq.PUSH)
        self.zmq_cmd_socket.setsockopt(zmq.LINGER, 0)
        self.zmq_cmd_socket.connect(f"tcp://{self.remote_ip}:{self.port_zmq_cmd}")

        self.zmq_observation_socket = self.zmq_context.socket(zmq.SUB)
        self.zmq_observation_socket.setsockopt(zmq.CONFLATE, 1)
        self.zmq_observation_socket.setsockopt(zmq.SUBSCRIBE, b"")
        self.zmq_observation_socket.connect(f"tcp://{self.remote_ip}:{self.port_zmq_observations}")

        poller = zmq.Poller()
        poller.register(self.zmq_observation_socket, zmq.POLLIN)
        socks = dict(poller.poll(self.connect_timeout_s * 1000))
        if socks.get(self.zmq_observation_socket) != zmq.POLLIN:
            self._close_sockets()
            raise DeviceNotConnectedError("Timeout waiting for Bambot Host to connect expired.")

        self._is_connected = True
        logger.info(f"✅ Connected to bambot host at {self.remote_ip}")

    def _require_connected(self) -> None:
        if not self._is_connected:
            raise DeviceNotConnectedError(
                "Bambot client is not connected. You need to run `client.connect()`."
            )

    def send(self, cmd: str, **fields: Any) -> None:
        self._require_connected()
        self._seq += 1
        self.zmq_cmd_socket.send_string(json.dumps({"cmd": cmd, "_seq": self._seq, **fields}))

    def heartbeat(self) -> None:
        self.send("heartbeat")

    def key_press(self, key: str, duration_ms: Optional[float] = None) -> None:
        fields = {"key": key}
        if duration_ms is not None:
            fields["duration"] = duration_ms
        self.send("key_press", **fields)

    def key_sequence(self, steps: List[Mapping[str, Any]]) -> None:
        """steps: [{"key": "w", "duration": 500, "pauseAfter": 100}, ...]"""
        self.send("key_sequence", steps=[dict(step) for step in steps])

    def key_down(self, key: str) -> None:
        self.send("key_down", key=key)

    def key_up(self, key: str) -> None:
        self.send("key_up", key=key)

    def set_joints(self, joints: Mapping[str, float]) -> None:
        self.send("set_joints", joints=dict(joints))

    def cancel(self) -> None:
        self.send("cancel")

    def replay(self, dataset_id: str) -> None:
        self.send("replay", dataset_id=dataset_id)

    def record_start(self) -> None:
        self.send("record_start")

    def record_stop(self, name: str = "") -> None:
        self.send("record_stop", name=name)

    def latest_snapshot(self) -> Dict[str, Any]:
        """Newest joint snapshot from the host, or the previous one if none arrived in time."""
        self._require_connected()
        poller = zmq.Poller()
        poller.register(self.zmq_observation_socket, zmq.POLLIN)
        try:
            socks = dict(poller.poll(self.polling_timeout_ms))
        except zmq.ZMQError as e:
            logger.error(f"ZMQ polling error: {e}")
            return self.last_snapshot

        if self.zmq_observation_socket not in socks:
            logger.info("No new data available within timeout.")
            return self.last_snapshot

        last_msg = None
        while True:
            try:
                last_msg = self.zmq_observation_socket.recv_string(zmq.NOBLOCK)
            except zmq.Again:
                break
        if last_msg is not None:
            try:
                self.last_snapshot = json.loads(last_msg)
            except json.JSONDecodeError as e:
                logger.error(f"Error decoding JSON snapshot: {e}")
        return self.last_snapshot

    def _close_sockets(self) -> None:
        if self.zmq_observation_socket is not None:
            self.zmq_observation_socket.close()
        if self.zmq_cmd_socket is not None:
            self.zmq_cmd_socket.close()
        if self.zmq_context is not None:
            self.zmq_context.term()
        self.zmq_context = self.zmq_cmd_socket = self.zmq_observation_socket = None

    def disconnect(self) -> None:
        """Cleans ZMQ comms"""
        if not self._is_connected:
            raise DeviceNotConnectedError(
                "Bambot client is not connected. You need to run `client.connect()` before disconnecting."
            )
        self._close_sockets()
        self._is_connected = False
