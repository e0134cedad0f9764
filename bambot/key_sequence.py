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
Timed key presses for the voice / LLM command surface.

The player holds keys through the same bindings and hold rate as the
physical keyboard, so "hold w for 1000 ms" moves a joint exactly as far as
a person holding w for a second would. Every request is bounded: holds to
[min_hold_ms, max_hold_ms], pauses to [0, max_pause_ms] with a floor of
min_step_pause_ms between steps, and at most max_sequence_steps steps.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

from .config_bambot import ControlConfig
from .sources import KeyBinding, KeyboardSource

logger = logging.getLogger(__name__)


@dataclass
class KeyStep:
    key: str
    duration_ms: Optional[float] = None
    pause_after_ms: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KeyStep":
        return cls(
            key=str(data["key"]),
            duration_ms=data.get("duration", data.get("duration_ms")),
            pause_after_ms=data.get("pauseAfter", data.get("pause_after_ms")),
        )


class KeySequencePlayer(KeyboardSource):
    def __init__(
        self,
        bindings: Mapping[str, List[KeyBinding]],
        config: Optional[ControlConfig] = None,
        source_id: str = "command",
    ):
        self.config = config or ControlConfig()
        super().__init__(bindings, hold_rate=self.config.hold_rate_deg_per_ms, source_id=source_id)
        self._running = False
        self._cancelled = False
        self._wake: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    def bounded_hold(self, duration_ms: Optional[float]) -> float:
        cfg = self.config
        if duration_ms is None:
            return cfg.default_hold_ms
        bounded = max(cfg.min_hold_ms, min(cfg.max_hold_ms, float(duration_ms)))
        if bounded != duration_ms:
            logger.warning(f"⚠️  Key hold of {duration_ms}ms bounded to {bounded}ms")
        return bounded

    def bounded_pause(self, pause_ms: Optional[float]) -> float:
        cfg = self.config
        if pause_ms is None:
            pause_ms = cfg.default_pause_ms
        pause = max(0.0, min(cfg.max_pause_ms, float(pause_ms)))
        return max(pause, cfg.min_step_pause_ms)

    async def key_press(self, key: str, duration_ms: Optional[float] = None) -> bool:
        """Hold one key. Returns False if cancelled before the hold completed."""
        return await self._play([KeyStep(key, self.bounded_hold(duration_ms), 0.0)])

    async def key_sequence(self, steps: Sequence[KeyStep]) -> bool:
        """Hold keys one after another. Returns False if cancelled part way."""
        steps = [s if isinstance(s, KeyStep) else KeyStep.from_dict(s) for s in steps]
        if not steps:
            raise ValueError("A key sequence needs at least one step")
        if len(steps) > self.config.max_sequence_steps:
            raise ValueError(
                f"A key sequence has at most {self.config.max_sequence_steps} steps, got {len(steps)}"
            )
        bounded = [
            KeyStep(s.key, self.bounded_hold(s.duration_ms), self.bounded_pause(s.pause_after_ms))
            for s in steps
        ]
        return await self._play(bounded)

    def cancel(self) -> None:
        """Stop the running sequence; the held key is released immediately."""
        self._cancelled = True
        self.release_all()
        if self._wake is not None:
            self._wake.set()

    def stop(self) -> None:
        if self._running:
            self.cancel()
        else:
            super().stop()

    async def _sleep(self, ms: float) -> bool:
        """Sleep for `ms`; returns False if woken early by cancel()."""
        if ms <= 0:
            return not self._cancelled
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=ms / 1000.0)
        except asyncio.TimeoutError:
            return not self._cancelled
        return False

    async def _play(self, steps: List[KeyStep]) -> bool:
        if self._running:
            raise RuntimeError("A key sequence is already running")
        self._running = True
        self._cancelled = False
        self._wake = asyncio.Event()
        try:
            for i, step in enumerate(steps):
                if self._cancelled:
                    return False
                if not self.is_bound(step.key):
                    logger.warning(f"⚠️  Key {step.key!r} is not bound on this robot, skipping")
                    continue

                # Key up, then a short settle before the next hold
                self.release_all()
                if not await self._sleep(self.config.key_settle_ms):
                    return False

                logger.debug(f"Holding {step.key!r} for {step.duration_ms}ms")
                self.press(step.key)
                completed = await self._sleep(step.duration_ms)
                self.release(step.key)
                if not completed:
                    return False

                if i < len(steps) - 1 and step.pause_after_ms:
                    if not await self._sleep(step.pause_after_ms):
                        return False
            return not self._cancelled
        finally:
            self.release_all()
            self._running = False
            self._wake = None
