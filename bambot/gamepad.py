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
Gamepad input.

`GamepadSource` turns a polled `GamepadState` into hold intents: sticks and
triggers drive joints proportionally, buttons tap keys or trigger the
"home" / "reset" actions. `PygameGamepadReader` produces `GamepadState`
from a physical Xbox-style controller.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .arbiter import InputSource
from .config_bambot import GamepadConfig
from .intents import IntentEvent, IntentKind
from .sources import KeyBinding, normalize_key

logger = logging.getLogger(__name__)

# Xbox layout as reported by pygame
AX_LX = 0
AX_LY = 1
AX_RX = 3
AX_RY = 4
AX_LT = 2
AX_RT = 5

BTN_A = 0
BTN_B = 1
BTN_X = 2
BTN_Y = 3
BTN_LB = 4
BTN_RB = 5


@dataclass
class GamepadState:
    axes: Dict[str, float] = field(default_factory=dict)
    buttons: Dict[str, bool] = field(default_factory=dict)


def apply_dead_zone(value: float, dead_zone: float) -> float:
    """Zero inside the dead zone, rescaled to the full range outside it."""
    magnitude = abs(value)
    if magnitude < dead_zone or dead_zone >= 1.0:
        return 0.0
    return math.copysign(min(1.0, (magnitude - dead_zone) / (1.0 - dead_zone)), value)


def trigger_to_01(raw: float) -> float:
    if raw < -0.05:
        return (raw + 1.0) * 0.5
    return max(0.0, min(1.0, raw))


class GamepadSource(InputSource):
    def __init__(
        self,
        bindings: Mapping[str, List[KeyBinding]],
        config: Optional[GamepadConfig] = None,
        hold_rate: float = 0.05,
        source_id: str = "gamepad",
    ):
        super().__init__(source_id)
        self.config = config or GamepadConfig()
        self.bindings = dict(bindings)
        self.hold_rate = hold_rate
        self.available = False
        self._axis_holds: Dict[int, float] = {}
        self._taps: Dict[str, float] = {}
        self._home_pending = False
        self._previous_buttons: Dict[str, bool] = {}

    def speed_modifier(self, state: GamepadState) -> float:
        modifiers = self.config.speed_modifiers
        if state.buttons.get(self.config.slow_button):
            return modifiers.get("slow", 1.0)
        if state.buttons.get(self.config.fast_button):
            return modifiers.get("fast", 1.0)
        return modifiers.get("normal", 1.0)

    def update(self, state: Optional[GamepadState], now: Optional[float] = None) -> None:
        """Feed the latest controller state; None means the controller is gone."""
        now = time.monotonic() if now is None else now
        if state is None:
            if self.available:
                logger.info("🎮 Gamepad disconnected")
            self.available = False
            self.stop()
            return
        if not self.available:
            logger.info("🎮 Gamepad connected")
        self.available = True

        cfg = self.config
        modifier = self.speed_modifier(state)
        holds: Dict[int, float] = {}
        for binding in cfg.axes:
            raw = state.axes.get(binding.axis, 0.0)
            if binding.axis.endswith("trigger") and raw <= cfg.trigger_threshold:
                continue
            value = apply_dead_zone(raw * binding.direction, cfg.dead_zone)
            if value == 0.0:
                continue
            adjusted = value * cfg.sensitivity * modifier
            fraction = max(cfg.min_speed_fraction, min(cfg.max_speed_fraction, abs(adjusted)))
            holds[binding.servo_id] = holds.get(binding.servo_id, 0.0) + math.copysign(
                fraction * self.hold_rate, adjusted
            )
        self._axis_holds = holds

        for button, action in cfg.buttons.items():
            pressed = bool(state.buttons.get(button))
            was_pressed = self._previous_buttons.get(button, False)
            if pressed and not was_pressed:
                self._on_button(action, now)
        self._previous_buttons = {b: bool(v) for b, v in state.buttons.items()}

        self._taps = {key: until for key, until in self._taps.items() if until > now}
        self._update_claims()

    def _on_button(self, action: str, now: float) -> None:
        if action == "home":
            self._home_pending = True
        elif action == "reset":
            self._taps.clear()
            self._axis_holds = {}
            self._home_pending = False
        else:
            key = normalize_key(action)
            if key in self.bindings:
                self._taps[key] = now + self.config.button_tap_ms / 1000.0

    def _update_claims(self) -> None:
        claims = set(self._axis_holds)
        for key in self._taps:
            claims.update(b.servo_id for b in self.bindings[key])
        if self._home_pending:
            claims.update(self.config.home_joints)
        self._claims = claims

    def stop(self) -> None:
        super().stop()
        self._axis_holds = {}
        self._taps.clear()
        self._home_pending = False

    def poll(self, now: float) -> List[IntentEvent]:
        if not self.available:
            return []
        events = [
            self._event(servo_id, IntentKind.HOLD, magnitude, now)
            for servo_id, magnitude in self._axis_holds.items()
        ]
        expired = [key for key, until in self._taps.items() if until <= now]
        for key in expired:
            del self._taps[key]
        for key in self._taps:
            for binding in self.bindings[key]:
                events.append(
                    self._event(binding.servo_id, IntentKind.HOLD, binding.direction * self.hold_rate, now, binding.movement)
                )
        if self._home_pending:
            self._home_pending = False
            for servo_id in self.config.home_joints:
                events.append(self._event(servo_id, IntentKind.ABSOLUTE_ANGLE, self.config.home_degrees, now))
        self._update_claims()
        return events


class PygameGamepadReader:
    """Reads the first connected joystick through pygame."""

    def __init__(self, index: int = 0):
        import pygame

        self._pygame = pygame
        self.index = index
        self._js = None
        pygame.init()
        pygame.joystick.init()
        self._open()

    def _open(self) -> None:
        pg = self._pygame
        if pg.joystick.get_count() > self.index:
            self._js = pg.joystick.Joystick(self.index)
            self._js.init()
            logger.info(f"🎮 Using gamepad: {self._js.get_name()}")
        else:
            self._js = None

    def _axis(self, i: int) -> float:
        return self._js.get_axis(i) if self._js.get_numaxes() > i else 0.0

    def _button(self, i: int) -> bool:
        return bool(self._js.get_button(i)) if self._js.get_numbuttons() > i else False

    def read(self) -> Optional[GamepadState]:
        """Current state, or None when no controller is attached."""
        pg = self._pygame
        pg.event.pump()
        if self._js is None or pg.joystick.get_count() <= self.index:
            self._open()
            if self._js is None:
                return None

        hat_x, hat_y = self._js.get_hat(0) if self._js.get_numhats() > 0 else (0, 0)
        return GamepadState(
            axes={
                "left_x": self._axis(AX_LX),
                # Y is positive when pushed down; the axis bindings invert it
                "left_y": self._axis(AX_LY),
                "right_x": self._axis(AX_RX),
                "right_y": self._axis(AX_RY),
                "left_trigger": trigger_to_01(self._axis(AX_LT)),
                "right_trigger": trigger_to_01(self._axis(AX_RT)),
            },
            buttons={
                "a": self._button(BTN_A),
                "b": self._button(BTN_B),
                "x": self._button(BTN_X),
                "y": self._button(BTN_Y),
                "lb": self._button(BTN_LB),
                "rb": self._button(BTN_RB),
                "dpad_up": hat_y > 0,
                "dpad_down": hat_y < 0,
                "dpad_left": hat_x < 0,
                "dpad_right": hat_x > 0,
            },
        )

    def close(self) -> None:
        self._pygame.joystick.quit()
