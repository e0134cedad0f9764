"""Tests for keyboard bindings, set-point sources, gamepad input and the timed key player."""

import asyncio

import pytest

from bambot.base_kinematics import body_to_wheel_degps, wheel_weights
from bambot.config_bambot import (
    WASD_LAYOUT,
    ControlConfig,
    GamepadConfig,
    bambot_b0_base_profile,
    bambot_b0_profile,
    so_arm100_profile,
)
from bambot.gamepad import GamepadSource, GamepadState, apply_dead_zone, trigger_to_01
from bambot.intents import IntentKind
from bambot.key_sequence import KeySequencePlayer, KeyStep
from bambot.sources import KeyboardSource, LeaderMirrorSource, TargetSource, key_bindings_for, layout_bindings


class TestKeyBindings:
    def test_pairs_decrease_then_increase(self):
        bindings = key_bindings_for(so_arm100_profile())
        assert [(b.servo_id, b.direction) for b in bindings["q"]] == [(1, 1.0)]
        assert [(b.servo_id, b.direction) for b in bindings["1"]] == [(1, -1.0)]

    def test_compound_keys_carry_movement(self):
        bindings = key_bindings_for(so_arm100_profile())
        (binding,) = bindings["8"]
        assert binding.servo_id == 2
        assert binding.direction == -1.0
        assert binding.movement == "Jaw down & up"

    def test_wheel_keys(self):
        bindings = key_bindings_for(bambot_b0_profile())
        forward = {b.servo_id: b.direction for b in bindings["ArrowUp"]}
        assert forward == {13: pytest.approx(-1.0), 15: pytest.approx(1.0)}
        turn = {b.servo_id: b.direction for b in bindings["ArrowLeft"]}
        assert turn == {13: pytest.approx(1.0), 14: pytest.approx(1.0), 15: pytest.approx(1.0)}

    def test_wasd_layout(self):
        bindings = layout_bindings(WASD_LAYOUT, so_arm100_profile())
        assert len(bindings) == 12
        assert [(b.servo_id, b.direction) for b in bindings["w"]] == [(2, 1.0)]
        assert [(b.servo_id, b.direction) for b in bindings["q"]] == [(1, -1.0)]
        assert [(b.servo_id, b.direction) for b in bindings["4"]] == [(6, -1.0)]
        assert WASD_LAYOUT.hold_rate_deg_per_ms * 16 == pytest.approx(0.2)

    def test_layout_skips_missing_joints(self):
        assert layout_bindings(WASD_LAYOUT, bambot_b0_base_profile()) == {}


class TestBaseKinematics:
    def test_pure_rotation_spins_all_wheels_equally(self):
        speeds = body_to_wheel_degps(0.0, 0.0, 90.0)
        assert speeds[0] == pytest.approx(speeds[1])
        assert speeds[1] == pytest.approx(speeds[2])

    def test_zero_direction(self):
        assert wheel_weights((0.0, 0.0, 0.0), ("a", "b", "c")) == {"a": 0.0, "b": 0.0, "c": 0.0}


class TestKeyboardSource:
    def test_press_unbound_key(self):
        source = KeyboardSource(key_bindings_for(so_arm100_profile()))
        assert not source.press("F12")
        assert source.claims == frozenset()

    def test_poll_emits_holds_while_pressed(self):
        source = KeyboardSource(key_bindings_for(so_arm100_profile()), hold_rate=0.05)
        assert source.press("W")
        events = source.poll(1.0)
        assert [(e.servo_id, e.kind, e.value) for e in events] == [(2, IntentKind.HOLD, 0.05)]
        assert source.claims == frozenset({2})

        source.release("w")
        assert source.poll(2.0) == []
        assert source.claims == frozenset()


class TestTargetSource:
    def test_each_target_is_emitted_once(self):
        source = TargetSource("remote")
        source.set_angles({1: 90.0})
        source.set_speeds({13: 5.0})
        events = source.poll(0.0)
        assert {(e.servo_id, e.kind) for e in events} == {
            (1, IntentKind.ABSOLUTE_ANGLE),
            (13, IntentKind.SPEED),
        }
        assert source.poll(0.0) == []
        assert source.claims == frozenset({1, 13})

    def test_release_subset(self):
        source = TargetSource("remote")
        source.set_angles({1: 90.0, 2: 45.0})
        source.release([1])
        assert [e.servo_id for e in source.poll(0.0)] == [2]
        assert source.claims == frozenset({2})

    def test_leader_mirror_ignores_other_joints(self):
        source = LeaderMirrorSource(revolute_ids=[1, 2])
        source.update({1: 10.0, 13: 5.0})
        assert [(e.servo_id, e.value) for e in source.poll(0.0)] == [(1, 10.0)]


class TestGamepad:
    def make_source(self):
        return GamepadSource(key_bindings_for(so_arm100_profile()), GamepadConfig(), hold_rate=0.05)

    def test_dead_zone(self):
        assert apply_dead_zone(0.1, 0.15) == 0.0
        assert apply_dead_zone(1.0, 0.15) == 1.0
        assert apply_dead_zone(-0.575, 0.15) == pytest.approx(-0.5)

    def test_trigger_range(self):
        assert trigger_to_01(-1.0) == 0.0
        assert trigger_to_01(1.0) == 1.0
        assert trigger_to_01(0.5) == 0.5

    def test_stick_holds_joint(self):
        source = self.make_source()
        source.update(GamepadState(axes={"left_x": 1.0}), now=0.0)
        events = source.poll(0.0)
        assert [(e.servo_id, e.value) for e in events] == [(1, pytest.approx(0.05))]

    def test_inverted_axis_and_slow_modifier(self):
        source = self.make_source()
        source.update(GamepadState(axes={"left_y": 1.0}, buttons={"lb": True}), now=0.0)
        (event,) = source.poll(0.0)
        assert event.servo_id == 2
        assert event.value == pytest.approx(-0.3 * 0.05)

    def test_small_deflection_is_floored(self):
        source = self.make_source()
        source.update(GamepadState(axes={"left_x": 0.2}), now=0.0)
        (event,) = source.poll(0.0)
        assert event.value == pytest.approx(0.1 * 0.05)

    def test_stick_in_dead_zone_is_idle(self):
        source = self.make_source()
        source.update(GamepadState(axes={"left_x": 0.1}), now=0.0)
        assert source.poll(0.0) == []
        assert source.claims == frozenset()

    def test_button_taps_key(self):
        source = self.make_source()
        source.update(GamepadState(buttons={"a": True}), now=0.0)
        events = source.poll(0.1)
        assert [(e.servo_id, e.value) for e in events] == [(6, pytest.approx(-0.05))]

        # Held button does not retrigger; the tap expires
        source.update(GamepadState(buttons={"a": True}), now=0.3)
        assert source.poll(0.3) == []

    def test_home_button(self):
        source = self.make_source()
        source.update(GamepadState(buttons={"dpad_up": True}), now=0.0)
        events = source.poll(0.0)
        assert {e.servo_id for e in events} == {1, 2, 3, 4, 5, 6}
        assert all(e.kind is IntentKind.ABSOLUTE_ANGLE and e.value == 180.0 for e in events)
        assert source.poll(0.1) == []

    def test_disconnect_releases_everything(self):
        source = self.make_source()
        source.update(GamepadState(axes={"left_x": 1.0}), now=0.0)
        source.update(None, now=0.1)
        assert not source.available
        assert source.claims == frozenset()
        assert source.poll(0.1) == []


class TestKeySequencePlayer:
    def make_player(self):
        return KeySequencePlayer(key_bindings_for(so_arm100_profile()), ControlConfig())

    def test_bounds(self):
        player = self.make_player()
        assert player.bounded_hold(None) == 1000.0
        assert player.bounded_hold(10) == 100.0
        assert player.bounded_hold(99999) == 5000.0
        assert player.bounded_pause(0) == 50.0
        assert player.bounded_pause(99999) == 5000.0

    def test_key_press_holds_then_releases(self):
        player = self.make_player()

        async def scenario():
            task = asyncio.create_task(player.key_press("w", 150))
            await asyncio.sleep(0.06)
            assert player.pressed == {"w"}
            assert player.running
            return await task

        assert asyncio.run(scenario()) is True
        assert player.pressed == set()
        assert not player.running

    def test_cancel_releases_immediately(self):
        player = self.make_player()

        async def scenario():
            task = asyncio.create_task(player.key_press("w", 2000))
            await asyncio.sleep(0.05)
            player.cancel()
            assert player.pressed == set()
            return await asyncio.wait_for(task, timeout=1.0)

        assert asyncio.run(scenario()) is False

    def test_concurrent_runs_are_refused(self):
        player = self.make_player()

        async def scenario():
            task = asyncio.create_task(player.key_press("w", 500))
            await asyncio.sleep(0)
            with pytest.raises(RuntimeError):
                await player.key_press("q", 100)
            player.cancel()
            await task

        asyncio.run(scenario())

    def test_sequence_validation(self):
        player = self.make_player()
        with pytest.raises(ValueError):
            asyncio.run(player.key_sequence([]))
        with pytest.raises(ValueError):
            asyncio.run(player.key_sequence([KeyStep("w", 100)] * 11))

    def test_sequence_runs_steps_in_order(self):
        player = self.make_player()
        seen = []

        async def scenario():
            task = asyncio.create_task(
                player.key_sequence(
                    [
                        {"key": "w", "duration": 100, "pauseAfter": 50},
                        {"key": "unbound", "duration": 100},
                        {"key": "q", "duration": 100},
                    ]
                )
            )
            while not task.done():
                if player.pressed and (not seen or seen[-1] != player.pressed):
                    seen.append(player.pressed)
                await asyncio.sleep(0.01)
            return task.result()

        assert asyncio.run(scenario()) is True
        assert seen == [{"w"}, {"q"}]

    def test_key_step_from_dict(self):
        step = KeyStep.from_dict({"key": "w", "duration": 300, "pauseAfter": 20})
        assert step == KeyStep("w", 300, 20)
