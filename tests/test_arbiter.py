"""Tests for input arbitration between keyboard, set-point and failing sources."""

import pytest

from bambot.arbiter import InputArbiter, InputSource, SourceState
from bambot.compound import CompoundMotionResolver, compile_movement
from bambot.config_bambot import so_arm100_profile
from bambot.integrator import ContinuousJointIntegrator
from bambot.intents import IntentEvent, IntentKind
from bambot.joints import Joint, JointKind, JointLimit, JointRegistry, joints_from_model
from bambot.sources import KeyBinding, KeyboardSource, TargetSource, key_bindings_for


def make_arbiter(hold_policy="last"):
    registry = JointRegistry(
        [
            Joint(1, "Rotation", JointKind.REVOLUTE, JointLimit(0.0, 360.0)),
            Joint(2, "Pitch", JointKind.REVOLUTE, JointLimit(0.0, 360.0)),
            Joint(13, "left_wheel", JointKind.CONTINUOUS),
        ]
    )
    integrator = ContinuousJointIntegrator(registry)
    integrator.reset({1: 180.0, 2: 180.0})
    arbiter = InputArbiter(registry, integrator, hold_policy=hold_policy, clock=lambda: 0.0)
    return arbiter, integrator


def keyboard(source_id="keyboard", hold_rate=0.05):
    bindings = {
        "q": [KeyBinding(1, -1.0)],
        "w": [KeyBinding(1, 1.0)],
        "e": [KeyBinding(2, 1.0)],
        "ArrowUp": [KeyBinding(13, 1.0)],
    }
    return KeyboardSource(bindings, hold_rate=hold_rate, source_id=source_id)


class BrokenSource(InputSource):
    def poll(self, now):
        raise OSError("device unplugged")


class GreedySource(InputSource):
    """Emits events without claiming anything."""

    def poll(self, now):
        return [self._event(1, IntentKind.ABSOLUTE_ANGLE, 10.0, now)]


class TestInputArbiter:
    def test_hold_moves_revolute_joint(self):
        arbiter, integrator = make_arbiter()
        keys = arbiter.register(keyboard())
        keys.press("w")
        arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(180.5)

        keys.release("w")
        arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(180.5)

    def test_sensitivity_scales_holds(self):
        arbiter, integrator = make_arbiter()
        keys = arbiter.register(keyboard())
        keys.press("q")
        arbiter.tick(10.0, sensitivity=2.0)
        assert integrator.degrees(1) == pytest.approx(179.0)

    def test_absolute_beats_hold(self):
        arbiter, integrator = make_arbiter()
        keys = arbiter.register(keyboard(hold_rate=0.2))
        keys.press("w")
        arbiter.submit(IntentEvent("voice", 1, IntentKind.ABSOLUTE_ANGLE, 45.0))
        commands = arbiter.tick(10.0)
        assert integrator.degrees(1) == 45.0
        assert [(c.servo_id, c.source_id) for c in commands] == [(1, "voice")]

        # The hold resumes once the explicit set has been applied
        arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(47.0)

    def test_absolute_is_clamped(self):
        arbiter, integrator = make_arbiter()
        arbiter.submit(IntentEvent("voice", 1, IntentKind.ABSOLUTE_ANGLE, 500.0))
        arbiter.tick(10.0)
        assert integrator.degrees(1) == 360.0

    def test_continuous_hold_and_release(self):
        arbiter, integrator = make_arbiter()
        keys = arbiter.register(keyboard())
        keys.press("ArrowUp")
        arbiter.tick(10.0)
        assert integrator.speed(13) == pytest.approx(50.0)

        keys.release("ArrowUp")
        commands = arbiter.tick(10.0)
        assert integrator.speed(13) == 0.0
        assert [(c.servo_id, c.value) for c in commands] == [(13, 0.0)]

    def test_explicit_speed_survives_without_hold(self):
        arbiter, integrator = make_arbiter()
        arbiter.submit(IntentEvent("voice", 13, IntentKind.SPEED, 20.0))
        arbiter.tick(10.0)
        arbiter.tick(10.0)
        assert integrator.speed(13) == 20.0

    def test_failing_source_is_isolated(self):
        arbiter, integrator = make_arbiter()
        arbiter.register(BrokenSource("broken"))
        keys = arbiter.register(keyboard())
        keys.press("w")
        arbiter.tick(10.0)
        arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(181.0)

    def test_unclaimed_events_are_dropped(self):
        arbiter, integrator = make_arbiter()
        arbiter.register(GreedySource("greedy"))
        assert arbiter.tick(10.0) == []
        assert integrator.degrees(1) == 180.0

    def test_unknown_and_mismatched_events_are_dropped(self):
        arbiter, integrator = make_arbiter()
        arbiter.submit(IntentEvent("voice", 99, IntentKind.ABSOLUTE_ANGLE, 10.0))
        arbiter.submit(IntentEvent("voice", 1, IntentKind.SPEED, 10.0))
        arbiter.submit(IntentEvent("voice", 13, IntentKind.ABSOLUTE_ANGLE, 10.0))
        assert arbiter.tick(10.0) == []
        assert integrator.degrees(1) == 180.0
        assert integrator.speed(13) == 0.0
        assert integrator.degrees(13) == 0.0

    def test_last_source_wins_by_default(self):
        arbiter, integrator = make_arbiter()
        first = arbiter.register(keyboard("first"))
        second = arbiter.register(keyboard("second"))
        first.press("w")
        second.press("q")
        commands = arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(179.5)
        assert commands[0].source_id == "second"

    def test_sum_policy_adds_holds(self):
        arbiter, integrator = make_arbiter(hold_policy="sum")
        first = arbiter.register(keyboard("first"))
        second = arbiter.register(keyboard("second"))
        first.press("w")
        second.press("w")
        arbiter.tick(10.0)
        assert integrator.degrees(1) == pytest.approx(181.0)

    def test_unknown_hold_policy(self):
        arbiter, integrator = make_arbiter()
        with pytest.raises(ValueError):
            InputArbiter(arbiter.registry, integrator, hold_policy="max")

    def test_duplicate_registration(self):
        arbiter, _ = make_arbiter()
        arbiter.register(keyboard())
        with pytest.raises(ValueError):
            arbiter.register(keyboard())

    def test_source_states(self):
        arbiter, _ = make_arbiter()
        keys = arbiter.register(keyboard())
        assert arbiter.source_states() == {"keyboard": SourceState.IDLE}
        keys.press("w")
        arbiter.tick(10.0)
        assert arbiter.source_states() == {"keyboard": SourceState.ACTIVE}

        arbiter.unregister("keyboard")
        assert arbiter.source_states() == {}
        assert keys.state is SourceState.IDLE

    def test_target_source_releases_after_finish(self):
        arbiter, integrator = make_arbiter()
        targets = arbiter.register(TargetSource("remote"))
        targets.set_angles({1: 90.0, 2: 100.0})
        targets.finish()
        arbiter.tick(10.0)
        assert integrator.degrees(1) == 90.0
        assert integrator.degrees(2) == 100.0
        assert targets.state is SourceState.IDLE

    def test_stop_all_clears_queue(self):
        arbiter, integrator = make_arbiter()
        keys = arbiter.register(keyboard())
        keys.press("w")
        arbiter.submit(IntentEvent("voice", 2, IntentKind.ABSOLUTE_ANGLE, 10.0))
        arbiter.stop_all()
        assert arbiter.tick(10.0) == []
        assert integrator.degrees(2) == 180.0


class TestCompoundArbitration:
    def setup_method(self):
        profile = so_arm100_profile()
        self.registry = JointRegistry(joints_from_model(profile.model_joints, profile.joint_name_id_map))
        self.integrator = ContinuousJointIntegrator(self.registry)
        self.integrator.reset(profile.initial_angles_by_id())
        resolver = CompoundMotionResolver([compile_movement(c) for c in profile.compound_movements])
        self.arbiter = InputArbiter(self.registry, self.integrator, resolver, clock=lambda: 0.0)
        self.keys = self.arbiter.register(KeyboardSource(key_bindings_for(profile)))

    def test_compound_key_moves_dependents(self):
        self.keys.press("i")
        self.arbiter.tick(10.0)
        # Pitch is above 100 degrees, so the primary runs backwards
        assert self.integrator.degrees(2) == pytest.approx(179.5)
        assert self.integrator.degrees(3) == pytest.approx(179.8)
        assert self.integrator.degrees(4) == pytest.approx(180.2)

    def test_direct_hold_overwrites_derived_delta(self):
        self.keys.press("i")
        self.keys.press("e")
        self.arbiter.tick(10.0)
        assert self.integrator.degrees(3) == pytest.approx(180.5)
        assert self.integrator.degrees(4) == pytest.approx(180.2)
