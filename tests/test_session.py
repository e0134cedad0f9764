"""End-to-end session tests on simulated follower and leader buses."""

import asyncio

import pytest

from bambot.config_bambot import CompoundDependentConfig, CompoundMovementConfig, ControlConfig, get_profile
from bambot.connection import FOLLOWER, LEADER, ConnectionState, RobotConnectionManager
from bambot.datasets import Dataset
from bambot.errors import ConfigurationError
from bambot.servo_bus import BusStatus
from bambot.session import TeleopSession
from bambot.sim_bus import SimulatedTransportFactory


def make_session(clock=None, profile="so-arm100", control=None):
    profile = get_profile(profile)
    factory = SimulatedTransportFactory(profile.joint_name_id_map.values())
    kwargs = {"clock": clock} if clock is not None else {}
    session = TeleopSession(profile, control or ControlConfig(), RobotConnectionManager(factory), **kwargs)
    return session, factory


class TestTeleopSession:
    def test_initial_snapshot(self, clock):
        session, _ = make_session(clock)
        snapshot = session.joint_snapshot()
        assert list(snapshot) == ["Rotation", "Pitch", "Elbow", "Wrist_Pitch", "Wrist_Roll", "Jaw"]
        assert snapshot["Pitch"] == {"id": 2, "kind": "revolute", "degrees": 180.0, "speed": 0.0}

    def test_keyboard_step(self, clock):
        session, _ = make_session(clock)
        session.keyboard.press("w")
        session.step(10.0)
        assert session.integrator.degrees(2) == pytest.approx(180.5)

    def test_set_joints_by_name_and_id(self, clock):
        session, _ = make_session(clock)
        session.set_joints({"Rotation": 90.0, "2": 100.0, 3: 120.0, "Tail": 5.0})
        session.step(10.0)
        assert session.integrator.degrees(1) == 90.0
        assert session.integrator.degrees(2) == 100.0
        assert session.integrator.degrees(3) == 120.0
        assert session.remote.claims == frozenset()

    def test_wheel_speeds(self, clock):
        session, _ = make_session(clock, profile="bambot-b0")
        session.set_joints({"left_wheel": 500.0})
        session.step(10.0)
        # Clamped to the configured max speed
        assert session.integrator.speed(13) == 100.0
        session.step(500.0)
        assert session.integrator.degrees(13) == pytest.approx(100.0 * 510.0 / 500.0)

    def test_load_model_switches_joint_set(self, clock):
        session, _ = make_session(clock)
        session.load_model(get_profile("bambot-b0"))
        assert len(session.registry) == 15
        assert session.keyboard.is_bound("ArrowUp")
        assert session.integrator.degrees(7) == 180.0

    def test_load_unitree_go2(self, clock):
        session, _ = make_session(clock)
        session.load_model(get_profile("unitree-go2"))
        snapshot = session.joint_snapshot()
        assert len(snapshot) == 12
        assert snapshot["FL_hip_joint"]["id"] == 1
        assert snapshot["RR_calf_joint"]["id"] == 12
        assert snapshot["FR_thigh_joint"]["degrees"] == 24.0
        assert snapshot["RL_calf_joint"]["degrees"] == -48.0
        session.keyboard.press("h")
        session.step(10.0)
        assert session.integrator.degrees(12) == pytest.approx(-48.5)

    def test_load_unitree_g1(self, clock):
        session, _ = make_session(clock, profile="unitree-g1")
        snapshot = session.joint_snapshot()
        assert len(snapshot) == 23
        assert snapshot["waist_yaw_joint"]["id"] == 13
        assert snapshot["right_wrist_roll_joint"] == {"id": 23, "kind": "revolute", "degrees": 0.0, "speed": 0.0}
        session.keyboard.press("?")
        session.step(10.0)
        assert session.integrator.degrees(23) == pytest.approx(0.5)

    def test_wasd_layout(self, clock):
        session, _ = make_session(clock, control=ControlConfig(key_layout="wasd"))
        session.keyboard.press("q")
        session.step(16.0)
        assert session.integrator.degrees(1) == pytest.approx(179.8)
        session.keyboard.release("q")
        # The command surface keeps the profile's own keys
        assert session.command.is_bound("y")
        assert not session.keyboard.is_bound("y")

    def test_unknown_key_layout(self):
        with pytest.raises(ConfigurationError):
            ControlConfig(key_layout="dvorak")

    def test_bad_model_keeps_current_one(self, clock):
        session, _ = make_session(clock)
        profile = get_profile("sts3215")
        profile.compound_movements = [
            CompoundMovementConfig(
                name="ghost",
                keys=["a", "b"],
                primary_joint=1,
                dependents=[CompoundDependentConfig(9, "deltaPrimary")],
            )
        ]
        with pytest.raises(ConfigurationError):
            session.load_model(profile)
        assert session.profile.name == "so-arm100"
        assert len(session.registry) == 6

    def test_recording(self, clock):
        session, _ = make_session(clock)
        session.start_recording()
        for _ in range(3):
            session.step(20.0, clock.now)
            clock.advance(20.0)
        dataset = session.stop_recording("three")
        assert dataset.frame_count == 3
        assert dataset.duration_ms == pytest.approx(60.0)
        assert dataset.name == "three"

    def test_replay_applies_last_frame(self, clock):
        session, _ = make_session(clock)
        dataset = Dataset(
            frames=[[10.0, 20.0, 30.0, 40.0, 50.0, 60.0], [90.0, 91.0, 92.0, 93.0, 94.0, 95.0]],
            duration_ms=2.0,
            recording_interval_ms=1.0,
        )
        assert asyncio.run(session.replay(dataset)) is True
        session.step(10.0)
        assert [session.integrator.degrees(i) for i in range(1, 7)] == [90.0, 91.0, 92.0, 93.0, 94.0, 95.0]


class TestFollowerBus:
    def test_connect_enables_torque(self, clock):
        session, factory = make_session(clock)
        session.connect_follower("follower")
        bus = factory.buses["follower"]
        assert all(bus.torque_enabled(i) for i in range(1, 7))
        assert session.connections.is_connected(FOLLOWER)

    def test_push_without_follower(self, clock):
        session, _ = make_session(clock)
        assert session.push_to_bus() is None

    def test_push_only_changed_joints(self, clock):
        session, factory = make_session(clock)
        session.connect_follower("follower")
        bus = factory.buses["follower"]

        first = session.push_to_bus()
        assert first.ok
        assert session.push_to_bus() is None

        session.set_joints({"Jaw": 90.0})
        session.step(10.0)
        written = len(bus.written)
        assert session.push_to_bus().ok
        assert len(bus.written) == written + 1
        # One sync-write entry: address, length, then id + 6 data bytes
        assert bus.written[-1][3] == 2 + 2 + 7
        assert bus.position(6) == 90.0

    def test_failed_entries_are_retried(self, clock):
        session, factory = make_session(clock)
        session.connect_follower("follower")
        session.push_to_bus()
        bus = factory.buses["follower"]

        session.set_joints({"Rotation": 45.0})
        session.step(10.0)
        bus.write_timeout = True
        result = session.push_to_bus()
        assert result.status is BusStatus.TIMEOUT
        assert result.failed == [1]

        bus.write_timeout = False
        assert session.push_to_bus().ok
        assert bus.position(1) == 45.0

    def test_reset_during_write_discards_bookkeeping(self, clock):
        session, _ = make_session(clock)
        link = session.connect_follower("follower")
        sync_write = link.bus.sync_write

        def reset_then_write(entries):
            # Models a model switch on the loop thread while the worker writes
            session._forget_pushed()
            return sync_write(entries)

        link.bus.sync_write = reset_then_write
        assert session.push_to_bus().ok
        link.bus.sync_write = sync_write

        # Nothing was recorded as pushed, so every joint is written again
        result = session.push_to_bus()
        assert result.ok
        assert session._last_pushed.keys() == set(range(1, 7))

    def test_transport_failure_drops_follower(self, clock):
        session, factory = make_session(clock)
        session.connect_follower("follower")
        session.set_joints({"Rotation": 45.0})
        session.step(10.0)
        factory.buses["follower"].fail_io = True
        assert session.push_to_bus() is None
        assert session.connections.state(FOLLOWER) is ConnectionState.DISCONNECTED

    def test_wheel_speed_is_scaled_for_the_bus(self, clock):
        session, factory = make_session(clock, profile="bambot-b0")
        session.connect_follower("follower")
        session.set_joints({"left_wheel": -20.0})
        session.step(10.0)
        session.push_to_bus()
        assert factory.buses["follower"].speed(13) == -200


class TestLeaderMirroring:
    def test_follower_mirrors_leader(self):
        control = ControlConfig(leader_poll_ms=10.0)
        session, factory = make_session(control=control)
        leader_bus = factory("leader", None)
        leader_bus.set_position(1, 90.0)
        leader_bus.set_position(6, 45.0)

        async def scenario():
            await session.connect_leader("leader")
            await asyncio.sleep(0.2)
            session.step(10.0)
            await session.disconnect_leader()

        asyncio.run(scenario())
        assert not leader_bus.torque_enabled(1)
        assert session.integrator.degrees(1) == 90.0
        assert session.integrator.degrees(6) == 45.0
        assert session.connections.state(LEADER) is ConnectionState.DISCONNECTED
        assert session.leader_source.claims == frozenset()

    def test_replay_disconnects_leader(self):
        session, factory = make_session()
        factory("leader", None)
        dataset = Dataset(frames=[[90.0] * 6], duration_ms=1.0)

        async def scenario():
            await session.connect_leader("leader")
            return await session.replay(dataset)

        assert asyncio.run(scenario()) is True
        assert not session.connections.is_connected(LEADER)


class TestSessionLoop:
    def test_key_press_moves_joint_while_running(self):
        session, _ = make_session()

        async def scenario():
            run_task = asyncio.create_task(session.run())
            completed = await session.key_press("w", 200)
            session.stop()
            await run_task
            await session.close()
            return completed

        assert asyncio.run(scenario()) is True
        assert session.integrator.degrees(2) > 181.0

    def test_cancel_stops_command(self):
        session, _ = make_session()

        async def scenario():
            task = asyncio.create_task(session.key_press("w", 3000))
            await asyncio.sleep(0.05)
            session.cancel()
            return await asyncio.wait_for(task, timeout=1.0)

        assert asyncio.run(scenario()) is False
        assert session.command.pressed == set()
