"""Tests for the LeRobot follower in mock mode."""

import pytest

from bambot.bambot_follower import BambotFollower
from bambot.config_bambot import BambotFollowerConfig
from bambot.errors import DeviceAlreadyConnectedError, DeviceNotConnectedError


def make_robot(tmp_path, **kwargs):
    config = BambotFollowerConfig(mock=True, calibration_dir=tmp_path, id="test", **kwargs)
    return BambotFollower(config)


class TestBambotFollower:
    def test_features(self, tmp_path):
        robot = make_robot(tmp_path, profile="bambot-b0")
        features = robot.action_features
        assert features["R_Rotation.pos"] is float
        assert features["left_wheel.vel"] is float
        assert len(features) == 15
        assert robot.observation_features == features

    def test_connect_calibrates_and_enables_torque(self, tmp_path):
        robot = make_robot(tmp_path)
        assert not robot.is_calibrated
        robot.connect()
        assert robot.is_connected
        assert robot.is_calibrated
        assert robot.calibration_fpath.is_file()
        assert robot.calibration["Jaw"].id == 6
        assert robot.calibration["Jaw"].range_max == 4095
        assert all(robot.link.transport.torque_enabled(i) for i in range(1, 7))
        robot.disconnect()

    def test_connect_twice(self, tmp_path):
        robot = make_robot(tmp_path)
        robot.connect()
        with pytest.raises(DeviceAlreadyConnectedError):
            robot.connect()
        robot.disconnect()

    def test_observation(self, tmp_path):
        robot = make_robot(tmp_path)
        robot.connect()
        observation = robot.get_observation()
        assert observation == {f"{name}.pos": 180.0 for name in ("Rotation", "Pitch", "Elbow", "Wrist_Pitch", "Wrist_Roll", "Jaw")}
        robot.disconnect()

    def test_send_action(self, tmp_path):
        robot = make_robot(tmp_path)
        robot.connect()
        sent = robot.send_action({"Rotation.pos": 90.0, "Pitch.pos": 400.0, "unknown.pos": 1.0})
        assert sent == {"Rotation.pos": 90.0, "Pitch.pos": 360.0}
        assert robot.get_observation()["Rotation.pos"] == 90.0
        robot.disconnect()

    def test_max_relative_target(self, tmp_path):
        robot = make_robot(tmp_path, max_relative_target=10.0)
        robot.connect()
        sent = robot.send_action({"Rotation.pos": 90.0})
        assert sent["Rotation.pos"] == pytest.approx(170.0)
        robot.disconnect()

    def test_wheels(self, tmp_path):
        robot = make_robot(tmp_path, profile="bambot-b0")
        robot.connect()
        robot.send_action({"left_wheel.vel": 5.0})
        assert robot.get_observation()["left_wheel.vel"] == 5.0
        assert robot.link.transport.speed(13) == 50

        robot.stop_base()
        assert robot.link.transport.speed(13) == 0
        robot.disconnect()

    def test_disconnect_releases_torque(self, tmp_path):
        robot = make_robot(tmp_path)
        robot.connect()
        transport = robot.link.transport
        robot.disconnect()
        assert not robot.is_connected
        assert not transport.torque_enabled(1)

    def test_requires_connection(self, tmp_path):
        robot = make_robot(tmp_path)
        with pytest.raises(DeviceNotConnectedError):
            robot.get_observation()
        with pytest.raises(DeviceNotConnectedError):
            robot.send_action({"Rotation.pos": 90.0})
        with pytest.raises(DeviceNotConnectedError):
            robot.disconnect()
