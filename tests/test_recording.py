"""Tests for datasets, the JSON dataset store, recording and replay."""

import asyncio
import json

import numpy as np
import pytest

from bambot.datasets import Dataset, JsonDatasetStore
from bambot.integrator import ContinuousJointIntegrator
from bambot.intents import IntentKind
from bambot.joints import Joint, JointKind, JointLimit, JointRegistry
from bambot.recording import DatasetRecorder, ReplayPlayer
from bambot.sources import TargetSource


def make_registry():
    return JointRegistry(
        [
            Joint(1, "Rotation", JointKind.REVOLUTE, JointLimit(0.0, 360.0)),
            Joint(13, "left_wheel", JointKind.CONTINUOUS),
        ]
    )


class TestDataset:
    def test_to_dict(self):
        dataset = Dataset(frames=[[1, 2]], duration_ms=20.0, name="wave")
        data = dataset.to_dict()
        assert data["durationMs"] == 20.0
        assert data["frames"] == [[1.0, 2.0]]
        assert data["frameCount"] == 1
        assert "id" not in data

    def test_from_dict_legacy_keys(self):
        dataset = Dataset.from_dict({"recordData": [[1, 2], [3, 4]], "duration": 40})
        assert dataset.frame_count == 2
        assert dataset.duration_ms == 40.0

    def test_from_dict_requires_frames(self):
        with pytest.raises(ValueError):
            Dataset.from_dict({"durationMs": 10})

    def test_as_array(self):
        dataset = Dataset(frames=[[1, 2], [3, 4], [5, 6]], duration_ms=60.0)
        array = dataset.as_array()
        assert array.shape == (3, 2)
        assert array.dtype == np.float32

    def test_empty_as_array(self):
        dataset = Dataset(frames=[], duration_ms=0.0, joint_details=[{"servoId": 1}])
        assert dataset.as_array().shape == (0, 1)


class TestJsonDatasetStore:
    def test_save_and_load(self, tmp_path):
        store = JsonDatasetStore(tmp_path / "datasets")
        dataset_id = store.save(Dataset(frames=[[90.0, 0.0]], duration_ms=20.0, name="pose"))
        loaded = store.load(dataset_id)
        assert loaded.dataset_id == dataset_id
        assert loaded.name == "pose"
        assert loaded.frames == [[90.0, 0.0]]
        assert json.loads((tmp_path / "datasets" / f"{dataset_id}.json").read_text())["name"] == "pose"

    def test_save_names_unnamed_recordings(self, tmp_path):
        store = JsonDatasetStore(tmp_path)
        dataset_id = store.save(Dataset(frames=[], duration_ms=0.0))
        assert store.load(dataset_id).name.startswith("Recording ")

    def test_list_newest_first(self, tmp_path):
        store = JsonDatasetStore(tmp_path)
        store.save(Dataset(frames=[[1.0]], duration_ms=1.0, name="old", created_at=1.0))
        store.save(Dataset(frames=[[1.0], [2.0]], duration_ms=2.0, name="new", created_at=2.0))
        summaries = store.list()
        assert [s["name"] for s in summaries] == ["new", "old"]
        assert summaries[0]["frameCount"] == 2

    def test_list_skips_unreadable_files(self, tmp_path):
        store = JsonDatasetStore(tmp_path)
        (tmp_path / "broken.json").write_text("{not json")
        store.save(Dataset(frames=[], duration_ms=0.0, name="ok"))
        assert [s["name"] for s in store.list()] == ["ok"]

    def test_list_missing_root(self, tmp_path):
        assert JsonDatasetStore(tmp_path / "missing").list() == []

    def test_load_unknown(self, tmp_path):
        with pytest.raises(KeyError):
            JsonDatasetStore(tmp_path).load("nope")

    def test_rejects_path_ids(self, tmp_path):
        with pytest.raises(ValueError):
            JsonDatasetStore(tmp_path).load("../secrets")

    def test_delete(self, tmp_path):
        store = JsonDatasetStore(tmp_path)
        dataset_id = store.save(Dataset(frames=[], duration_ms=0.0))
        assert store.delete(dataset_id)
        assert not store.delete(dataset_id)
        assert store.list() == []


class TestDatasetRecorder:
    def test_samples_on_interval(self):
        integrator = ContinuousJointIntegrator(make_registry())
        integrator.set_absolute(1, 90.0)
        integrator.set_speed(13, 5.0)
        recorder = DatasetRecorder(integrator, interval_ms=20.0)

        recorder.start(now=0.0)
        assert recorder.recording
        assert recorder.sample(0.0)
        assert not recorder.sample(0.01)
        integrator.set_absolute(1, 100.0)
        assert recorder.sample(0.02)

        dataset = recorder.stop(now=0.05, name="test")
        assert not recorder.recording
        assert dataset.frames == [[90.0, 5.0], [100.0, 5.0]]
        assert dataset.duration_ms == pytest.approx(50.0)
        assert dataset.joint_details == [
            {"servoId": 1, "jointType": "revolute"},
            {"servoId": 13, "jointType": "continuous"},
        ]

    def test_does_not_burst_after_falling_behind(self):
        recorder = DatasetRecorder(ContinuousJointIntegrator(make_registry()), interval_ms=20.0)
        recorder.start(now=0.0)
        recorder.sample(0.0)
        assert recorder.sample(1.0)
        assert not recorder.sample(1.01)
        assert recorder.frame_count == 2

    def test_sample_when_idle(self):
        recorder = DatasetRecorder(ContinuousJointIntegrator(make_registry()))
        assert not recorder.sample(0.0)

    def test_stop_without_start(self):
        recorder = DatasetRecorder(ContinuousJointIntegrator(make_registry()))
        with pytest.raises(RuntimeError):
            recorder.stop(now=0.0)


class TestReplayPlayer:
    def test_plays_all_frames_and_stops_wheels(self):
        source = TargetSource("replay")
        player = ReplayPlayer(source, make_registry())
        dataset = Dataset(
            frames=[[3.0, 10.0], [4.0, 20.0], [5.0, 30.0]],
            duration_ms=60.0,
            joint_details=[
                {"servoId": 13, "jointType": "continuous"},
                {"servoId": 1, "jointType": "revolute"},
            ],
        )
        assert asyncio.run(player.play(dataset, interval_ms=1.0)) is True
        assert player.progress == 3
        assert not player.running

        events = {e.servo_id: (e.kind, e.value) for e in source.poll(0.0)}
        assert events == {13: (IntentKind.SPEED, 0.0), 1: (IntentKind.ABSOLUTE_ANGLE, 30.0)}
        assert source.claims == frozenset()

    def test_registry_order_without_details(self):
        source = TargetSource("replay")
        player = ReplayPlayer(source, make_registry())
        dataset = Dataset(frames=[[45.0, 2.0]], duration_ms=20.0)
        asyncio.run(player.play(dataset))
        events = {e.servo_id: e.value for e in source.poll(0.0)}
        assert events == {1: 45.0, 13: 0.0}

    def test_cancel(self):
        player = ReplayPlayer(TargetSource("replay"), make_registry())
        dataset = Dataset(frames=[[1.0, 0.0]] * 5, duration_ms=5000.0)

        async def scenario():
            task = asyncio.create_task(player.play(dataset, interval_ms=1000.0))
            await asyncio.sleep(0.05)
            player.cancel()
            return await asyncio.wait_for(task, timeout=1.0)

        assert asyncio.run(scenario()) is False
        assert player.progress == 1

    def test_concurrent_play_refused(self):
        player = ReplayPlayer(TargetSource("replay"), make_registry())
        dataset = Dataset(frames=[[1.0, 0.0]] * 3, duration_ms=3000.0)

        async def scenario():
            task = asyncio.create_task(player.play(dataset, interval_ms=1000.0))
            await asyncio.sleep(0)
            with pytest.raises(RuntimeError):
                await player.play(dataset)
            player.cancel()
            await task

        asyncio.run(scenario())
