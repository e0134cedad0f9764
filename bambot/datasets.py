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
Recorded joint trajectories and a local JSON store for them.

A dataset is `{durationMs, frames}`: one row per sample, one column per
joint in registry order (degrees for revolute joints, speed for continuous
ones). Everything else is optional metadata.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

DATASET_VERSION = "1.0"


@dataclass
class Dataset:
    frames: List[List[float]]
    duration_ms: float
    name: str = ""
    # [{"servoId": int, "jointType": "revolute" | "continuous"}] in column order
    joint_details: List[Dict[str, Any]] = field(default_factory=list)
    recording_interval_ms: float = 20.0
    version: str = DATASET_VERSION
    dataset_id: Optional[str] = None
    created_at: Optional[float] = None

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    def as_array(self) -> np.ndarray:
        """Frames as a (frame_count, joint_count) float32 array."""
        if not self.frames:
            return np.zeros((0, len(self.joint_details)), dtype=np.float32)
        return np.asarray(self.frames, dtype=np.float32)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "durationMs": self.duration_ms,
            "frames": [list(map(float, row)) for row in self.frames],
            "name": self.name,
            "frameCount": self.frame_count,
            "jointDetails": list(self.joint_details),
            "recordingInterval": self.recording_interval_ms,
            "version": self.version,
        }
        if self.dataset_id is not None:
            data["id"] = self.dataset_id
        if self.created_at is not None:
            data["createdAt"] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dataset":
        # Older exports used recordData / duration
        frames = data.get("frames", data.get("recordData"))
        if frames is None:
            raise ValueError("Dataset has no frames")
        duration = data.get("durationMs", data.get("duration", 0.0))
        details = data.get("jointDetails") or []
        if isinstance(details, dict):
            details = []
        return cls(
            frames=[[float(v) for v in row] for row in frames],
            duration_ms=float(duration),
            name=str(data.get("name", "")),
            joint_details=list(details),
            recording_interval_ms=float(data.get("recordingInterval", 20.0)),
            version=str(data.get("version", DATASET_VERSION)),
            dataset_id=data.get("id"),
            created_at=data.get("createdAt"),
        )


class JsonDatasetStore:
    """One JSON file per dataset under a directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _path(self, dataset_id: str) -> Path:
        if not dataset_id or "/" in dataset_id or "\\" in dataset_id or dataset_id.startswith("."):
            raise ValueError(f"Invalid dataset id {dataset_id!r}")
        return self.root / f"{dataset_id}.json"

    def save(self, dataset: Dataset) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        if dataset.dataset_id is None:
            dataset.dataset_id = uuid.uuid4().hex
        if dataset.created_at is None:
            dataset.created_at = time.time()
        if not dataset.name:
            dataset.name = f"Recording {time.strftime('%Y-%m-%d %H:%M:%S')}"
        path = self._path(dataset.dataset_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(dataset.to_dict()))
        tmp.replace(path)
        logger.info(f"💾 Saved dataset {dataset.name!r} ({dataset.frame_count} frames)")
        return dataset.dataset_id

    def load(self, dataset_id: str) -> Dataset:
        path = self._path(dataset_id)
        if not path.exists():
            raise KeyError(dataset_id)
        dataset = Dataset.from_dict(json.loads(path.read_text()))
        dataset.dataset_id = dataset_id
        return dataset

    def list(self) -> List[Dict[str, Any]]:
        """Summaries of every stored dataset, newest first."""
        if not self.root.exists():
            return []
        summaries = []
        for path in self.root.glob("*.json"):
            try:
                data = json.loads(path.read_text())
            except (OSError, ValueError) as e:
                logger.warning(f"⚠️  Skipping unreadable dataset {path.name}: {e}")
                continue
            summaries.append(
                {
                    "id": path.stem,
                    "name": data.get("name", ""),
                    "durationMs": data.get("durationMs", 0.0),
                    "frameCount": data.get("frameCount", len(data.get("frames", []))),
                    "createdAt": data.get("createdAt"),
                }
            )
        summaries.sort(key=lambda s: s["createdAt"] or 0.0, reverse=True)
        return summaries

    def delete(self, dataset_id: str) -> bool:
        path = self._path(dataset_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"🗑️  Deleted dataset {dataset_id}")
        return True
