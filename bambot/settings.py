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
Persistent user settings.

The control core never reads settings itself; callers resolve a
`ControlConfig` from a store and pass plain values in.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config_bambot import ControlConfig

logger = logging.getLogger(__name__)


class SettingsStore:
    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class InMemorySettingsStore(SettingsStore):
    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value


class JsonFileSettingsStore(SettingsStore):
    """Settings kept in one JSON object on disk, rewritten on every set."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._values = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️  Ignoring unreadable settings file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"⚠️  Ignoring settings file {self.path}: not a JSON object")
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._values, indent=2, sort_keys=True))
            tmp.replace(self.path)


def settings_key(robot_name: str) -> str:
    return f"control/{robot_name}"


def control_config_from_settings(
    store: SettingsStore, robot_name: str, base: Optional[ControlConfig] = None
) -> ControlConfig:
    """Base config overlaid with the robot's stored overrides."""
    base = base or ControlConfig()
    overrides = store.get(settings_key(robot_name)) or {}
    if not isinstance(overrides, dict):
        logger.warning(f"⚠️  Ignoring malformed settings for {robot_name}")
        return base
    return base.merged(overrides)


def save_control_overrides(store: SettingsStore, robot_name: str, **overrides: Any) -> None:
    current = store.get(settings_key(robot_name)) or {}
    current = dict(current) if isinstance(current, dict) else {}
    current.update(overrides)
    store.set(settings_key(robot_name), current)
