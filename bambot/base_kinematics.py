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
Three-wheel omnidirectional base mixing.

Used to turn a body-frame drive direction (arrow keys on the bambot-b0
base) into per-wheel speed weights for its three continuous wheel joints.
"""

from typing import Dict, Sequence

import numpy as np

# Wheel mounting angles in degrees, in (left, back, right) order, with the -90 offset
WHEEL_ANGLES_DEG = np.array([240.0, 0.0, 120.0]) - 90.0


def body_to_wheel_degps(
    x: float,
    y: float,
    theta: float,
    wheel_radius: float = 0.05,
    base_radius: float = 0.125,
) -> np.ndarray:
    """
    Convert body velocities to wheel angular speeds.

    Parameters:
      x: Linear velocity in x (m/s)
      y: Linear velocity in y (m/s)
      theta: Rotational velocity (deg/s)

    Returns:
      Wheel angular speeds in deg/s, (left, back, right)
    """
    theta_rad = theta * (np.pi / 180.0)
    velocity_vector = np.array([x, y, theta_rad])

    angles = np.radians(WHEEL_ANGLES_DEG)
    m = np.array([[np.cos(a), np.sin(a), base_radius] for a in angles])

    wheel_linear_speeds = m.dot(velocity_vector)
    wheel_angular_speeds = wheel_linear_speeds / wheel_radius
    return wheel_angular_speeds * (180.0 / np.pi)


def wheel_weights(direction: Sequence[float], wheel_names: Sequence[str]) -> Dict[str, float]:
    """
    Normalised wheel weights for a drive direction (x, y, theta).

    The fastest wheel gets weight +/-1; the rest keep their ratio to it.
    """
    x, y, theta = direction
    degps = body_to_wheel_degps(x, y, theta)
    peak = float(np.max(np.abs(degps))) if degps.size else 0.0
    if peak == 0.0:
        return {name: 0.0 for name in wheel_names}
    weights = np.round(degps / peak, 6)
    return {name: float(w) for name, w in zip(wheel_names, weights)}
