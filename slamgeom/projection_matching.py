"""Matching of projected map points against the keypoints of an image."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from slamgeom.descriptors import TH_HIGH, descriptor_distance, radius_by_viewing_cos


def _is_bad(map_point) -> bool:
    return bool(getattr(map_point, "bad", False))


@dataclass
class Camera:
    """Pinhole camera with a world-to-camera pose and image bounds."""

    fx: float
    fy: float
    cx: float
    cy: float
    min_x: float = 0.0
    max_x: float = float("inf")
    min_y: float = 0.0
    max_y: float = float("inf")
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=float).reshape(3)

    def project(self, point):
        """Pixel coordinates ``(u, v)`` of a world point, or ``None`` behind the camera."""
        pc = self.rotation @ np.asarray(point, dtype=float).reshape(3) + self.translation
        z = float(pc[2])
        if z <= 0.0:
            return None
        inv_z = 1.0 / z
        u = self.fx * float(pc[0]) * inv_z + self.cx
        v = self.fy * float(pc[1]) * inv_z + self.cy
        return u, v

    def is_in_image(self, u, v):
        """Whether a pixel position lies within the image bounds."""
        return self.min_x <= u <= self.max_x and self.min_y <= v <= self.max_y


@dataclass(eq=False)
class ProjectedPoint:
    """A map point projected into the current image.

    ``level`` is the predicted pyramid level and ``scale_factor`` that level's
    scale. ``x_right`` is the projected right-image coordinate, used against
    keypoints that carry a positive ``u_right``.
    """

    map_point: Any
    x: float
    y: float
    descriptor: Any
    level: int = 0
    scale_factor: float = 1.0
    view_cos: float = 1.0
    x_right: float = -1.0
    in_view: bool = True


def _features_in_area(keypoints, x, y, r, min_level, max_level):
    return [
        i for i, kp in enumerate(keypoints)
        if abs(kp.x - x) < r and abs(kp.y - y) < r
        and min_level <= kp.octave <= max_level
    ]


def best_match_in_window(descriptor, candidates, descriptors, keypoints,
                         predicted_level, threshold):
    """Closest candidate keypoint at the predicted level or the one below.

    Returns ``(index, distance)``, or ``None`` when no candidate comes within
    ``threshold``.
    """
    best_dist, best_idx = 256, -1
    for idx in candidates:
        level = keypoints[idx].octave
        if level < predicted_level - 1 or level > predicted_level:
            continue
        dist = descriptor_distance(descriptor, descriptors[idx])
        if dist < best_dist:
            best_dist, best_idx = dist, idx
    if best_idx < 0 or best_dist > threshold:
        return None
    return best_idx, best_dist


def search_by_projection(projections, keypoints, descriptors, taken=None,
                         th=1.0, nn_ratio=0.6):
    """Match projected map points to nearby keypoints.

    ``taken`` flags keypoints that already hold an observed map point.
    Keypoints may carry a ``u_right`` attribute for a stereo check.
    Returns a dict from keypoint index to the matched map point.
    """
    keypoints: Sequence = list(keypoints)
    n = len(keypoints)
    if taken is None:
        taken = [False] * n
    else:
        taken = [bool(t) for t in taken]
        if len(taken) != n:
            raise ValueError("taken must hold one flag per keypoint")

    scaled = th != 1.0
    matches: dict[int, Any] = {}

    for p in projections:
        if not p.in_view or _is_bad(p.map_point):
            continue
        r = radius_by_viewing_cos(p.view_cos)
        if scaled:
            r *= th
        window = r * p.scale_factor
        candidates = _features_in_area(keypoints, p.x, p.y, window, p.level - 1, p.level)
        if not candidates:
            continue

        best_dist, best_level, best_dist2, best_level2, best_idx = 256, -1, 256, -1, -1
        for idx in candidates:
            if taken[idx]:
                continue
            u_right = float(getattr(keypoints[idx], "u_right", -1.0))
            if u_right > 0 and abs(p.x_right - u_right) > window:
                continue
            dist = descriptor_distance(p.descriptor, descriptors[idx])
            if dist < best_dist:
                best_dist2, best_dist = best_dist, dist
                best_level2, best_level = best_level, keypoints[idx].octave
                best_idx = idx
            elif dist < best_dist2:
                best_level2 = keypoints[idx].octave
                best_dist2 = dist

        if best_dist <= TH_HIGH:
            if best_level == best_level2 and best_dist > nn_ratio * best_dist2:
                continue
            matches[best_idx] = p.map_point
            taken[best_idx] = True

    return matches


def check_agreement(matches12, matches21):
    """Pairs ``(i1, i2)`` matched the same way in both directions."""
    matches21 = list(matches21)
    pairs = []
    for i1, i2 in enumerate(matches12):
        if i2 < 0:
            continue
        if i2 >= len(matches21):
            raise ValueError(f"match index {i2} outside 0..{len(matches21) - 1}")
        if matches21[i2] == i1:
            pairs.append((i1, i2))
    return pairs