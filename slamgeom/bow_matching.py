"""Descriptor matching between two feature sets guided by vocabulary nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np

from slamgeom.descriptors import (
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)

_NO_DISTANCE = 2**31 - 1


def _is_bad(map_point) -> bool:
    return bool(getattr(map_point, "bad", False))


@dataclass
class FeatureSet:
    """Keypoints of one image with their descriptors and associated data.

    ``feature_vector`` maps a vocabulary node id to the indices of the
    keypoints that fall under it. ``map_points`` holds, per keypoint, the
    associated map point or ``None``; a map point whose ``bad`` attribute is
    true is ignored. ``u_right`` holds the right-image coordinate of each
    keypoint, negative for keypoints without a stereo match.
    """

    keypoints: Sequence[KeyPoint]
    descriptors: Any
    feature_vector: Mapping[int, Sequence[int]] = field(default_factory=dict)
    map_points: Sequence[Any] | None = None
    u_right: Sequence[float] | None = None

    def __post_init__(self):
        self.keypoints = list(self.keypoints)
        n = len(self.keypoints)
        desc = np.asarray(self.descriptors, dtype=np.uint8)
        if desc.ndim != 2 or desc.shape[0] != n:
            raise ValueError("descriptors must hold one row per keypoint")
        self.descriptors = desc
        if self.map_points is None:
            self.map_points = [None] * n
        else:
            self.map_points = list(self.map_points)
            if len(self.map_points) != n:
                raise ValueError("map_points must hold one entry per keypoint")
        if self.u_right is None:
            self.u_right = [-1.0] * n
        else:
            self.u_right = [float(u) for u in self.u_right]
            if len(self.u_right) != n:
                raise ValueError("u_right must hold one entry per keypoint")
        self.feature_vector = {
            int(node): [int(i) for i in indices]
            for node, indices in self.feature_vector.items()
        }
        for indices in self.feature_vector.values():
            for i in indices:
                if not 0 <= i < n:
                    raise ValueError(f"feature index {i} outside 0..{n - 1}")

    def __len__(self):
        return len(self.keypoints)


def _shared_nodes(set1: FeatureSet, set2: FeatureSet):
    common = set(set1.feature_vector) & set(set2.feature_vector)
    for node in sorted(common):
        yield set1.feature_vector[node], set2.feature_vector[node]


def _features_in_area(fs: FeatureSet, x, y, r, min_level, max_level):
    return [
        i for i, kp in enumerate(fs.keypoints)
        if abs(kp.x - x) < r and abs(kp.y - y) < r
        and min_level <= kp.octave <= max_level
    ]


def _passes_ratio(best1, best2, nn_ratio) -> bool:
    return bool(np.float32(best1) < np.float32(nn_ratio) * np.float32(best2))


def search_by_bow(set1, set2, nn_ratio=0.6, check_orientation=True):
    """Match map points of two keyframes that share vocabulary nodes.

    Returns a list with one entry per keypoint of ``set1``: the map point of
    ``set2`` it was matched to, or ``None``.
    """
    matches12: list[Any] = [None] * len(set1)
    matched2 = [False] * len(set2)
    histogram = RotationHistogram()

    for indices1, indices2 in _shared_nodes(set1, set2):
        for idx1 in indices1:
            mp1 = set1.map_points[idx1]
            if mp1 is None or _is_bad(mp1):
                continue
            d1 = set1.descriptors[idx1]
            best1, best2, best_idx2 = 256, 256, -1
            for idx2 in indices2:
                mp2 = set2.map_points[idx2]
                if matched2[idx2] or mp2 is None or _is_bad(mp2):
                    continue
                dist = descriptor_distance(d1, set2.descriptors[idx2])
                if dist < best1:
                    best2, best1, best_idx2 = best1, dist, idx2
                elif dist < best2:
                    best2 = dist

            if best1 < TH_LOW and _passes_ratio(best1, best2, nn_ratio):
                matches12[idx1] = set2.map_points[best_idx2]
                matched2[best_idx2] = True
                if check_orientation:
                    histogram.add(set1.keypoints[idx1].angle,
                                  set2.keypoints[best_idx2].angle, idx1)

    if check_orientation:
        for idx1 in histogram.outliers():
            matches12[idx1] = None
    return matches12


def search_for_initialization(set1, set2, prev_matched, window_size=100,
                              nn_ratio=0.9, check_orientation=True):
    """Match finest-level keypoints of two frames within a search window.

    Each keypoint of ``set1`` is searched around its position in
    ``prev_matched``. Returns ``(matches12, prev_matched)``: the index in
    ``set2`` of each keypoint's match or ``-1``, and the updated positions.
    """
    prev = [tuple(p) for p in prev_matched]
    if len(prev) != len(set1):
        raise ValueError("prev_matched must hold one position per keypoint of set1")

    matches12 = [-1] * len(set1)
    matches21 = [-1] * len(set2)
    matched_distance = [_NO_DISTANCE] * len(set2)
    histogram = RotationHistogram()

    for i1, kp1 in enumerate(set1.keypoints):
        level1 = kp1.octave
        if level1 > 0:
            continue
        x, y = prev[i1]
        candidates = _features_in_area(set2, x, y, window_size, level1, level1)
        if not candidates:
            continue

        d1 = set1.descriptors[i1]
        best1, best2, best_idx2 = _NO_DISTANCE, _NO_DISTANCE, -1
        for i2 in candidates:
            dist = descriptor_distance(d1, set2.descriptors[i2])
            if matched_distance[i2] <= dist:
                continue
            if dist < best1:
                best2, best1, best_idx2 = best1, dist, i2
            elif dist < best2:
                best2 = dist

        if best1 <= TH_LOW and best1 < float(best2) * nn_ratio:
            previous = matches21[best_idx2]
            if previous >= 0:
                matches12[previous] = -1
            matches12[i1] = best_idx2
            matches21[best_idx2] = i1
            matched_distance[best_idx2] = best1
            if check_orientation:
                histogram.add(kp1.angle, set2.keypoints[best_idx2].angle, i1)

    if check_orientation:
        for i1 in histogram.outliers():
            matches12[i1] = -1

    for i1, i2 in enumerate(matches12):
        if i2 >= 0:
            prev[i1] = set2.keypoints[i2].pt
    return matches12, prev


def search_for_triangulation(set1, set2, F12, epipole, sigma2, scale_factors,
                             only_stereo=False, check_orientation=True):
    """Match keypoints without map points that satisfy the epipolar constraint.

    ``epipole`` is the first camera's centre projected into the second image;
    ``sigma2`` and ``scale_factors`` are per pyramid level of the second
    image. Returns the matched index pairs ordered by the first index.
    """
    ex, ey = (float(v) for v in epipole)
    matches12 = [-1] * len(set1)
    matched2 = [False] * len(set2)
    histogram = RotationHistogram()

    for indices1, indices2 in _shared_nodes(set1, set2):
        for idx1 in indices1:
            if set1.map_points[idx1] is not None:
                continue
            stereo1 = set1.u_right[idx1] >= 0
            if only_stereo and not stereo1:
                continue
            kp1 = set1.keypoints[idx1]
            d1 = set1.descriptors[idx1]
            best_dist, best_idx2 = TH_LOW, -1

            for idx2 in indices2:
                if matched2[idx2] or set2.map_points[idx2] is not None:
                    continue
                stereo2 = set2.u_right[idx2] >= 0
                if only_stereo and not stereo2:
                    continue
                dist = descriptor_distance(d1, set2.descriptors[idx2])
                if dist > TH_LOW or dist > best_dist:
                    continue
                kp2 = set2.keypoints[idx2]
                if not stereo1 and not stereo2:
                    dx = ex - kp2.x
                    dy = ey - kp2.y
                    if dx * dx + dy * dy < 100 * scale_factors[kp2.octave]:
                        continue
                if check_dist_epipolar_line(kp1, kp2, F12, sigma2):
                    best_idx2, best_dist = idx2, dist

            if best_idx2 >= 0:
                matches12[idx1] = best_idx2
                if check_orientation:
                    histogram.add(kp1.angle, set2.keypoints[best_idx2].angle, idx1)

    if check_orientation:
        for idx1 in histogram.outliers():
            matches12[idx1] = -1

    return [(i, j) for i, j in enumerate(matches12) if j >= 0]