from dataclasses import dataclass

import numpy as np
import pytest

from slamgeom.descriptors import KeyPoint
from slamgeom.projection_matching import (
    Camera,
    ProjectedPoint,
    best_match_in_window,
    check_agreement,
    search_by_projection,
)


def desc(k):
    d = np.zeros(32, dtype=np.uint8)
    d[:k] = 0xFF
    return d


@dataclass
class MP:
    name: str
    bad: bool = False


@dataclass(frozen=True)
class StereoKP:
    x: float
    y: float
    octave: int = 0
    angle: float = 0.0
    u_right: float = -1.0


def test_project_principal_point():
    cam = Camera(500.0, 500.0, 320.0, 240.0)
    u, v = cam.project([0.0, 0.0, 2.0])
    assert u == pytest.approx(320.0)
    assert v == pytest.approx(240.0)


def test_project_behind_camera():
    cam = Camera(500.0, 500.0, 320.0, 240.0)
    assert cam.project([0.0, 0.0, -1.0]) is None


def test_project_uses_pose():
    cam = Camera(100.0, 100.0, 0.0, 0.0, translation=[0.0, 0.0, 1.0])
    direct = Camera(100.0, 100.0, 0.0, 0.0).project([1.0, 1.0, 2.0])
    assert cam.project([1.0, 1.0, 1.0]) == pytest.approx(direct)


def test_is_in_image():
    cam = Camera(1.0, 1.0, 0.0, 0.0, 0.0, 640.0, 0.0, 480.0)
    assert cam.is_in_image(10.0, 10.0)
    assert not cam.is_in_image(-1.0, 10.0)
    assert not cam.is_in_image(10.0, 481.0)


def test_best_match_in_window_level_and_threshold():
    kps = [KeyPoint(0, 0, octave=0), KeyPoint(0, 0, octave=2), KeyPoint(0, 0, octave=1)]
    descs = np.stack([desc(1), desc(0), desc(3)])
    result = best_match_in_window(desc(0), [0, 1, 2], descs, kps, 1, 50)
    assert result == (0, 8)
    assert best_match_in_window(desc(0), [0, 1, 2], descs, kps, 1, 5) is None


def test_search_matches_identical_descriptor():
    kps = [KeyPoint(100.0, 100.0), KeyPoint(100.5, 100.0)]
    descs = np.stack([desc(0), desc(4)])
    p = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0))
    assert search_by_projection([p], kps, descs) == {0: p.map_point}


def test_search_skips_taken_and_bad():
    kps = [KeyPoint(100.0, 100.0), KeyPoint(100.5, 100.0)]
    descs = np.stack([desc(0), desc(1)])
    p = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0))
    matches = search_by_projection([p], kps, descs, taken=[True, False])
    assert list(matches) == [1]
    bad = ProjectedPoint(MP("b", bad=True), 100.0, 100.0, desc(0))
    hidden = ProjectedPoint(MP("c"), 100.0, 100.0, desc(0), in_view=False)
    assert search_by_projection([bad, hidden], kps, descs) == {}


def test_search_ratio_test_same_level_rejects():
    kps = [KeyPoint(100.0, 100.0, octave=1), KeyPoint(100.5, 100.0, octave=1)]
    descs = np.stack([desc(1), desc(1)])
    p = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0), level=1)
    assert search_by_projection([p], kps, descs) == {}


def test_search_ratio_test_different_levels_accepts():
    kps = [KeyPoint(100.0, 100.0, octave=1), KeyPoint(100.5, 100.0, octave=0)]
    descs = np.stack([desc(1), desc(1)])
    p = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0), level=1)
    assert list(search_by_projection([p], kps, descs)) == [0]


def test_search_keypoint_taken_once():
    kps = [KeyPoint(100.0, 100.0)]
    descs = np.stack([desc(0)])
    a = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0))
    b = ProjectedPoint(MP("b"), 100.0, 100.0, desc(0))
    matches = search_by_projection([a, b], kps, descs)
    assert matches == {0: a.map_point}


def test_search_stereo_check():
    kps = [StereoKP(100.0, 100.0, u_right=90.0)]
    descs = np.stack([desc(0)])
    far = ProjectedPoint(MP("a"), 100.0, 100.0, desc(0), x_right=50.0)
    near = ProjectedPoint(MP("b"), 100.0, 100.0, desc(0), x_right=89.0)
    assert search_by_projection([far], kps, descs) == {}
    assert search_by_projection([near], kps, descs) == {0: near.map_point}


def test_search_taken_length_mismatch():
    with pytest.raises(ValueError):
        search_by_projection([], [KeyPoint(0, 0)], np.stack([desc(0)]), taken=[])


def test_check_agreement():
    assert check_agreement([1, -1, 0], [2, 0]) == [(0, 1), (2, 0)]
    assert check_agreement([1, 0], [1, 1]) == [(0, 1)]


def test_check_agreement_out_of_range():
    with pytest.raises(ValueError):
        check_agreement([5], [0])