import numpy as np
import pytest

from slamgeom.pnp_ransac import PnPCorrespondence, PnPResult, PnPSolver

FX, FY, CX, CY = 500.0, 500.0, 320.0, 240.0


def _rotation(ax, ay, az):
    cx, sx = np.cos(ax), np.sin(ax)
    cy, sy = np.cos(ay), np.sin(ay)
    cz, sz = np.cos(az), np.sin(az)
    Rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    Ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    Rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return Rz @ Ry @ Rx


def _scene(n_inliers=30, n_outliers=10, seed=0):
    rng = np.random.default_rng(seed)
    R = _rotation(0.1, -0.2, 0.05)
    t = np.array([0.1, -0.2, 5.0])
    corrs = []
    truth = {}
    for i in range(n_inliers + n_outliers):
        pw = rng.uniform(-1.0, 1.0, size=3)
        pc = R @ pw + t
        u = CX + FX * pc[0] / pc[2]
        v = CY + FY * pc[1] / pc[2]
        outlier = i >= n_inliers
        if outlier:
            u += 50.0
            v -= 40.0
        index = 2 * i + 1
        truth[index] = not outlier
        corrs.append(PnPCorrespondence(index, tuple(pw), (u, v), 1.0))
    return corrs, truth, R, t


def test_find_recovers_pose_and_inliers():
    corrs, truth, R, t = _scene()
    solver = PnPSolver(corrs, 100, FX, FY, CX, CY, seed=1)
    result = solver.find()
    assert isinstance(result, PnPResult)
    assert result.found
    assert result.pose.shape == (4, 4)
    assert np.allclose(result.pose[:3, :3], R, atol=1e-3)
    assert np.allclose(result.pose[:3, 3], t, atol=1e-2)
    assert np.allclose(result.pose[3], [0, 0, 0, 1])
    assert len(result.inliers) == 100
    for index, is_inlier in truth.items():
        assert result.inliers[index] == is_inlier
    assert result.n_inliers == sum(truth.values())
    assert result.n_inliers == sum(result.inliers)


def test_inliers_only_at_correspondence_slots():
    corrs, _, _, _ = _scene(seed=3)
    solver = PnPSolver(corrs, 100, FX, FY, CX, CY, seed=7)
    result = solver.find()
    slots = {c.index for c in corrs}
    assert all(i in slots for i, flag in enumerate(result.inliers) if flag)


def test_too_few_correspondences_gives_no_more():
    corrs, _, _, _ = _scene(n_inliers=5, n_outliers=0)
    solver = PnPSolver(corrs, 20, FX, FY, CX, CY, seed=0)
    result = solver.iterate(5)
    assert result.pose is None
    assert result.no_more
    assert result.inliers == []
    assert result.n_inliers == 0


def test_min_inliers_equal_to_count_means_single_iteration():
    corrs, _, _, _ = _scene(n_inliers=8, n_outliers=0)
    solver = PnPSolver(corrs, 20, FX, FY, CX, CY)
    assert solver.min_inliers == 8
    assert solver.max_iterations == 1


def test_parameters_adjusted_to_count():
    corrs, _, _, _ = _scene(n_inliers=40, n_outliers=0)
    solver = PnPSolver(corrs, 50, FX, FY, CX, CY)
    solver.set_ransac_parameters(probability=0.99, min_inliers=4, max_iterations=300,
                                 min_set=4, epsilon=0.5, th2=5.991)
    assert solver.min_inliers == 20
    assert 1 <= solver.max_iterations <= 300
    solver.set_ransac_parameters(max_iterations=2)
    assert solver.max_iterations <= 2


def test_garbage_data_exhausts_budget():
    rng = np.random.default_rng(11)
    corrs = [
        PnPCorrespondence(i, tuple(rng.uniform(-1, 1, 3) + [0, 0, 5]),
                          tuple(rng.uniform(0, 640, 2)), 1.0)
        for i in range(20)
    ]
    solver = PnPSolver(corrs, 20, FX, FY, CX, CY, seed=2)
    solver.set_ransac_parameters(min_inliers=15, max_iterations=20)
    result = solver.iterate(1)
    assert result.pose is None
    assert result.no_more
    assert solver.iterations == solver.max_iterations


def test_same_seed_same_result():
    corrs, _, _, _ = _scene(seed=5)
    a = PnPSolver(corrs, 100, FX, FY, CX, CY, seed=42).find()
    b = PnPSolver(corrs, 100, FX, FY, CX, CY, seed=42).find()
    assert a.inliers == b.inliers
    assert np.array_equal(a.pose, b.pose)


def test_index_out_of_range_rejected():
    bad = [PnPCorrespondence(10, (0.0, 0.0, 5.0), (320.0, 240.0))]
    with pytest.raises(ValueError):
        PnPSolver(bad, 10, FX, FY, CX, CY)