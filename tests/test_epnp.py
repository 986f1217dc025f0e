import math

import numpy as np
import pytest

from slamgeom.epnp import EPnP, format_pose, mat_to_quat, qr_solve, relative_error


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


def _scene(n=12, seed=3):
    rng = np.random.default_rng(seed)
    R = _rotation([0.3, -0.5, 0.8], 0.4)
    t = np.array([0.2, -0.1, 5.0])
    pts = rng.uniform(-1.5, 1.5, size=(n, 3))
    solver = EPnP(500.0, 480.0, 320.0, 240.0)
    pc = pts @ R.T + t
    uv = np.column_stack([
        320.0 + 500.0 * pc[:, 0] / pc[:, 2],
        240.0 + 480.0 * pc[:, 1] / pc[:, 2],
    ])
    return solver, R, t, pts, uv


def test_compute_pose_recovers_true_pose():
    solver, R, t, pts, uv = _scene()
    R_est, t_est, err = solver.compute_pose(pts, uv)
    assert np.allclose(R_est, R, atol=1e-5)
    assert np.allclose(t_est, t, atol=1e-5)
    assert err < 1e-4


def test_compute_pose_rotation_is_orthonormal():
    solver, _, _, pts, uv = _scene(n=6, seed=11)
    R_est, _, _ = solver.compute_pose(pts, uv)
    assert np.allclose(R_est @ R_est.T, np.eye(3), atol=1e-8)
    assert np.linalg.det(R_est) == pytest.approx(1.0, abs=1e-8)


def test_reprojection_error_zero_for_true_pose():
    solver, R, t, pts, uv = _scene()
    assert solver.reprojection_error(R, t, pts, uv) == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_grows_with_offset():
    solver, R, t, pts, uv = _scene()
    shifted = uv + np.array([3.0, 4.0])
    assert solver.reprojection_error(R, t, pts, shifted) == pytest.approx(5.0)


def test_compute_pose_rejects_mismatched_lengths():
    solver, _, _, pts, uv = _scene()
    with pytest.raises(ValueError):
        solver.compute_pose(pts, uv[:-1])


def test_compute_pose_rejects_bad_shape():
    solver = EPnP(1.0, 1.0, 0.0, 0.0)
    with pytest.raises(ValueError):
        solver.compute_pose(np.zeros((4, 2)), np.zeros((4, 2)))


def test_qr_solve_square_system():
    A = np.array([[4.0, 1.0, 2.0], [1.0, 3.0, 0.5], [2.0, 0.5, 5.0]])
    b = np.array([1.0, 2.0, 3.0])
    x = qr_solve(A, b)
    assert np.allclose(A @ x, b)


def test_qr_solve_least_squares_matches_lstsq():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(A, b, rcond=None)[0]
    assert np.allclose(qr_solve(A, b), expected)


def test_qr_solve_does_not_modify_inputs():
    A = np.array([[2.0, 1.0], [1.0, 3.0], [0.5, 0.5]])
    b = np.array([1.0, 2.0, 3.0])
    A_copy, b_copy = A.copy(), b.copy()
    qr_solve(A, b)
    assert np.array_equal(A, A_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    A = np.zeros((6, 4))
    with pytest.raises(ValueError):
        qr_solve(A, np.ones(6))


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("angle", [0.3, 2.0, 3.0])
def test_mat_to_quat_unit_norm(angle):
    q = mat_to_quat(_rotation([1.0, 2.0, -0.5], angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_relative_error_identical_poses():
    R = _rotation([0.0, 1.0, 1.0], 1.1)
    t = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(R, t, R, t)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_translation_scale():
    R = np.eye(3)
    _, transl_err = relative_error(R, [2.0, 0.0, 0.0], R, [4.0, 0.0, 0.0])
    assert transl_err == pytest.approx(1.0)


def test_format_pose_identity():
    text = format_pose(np.eye(3), [0.0, 0.0, 0.0])
    assert text == "1 0 0 0\n0 1 0 0\n0 0 1 0\n"