"""RANSAC estimation of the similarity transform between two camera frames."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field

import numpy as np

# Chi-square value at 99% for two degrees of freedom.
_CHI2_2DOF = 9.210


@dataclass(frozen=True)
class Sim3Correspondence:
    """A pair of matched 3D points, each given in its own camera frame.

    ``index`` is the slot of the match in the first keyframe's match list.
    ``sigma2_1`` and ``sigma2_2`` are the squared scale uncertainties of the
    keypoints that observe the points in each keyframe.
    """

    index: int
    point1: tuple[float, float, float]
    point2: tuple[float, float, float]
    sigma2_1: float = 1.0
    sigma2_2: float = 1.0


@dataclass(frozen=True, eq=False)
class Sim3Estimate:
    """Similarity ``x1 = scale * rotation @ x2 + translation``."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float

    @property
    def T12(self) -> np.ndarray:
        """4x4 matrix mapping frame 2 coordinates into frame 1."""
        T = np.eye(4)
        T[:3, :3] = self.scale * self.rotation
        T[:3, 3] = self.translation
        return T

    @property
    def T21(self) -> np.ndarray:
        """4x4 matrix mapping frame 1 coordinates into frame 2."""
        sr_inv = self.rotation.T / self.scale
        T = np.eye(4)
        T[:3, :3] = sr_inv
        T[:3, 3] = -sr_inv @ self.translation
        return T

    def map(self, points):
        """Apply the transform to points given as rows."""
        points = np.asarray(points, dtype=float)
        return points @ (self.scale * self.rotation).T + self.translation


@dataclass
class Sim3Result:
    """Outcome of a RANSAC run.

    ``estimate`` is ``None`` when no transform was accepted. ``inliers`` has
    one flag per match slot of the first keyframe.
    """

    estimate: Sim3Estimate | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.estimate is not None


def _rodrigues(axis_angle):
    theta = float(np.linalg.norm(axis_angle))
    if theta == 0.0 or not math.isfinite(theta):
        return np.eye(3)
    k = axis_angle / theta
    K = np.array([[0.0, -k[2], k[1]],
                  [k[2], 0.0, -k[0]],
                  [-k[1], k[0], 0.0]])
    return np.eye(3) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def compute_sim3(P1, P2, fix_scale=False):
    """Closed-form similarity aligning ``P2`` onto ``P1`` (Horn's method).

    Points are given as rows, at least three in each set.
    """
    P1 = np.asarray(P1, dtype=float)
    P2 = np.asarray(P2, dtype=float)
    if P1.ndim != 2 or P1.shape[1] != 3 or P1.shape != P2.shape:
        raise ValueError("P1 and P2 must both have shape (n, 3)")
    if P1.shape[0] < 3:
        raise ValueError("at least three point pairs are needed")

    O1 = P1.mean(axis=0)
    O2 = P2.mean(axis=0)
    Pr1 = P1 - O1
    Pr2 = P2 - O2

    M = Pr2.T @ Pr1
    N = np.array([
        [M[0, 0] + M[1, 1] + M[2, 2], M[1, 2] - M[2, 1], M[2, 0] - M[0, 2], M[0, 1] - M[1, 0]],
        [M[1, 2] - M[2, 1], M[0, 0] - M[1, 1] - M[2, 2], M[0, 1] + M[1, 0], M[2, 0] + M[0, 2]],
        [M[2, 0] - M[0, 2], M[0, 1] + M[1, 0], -M[0, 0] + M[1, 1] - M[2, 2], M[1, 2] + M[2, 1]],
        [M[0, 1] - M[1, 0], M[2, 0] + M[0, 2], M[1, 2] + M[2, 1], -M[0, 0] - M[1, 1] + M[2, 2]],
    ])

    with np.errstate(divide="ignore", invalid="ignore"):
        if np.all(np.isfinite(N)):
            evals, evecs = np.linalg.eigh(N)
            q = evecs[:, int(np.argmax(evals))]
            vec = q[1:]
            norm = float(np.linalg.norm(vec))
            angle = math.atan2(norm, q[0])
            R = _rodrigues(2.0 * angle * vec / norm) if norm > 0 else np.eye(3)
        else:
            R = np.full((3, 3), np.nan)

        P3 = Pr2 @ R.T
        if fix_scale:
            scale = 1.0
        else:
            scale = float(np.sum(Pr1 * P3) / np.sum(P3 * P3))

    t = O1 - scale * (R @ O2)
    return Sim3Estimate(R, t, scale)


def project(points, T, K):
    """Transform points (rows) with ``T`` and project them with intrinsics ``K``."""
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    T = np.asarray(T, dtype=float)
    pc = points @ T[:3, :3].T + T[:3, 3]
    return camera_to_image(pc, K)


def camera_to_image(points, K):
    """Project camera-frame points (rows) to pixel coordinates."""
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    K = np.asarray(K, dtype=float)
    fx, fy, cx, cy = K[0, 0], K[1, 1], K[0, 2], K[1, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_z = 1.0 / points[:, 2]
        u = fx * points[:, 0] * inv_z + cx
        v = fy * points[:, 1] * inv_z + cy
    return np.column_stack([u, v])


class Sim3Solver:
    """RANSAC over three-point samples, checking reprojection in both images."""

    def __init__(self, correspondences, n_matches, K1, K2, fix_scale=False, seed=None):
        correspondences = list(correspondences)
        self._n_matches = int(n_matches)
        for c in correspondences:
            if not 0 <= c.index < self._n_matches:
                raise ValueError(
                    f"correspondence index {c.index} outside 0..{self._n_matches - 1}"
                )
        self._indices = [c.index for c in correspondences]
        self._x1 = np.array([c.point1 for c in correspondences], dtype=float).reshape(-1, 3)
        self._x2 = np.array([c.point2 for c in correspondences], dtype=float).reshape(-1, 3)
        self._max_error1 = _CHI2_2DOF * np.array([c.sigma2_1 for c in correspondences], dtype=float)
        self._max_error2 = _CHI2_2DOF * np.array([c.sigma2_2 for c in correspondences], dtype=float)
        self._K1 = np.asarray(K1, dtype=float)
        self._K2 = np.asarray(K2, dtype=float)
        self._p1im1 = camera_to_image(self._x1, self._K1)
        self._p2im2 = camera_to_image(self._x2, self._K2)
        self.fix_scale = bool(fix_scale)
        self._rng = random.Random(seed)

        self._iterations = 0
        self._best_inliers = np.zeros(len(correspondences), dtype=bool)
        self._n_best_inliers = 0
        self.best: Sim3Estimate | None = None

        self.set_ransac_parameters()

    def __len__(self):
        return len(self._indices)

    @property
    def iterations(self) -> int:
        """RANSAC iterations run since the parameters were last set."""
        return self._iterations

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300):
        """Set the RANSAC parameters and reset the iteration count."""
        n = len(self)
        self.probability = float(probability)
        self.min_inliers = int(min_inliers)

        if self.min_inliers == n:
            n_iterations = 1
        else:
            epsilon = self.min_inliers / n if n > 0 else 0.0
            denom = 1.0 - epsilon ** 3
            if 0.0 < denom < 1.0 and self.probability < 1.0:
                n_iterations = math.ceil(math.log(1.0 - self.probability) / math.log(denom))
            else:
                n_iterations = 1
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))
        self._iterations = 0

    def find(self):
        """Run RANSAC with the full iteration budget."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations):
        """Run up to ``n_iterations`` RANSAC iterations."""
        n = len(self)
        if n < self.min_inliers or n < 3:
            return Sim3Result(None, [False] * self._n_matches, 0, True)

        current = 0
        while self._iterations < self.max_iterations and current < n_iterations:
            current += 1
            self._iterations += 1

            available = list(range(n))
            sample = []
            for _ in range(3):
                k = self._rng.randint(0, len(available) - 1)
                sample.append(available[k])
                available[k] = available[-1]
                available.pop()

            estimate = compute_sim3(self._x1[sample], self._x2[sample], self.fix_scale)
            mask = self._check_inliers(estimate)
            n_inliers = int(mask.sum())

            if n_inliers >= self._n_best_inliers:
                self._best_inliers = mask
                self._n_best_inliers = n_inliers
                self.best = estimate

                if n_inliers > self.min_inliers:
                    return Sim3Result(estimate, self._expand(mask), n_inliers, False)

        no_more = self._iterations >= self.max_iterations
        return Sim3Result(None, [False] * self._n_matches, 0, no_more)

    def _check_inliers(self, estimate):
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            p2im1 = project(self._x2, estimate.T12, self._K1)
            p1im2 = project(self._x1, estimate.T21, self._K2)
            err1 = np.sum((self._p1im1 - p2im1) ** 2, axis=1)
            err2 = np.sum((p1im2 - self._p2im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _expand(self, mask):
        full = [False] * self._n_matches
        for i in np.flatnonzero(mask):
            full[self._indices[i]] = True
        return full