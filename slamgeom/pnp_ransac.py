"""RANSAC camera relocalisation from 3D-2D matches using EPnP hypotheses."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field

import numpy as np

from slamgeom.epnp import EPnP


@dataclass(frozen=True)
class PnPCorrespondence:
    """A 3D world point matched to a keypoint of the frame.

    ``index`` is the position of the keypoint in the frame's match list and
    ``sigma2`` the squared scale uncertainty of the keypoint's pyramid level.
    """

    index: int
    point3d: tuple[float, float, float]
    point2d: tuple[float, float]
    sigma2: float = 1.0


@dataclass
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is the 4x4 world-to-camera transform, or ``None`` when no pose
    was found. ``inliers`` covers every match slot of the frame (it is empty
    when no pose was found). ``no_more`` tells that the iteration budget is
    spent.
    """

    pose: np.ndarray | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None


def _to_pose(R, t):
    T = np.eye(4, dtype=np.float32)
    T[:3, :3] = np.asarray(R, dtype=np.float32)
    T[:3, 3] = np.asarray(t, dtype=np.float32).reshape(3)
    return T


class PnPSolver:
    """Robust pose estimation: EPnP on minimal samples, then refinement."""

    def __init__(self, correspondences, n_matches, fx, fy, cx, cy, seed=None):
        correspondences = list(correspondences)
        self._n_matches = int(n_matches)
        for c in correspondences:
            if not 0 <= c.index < self._n_matches:
                raise ValueError(
                    f"correspondence index {c.index} outside 0..{self._n_matches - 1}"
                )
        self._indices = [c.index for c in correspondences]
        self._points3d = np.array([c.point3d for c in correspondences], dtype=float).reshape(-1, 3)
        self._points2d = np.array([c.point2d for c in correspondences], dtype=float).reshape(-1, 2)
        self._sigma2 = np.array([c.sigma2 for c in correspondences], dtype=float)
        self._epnp = EPnP(fx, fy, cx, cy)
        self._rng = random.Random(seed)

        self._iterations = 0
        self._best_inliers = np.zeros(len(correspondences), dtype=bool)
        self._n_best_inliers = 0
        self._best_pose = None
        self._refined_inliers = np.zeros(len(correspondences), dtype=bool)

        self.set_ransac_parameters()

    def __len__(self):
        return len(self._indices)

    @property
    def iterations(self) -> int:
        """RANSAC iterations run so far over all calls."""
        return self._iterations

    def set_ransac_parameters(self, probability=0.99, min_inliers=8, max_iterations=300,
                              min_set=4, epsilon=0.4, th2=5.991):
        """Set the RANSAC parameters, adjusted to the number of correspondences."""
        n = len(self)
        self.probability = float(probability)
        self.min_set = int(min_set)
        self.epsilon = float(epsilon)

        n_min_inliers = int(n * self.epsilon)
        n_min_inliers = max(n_min_inliers, int(min_inliers), self.min_set)
        self.min_inliers = n_min_inliers

        if n > 0 and self.epsilon < self.min_inliers / n:
            self.epsilon = self.min_inliers / n

        if self.min_inliers == n:
            n_iterations = 1
        else:
            denom = 1.0 - self.epsilon ** 3
            if 0.0 < denom < 1.0 and self.probability < 1.0:
                n_iterations = math.ceil(math.log(1.0 - self.probability) / math.log(denom))
            else:
                n_iterations = 1
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))

        self._max_error = self._sigma2 * float(th2)

    def find(self):
        """Run RANSAC with the full iteration budget."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations):
        """Run RANSAC iterations and return a :class:`PnPResult`."""
        n = len(self)
        if n < self.min_inliers:
            return PnPResult(None, [], 0, True)

        all_indices = list(range(n))
        current = 0
        while self._iterations < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations += 1

            available = list(all_indices)
            sample = []
            for _ in range(self.min_set):
                k = self._rng.randint(0, len(available) - 1)
                sample.append(available[k])
                available[k] = available[-1]
                available.pop()

            R, t = self._solve(sample)
            mask = self._check_inliers(R, t)
            n_inliers = int(mask.sum())

            if n_inliers >= self.min_inliers:
                if n_inliers > self._n_best_inliers:
                    self._best_inliers = mask
                    self._n_best_inliers = n_inliers
                    self._best_pose = _to_pose(R, t)

                refined = self._refine()
                if refined is not None:
                    return PnPResult(
                        refined,
                        self._expand(self._refined_inliers),
                        int(self._refined_inliers.sum()),
                        False,
                    )

        if self._iterations >= self.max_iterations:
            if self._n_best_inliers >= self.min_inliers and self._best_pose is not None:
                return PnPResult(
                    self._best_pose.copy(),
                    self._expand(self._best_inliers),
                    self._n_best_inliers,
                    True,
                )
            return PnPResult(None, [], 0, True)
        return PnPResult(None, [], 0, False)

    def _solve(self, subset):
        try:
            R, t, _ = self._epnp.compute_pose(self._points3d[subset], self._points2d[subset])
        except (np.linalg.LinAlgError, ValueError):
            R, t = np.full((3, 3), np.nan), np.full(3, np.nan)
        return R, t

    def _refine(self):
        chosen = np.flatnonzero(self._best_inliers)
        if chosen.size == 0:
            self._refined_inliers = np.zeros(len(self), dtype=bool)
            return None
        R, t = self._solve(chosen)
        mask = self._check_inliers(R, t)
        self._refined_inliers = mask
        if int(mask.sum()) > self.min_inliers:
            return _to_pose(R, t)
        return None

    def _check_inliers(self, R, t):
        R = np.asarray(R, dtype=float)
        t = np.asarray(t, dtype=float).reshape(3)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            pc = self._points3d @ R.T + t
            inv_z = 1.0 / pc[:, 2]
            ue = self._epnp.uc + self._epnp.fu * pc[:, 0] * inv_z
            ve = self._epnp.vc + self._epnp.fv * pc[:, 1] * inv_z
            dx = self._points2d[:, 0] - ue
            dy = self._points2d[:, 1] - ve
            error2 = dx * dx + dy * dy
            return error2 < self._max_error

    def _expand(self, mask):
        full = [False] * self._n_matches
        for i in np.flatnonzero(mask):
            full[self._indices[i]] = True
        return full