"""Efficient Perspective-n-Point pose estimation from 3D-2D correspondences."""

from __future__ import annotations

import math

import numpy as np

# Pairs of control points whose distances constrain the betas, in the order
# used by the L matrix and the rho vector.
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))


def qr_solve(A, b):
    """Solve ``A x = b`` in the least-squares sense by Householder QR.

    Raises ``ValueError`` when a column of ``A`` is found to be all zeros.
    """
    A = np.array(A, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    if A.ndim != 2:
        raise ValueError("A must be a matrix")
    nr, nc = A.shape
    if b.shape[0] != nr:
        raise ValueError("b must have one entry per row of A")
    if nc == 0 or nr < nc:
        raise ValueError("A must have at least as many rows as columns")

    diag_r = np.zeros(nc)
    norms = np.zeros(nc)
    for k in range(nc):
        # The scale is taken over rows k .. nr-2, the last row is left out.
        eta = float(np.max(np.abs(A[k:max(nr - 1, k + 1), k])))
        if eta == 0:
            raise ValueError("matrix is singular")
        A[k:, k] /= eta
        sigma = math.sqrt(float(A[k:, k] @ A[k:, k]))
        if A[k, k] < 0:
            sigma = -sigma
        A[k, k] += sigma
        norms[k] = sigma * A[k, k]
        diag_r[k] = -eta * sigma
        if k + 1 < nc:
            taus = (A[k:, k] @ A[k:, k + 1:]) / norms[k]
            A[k:, k + 1:] -= np.outer(A[k:, k], taus)

    for j in range(nc):
        tau = float(A[j:, j] @ b[j:]) / norms[j]
        b[j:] -= tau * A[j:, j]

    x = np.zeros(nc)
    for i in reversed(range(nc)):
        x[i] = (b[i] - float(A[i, i + 1:nc] @ x[i + 1:])) / diag_r[i]
    return x


def mat_to_quat(R):
    """Convert a rotation matrix to a quaternion ``(x, y, z, w)``."""
    R = np.asarray(R, dtype=float)
    tr = R[0, 0] + R[1, 1] + R[2, 2]
    if tr > 0.0:
        q = [R[1, 2] - R[2, 1], R[2, 0] - R[0, 2], R[0, 1] - R[1, 0], tr + 1.0]
        n4 = q[3]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        q = [1.0 + R[0, 0] - R[1, 1] - R[2, 2], R[1, 0] + R[0, 1],
             R[2, 0] + R[0, 2], R[1, 2] - R[2, 1]]
        n4 = q[0]
    elif R[1, 1] > R[2, 2]:
        q = [R[1, 0] + R[0, 1], 1.0 + R[1, 1] - R[0, 0] - R[2, 2],
             R[2, 1] + R[1, 2], R[2, 0] - R[0, 2]]
        n4 = q[1]
    else:
        q = [R[2, 0] + R[0, 2], R[2, 1] + R[1, 2],
             1.0 + R[2, 2] - R[0, 0] - R[1, 1], R[0, 1] - R[1, 0]]
        n4 = q[2]
    return np.array(q) * (0.5 / math.sqrt(n4))


def relative_error(R_true, t_true, R_est, t_est):
    """Return ``(rotation_error, translation_error)`` relative to the true pose."""
    q_true = mat_to_quat(R_true)
    q_est = mat_to_quat(R_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(np.linalg.norm(q_true - q_est), np.linalg.norm(q_true + q_est)) / q_norm
    t_true = np.asarray(t_true, dtype=float)
    t_est = np.asarray(t_est, dtype=float)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def format_pose(R, t):
    """Render a pose as three lines ``r0 r1 r2 t``."""
    R = np.asarray(R, dtype=float)
    t = np.asarray(t, dtype=float).reshape(-1)
    return "".join(
        " ".join(f"{v:g}" for v in (*R[i], t[i])) + "\n" for i in range(3)
    )


class EPnP:
    """Pose solver for a pinhole camera with focal lengths and principal point."""

    def __init__(self, fu, fv, uc, vc):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)

    @staticmethod
    def _check(points3d, points2d):
        pws = np.asarray(points3d, dtype=float)
        us = np.asarray(points2d, dtype=float)
        if pws.ndim != 2 or pws.shape[1] != 3:
            raise ValueError("points3d must have shape (n, 3)")
        if us.ndim != 2 or us.shape[1] != 2:
            raise ValueError("points2d must have shape (n, 2)")
        if pws.shape[0] != us.shape[0]:
            raise ValueError("points3d and points2d differ in length")
        if pws.shape[0] == 0:
            raise ValueError("at least one correspondence is needed")
        return pws, us

    def compute_pose(self, points3d, points2d):
        """Estimate the camera pose.

        Returns ``(R, t, error)`` where ``error`` is the mean reprojection error.
        """
        pws, us = self._check(points3d, points2d)
        with np.errstate(divide="ignore", invalid="ignore"):
            cws = self._choose_control_points(pws)
            alphas = self._barycentric_coordinates(pws, cws)
            M = self._fill_m(alphas, us)
            U, _, _ = np.linalg.svd(M.T @ M)
            ut = U.T
            L = self._compute_l_6x10(ut)
            rho = np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _PAIRS])

            candidates = []
            for approx in (self._betas_approx_1, self._betas_approx_2, self._betas_approx_3):
                betas = approx(L, rho)
                betas = self._gauss_newton(L, rho, betas)
                candidates.append(self._compute_r_and_t(ut, betas, alphas, pws, us))

        best = 0
        if candidates[1][2] < candidates[0][2]:
            best = 1
        if candidates[2][2] < candidates[best][2]:
            best = 2
        return candidates[best]

    def reprojection_error(self, R, t, points3d, points2d):
        """Mean pixel distance between observed and reprojected points."""
        pws, us = self._check(points3d, points2d)
        R = np.asarray(R, dtype=float)
        t = np.asarray(t, dtype=float).reshape(3)
        pc = pws @ R.T + t
        inv_z = 1.0 / pc[:, 2]
        ue = self.uc + self.fu * pc[:, 0] * inv_z
        ve = self.vc + self.fv * pc[:, 1] * inv_z
        return float(np.mean(np.hypot(us[:, 0] - ue, us[:, 1] - ve)))

    @staticmethod
    def _choose_control_points(pws):
        n = pws.shape[0]
        c0 = pws.mean(axis=0)
        pw0 = pws - c0
        U, dc, _ = np.linalg.svd(pw0.T @ pw0)
        uct = U.T
        cws = np.empty((4, 3))
        cws[0] = c0
        for i in range(1, 4):
            cws[i] = c0 + math.sqrt(dc[i - 1] / n) * uct[i - 1]
        return cws

    @staticmethod
    def _barycentric_coordinates(pws, cws):
        cc = (cws[1:] - cws[0]).T
        cc_inv = np.linalg.pinv(cc)
        alphas = np.empty((pws.shape[0], 4))
        alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
        alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
        return alphas

    def _fill_m(self, alphas, us):
        n = alphas.shape[0]
        M = np.zeros((2 * n, 12))
        M[0::2, 0::3] = alphas * self.fu
        M[0::2, 2::3] = alphas * (self.uc - us[:, 0:1])
        M[1::2, 1::3] = alphas * self.fv
        M[1::2, 2::3] = alphas * (self.vc - us[:, 1:2])
        return M

    @staticmethod
    def _compute_l_6x10(ut):
        vs = [ut[11 - i].reshape(4, 3) for i in range(4)]
        dv = [[v[a] - v[b] for a, b in _PAIRS] for v in vs]
        L = np.empty((6, 10))
        for i in range(6):
            d0, d1, d2, d3 = dv[0][i], dv[1][i], dv[2][i], dv[3][i]
            L[i] = [
                d0 @ d0, 2.0 * (d0 @ d1), d1 @ d1, 2.0 * (d0 @ d2), 2.0 * (d1 @ d2),
                d2 @ d2, 2.0 * (d0 @ d3), 2.0 * (d1 @ d3), 2.0 * (d2 @ d3), d3 @ d3,
            ]
        return L

    @staticmethod
    def _betas_approx_1(L, rho):
        b4 = np.linalg.pinv(L[:, [0, 1, 3, 6]]) @ rho
        betas = np.empty(4)
        if b4[0] < 0:
            betas[0] = math.sqrt(-b4[0])
            betas[1:] = -b4[1:] / betas[0]
        else:
            betas[0] = math.sqrt(b4[0])
            betas[1:] = b4[1:] / betas[0]
        return betas

    @staticmethod
    def _betas_approx_2(L, rho):
        b3 = np.linalg.pinv(L[:, :3]) @ rho
        betas = np.zeros(4)
        if b3[0] < 0:
            betas[0] = math.sqrt(-b3[0])
            betas[1] = math.sqrt(-b3[2]) if b3[2] < 0 else 0.0
        else:
            betas[0] = math.sqrt(b3[0])
            betas[1] = math.sqrt(b3[2]) if b3[2] > 0 else 0.0
        if b3[1] < 0:
            betas[0] = -betas[0]
        return betas

    @staticmethod
    def _betas_approx_3(L, rho):
        b5 = np.linalg.pinv(L[:, :5]) @ rho
        betas = np.zeros(4)
        if b5[0] < 0:
            betas[0] = math.sqrt(-b5[0])
            betas[1] = math.sqrt(-b5[2]) if b5[2] < 0 else 0.0
        else:
            betas[0] = math.sqrt(b5[0])
            betas[1] = math.sqrt(b5[2]) if b5[2] > 0 else 0.0
        if b5[1] < 0:
            betas[0] = -betas[0]
        betas[2] = b5[3] / betas[0]
        return betas

    @staticmethod
    def _gauss_newton(L, rho, betas):
        betas = np.array(betas, dtype=float)
        for _ in range(5):
            b0, b1, b2, b3 = betas
            A = np.column_stack([
                2 * L[:, 0] * b0 + L[:, 1] * b1 + L[:, 3] * b2 + L[:, 6] * b3,
                L[:, 1] * b0 + 2 * L[:, 2] * b1 + L[:, 4] * b2 + L[:, 7] * b3,
                L[:, 3] * b0 + L[:, 4] * b1 + 2 * L[:, 5] * b2 + L[:, 8] * b3,
                L[:, 6] * b0 + L[:, 7] * b1 + L[:, 8] * b2 + 2 * L[:, 9] * b3,
            ])
            quad = np.array([b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
                             b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3])
            residual = rho - L @ quad
            if not (np.all(np.isfinite(A)) and np.all(np.isfinite(residual))):
                break
            try:
                betas = betas + qr_solve(A, residual)
            except ValueError:
                break
        return betas

    def _compute_r_and_t(self, ut, betas, alphas, pws, us):
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            ccs = -ccs
            pcs = -pcs

        pc0 = pcs.mean(axis=0)
        pw0 = pws.mean(axis=0)
        abt = (pcs - pc0).T @ (pws - pw0)
        U, _, Vt = np.linalg.svd(abt)
        R = U @ Vt
        if np.linalg.det(R) < 0:
            R[2] = -R[2]
        t = pc0 - R @ pw0
        error = self.reprojection_error(R, t, pws, us)
        return R, t, error