"""Binary descriptor distances and the checks shared by the feature matchers."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30

# Chi-square value at 95% for one degree of freedom.
_CHI2_1DOF = 3.84
_FACTOR = np.float32(1.0) / np.float32(HISTO_LENGTH)
_RATIO = np.float32(0.1)


@dataclass(frozen=True)
class KeyPoint:
    """An undistorted image keypoint with orientation (degrees) and pyramid level."""

    x: float
    y: float
    angle: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> tuple[float, float]:
        return (self.x, self.y)


def _as_bytes(descriptor) -> bytes:
    if isinstance(descriptor, (bytes, bytearray, memoryview)):
        return bytes(descriptor)
    return np.ascontiguousarray(descriptor, dtype=np.uint8).tobytes()


def descriptor_distance(a, b):
    """Hamming distance between two binary descriptors of equal length."""
    da = _as_bytes(a)
    db = _as_bytes(b)
    if len(da) != len(db):
        raise ValueError("descriptors differ in length")
    x = int.from_bytes(da, "little") ^ int.from_bytes(db, "little")
    return bin(x).count("1")


def compute_three_maxima(histogram):
    """Indices of the three fullest bins, ``-1`` where a bin is missing.

    The second and third are dropped when they hold less than a tenth of the
    fullest bin.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, entries in enumerate(histogram):
        s = len(entries)
        if s > max1:
            max3, max2, max1 = max2, max1, s
            ind3, ind2, ind1 = ind2, ind1, i
        elif s > max2:
            max3, max2 = max2, s
            ind3, ind2 = ind2, i
        elif s > max3:
            max3 = s
            ind3 = i

    limit = float(_RATIO * np.float32(max1))
    if max2 < limit:
        ind2 = ind3 = -1
    elif max3 < limit:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos):
    """Search radius factor: narrow when the point is seen nearly head-on."""
    return 2.5 if view_cos > 0.998 else 4.0


def check_dist_epipolar_line(kp1, kp2, F12, sigma2):
    """Whether ``kp2`` lies close enough to the epipolar line of ``kp1``.

    ``sigma2`` holds the squared scale uncertainty of each pyramid level of
    the second image.
    """
    F = np.asarray(F12, dtype=np.float32)
    x1 = np.float32(kp1.x)
    y1 = np.float32(kp1.y)
    a = x1 * F[0, 0] + y1 * F[1, 0] + F[2, 0]
    b = x1 * F[0, 1] + y1 * F[1, 1] + F[2, 1]
    c = x1 * F[0, 2] + y1 * F[1, 2] + F[2, 2]

    num = a * np.float32(kp2.x) + b * np.float32(kp2.y) + c
    den = a * a + b * b
    if den == 0:
        return False
    dsqr = float(num * num / den)
    return dsqr < _CHI2_1DOF * float(sigma2[kp2.octave])


def _round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


def rotation_bin(angle1, angle2):
    """Histogram bin of the orientation difference between two keypoints."""
    rot = np.float32(angle1) - np.float32(angle2)
    if rot < 0.0:
        rot = rot + np.float32(360.0)
    index = _round_half_away(float(rot * _FACTOR))
    if index == HISTO_LENGTH:
        index = 0
    if not 0 <= index < HISTO_LENGTH:
        raise ValueError(f"orientation difference gives bin {index} out of range")
    return index


class RotationHistogram:
    """Collects matches by orientation difference to reject inconsistent ones."""

    def __init__(self):
        self.bins: list[list[int]] = [[] for _ in range(HISTO_LENGTH)]

    def __len__(self):
        return sum(len(b) for b in self.bins)

    def add(self, angle1, angle2, index):
        """Record match ``index`` whose keypoints have the given orientations."""
        self.bins[rotation_bin(angle1, angle2)].append(index)

    def outliers(self):
        """Match indices outside the three dominant bins, in bin order."""
        keep = set(compute_three_maxima(self.bins))
        return [idx for i, b in enumerate(self.bins) if i not in keep for idx in b]