# slamgeom

Geometric building blocks for feature-based visual SLAM, built on numpy.

## Modules

- `slamgeom.epnp`: the `EPnP` solver for a pinhole camera (`fu`, `fv`, `uc`,
  `vc`). `EPnP.compute_pose(points3d, points2d)` returns `(R, t, error)`.
  `error` is the mean reprojection error in pixels.
  `EPnP.reprojection_error` computes that error for any pose. The module
  also has these helpers:
  - `qr_solve`: a Householder QR least-squares solve. It raises
    `ValueError` on a singular matrix.
  - `mat_to_quat`: converts a rotation to a quaternion `(x, y, z, w)`.
  - `relative_error`: the rotation and translation errors against a true pose.
  - `format_pose`: renders the three rows `r0 r1 r2 t` as text.
- `slamgeom.pnp_ransac`: `PnPSolver`, a RANSAC loop with EPnP on minimal
  samples and a refinement over the best inlier set.
  - It takes `PnPCorrespondence` records and the number of match slots.
  - `find()` and `iterate(n)` return a `PnPResult`. The result holds a 4x4
    `pose` (or `None`), an `inliers` mask over all match slots, `n_inliers`
    and `no_more`.
  - `set_ransac_parameters` adjusts the minimum inlier count and the
    iteration budget to the number of correspondences.
- `slamgeom.sim3`: `Sim3Solver`, which estimates the similarity transform
  between two camera frames by RANSAC.
  - It takes `Sim3Correspondence` pairs and the intrinsic matrices `K1` and
    `K2`. It checks the reprojection error in both images.
  - It returns a `Sim3Result` whose `estimate` is a `Sim3Estimate`. The
    estimate holds `rotation`, `translation` and `scale`, the `T12`/`T21`
    matrices, and a `map()` method.
  - `compute_sim3(P1, P2, fix_scale)` is Horn's closed-form alignment.
  - `project` and `camera_to_image` are the projection helpers.
- `slamgeom.descriptors`: helpers shared by the matchers.
  - `KeyPoint` holds position, angle and octave.
  - `descriptor_distance` is a Hamming distance between equal-length binary
    descriptors.
  - `RotationHistogram`, with `rotation_bin` and `compute_three_maxima`,
    rejects matches whose orientation difference falls outside the three
    dominant bins.
  - `check_dist_epipolar_line` tests whether a keypoint is close enough to an
    epipolar line.
  - `radius_by_viewing_cos` gives the search radius factor.
  - The thresholds are `TH_HIGH`, `TH_LOW` and `HISTO_LENGTH`.
- `slamgeom.bow_matching`: matching between two `FeatureSet`s.
  - A `FeatureSet` holds keypoints, descriptors, a `feature_vector` that maps
    a vocabulary node to keypoint indices, optional map points, and optional
    `u_right` values.
  - `search_by_bow` matches map points that share a node.
  - `search_for_initialization` matches finest-level keypoints within a
    window around previous positions.
  - `search_for_triangulation` matches keypoints without map points under
    the epipolar constraint.
- `slamgeom.projection_matching`: a pinhole `Camera` with pose and image
  bounds (`project`, `is_in_image`), and `ProjectedPoint`.
  - `search_by_projection` matches projected map points to nearby
    keypoints, with a ratio test.
  - `best_match_in_window` picks the closest keypoint at the predicted
    level or the level below.
  - `check_agreement` keeps pairs that were matched the same way in both
    directions.

## Installation

```
pip install .
```

## Example

```python
import numpy as np
from slamgeom.epnp import EPnP

solver = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points3d = np.random.default_rng(0).uniform(-1, 1, (20, 3)) + [0, 0, 5]
points2d = np.column_stack([
    320.0 + 500.0 * points3d[:, 0] / points3d[:, 2],
    240.0 + 500.0 * points3d[:, 1] / points3d[:, 2],
])
R, t, error = solver.compute_pose(points3d, points2d)
```

`PnPSolver` and `Sim3Solver` take an optional `seed`, so that their RANSAC
runs can be reproduced.

## What it does not do

This is a library of solvers and matchers only. It does not:

- extract keypoints or descriptors from images;
- build or load a vocabulary (the `feature_vector` of a `FeatureSet` must be
  supplied);
- run bundle adjustment or pose-graph optimisation;
- keep a map or track a camera over a sequence;
- provide a command-line program or a viewer.

## Tests

```
pip install .[test]
pytest
```