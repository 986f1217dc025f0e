"""EPnP and Sim3 RANSAC solvers and binary-descriptor feature matching for visual SLAM."""

__version__ = "0.1.0"
__all__ = [
    "epnp",
    "pnp_ransac",
    "sim3",
    "descriptors",
    "bow_matching",
    "projection_matching",
]