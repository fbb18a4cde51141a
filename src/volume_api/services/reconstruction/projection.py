"""Projection of depth samples into a camera-centered 3D frame."""

import logging

import numpy as np

from .models import CameraIntrinsics

logger = logging.getLogger(__name__)


def project_samples(
    samples: np.ndarray,
    intrinsics: CameraIntrinsics,
    reference_depth: float | None = None,
) -> np.ndarray:
    """
    Project depth samples to 3D points.

    X and Y are scaled with one reference depth for the whole batch (the
    closest surface unless ``reference_depth`` is given), while Z keeps each
    sample's own depth.

    Args:
        samples: (N, 3) array of (pixel_x, pixel_y, depth_m)
        intrinsics: Camera intrinsics, rescaled here to depth-map resolution
        reference_depth: Depth used for X/Y scaling (defaults to batch minimum)

    Returns:
        (N, 3) array of points in meters [X, Y, Z]
    """
    samples = np.asarray(samples, dtype=np.float64).reshape(-1, 3)
    if len(samples) == 0:
        return np.empty((0, 3), dtype=np.float64)

    fx, fy, cx, cy = intrinsics.scaled()
    depth = samples[:, 2]
    z_ref = float(depth.min()) if reference_depth is None else float(reference_depth)

    x = (samples[:, 0] - cx) * z_ref / fx
    y = (samples[:, 1] - cy) * z_ref / fy

    logger.debug(f"Projected {len(samples)} samples with z_ref={z_ref:.4f}m")
    return np.stack([x, y, depth], axis=-1)
