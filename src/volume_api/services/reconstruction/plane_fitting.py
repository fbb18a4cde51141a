"""Least-squares floor plane estimation.

Background samples are filtered for leaked foreground objects and steep
edges before the fit. When no background is available the plane is fitted
to the convex hull of the object's own footprint.
"""

import logging
import math

import cv2
import numpy as np

from .models import ErrorKind, PlaneModel, ReconstructionError, VoxelKey, XYKey

logger = logging.getLogger(__name__)

MIN_POINTS_FOR_OUTLIER_FILTER = 10
DETERMINANT_EPSILON = 1e-6

# (dx, dy, distance in pixels) for the 8-neighborhood
PIXEL_NEIGHBORS = (
    (-1, -1, math.sqrt(2)), (0, -1, 1.0), (1, -1, math.sqrt(2)),
    (-1, 0, 1.0), (1, 0, 1.0),
    (-1, 1, math.sqrt(2)), (0, 1, 1.0), (1, 1, math.sqrt(2)),
)


def filter_depth_outliers(samples: np.ndarray, threshold: float = 0.01) -> np.ndarray:
    """
    Drop samples closer to the camera than the 25th-percentile depth minus a margin.

    Foreground objects that leaked into a background selection sit in front
    of the floor and are removed here. Sets of 10 samples or fewer pass
    through unchanged.

    Args:
        samples: (N, 3) array of (pixel_x, pixel_y, depth_m)
        threshold: Margin in meters below the 25th percentile

    Returns:
        Filtered (M, 3) array
    """
    if len(samples) <= MIN_POINTS_FOR_OUTLIER_FILTER:
        return samples

    depths = np.sort(samples[:, 2])
    p25 = depths[len(depths) // 4]
    kept = samples[samples[:, 2] >= p25 - threshold]

    logger.debug(f"Depth outlier filter: kept {len(kept)}/{len(samples)} (p25={p25:.4f}m)")
    return kept


def filter_steep_gradients(samples: np.ndarray, max_gradient: float = 0.01) -> np.ndarray:
    """
    Keep only samples that are locally flat.

    The gradient of a sample is the largest |depth difference| / pixel
    distance to any of its 8 pixel neighbors present in the same set.

    Args:
        samples: (N, 3) array of (pixel_x, pixel_y, depth_m)
        max_gradient: Maximum allowed gradient in meters per pixel

    Returns:
        Filtered (M, 3) array
    """
    if len(samples) == 0:
        return samples

    px = samples[:, 0].astype(np.int64)
    py = samples[:, 1].astype(np.int64)
    depth = samples[:, 2]

    # Dense raster padded by one pixel so every neighbor lookup stays in bounds
    x0, y0 = px.min() - 1, py.min() - 1
    width = int(px.max() - x0) + 2
    height = int(py.max() - y0) + 2
    raster = np.full((height, width), np.nan)
    raster[py - y0, px - x0] = depth

    gradient = np.zeros(len(samples))
    for dx, dy, distance in PIXEL_NEIGHBORS:
        neighbor = raster[py - y0 + dy, px - x0 + dx]
        present = ~np.isnan(neighbor)
        step = np.zeros(len(samples))
        step[present] = np.abs(neighbor[present] - depth[present]) / distance
        gradient = np.maximum(gradient, step)

    kept = samples[gradient <= max_gradient]
    logger.debug(f"Gradient filter: kept {len(kept)}/{len(samples)}")
    return kept


def fit_plane(points: np.ndarray) -> PlaneModel:
    """
    Fit z = a*x + b*y + c by ordinary least squares.

    Solves the 2x2 normal equations on mean-centered coordinates.

    Args:
        points: (N, 3) array in voxel-grid coordinates

    Returns:
        PlaneModel with coefficients and fit RMSE

    Raises:
        ReconstructionError: If fewer than 3 points or the system is singular
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(points) < 3:
        raise ReconstructionError(
            code=ErrorKind.DEGENERATE_GEOMETRY,
            message="Need at least 3 points to fit a plane",
            details={"point_count": len(points)},
        )

    mean = points.mean(axis=0)
    dx, dy, dz = (points - mean).T

    sxx = float(np.dot(dx, dx))
    sxy = float(np.dot(dx, dy))
    sxz = float(np.dot(dx, dz))
    syy = float(np.dot(dy, dy))
    syz = float(np.dot(dy, dz))

    det = sxx * syy - sxy * sxy
    if abs(det) <= DETERMINANT_EPSILON:
        raise ReconstructionError(
            code=ErrorKind.DEGENERATE_GEOMETRY,
            message="Plane fit is singular (points are collinear)",
            details={"point_count": len(points), "determinant": det},
        )

    a = (sxz * syy - syz * sxy) / det
    b = (syz * sxx - sxz * sxy) / det
    c = mean[2] - a * mean[0] - b * mean[1]

    residuals = points[:, 2] - (a * points[:, 0] + b * points[:, 1] + c)
    rmse = float(np.sqrt(np.mean(residuals ** 2)))

    logger.debug(f"Plane fit: z = {a:.4f}x + {b:.4f}y + {c:.4f} over {len(points)} points, RMSE={rmse:.3f}")

    return PlaneModel(a=float(a), b=float(b), c=float(c), point_count=len(points), rmse=rmse)


def hull_reference_points(voxels: frozenset[VoxelKey] | set[VoxelKey]) -> np.ndarray:
    """
    Reference points for a floor fit when no background was selected.

    Takes the largest z of every occupied column, then keeps the columns on
    the convex hull of the footprint.

    Returns:
        (K, 3) array of hull columns with their max z
    """
    column_max: dict[XYKey, int] = {}
    for x, y, z in voxels:
        key = XYKey(x, y)
        if z > column_max.get(key, -1):
            column_max[key] = z

    if len(column_max) < 3:
        return np.array([(x, y, z) for (x, y), z in column_max.items()], dtype=np.float64).reshape(-1, 3)

    footprint = np.array(list(column_max), dtype=np.int32).reshape(-1, 1, 2)
    hull = cv2.convexHull(footprint).reshape(-1, 2)
    return np.array(
        [(x, y, column_max[XYKey(int(x), int(y))]) for x, y in hull.tolist()],
        dtype=np.float64,
    ).reshape(-1, 3)

