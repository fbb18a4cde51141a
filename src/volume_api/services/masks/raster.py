"""Binary mask raster operations.

Masks are boolean (H, W) numpy arrays aligned to a source image's pixel grid.
"""

import cv2
import numpy as np


def binarize(raster: np.ndarray, threshold: float = 0.5) -> np.ndarray:
    """
    Binarize a raster at a fraction of its dtype's full scale.

    Boolean rasters pass through; integer rasters are compared against
    ``threshold`` times the dtype maximum (128 of 255 for uint8); float
    rasters are compared against ``threshold`` directly.
    """
    raster = np.asarray(raster)
    if raster.dtype == bool:
        return raster
    if np.issubdtype(raster.dtype, np.integer):
        return raster > np.iinfo(raster.dtype).max * threshold
    return raster > threshold


def resample(mask: np.ndarray, shape: tuple[int, int]) -> np.ndarray:
    """Nearest-neighbor resample of a mask to (height, width)."""
    mask = np.asarray(mask, dtype=bool)
    if mask.shape == tuple(shape):
        return mask
    height, width = shape
    resized = cv2.resize(mask.astype(np.uint8), (width, height), interpolation=cv2.INTER_NEAREST)
    return resized.astype(bool)


def union(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """Pixels present in either mask; ``second`` is resampled to ``first``'s shape."""
    return np.logical_or(first, resample(second, first.shape))


def intersect(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """Pixels present in both masks; ``second`` is resampled to ``first``'s shape."""
    return np.logical_and(first, resample(second, first.shape))


def subtract(mask: np.ndarray, excluded: np.ndarray) -> np.ndarray:
    """Pixels of ``mask`` not claimed by ``excluded``."""
    return np.logical_and(mask, ~resample(excluded, mask.shape))


def union_all(masks: list[np.ndarray], shape: tuple[int, int]) -> np.ndarray:
    """Union of a mask history, empty when the history is."""
    composite = np.zeros(shape, dtype=bool)
    for mask in masks:
        composite = union(composite, mask)
    return composite


def expand(mask: np.ndarray, radius: int) -> np.ndarray:
    """Grow a mask by ``radius`` pixels over the 8-neighborhood."""
    if radius <= 0:
        return np.asarray(mask, dtype=bool)
    kernel = np.ones((3, 3), dtype=np.uint8)
    grown = cv2.dilate(np.asarray(mask, dtype=np.uint8), kernel, iterations=radius)
    return grown.astype(bool)


def rasterize_stroke(
    points: list[tuple[float, float]],
    brush_radius: int,
    shape: tuple[int, int],
) -> np.ndarray:
    """
    Draw a freehand stroke into a new mask.

    Args:
        points: Stroke path in pixel coordinates (x, y)
        brush_radius: Brush radius in pixels
        shape: (height, width) of the output mask

    Returns:
        Boolean mask with the stroke painted in
    """
    canvas = np.zeros(shape, dtype=np.uint8)
    if not points:
        return canvas.astype(bool)

    radius = max(1, int(brush_radius))
    path = [(int(round(x)), int(round(y))) for x, y in points]
    for start, end in zip(path, path[1:]):
        cv2.line(canvas, start, end, color=255, thickness=2 * radius)
    # Round caps and single-point taps
    for point in path:
        cv2.circle(canvas, point, radius, color=255, thickness=-1)
    return canvas > 0


def to_png(mask: np.ndarray) -> bytes:
    """Encode a mask as an 8-bit grayscale PNG."""
    success, buffer = cv2.imencode(".png", np.asarray(mask, dtype=np.uint8) * 255)
    if not success:
        raise ValueError("Failed to encode mask as PNG")
    return buffer.tobytes()
