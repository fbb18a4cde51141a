"""Rendering of a depth capture into an image the mask predictor can segment."""

import logging

import cv2
import numpy as np

from volume_api.services.reconstruction.models import DepthCapture

logger = logging.getLogger(__name__)

LOW_PERCENTILE = 5
HIGH_PERCENTILE = 95


def render_depth_image(capture: DepthCapture) -> np.ndarray:
    """
    Render a capture as an (H, W, 3) RGB uint8 image.

    Depth is normalized between its 5th and 95th percentiles so a few stray
    readings do not flatten the contrast; near is bright. Pixels without a
    reading are black.
    """
    depth_map = capture.to_depth_map()
    valid = depth_map > 0
    image = np.zeros(depth_map.shape + (3,), dtype=np.uint8)
    if not valid.any():
        return image

    low, high = np.percentile(depth_map[valid], [LOW_PERCENTILE, HIGH_PERCENTILE])
    span = max(float(high - low), 1e-6)
    normalized = np.clip((depth_map - low) / span, 0.0, 1.0)
    gray = ((1.0 - normalized) * 255).astype(np.uint8)

    colored = cv2.applyColorMap(gray, cv2.COLORMAP_TURBO)
    colored[~valid] = 0
    logger.debug(f"Rendered depth image {depth_map.shape[1]}x{depth_map.shape[0]} ({low:.3f}-{high:.3f}m)")
    return cv2.cvtColor(colored, cv2.COLOR_BGR2RGB)


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGB image as PNG."""
    success, buffer = cv2.imencode(".png", cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
    if not success:
        raise ValueError("Failed to encode image as PNG")
    return buffer.tobytes()
