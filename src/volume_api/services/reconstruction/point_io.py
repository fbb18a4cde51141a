"""Read and write the persisted point-list format.

Format::

    # Camera Intrinsics: fx=1234.5, fy=1234.5, cx=960.0, cy=540.0
    # Reference Dimensions: width=1920, height=1080
    # Depth Dimensions: width=256, height=192
    x,y,depth_meters
    12,40,0.512
"""

import csv
import io
import logging
import re

import numpy as np

from .models import CameraIntrinsics, DepthCapture, DepthSample

logger = logging.getLogger(__name__)

HEADER = ("x", "y", "depth_meters")

_KEY_VALUE = re.compile(r"(\w+)\s*=\s*([-+0-9.eE]+)")


def _parse_key_values(line: str) -> dict[str, float]:
    return {key: float(value) for key, value in _KEY_VALUE.findall(line)}


def parse_point_list(text: str) -> DepthCapture:
    """
    Parse a point list into a DepthCapture.

    Comment lines other than the intrinsics and reference-dimension lines are
    ignored, as are blank lines, the header row and malformed rows. Samples
    with non-finite or non-positive depth are dropped.

    Raises:
        ValueError: If the intrinsics comment is present but invalid
    """
    intrinsic_values: dict[str, float] = {}
    reference: dict[str, float] = {}
    depth_dims: dict[str, float] = {}
    samples: list[DepthSample] = []
    skipped = 0

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#"):
            if "Camera Intrinsics" in stripped:
                intrinsic_values = _parse_key_values(stripped)
            elif "Reference Dimensions" in stripped:
                reference = _parse_key_values(stripped)
            elif "Depth Dimensions" in stripped:
                depth_dims = _parse_key_values(stripped)
            continue
        if "x,y,depth" in stripped:
            continue

        parts = stripped.split(",")
        if len(parts) < 3:
            skipped += 1
            continue
        try:
            sample = DepthSample(x=float(parts[0]), y=float(parts[1]), depth=float(parts[2]))
        except ValueError:
            skipped += 1
            continue
        if sample.is_valid:
            samples.append(sample)
        else:
            skipped += 1

    intrinsics = None
    if {"fx", "fy", "cx", "cy"} <= intrinsic_values.keys():
        width = int(reference.get("width", 0)) or None
        height = int(reference.get("height", 0)) or None
        if width is None or height is None:
            # Without reference dimensions the intrinsics apply at depth-map resolution
            width = int(depth_dims.get("width", 0)) or int(max((s.x for s in samples), default=0)) + 1
            height = int(depth_dims.get("height", 0)) or int(max((s.y for s in samples), default=0)) + 1
        intrinsics = CameraIntrinsics(
            fx=intrinsic_values["fx"],
            fy=intrinsic_values["fy"],
            cx=intrinsic_values["cx"],
            cy=intrinsic_values["cy"],
            reference_width=width,
            reference_height=height,
            depth_width=width,
            depth_height=height,
        )

    depth_size = None
    if {"width", "height"} <= depth_dims.keys():
        depth_size = (int(depth_dims["width"]), int(depth_dims["height"]))

    capture = DepthCapture.from_samples(samples, intrinsics, depth_size)
    logger.info(
        f"Parsed point list: {len(capture)} samples, skipped {skipped}, "
        f"intrinsics={'yes' if intrinsics else 'no'}"
    )
    return capture


def serialize_point_list(samples: np.ndarray, intrinsics: CameraIntrinsics | None = None) -> str:
    """
    Write (N, 3) samples in the point-list format.

    Cropped subsets of a capture are written with the capture's intrinsics so
    they load back identically.
    """
    buffer = io.StringIO()
    if intrinsics is not None:
        buffer.write(
            f"# Camera Intrinsics: fx={intrinsics.fx}, fy={intrinsics.fy}, "
            f"cx={intrinsics.cx}, cy={intrinsics.cy}\n"
        )
        buffer.write(
            f"# Reference Dimensions: width={intrinsics.reference_width}, "
            f"height={intrinsics.reference_height}\n"
        )
        buffer.write(
            f"# Depth Dimensions: width={intrinsics.depth_width}, "
            f"height={intrinsics.depth_height}\n"
        )

    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(HEADER)
    for x, y, depth in np.asarray(samples).reshape(-1, 3).tolist():
        writer.writerow((int(x), int(y), f"{depth:.6f}"))
    return buffer.getvalue()
