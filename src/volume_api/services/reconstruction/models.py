"""Data models for the depth-to-voxel reconstruction pipeline."""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, NamedTuple

import numpy as np


class ErrorKind(str, Enum):
    """Failure categories reported by pipeline stages."""

    MISSING_INPUT = "MISSING_INPUT"
    DEGENERATE_GEOMETRY = "DEGENERATE_GEOMETRY"
    PREDICTOR_FAILURE = "PREDICTOR_FAILURE"


class ReconstructionError(Exception):
    """Exception raised when a reconstruction stage cannot produce a result."""

    def __init__(self, code: ErrorKind, message: str, details: dict | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


@dataclass(frozen=True)
class StageIssue:
    """Non-fatal failure recorded by the pipeline while it kept going."""

    kind: ErrorKind
    stage: str
    message: str
    details: dict = field(default_factory=dict)

    @classmethod
    def from_error(cls, stage: str, error: ReconstructionError) -> "StageIssue":
        return cls(kind=error.code, stage=stage, message=error.message, details=dict(error.details))


class VoxelKey(NamedTuple):
    """Integer cell coordinate in a voxel grid."""

    x: int
    y: int
    z: int


class XYKey(NamedTuple):
    """Integer column coordinate in a voxel grid."""

    x: int
    y: int


@dataclass(frozen=True)
class DepthSample:
    """One depth reading at a pixel of the depth map."""

    x: float
    y: float
    depth: float  # meters

    @property
    def is_valid(self) -> bool:
        return math.isfinite(self.depth) and self.depth > 0


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics calibrated at a reference resolution."""

    fx: float  # Focal length X (pixels, reference resolution)
    fy: float  # Focal length Y (pixels, reference resolution)
    cx: float  # Principal point X (pixels, reference resolution)
    cy: float  # Principal point Y (pixels, reference resolution)
    reference_width: int
    reference_height: int
    depth_width: int
    depth_height: int

    def __post_init__(self) -> None:
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")
        if self.reference_width <= 0 or self.reference_height <= 0:
            raise ValueError("Reference dimensions must be positive")

    def with_depth_size(self, width: int, height: int) -> "CameraIntrinsics":
        """Return a copy bound to a depth map of the given size."""
        return replace(self, depth_width=width, depth_height=height)

    def scaled(self) -> tuple[float, float, float, float]:
        """
        Rescale the intrinsics to the depth-map resolution.

        Returns:
            Tuple of (fx, fy, cx, cy) in depth-map pixels
        """
        scale_x = self.depth_width / self.reference_width
        scale_y = self.depth_height / self.reference_height
        return (
            self.fx * scale_x,
            self.fy * scale_y,
            self.cx * scale_x,
            self.cy * scale_y,
        )


@dataclass(frozen=True)
class DepthCapture:
    """
    A single depth capture: valid samples plus the intrinsics they came with.

    ``samples`` is an (N, 3) float array of rows (pixel_x, pixel_y, depth_m).
    """

    samples: np.ndarray
    intrinsics: CameraIntrinsics | None = None

    @classmethod
    def from_samples(
        cls,
        samples: Iterable[DepthSample],
        intrinsics: CameraIntrinsics | None = None,
        depth_size: tuple[int, int] | None = None,
    ) -> "DepthCapture":
        """
        Build a capture from individual samples, dropping invalid ones.

        ``depth_size`` is the (width, height) of the depth map; when omitted it
        is inferred from the largest pixel coordinate present.
        """
        rows = [(s.x, s.y, s.depth) for s in samples if s.is_valid]
        array = np.array(rows, dtype=np.float64).reshape(-1, 3)
        if intrinsics is not None and depth_size is not None:
            intrinsics = intrinsics.with_depth_size(*depth_size)
        else:
            intrinsics = _bind_depth_size(intrinsics, array)
        return cls(samples=array, intrinsics=intrinsics)

    @classmethod
    def from_depth_map(
        cls, depth_map: np.ndarray, intrinsics: CameraIntrinsics | None = None
    ) -> "DepthCapture":
        """
        Build a capture from a dense (H, W) depth raster in meters.

        Non-finite and non-positive pixels are dropped.
        """
        depth_map = np.asarray(depth_map, dtype=np.float64)
        valid = np.isfinite(depth_map) & (depth_map > 0)
        ys, xs = np.nonzero(valid)
        array = np.stack([xs, ys, depth_map[ys, xs]], axis=-1).astype(np.float64)
        if intrinsics is not None:
            height, width = depth_map.shape
            intrinsics = intrinsics.with_depth_size(width, height)
        return cls(samples=array.reshape(-1, 3), intrinsics=intrinsics)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def width(self) -> int:
        if self.intrinsics is not None:
            return self.intrinsics.depth_width
        return int(self.samples[:, 0].max()) + 1 if len(self.samples) else 0

    @property
    def height(self) -> int:
        if self.intrinsics is not None:
            return self.intrinsics.depth_height
        return int(self.samples[:, 1].max()) + 1 if len(self.samples) else 0

    def select(self, mask: np.ndarray | None) -> np.ndarray:
        """
        Return the samples whose pixel falls inside a mask.

        The mask must already be at depth-map resolution (H, W).
        """
        if mask is None or len(self.samples) == 0:
            return np.empty((0, 3), dtype=np.float64)
        mask = np.asarray(mask, dtype=bool)
        height, width = mask.shape
        px = self.samples[:, 0].astype(np.int64)
        py = self.samples[:, 1].astype(np.int64)
        inside = (px >= 0) & (px < width) & (py >= 0) & (py < height)
        keep = np.zeros(len(self.samples), dtype=bool)
        keep[inside] = mask[py[inside], px[inside]]
        return self.samples[keep]

    def to_depth_map(self) -> np.ndarray:
        """Rasterize the samples back into an (H, W) array, 0 where missing."""
        depth_map = np.zeros((self.height, self.width), dtype=np.float32)
        if len(self.samples):
            px = self.samples[:, 0].astype(np.int64)
            py = self.samples[:, 1].astype(np.int64)
            inside = (px < self.width) & (py < self.height)
            depth_map[py[inside], px[inside]] = self.samples[inside, 2]
        return depth_map


def _bind_depth_size(
    intrinsics: CameraIntrinsics | None, samples: np.ndarray
) -> CameraIntrinsics | None:
    # Depth-map size is inferred from the largest pixel coordinate present
    if intrinsics is None or len(samples) == 0:
        return intrinsics
    width = int(samples[:, 0].max()) + 1
    height = int(samples[:, 1].max()) + 1
    return intrinsics.with_depth_size(width, height)


@dataclass(frozen=True)
class VoxelGrid:
    """Regular grid anchored at the primary point cloud's bounding-box minimum."""

    origin: tuple[float, float, float]
    voxel_size: float
    dims: tuple[int, int, int]

    @classmethod
    def empty(cls) -> "VoxelGrid":
        return cls(origin=(0.0, 0.0, 0.0), voxel_size=0.0, dims=(0, 0, 0))

    @property
    def maximum(self) -> tuple[float, float, float]:
        return tuple(o + d * self.voxel_size for o, d in zip(self.origin, self.dims))

    def continuous(self, points: np.ndarray) -> np.ndarray:
        """Points expressed in fractional voxel units relative to the origin."""
        return (np.asarray(points, dtype=np.float64) - np.asarray(self.origin)) / self.voxel_size

    def index(self, points: np.ndarray) -> np.ndarray:
        """Cell indices (N, 3) of points, clamped to the grid."""
        cells = np.floor(self.continuous(points)).astype(np.int64)
        upper = np.maximum(np.asarray(self.dims, dtype=np.int64) - 1, 0)
        return np.clip(cells, 0, upper)

    def index_unclamped(self, points: np.ndarray) -> np.ndarray:
        """Cell indices (N, 3) of points, allowed to fall outside the grid."""
        return np.floor(self.continuous(points)).astype(np.int64)

    def contains(self, key: VoxelKey) -> bool:
        gx, gy, gz = self.dims
        return 0 <= key.x < gx and 0 <= key.y < gy and 0 <= key.z < gz


@dataclass(frozen=True)
class VoxelSolid:
    """Output of the voxel reconstructor.

    ``unrestricted`` is the filled solid before the contents column
    restriction; it equals ``voxels`` when no contents were given.
    """

    voxels: frozenset[VoxelKey]
    surface: frozenset[VoxelKey]
    grid: VoxelGrid
    unrestricted: frozenset[VoxelKey] = frozenset()

    @property
    def voxel_size(self) -> float:
        return self.grid.voxel_size

    @property
    def is_empty(self) -> bool:
        return not self.voxels


@dataclass(frozen=True)
class PlaneModel:
    """Plane z = a*x + b*y + c in voxel-grid coordinates."""

    a: float
    b: float
    c: float

    # Quality metrics
    point_count: int = 0
    rmse: float = 0.0

    def z_at(self, x: float, y: float) -> float:
        return self.a * x + self.b * y + self.c

    def z_index(self, x: int, y: int) -> int:
        """Plane height at a column, rounded to the nearest cell."""
        return int(round(self.z_at(x, y)))


@dataclass(frozen=True)
class ReconstructionResult:
    """Snapshot handed to consumers; replaced wholesale, never mutated."""

    voxels: frozenset[VoxelKey]
    voxel_size: float
    total_volume: float
    grid: VoxelGrid
    plane: PlaneModel | None = None
    cropped: bool = False
    issues: tuple[StageIssue, ...] = ()

    @classmethod
    def empty(cls, issues: tuple[StageIssue, ...] = ()) -> "ReconstructionResult":
        return cls(
            voxels=frozenset(),
            voxel_size=0.0,
            total_volume=0.0,
            grid=VoxelGrid.empty(),
            issues=issues,
        )

    @property
    def voxel_count(self) -> int:
        return len(self.voxels)
