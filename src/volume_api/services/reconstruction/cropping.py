"""Floor cropping and volume computation."""

import logging
from dataclasses import replace

import numpy as np

from .models import PlaneModel, ReconstructionResult, StageIssue, VoxelGrid, VoxelKey, XYKey

logger = logging.getLogger(__name__)


def build_floor_guard(points: np.ndarray, grid: VoxelGrid) -> dict[XYKey, float]:
    """
    Minimum continuous z of the primary points in every column.

    Columns are located with clamped indices; z stays fractional.
    """
    guard: dict[XYKey, float] = {}
    if len(points) == 0:
        return guard
    cells = grid.index(points)
    z_continuous = grid.continuous(points)[:, 2]
    for (x, y), z in zip(cells[:, :2].tolist(), z_continuous.tolist()):
        key = XYKey(x, y)
        if z < guard.get(key, float("inf")):
            guard[key] = z
    return guard


def crop_to_floor(
    voxels: frozenset[VoxelKey],
    plane: PlaneModel,
    floor_guard: dict[XYKey, float],
) -> frozenset[VoxelKey]:
    """
    Remove voxels at or beyond the floor plane and above the observed surface.

    A voxel survives when its z is strictly less than the plane's z at its
    column and not less than the smallest z observed in that column of the
    primary cloud. Columns with no primary point are dropped.
    """
    kept = set()
    for voxel in voxels:
        column_min = floor_guard.get(XYKey(voxel.x, voxel.y))
        if column_min is None:
            continue
        if voxel.z < plane.z_index(voxel.x, voxel.y) and voxel.z >= column_min:
            kept.add(voxel)
    return frozenset(kept)


def voxel_volume(voxel_count: int, voxel_size: float) -> float:
    """Volume of ``voxel_count`` cubic voxels in cubic meters."""
    return voxel_count * voxel_size ** 3


class CropState:
    """
    Holds the uncropped solid alongside its crop inputs.

    Toggling never recomputes the reconstruction; each call returns a new
    ReconstructionResult.
    """

    def __init__(
        self,
        base_voxels: frozenset[VoxelKey],
        grid: VoxelGrid,
        plane: PlaneModel | None,
        floor_guard: dict[XYKey, float],
        issues: tuple[StageIssue, ...] = (),
    ) -> None:
        self.base_voxels = base_voxels
        self.grid = grid
        self.plane = plane
        self.floor_guard = floor_guard
        self.issues = issues

    @property
    def can_crop(self) -> bool:
        return self.plane is not None

    def uncropped(self) -> ReconstructionResult:
        """Result for the full, uncropped voxel set."""
        return ReconstructionResult(
            voxels=self.base_voxels,
            voxel_size=self.grid.voxel_size,
            total_volume=voxel_volume(len(self.base_voxels), self.grid.voxel_size),
            grid=self.grid,
            plane=self.plane,
            cropped=False,
            issues=self.issues,
        )

    def cropped(self) -> ReconstructionResult:
        """Result for the floor-cropped voxel set, or the uncropped one without a plane."""
        if not self.can_crop:
            logger.info("No floor plane available, keeping uncropped voxels")
            return self.uncropped()

        voxels = crop_to_floor(self.base_voxels, self.plane, self.floor_guard)
        logger.info(f"Cropped voxels: {len(self.base_voxels)} -> {len(voxels)}")
        return replace(
            self.uncropped(),
            voxels=voxels,
            total_volume=voxel_volume(len(voxels), self.grid.voxel_size),
            cropped=True,
        )

    def apply(self, enabled: bool) -> ReconstructionResult:
        return self.cropped() if enabled else self.uncropped()

    def reset(self) -> ReconstructionResult:
        """Restore the retained pre-crop voxel set."""
        return self.uncropped()
