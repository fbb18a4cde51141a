"""Reconstruction pipeline: masks and a depth capture in, voxel solid and volume out."""

import logging
import time
from dataclasses import dataclass
from functools import lru_cache

import numpy as np

from volume_api.core.config import Settings, get_settings

from .cropping import CropState, build_floor_guard
from .models import (
    DepthCapture,
    ErrorKind,
    PlaneModel,
    ReconstructionError,
    ReconstructionResult,
    StageIssue,
    VoxelGrid,
    VoxelSolid,
)
from .plane_fitting import filter_depth_outliers, filter_steep_gradients, fit_plane, hull_reference_points
from .projection import project_samples
from .voxelizer import VoxelReconstructor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconstructionOutcome:
    """Everything one pass produced; ``crop_state`` allows re-toggling cropping."""

    result: ReconstructionResult
    crop_state: CropState | None
    solid: VoxelSolid | None
    processing_time_ms: int


class ReconstructionService:
    """Runs projection, voxelization, floor estimation and cropping for one capture."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.reconstructor = VoxelReconstructor(
            target_density=self.settings.target_point_density,
            max_workers=self.settings.fill_workers,
        )

    def reconstruct(
        self,
        capture: DepthCapture,
        object_mask: np.ndarray | None,
        contents_mask: np.ndarray | None = None,
        background_mask: np.ndarray | None = None,
        crop: bool = True,
    ) -> ReconstructionOutcome:
        """
        Reconstruct the selected object and compute its volume.

        Masks are boolean rasters at depth-map resolution. Missing input and
        degenerate geometry never abort the pass: the stage that hit them
        yields an empty result, an issue is recorded and later stages carry on.

        Args:
            capture: Depth capture with intrinsics
            object_mask: Final object selection (primary plus contents)
            contents_mask: Optional contents selection bounding the solid's columns
            background_mask: Optional floor selection for the plane fit
            crop: Return the floor-cropped result rather than the full solid

        Returns:
            ReconstructionOutcome
        """
        start_time = time.time()
        issues: list[StageIssue] = []

        def finish(result: ReconstructionResult, crop_state=None, solid=None) -> ReconstructionOutcome:
            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.info(
                f"Reconstruction complete: {result.voxel_count} voxels, "
                f"volume={result.total_volume:.6f}m^3, issues={len(result.issues)}, time={elapsed_ms}ms"
            )
            return ReconstructionOutcome(
                result=result, crop_state=crop_state, solid=solid, processing_time_ms=elapsed_ms
            )

        # Input
        if capture.intrinsics is None:
            issues.append(
                StageIssue(ErrorKind.MISSING_INPUT, "projection", "Capture has no camera intrinsics")
            )
            return finish(ReconstructionResult.empty(tuple(issues)))

        primary_samples = capture.select(object_mask)
        if len(primary_samples) == 0:
            issues.append(
                StageIssue(
                    ErrorKind.MISSING_INPUT,
                    "projection",
                    "No depth samples inside the object selection",
                    {"capture_points": len(capture)},
                )
            )
            return finish(ReconstructionResult.empty(tuple(issues)))

        contents_samples = capture.select(contents_mask)
        background_samples = capture.select(background_mask)

        # Projection, one reference depth for all sets
        z_ref = float(primary_samples[:, 2].min())
        primary = project_samples(primary_samples, capture.intrinsics, reference_depth=z_ref)
        contents = project_samples(contents_samples, capture.intrinsics, reference_depth=z_ref)

        logger.info(
            f"Selected {len(primary)} object, {len(contents)} contents and "
            f"{len(background_samples)} background samples (z_ref={z_ref:.4f}m)"
        )

        # Voxelization
        try:
            solid = self.reconstructor.reconstruct(primary, contents if len(contents) else None)
        except ReconstructionError as e:
            logger.warning(f"Voxel reconstruction failed: {e.message}")
            issues.append(StageIssue.from_error("voxelization", e))
            return finish(ReconstructionResult.empty(tuple(issues)))

        if solid.is_empty:
            issues.append(
                StageIssue(ErrorKind.DEGENERATE_GEOMETRY, "voxelization", "Reconstruction produced no voxels")
            )
            return finish(ReconstructionResult.empty(tuple(issues)))

        # Floor plane
        plane = self._estimate_floor(capture, background_samples, z_ref, solid, issues)

        crop_state = CropState(
            base_voxels=solid.voxels,
            grid=solid.grid,
            plane=plane,
            floor_guard=build_floor_guard(primary, solid.grid),
            issues=tuple(issues),
        )
        return finish(crop_state.apply(crop), crop_state, solid)

    def _estimate_floor(
        self,
        capture: DepthCapture,
        background_samples: np.ndarray,
        z_ref: float,
        solid: VoxelSolid,
        issues: list[StageIssue],
    ) -> PlaneModel | None:
        """Fit the floor plane from background samples, or the object's hull without them."""
        grid: VoxelGrid = solid.grid

        filtered = filter_depth_outliers(background_samples, self.settings.depth_outlier_threshold_m)
        filtered = filter_steep_gradients(filtered, self.settings.max_gradient_m_per_px)

        if len(filtered):
            projected = project_samples(filtered, capture.intrinsics, reference_depth=z_ref)
            reference = grid.index_unclamped(projected).astype(np.float64)
            source = "background"
        else:
            if len(background_samples):
                logger.warning("All background samples were filtered out, using object hull")
            # Hull of the whole object, not just the contents columns
            reference = hull_reference_points(solid.unrestricted or solid.voxels)
            source = "hull"

        try:
            plane = fit_plane(reference)
        except ReconstructionError as e:
            logger.warning(f"Floor plane fit failed ({source}): {e.message}")
            issues.append(StageIssue.from_error("plane_fit", e))
            return None

        logger.info(
            f"Floor plane from {source}: z = {plane.a:.4f}x + {plane.b:.4f}y + {plane.c:.3f} "
            f"({plane.point_count} points, RMSE={plane.rmse:.3f})"
        )
        return plane


@lru_cache
def get_reconstruction_service() -> ReconstructionService:
    """Get a cached reconstruction service instance."""
    return ReconstructionService()
