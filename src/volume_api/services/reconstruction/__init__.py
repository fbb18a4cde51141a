"""Depth-to-voxel reconstruction and volume computation.

Projects masked depth samples to 3D, builds a closed voxel solid, estimates
the floor plane and crops the solid to it.
"""

from .cropping import CropState, crop_to_floor, voxel_volume
from .models import (
    CameraIntrinsics,
    DepthCapture,
    DepthSample,
    ErrorKind,
    PlaneModel,
    ReconstructionError,
    ReconstructionResult,
    StageIssue,
    VoxelKey,
    XYKey,
)
from .service import ReconstructionOutcome, ReconstructionService, get_reconstruction_service

__all__ = [
    "CameraIntrinsics",
    "CropState",
    "DepthCapture",
    "DepthSample",
    "ErrorKind",
    "PlaneModel",
    "ReconstructionError",
    "ReconstructionOutcome",
    "ReconstructionResult",
    "ReconstructionService",
    "StageIssue",
    "VoxelKey",
    "XYKey",
    "crop_to_floor",
    "get_reconstruction_service",
    "voxel_volume",
]
