"""Pydantic models for scan sessions, mask prompts and reconstruction results."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Mask prompts
# =============================================================================


class PromptKind(str, Enum):
    """Prompt types understood by the mask predictor."""

    POINT = "point"
    MULTI_POINT = "multi_point"
    BOX = "box"


class MaskCategory(str, Enum):
    """Semantic categories of the object selection."""

    PRIMARY = "primary"  # Predicted on the depth image
    CONTENTS = "contents"  # Predicted on the photo


class MaskRegion(str, Enum):
    """Every mask a scan session can expose."""

    PRIMARY = "primary"
    CONTENTS = "contents"
    BACKGROUND = "background"


class MaskPrompt(BaseModel):
    """
    A user prompt for the mask predictor.

    Coordinates are normalized to [0, 1] so the same prompt addresses source
    images of different resolution.
    """

    kind: PromptKind
    points: list[tuple[float, float]] = Field(
        default_factory=list, description="Normalized (x, y) prompt points"
    )
    labels: list[int] = Field(
        default_factory=list, description="1 = foreground, 0 = background, one per point"
    )
    box: tuple[float, float, float, float] | None = Field(
        default=None, description="Normalized (x1, y1, x2, y2)"
    )

    @model_validator(mode="after")
    def check_payload(self) -> "MaskPrompt":
        coords = [c for point in self.points for c in point] + list(self.box or ())
        if any(not 0.0 <= c <= 1.0 for c in coords):
            raise ValueError("Prompt coordinates must be normalized to [0, 1]")
        if any(label not in (0, 1) for label in self.labels):
            raise ValueError("Labels must be 0 (background) or 1 (foreground)")

        if self.kind == PromptKind.BOX:
            if self.box is None:
                raise ValueError("Box prompt requires a box")
            x1, y1, x2, y2 = self.box
            if x2 <= x1 or y2 <= y1:
                raise ValueError("Box must have x2 > x1 and y2 > y1")
            return self

        if self.kind == PromptKind.POINT and len(self.points) != 1:
            raise ValueError("Point prompt requires exactly one point")
        if self.kind == PromptKind.MULTI_POINT and not self.points:
            raise ValueError("Multi-point prompt requires at least one point")
        if not self.labels:
            self.labels = [1] * len(self.points)
        if len(self.labels) != len(self.points):
            raise ValueError("Each point needs exactly one label")
        return self

    def to_pixels(self, width: int, height: int) -> dict:
        """Prompt payload in pixel coordinates of a width x height image."""
        payload: dict = {"points": [], "labels": [], "box": None}
        if self.kind == PromptKind.BOX and self.box is not None:
            x1, y1, x2, y2 = self.box
            payload["box"] = [x1 * width, y1 * height, x2 * width, y2 * height]
        else:
            payload["points"] = [[x * width, y * height] for x, y in self.points]
            payload["labels"] = list(self.labels)
        return payload


class StrokeRequest(BaseModel):
    """A freehand correction stroke."""

    points: list[tuple[float, float]] = Field(..., min_length=1, description="Normalized (x, y) path")
    brush_radius: int = Field(default=10, ge=1, description="Brush radius in source-image pixels")
    category: MaskCategory = MaskCategory.PRIMARY


class CropRequest(BaseModel):
    """Toggle floor cropping."""

    enabled: bool = True


# =============================================================================
# Responses
# =============================================================================


class IssueModel(BaseModel):
    """A non-fatal problem reported by a pipeline stage."""

    kind: str
    stage: str
    message: str
    details: dict = Field(default_factory=dict)


class ScanSummary(BaseModel):
    """Scan session state."""

    scan_id: str
    created_at: datetime
    point_count: int
    depth_width: int
    depth_height: int
    has_intrinsics: bool
    has_photo: bool
    embeddings_ready: bool
    reconstructed: bool = False


class MaskStateResponse(BaseModel):
    """Mask pixel counts after an edit."""

    primary_pixels: int
    contents_pixels: int
    background_pixels: int
    object_steps: int
    background_steps: int
    pen_edited: bool
    issues: list[IssueModel] = Field(default_factory=list)


class PlaneModelResponse(BaseModel):
    """Floor plane z = a*x + b*y + c in voxel-grid units."""

    a: float
    b: float
    c: float
    point_count: int
    rmse: float


class ReconstructionResponse(BaseModel):
    """Volume estimate for a scan."""

    scan_id: str
    voxel_count: int
    voxel_size_m: float
    total_volume_m3: float
    total_volume_cm3: float
    cropped: bool
    plane: PlaneModelResponse | None = None
    grid_dims: tuple[int, int, int]
    issues: list[IssueModel] = Field(default_factory=list)
    processing_time_ms: int | None = None


class VoxelSolidResponse(BaseModel):
    """Voxel solid for a visualization consumer."""

    scan_id: str
    voxel_size_m: float
    bbox_min: tuple[float, float, float]
    bbox_max: tuple[float, float, float]
    voxels: list[tuple[int, int, int]]
