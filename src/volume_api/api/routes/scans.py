"""Scan session API routes.

Upload a depth capture, select the object and the floor with prompts or
strokes, then reconstruct and toggle floor cropping.
"""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, File, Query, Response, UploadFile, status
from fastapi.responses import PlainTextResponse

from volume_api.api.dependencies import (
    PredictorDep,
    ReconstructionServiceDep,
    SessionStoreDep,
    SettingsDep,
)
from volume_api.core.exceptions import ConflictError, NotFoundError, UpstreamError, ValidationError
from volume_api.models.scan import (
    CropRequest,
    IssueModel,
    MaskPrompt,
    MaskRegion,
    MaskStateResponse,
    PlaneModelResponse,
    ReconstructionResponse,
    ScanSummary,
    StrokeRequest,
    VoxelSolidResponse,
)
from volume_api.services.depth_image import encode_png
from volume_api.services.masks import raster
from volume_api.services.reconstruction import ReconstructionResult, StageIssue
from volume_api.services.reconstruction.point_io import parse_point_list, serialize_point_list
from volume_api.services.segmentation import MaskPredictionError
from volume_api.services.session import CaptureSession, decode_photo

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_POINTS_SIZE = 50 * 1024 * 1024  # 50 MB
MAX_PHOTO_SIZE = 10 * 1024 * 1024  # 10 MB


# =============================================================================
# Helpers
# =============================================================================


def _get_session(store, scan_id: str) -> CaptureSession:
    session = store.get(scan_id)
    if session is None:
        raise NotFoundError("Scan", scan_id)
    return session


def _issues(issues) -> list[IssueModel]:
    return [
        IssueModel(kind=i.kind.value, stage=i.stage, message=i.message, details=i.details)
        for i in issues
    ]


def _summary(session: CaptureSession) -> ScanSummary:
    return ScanSummary(
        scan_id=session.id,
        created_at=session.created_at,
        point_count=len(session.capture),
        depth_width=session.depth_shape[1],
        depth_height=session.depth_shape[0],
        has_intrinsics=session.capture.intrinsics is not None,
        has_photo=session.photo is not None,
        embeddings_ready=session.embeddings_ready,
        reconstructed=session.result is not None,
    )


def _mask_state(session: CaptureSession, issues: list[StageIssue] | None = None) -> MaskStateResponse:
    return MaskStateResponse(
        primary_pixels=int(session.region_mask(MaskRegion.PRIMARY).sum()),
        contents_pixels=int(session.region_mask(MaskRegion.CONTENTS).sum()),
        background_pixels=int(session.region_mask(MaskRegion.BACKGROUND).sum()),
        object_steps=session.objects.step_count,
        background_steps=session.background.step_count,
        pen_edited=session.objects.pen_edited,
        issues=_issues(issues or []),
    )


def _reconstruction(
    session: CaptureSession, result: ReconstructionResult, processing_time_ms: int | None = None
) -> ReconstructionResponse:
    plane = None
    if result.plane is not None:
        plane = PlaneModelResponse(
            a=result.plane.a,
            b=result.plane.b,
            c=result.plane.c,
            point_count=result.plane.point_count,
            rmse=result.plane.rmse,
        )
    return ReconstructionResponse(
        scan_id=session.id,
        voxel_count=result.voxel_count,
        voxel_size_m=result.voxel_size,
        total_volume_m3=result.total_volume,
        total_volume_cm3=result.total_volume * 1e6,
        cropped=result.cropped,
        plane=plane,
        grid_dims=result.grid.dims,
        issues=_issues(result.issues),
        processing_time_ms=processing_time_ms,
    )


def _predictor_failure(e: MaskPredictionError) -> UpstreamError:
    return UpstreamError(e.message, details={"kind": e.code.value, **e.details})


# =============================================================================
# Sessions
# =============================================================================


@router.post("", response_model=ScanSummary, status_code=status.HTTP_201_CREATED)
async def create_scan(
    store: SessionStoreDep,
    predictor: PredictorDep,
    settings: SettingsDep,
    points: Annotated[UploadFile, File(description="Point list CSV (x,y,depth_meters)")],
    photo: Annotated[UploadFile | None, File(description="Optional color photo")] = None,
) -> ScanSummary:
    """
    Start a scan session from a persisted point list and an optional photo.

    Both image embeddings are requested right away; if the predictor is
    unavailable they are retried on the first prompt.
    """
    raw_points = await points.read()
    if len(raw_points) > MAX_POINTS_SIZE:
        raise ValidationError(
            f"Point list exceeds maximum size of {MAX_POINTS_SIZE // (1024 * 1024)} MB",
            details={"size": len(raw_points)},
        )

    try:
        capture = parse_point_list(raw_points.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Invalid point list: {e}") from e

    if len(capture) == 0:
        raise ValidationError("Point list contains no valid depth samples")

    photo_array = None
    if photo is not None:
        raw_photo = await photo.read()
        if len(raw_photo) > MAX_PHOTO_SIZE:
            raise ValidationError(
                f"Photo exceeds maximum size of {MAX_PHOTO_SIZE // (1024 * 1024)} MB",
                details={"size": len(raw_photo)},
            )
        try:
            photo_array = decode_photo(raw_photo)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    session = store.add(CaptureSession(capture, predictor, settings, photo=photo_array))

    failures = await session.prepare()
    if failures:
        logger.warning(f"Embeddings for scan {session.id} deferred: {', '.join(sorted(failures))}")

    logger.info(f"Created scan {session.id}: {len(capture)} samples, photo={photo_array is not None}")
    return _summary(session)


@router.get("/{scan_id}", response_model=ScanSummary)
async def get_scan(scan_id: str, store: SessionStoreDep) -> ScanSummary:
    """Get scan session state."""
    return _summary(_get_session(store, scan_id))


@router.delete("/{scan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scan(scan_id: str, store: SessionStoreDep) -> Response:
    """Discard a scan session and everything derived from it."""
    if not store.delete(scan_id):
        raise NotFoundError("Scan", scan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{scan_id}/depth-image", response_class=Response)
async def get_depth_image(scan_id: str, store: SessionStoreDep) -> Response:
    """The rendered depth image prompts refer to."""
    session = _get_session(store, scan_id)
    return Response(content=encode_png(session.depth_image), media_type="image/png")


# =============================================================================
# Object selection
# =============================================================================


@router.post("/{scan_id}/object/prompts", response_model=MaskStateResponse)
async def add_object_prompt(scan_id: str, prompt: MaskPrompt, store: SessionStoreDep) -> MaskStateResponse:
    """Predict the object on both images and add it to the selection."""
    session = _get_session(store, scan_id)
    async with session.lock:
        try:
            outcome = await session.apply_object_prompt(prompt)
        except MaskPredictionError as e:
            raise _predictor_failure(e) from e
        return _mask_state(session, outcome.issues)


@router.post("/{scan_id}/object/strokes", response_model=MaskStateResponse)
async def add_object_stroke(scan_id: str, stroke: StrokeRequest, store: SessionStoreDep) -> MaskStateResponse:
    """Paint a correction stroke into the object selection."""
    session = _get_session(store, scan_id)
    async with session.lock:
        session.draw_object_stroke(stroke.points, stroke.brush_radius, stroke.category)
        return _mask_state(session)


@router.post("/{scan_id}/object/undo", response_model=MaskStateResponse)
async def undo_object(scan_id: str, store: SessionStoreDep) -> MaskStateResponse:
    """Undo the last object prompt or stroke."""
    session = _get_session(store, scan_id)
    async with session.lock:
        if not session.undo_object():
            raise ConflictError("Nothing to undo in the object selection")
        return _mask_state(session)


@router.delete("/{scan_id}/object/masks", response_model=MaskStateResponse)
async def clear_object(scan_id: str, store: SessionStoreDep) -> MaskStateResponse:
    """Clear the object selection."""
    session = _get_session(store, scan_id)
    async with session.lock:
        session.clear_object()
        return _mask_state(session)


# =============================================================================
# Background selection
# =============================================================================


@router.post("/{scan_id}/background/prompts", response_model=MaskStateResponse)
async def add_background_prompt(
    scan_id: str, prompt: MaskPrompt, store: SessionStoreDep
) -> MaskStateResponse:
    """Select floor pixels both images agree on."""
    session = _get_session(store, scan_id)
    async with session.lock:
        try:
            outcome = await session.apply_background_prompt(prompt)
        except MaskPredictionError as e:
            raise _predictor_failure(e) from e
        return _mask_state(session, outcome.issues)


@router.post("/{scan_id}/background/undo", response_model=MaskStateResponse)
async def undo_background(scan_id: str, store: SessionStoreDep) -> MaskStateResponse:
    """Undo the last background prompt."""
    session = _get_session(store, scan_id)
    async with session.lock:
        if not session.undo_background():
            raise ConflictError("Nothing to undo in the background selection")
        return _mask_state(session)


@router.delete("/{scan_id}/background/masks", response_model=MaskStateResponse)
async def clear_background(scan_id: str, store: SessionStoreDep) -> MaskStateResponse:
    """Clear the background selection."""
    session = _get_session(store, scan_id)
    async with session.lock:
        session.clear_background()
        return _mask_state(session)


@router.get("/{scan_id}/masks/{region}", response_class=Response)
async def get_mask(scan_id: str, region: MaskRegion, store: SessionStoreDep) -> Response:
    """A region's composite mask as a PNG at depth-map resolution."""
    session = _get_session(store, scan_id)
    return Response(content=raster.to_png(session.region_mask(region)), media_type="image/png")


@router.get("/{scan_id}/points", response_class=PlainTextResponse)
async def export_points(
    scan_id: str,
    store: SessionStoreDep,
    region: Annotated[MaskRegion, Query()] = MaskRegion.PRIMARY,
) -> PlainTextResponse:
    """Depth samples inside a region, in the point-list format."""
    session = _get_session(store, scan_id)
    text = serialize_point_list(session.region_samples(region), session.capture.intrinsics)
    return PlainTextResponse(content=text, media_type="text/csv")


# =============================================================================
# Reconstruction
# =============================================================================


@router.post("/{scan_id}/reconstruct", response_model=ReconstructionResponse)
async def reconstruct(
    scan_id: str,
    store: SessionStoreDep,
    service: ReconstructionServiceDep,
    crop: Annotated[bool, Query(description="Crop the solid to the floor plane")] = True,
) -> ReconstructionResponse:
    """Reconstruct the selected object and compute its volume."""
    session = _get_session(store, scan_id)
    async with session.lock:
        if session.objects.step_count == 0:
            raise ConflictError("Select the object before reconstructing")
        outcome = await asyncio.to_thread(session.reconstruct, service, crop)
        return _reconstruction(session, outcome.result, outcome.processing_time_ms)


@router.post("/{scan_id}/crop", response_model=ReconstructionResponse)
async def set_crop(scan_id: str, request: CropRequest, store: SessionStoreDep) -> ReconstructionResponse:
    """Toggle floor cropping without recomputing the reconstruction."""
    session = _get_session(store, scan_id)
    async with session.lock:
        result = session.set_crop(request.enabled)
        if result is None:
            raise ConflictError("Scan has no reconstruction to crop")
        return _reconstruction(session, result)


@router.get("/{scan_id}/result", response_model=ReconstructionResponse)
async def get_result(scan_id: str, store: SessionStoreDep) -> ReconstructionResponse:
    """The current reconstruction result."""
    session = _get_session(store, scan_id)
    if session.result is None:
        raise ConflictError("Scan has not been reconstructed")
    return _reconstruction(session, session.result)


@router.get("/{scan_id}/voxels", response_model=VoxelSolidResponse)
async def get_voxels(scan_id: str, store: SessionStoreDep) -> VoxelSolidResponse:
    """The current voxel solid for rendering."""
    session = _get_session(store, scan_id)
    result = session.result
    if result is None:
        raise ConflictError("Scan has not been reconstructed")
    return VoxelSolidResponse(
        scan_id=session.id,
        voxel_size_m=result.voxel_size,
        bbox_min=result.grid.origin,
        bbox_max=result.grid.maximum,
        voxels=sorted(tuple(v) for v in result.voxels),
    )
