"""Capture sessions: the only mutable state between requests.

A session owns one depth capture, its source images, the mask compositors
and the latest reconstruction. Starting a new capture means starting a new
session; nothing is shared between sessions.
"""

import asyncio
import io
import logging
from collections import OrderedDict
from datetime import UTC, datetime
from functools import lru_cache
from uuid import uuid4

import numpy as np
from PIL import Image

from volume_api.core.config import Settings, get_settings
from volume_api.models.scan import MaskCategory, MaskPrompt, MaskRegion
from volume_api.services.depth_image import render_depth_image
from volume_api.services.masks import BackgroundCompositor, MaskCompositor, MaskReconciler, MaskSource, PromptOutcome
from volume_api.services.masks import raster
from volume_api.services.masks.compositor import ensure_embeddings
from volume_api.services.reconstruction import (
    DepthCapture,
    ReconstructionOutcome,
    ReconstructionResult,
    ReconstructionService,
)
from volume_api.services.segmentation import MaskPredictionError, MaskPredictor

logger = logging.getLogger(__name__)


def decode_photo(data: bytes) -> np.ndarray:
    """
    Decode an uploaded photo into an (H, W, 3) RGB array.

    Raises:
        ValueError: If the bytes are not a readable image
    """
    try:
        image = Image.open(io.BytesIO(data)).convert("RGB")
    except OSError as e:
        raise ValueError(f"Could not decode photo: {e}") from e
    return np.array(image)


class CaptureSession:
    """State of one capture from upload to volume."""

    def __init__(
        self,
        capture: DepthCapture,
        predictor: MaskPredictor,
        settings: Settings,
        photo: np.ndarray | None = None,
    ) -> None:
        self.id = uuid4().hex
        self.created_at = datetime.now(UTC)
        self.capture = capture
        self.predictor = predictor
        self.settings = settings
        self.photo = photo
        self.lock = asyncio.Lock()

        self.depth_image = render_depth_image(capture)
        depth_source = MaskSource("depth", self.depth_image)
        # Without a photo both categories are predicted on the depth image
        photo_source = MaskSource("photo", photo if photo is not None else self.depth_image)
        self.sources = [depth_source, photo_source]

        self.objects = MaskCompositor(
            predictor, {MaskCategory.PRIMARY: depth_source, MaskCategory.CONTENTS: photo_source}
        )
        self.background = BackgroundCompositor(
            predictor,
            self.sources,
            target_shape=self.depth_shape,
            reconciler=MaskReconciler(
                row_margin=settings.background_row_margin,
                binarize_threshold=settings.mask_binarize_threshold,
            ),
        )

        self.outcome: ReconstructionOutcome | None = None
        self.result: ReconstructionResult | None = None

    @property
    def depth_shape(self) -> tuple[int, int]:
        return self.depth_image.shape[:2]

    @property
    def embeddings_ready(self) -> bool:
        return all(source.embedding is not None for source in self.sources)

    async def prepare(self) -> dict[str, MaskPredictionError]:
        """Compute both image embeddings up front; failed ones are retried on the next prompt."""
        return await ensure_embeddings(self.predictor, self.sources)

    def _invalidate(self) -> None:
        self.outcome = None
        self.result = None

    # -------------------------------------------------------------------------
    # Mask edits
    # -------------------------------------------------------------------------

    async def apply_object_prompt(self, prompt: MaskPrompt) -> PromptOutcome:
        outcome = await self.objects.apply_prompt(prompt)
        self._invalidate()
        return outcome

    def draw_object_stroke(
        self, points: list[tuple[float, float]], brush_radius: int, category: MaskCategory
    ) -> PromptOutcome:
        outcome = self.objects.draw_stroke(points, brush_radius, category)
        self._invalidate()
        return outcome

    def undo_object(self) -> bool:
        changed = self.objects.undo()
        if changed:
            self._invalidate()
        return changed

    def clear_object(self) -> None:
        self.objects.clear()
        self._invalidate()

    async def apply_background_prompt(self, prompt: MaskPrompt) -> PromptOutcome:
        outcome = await self.background.apply_prompt(
            prompt, exclude=self.objects.composite(MaskCategory.CONTENTS)
        )
        self._invalidate()
        return outcome

    def undo_background(self) -> bool:
        changed = self.background.undo()
        if changed:
            self._invalidate()
        return changed

    def clear_background(self) -> None:
        self.background.clear()
        self._invalidate()

    # -------------------------------------------------------------------------
    # Masks at depth-map resolution
    # -------------------------------------------------------------------------

    def object_mask(self) -> np.ndarray:
        mask = self.objects.final_primary_mask(self.settings.primary_mask_expansion_px)
        return raster.resample(mask, self.depth_shape)

    def region_mask(self, region: MaskRegion) -> np.ndarray:
        """Composite of a region, resampled to depth-map resolution."""
        if region == MaskRegion.BACKGROUND:
            return self.background.composite
        return raster.resample(self.objects.composite(MaskCategory(region.value)), self.depth_shape)

    def region_samples(self, region: MaskRegion) -> np.ndarray:
        """Depth samples selected by a region; the primary region uses the final object mask."""
        mask = self.object_mask() if region == MaskRegion.PRIMARY else self.region_mask(region)
        return self.capture.select(mask)

    # -------------------------------------------------------------------------
    # Reconstruction
    # -------------------------------------------------------------------------

    def reconstruct(self, service: ReconstructionService, crop: bool = True) -> ReconstructionOutcome:
        """Run the pipeline on the current selections. Blocking; run off the event loop."""
        contents = self.region_mask(MaskRegion.CONTENTS)
        outcome = service.reconstruct(
            self.capture,
            object_mask=self.object_mask(),
            contents_mask=contents if contents.any() else None,
            background_mask=self.background.composite if self.background.step_count else None,
            crop=crop,
        )
        self.outcome = outcome
        self.result = outcome.result
        return outcome

    def set_crop(self, enabled: bool) -> ReconstructionResult | None:
        """Swap the current result for the cropped or uncropped one; None before reconstruction."""
        if self.outcome is None or self.outcome.crop_state is None:
            return None
        self.result = self.outcome.crop_state.apply(enabled)
        return self.result


class SessionStore:
    """In-memory sessions, oldest evicted first."""

    def __init__(self, max_sessions: int = 8) -> None:
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, CaptureSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: CaptureSession) -> CaptureSession:
        self._sessions[session.id] = session
        while len(self._sessions) > self.max_sessions:
            evicted_id, _ = self._sessions.popitem(last=False)
            logger.info(f"Evicted scan session {evicted_id}")
        return session

    def get(self, session_id: str) -> CaptureSession | None:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


@lru_cache
def get_session_store() -> SessionStore:
    """Get the process-wide session store."""
    return SessionStore(max_sessions=get_settings().max_sessions)
