"""Accumulation of prompt-driven masks with exact undo.

Each category keeps its ordered sub-mask history; the composite is always
the union of that history.
"""

import asyncio
import logging
from dataclasses import dataclass, field

import numpy as np

from volume_api.models.scan import MaskCategory, MaskPrompt
from volume_api.services.reconstruction.models import ErrorKind, StageIssue
from volume_api.services.segmentation.client import ImageEmbedding, MaskPredictionError, MaskPredictor

from . import raster
from .reconciler import MaskReconciler

logger = logging.getLogger(__name__)


@dataclass
class MaskSource:
    """A source image the predictor is prompted on, with its cached embedding."""

    name: str
    image: np.ndarray
    embedding: ImageEmbedding | None = None

    @property
    def shape(self) -> tuple[int, int]:
        return self.image.shape[:2]


@dataclass
class RegionMask:
    """Composite mask plus the history it is the union of."""

    shape: tuple[int, int]
    history: list[np.ndarray] = field(default_factory=list)
    composite: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        self.composite = np.zeros(self.shape, dtype=bool)

    @property
    def pixel_count(self) -> int:
        return int(self.composite.sum())

    def add(self, mask: np.ndarray) -> None:
        mask = raster.resample(mask, self.shape)
        self.history.append(mask)
        self.composite = np.logical_or(self.composite, mask)

    def pop(self) -> None:
        self.history.pop()
        self.composite = raster.union_all(self.history, self.shape)

    def clear(self) -> None:
        self.history.clear()
        self.composite = np.zeros(self.shape, dtype=bool)


@dataclass
class PromptOutcome:
    """What a prompt contributed and which modalities failed."""

    contributed: list[str] = field(default_factory=list)
    issues: list[StageIssue] = field(default_factory=list)


async def ensure_embeddings(
    predictor: MaskPredictor, sources: list[MaskSource]
) -> dict[str, MaskPredictionError]:
    """
    Embed every source image that has no embedding yet, concurrently.

    Successful embeddings are stored on their source even when another
    source fails.

    Returns:
        Embedding failures by source name
    """
    pending = [s for s in sources if s.embedding is None]
    if not pending:
        return {}
    results = await asyncio.gather(
        *(predictor.embed_image(s.image) for s in pending),
        return_exceptions=True,
    )

    failures: dict[str, MaskPredictionError] = {}
    for source, result in zip(pending, results):
        if isinstance(result, MaskPredictionError):
            logger.warning(f"Embedding failed for {source.name} image: {result.message}")
            failures[source.name] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            source.embedding = result
    return failures


def _source_issue(error: MaskPredictionError, stage: str, source: MaskSource) -> StageIssue:
    return StageIssue(
        kind=error.code,
        stage=stage,
        message=error.message,
        details={**error.details, "source": source.name},
    )


async def predict_on_sources(
    predictor: MaskPredictor,
    sources: list[MaskSource],
    prompt: MaskPrompt,
    stage: str,
) -> tuple[dict[str, np.ndarray], list[StageIssue]]:
    """
    Run one prompt against every source concurrently and wait for all of them.

    Predictor failures, embedding failures included, are returned as issues;
    a failure on every source raises.

    Raises:
        MaskPredictionError: If no source produced a mask
    """
    embed_failures = await ensure_embeddings(predictor, sources)
    issues = [_source_issue(embed_failures[s.name], stage, s) for s in sources if s.name in embed_failures]

    ready = [s for s in sources if s.embedding is not None]
    results = await asyncio.gather(
        *(predictor.predict(s.embedding, prompt, s.shape) for s in ready),
        return_exceptions=True,
    )

    masks: dict[str, np.ndarray] = {}
    for source, result in zip(ready, results):
        if isinstance(result, MaskPredictionError):
            logger.warning(f"Predictor failed on {source.name} image: {result.message}")
            issues.append(_source_issue(result, stage, source))
        elif isinstance(result, BaseException):
            raise result
        else:
            masks[source.name] = result

    if not masks:
        raise MaskPredictionError(
            "Predictor failed on every source image",
            {"sources": [s.name for s in sources], "failures": [i.message for i in issues]},
        )
    return masks, issues


@dataclass
class _Step:
    categories: tuple[MaskCategory, ...]
    from_stroke: bool = False


class MaskCompositor:
    """Object selection: a primary mask from the depth image and a contents mask from the photo."""

    def __init__(self, predictor: MaskPredictor, sources: dict[MaskCategory, MaskSource]) -> None:
        self.predictor = predictor
        self.sources = sources
        self.regions = {category: RegionMask(source.shape) for category, source in sources.items()}
        self._steps: list[_Step] = []

    @property
    def step_count(self) -> int:
        return len(self._steps)

    @property
    def pen_edited(self) -> bool:
        return any(step.from_stroke for step in self._steps)

    def composite(self, category: MaskCategory) -> np.ndarray:
        return self.regions[category].composite

    async def apply_prompt(self, prompt: MaskPrompt) -> PromptOutcome:
        """
        Predict a sub-mask on every source image and union each into its category.

        All sub-masks of one prompt form a single undo step.

        Raises:
            MaskPredictionError: If every source failed
        """
        categories = list(self.sources)
        by_name = {self.sources[c].name: c for c in categories}
        masks, issues = await predict_on_sources(
            self.predictor, [self.sources[c] for c in categories], prompt, stage="object_mask"
        )

        added = []
        for name, mask in masks.items():
            category = by_name[name]
            self.regions[category].add(mask)
            added.append(category)
        self._steps.append(_Step(categories=tuple(added)))

        logger.info(
            f"Applied {prompt.kind.value} prompt: "
            + ", ".join(f"{c.value}={self.regions[c].pixel_count}px" for c in added)
        )
        return PromptOutcome(contributed=[c.value for c in added], issues=issues)

    def draw_stroke(
        self,
        points: list[tuple[float, float]],
        brush_radius: int,
        category: MaskCategory = MaskCategory.PRIMARY,
    ) -> PromptOutcome:
        """Paint a normalized freehand path into a category without the predictor."""
        height, width = self.regions[category].shape
        pixel_points = [(x * width, y * height) for x, y in points]
        stroke = raster.rasterize_stroke(pixel_points, brush_radius, (height, width))
        self.regions[category].add(stroke)
        self._steps.append(_Step(categories=(category,), from_stroke=True))
        logger.info(f"Stroke added to {category.value}: {int(stroke.sum())} pixels")
        return PromptOutcome(contributed=[category.value])

    def undo(self) -> bool:
        """Remove the most recent step; False when there is nothing to undo."""
        if not self._steps:
            return False
        step = self._steps.pop()
        for category in step.categories:
            self.regions[category].pop()
        return True

    def clear(self) -> None:
        for region in self.regions.values():
            region.clear()
        self._steps.clear()

    def final_primary_mask(self, expansion_radius: int = 0) -> np.ndarray:
        """
        Primary composite expanded with the contents composite.

        Masks that came only from predictor prompts are grown by at least
        ``expansion_radius`` pixels, or one percent of the shorter image side
        when that is larger. A radius of 0 disables the expansion and
        pen-edited selections are used as drawn.
        """
        mask = self.regions[MaskCategory.PRIMARY].composite
        if MaskCategory.CONTENTS in self.regions:
            mask = raster.union(mask, self.regions[MaskCategory.CONTENTS].composite)
        if not self.pen_edited and expansion_radius > 0:
            mask = raster.expand(mask, scaled_expansion_radius(expansion_radius, mask.shape))
        return mask


def scaled_expansion_radius(minimum: int, shape: tuple[int, ...]) -> int:
    return max(minimum, min(shape[:2]) // 100)


class BackgroundCompositor:
    """Background selection reconciled across both source images."""

    def __init__(
        self,
        predictor: MaskPredictor,
        sources: list[MaskSource],
        target_shape: tuple[int, int],
        reconciler: MaskReconciler | None = None,
    ) -> None:
        self.predictor = predictor
        self.sources = sources
        self.reconciler = reconciler or MaskReconciler()
        self.region = RegionMask(target_shape)

    @property
    def step_count(self) -> int:
        return len(self.region.history)

    @property
    def composite(self) -> np.ndarray:
        return self.region.composite

    async def apply_prompt(self, prompt: MaskPrompt, exclude: np.ndarray | None = None) -> PromptOutcome:
        """
        Predict the background on both images and keep the pixels they agree on.

        With one failing modality the surviving mask is used alone.

        Raises:
            MaskPredictionError: If both modalities failed
        """
        masks, issues = await predict_on_sources(
            self.predictor, self.sources, prompt, stage="background_mask"
        )

        if len(masks) >= 2:
            first, second = list(masks.values())[:2]
            sub_mask = self.reconciler.reconcile(first, second, self.region.shape, exclude)
        else:
            (name, survivor), = masks.items()
            logger.warning(f"Background prompt using {name} mask only")
            sub_mask = self.reconciler.single(survivor, self.region.shape, exclude)
            issues.append(
                StageIssue(
                    kind=ErrorKind.PREDICTOR_FAILURE,
                    stage="background_mask",
                    message="Reconciliation fell back to a single modality",
                    details={"source": name},
                )
            )

        self.region.add(sub_mask)
        logger.info(f"Background prompt added {int(sub_mask.sum())} pixels, total {self.region.pixel_count}")
        return PromptOutcome(contributed=list(masks), issues=issues)

    def undo(self) -> bool:
        if not self.region.history:
            return False
        self.region.pop()
        return True

    def clear(self) -> None:
        self.region.clear()
