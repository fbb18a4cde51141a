"""Tests for dual-view mask reconciliation and background compositing."""

import numpy as np
import pytest

from volume_api.models.scan import MaskPrompt, PromptKind
from volume_api.services.masks import BackgroundCompositor, MaskReconciler, MaskSource
from volume_api.services.reconstruction import ErrorKind
from volume_api.services.segmentation import ImageEmbedding, MaskPredictionError


def rect(shape: tuple[int, int], rows: slice, cols: slice) -> np.ndarray:
    mask = np.zeros(shape, dtype=bool)
    mask[rows, cols] = True
    return mask


class TestMaskReconciler:
    """Tests for MaskReconciler."""

    @pytest.fixture
    def reconciler(self):
        return MaskReconciler(row_margin=0.0)

    def test_intersection_bounded_by_each_input(self, reconciler):
        """The reconciled mask is never larger than either input."""
        first = rect((20, 20), slice(0, 12), slice(0, 20))
        second = rect((20, 20), slice(8, 20), slice(5, 15))

        result = reconciler.reconcile(first, second, (20, 20))

        assert result.sum() <= min(first.sum(), second.sum())
        assert result.sum() == 4 * 10

    def test_inputs_resampled_to_target(self, reconciler):
        """Masks of different resolutions are compared at the target resolution."""
        low = rect((10, 10), slice(0, 10), slice(0, 5))
        high = rect((40, 40), slice(0, 40), slice(0, 40))

        result = reconciler.reconcile(low, high, (20, 20))

        assert result.shape == (20, 20)
        assert result.sum() == 20 * 10

    def test_uint8_rasters_binarized(self, reconciler):
        """Grayscale rasters are thresholded at half intensity before the AND."""
        first = np.full((4, 4), 200, dtype=np.uint8)
        second = np.full((4, 4), 100, dtype=np.uint8)
        second[0, 0] = 255

        result = reconciler.reconcile(first, second, (4, 4))

        assert result.sum() == 1

    def test_row_margins_cleared(self):
        """Top and bottom rows within the margin are dropped."""
        reconciler = MaskReconciler(row_margin=0.05)
        full = np.ones((100, 10), dtype=bool)

        result = reconciler.reconcile(full, full, (100, 10))

        assert not result[:5].any()
        assert not result[95:].any()
        assert result[5:95].all()

    def test_contents_excluded(self, reconciler):
        """Pixels claimed by the contents mask never count as background."""
        full = np.ones((10, 10), dtype=bool)
        contents = rect((10, 10), slice(2, 6), slice(2, 6))

        result = reconciler.reconcile(full, full, (10, 10), exclude=contents)

        assert not result[contents].any()
        assert result.sum() == 100 - 16

    def test_single_modality_fallback(self):
        """A single surviving mask still gets margins and exclusion."""
        reconciler = MaskReconciler(row_margin=0.1)
        full = np.ones((10, 10), dtype=bool)
        contents = rect((10, 10), slice(4, 6), slice(4, 6))

        result = reconciler.single(full, (10, 10), exclude=contents)

        assert result.sum() == 80 - 4


class TestBackgroundCompositor:
    """Tests for BackgroundCompositor."""

    @pytest.fixture
    def sources(self):
        return [
            MaskSource("depth", np.zeros((50, 50, 3), np.uint8), ImageEmbedding("depth", 50, 50)),
            MaskSource("photo", np.zeros((100, 100, 3), np.uint8), ImageEmbedding("photo", 100, 100)),
        ]

    @pytest.fixture
    def floor_prompt(self):
        return MaskPrompt(kind=PromptKind.BOX, box=(0.0, 0.0, 1.0, 0.5))

    @pytest.mark.asyncio
    async def test_prompt_intersects_both_images(self, sources, floor_prompt, predictor_factory):
        """Both predictions are reconciled at the target resolution."""
        compositor = BackgroundCompositor(
            predictor_factory(), sources, (50, 50), MaskReconciler(row_margin=0.1)
        )

        outcome = await compositor.apply_prompt(floor_prompt)

        assert outcome.issues == []
        assert compositor.composite.shape == (50, 50)
        # rows 5..24 survive the 10% margin
        assert compositor.composite.sum() == 20 * 50

    @pytest.mark.asyncio
    async def test_falls_back_to_surviving_modality(self, sources, floor_prompt, predictor_factory):
        """With the photo prediction failing, the depth mask is used alone and reported."""
        compositor = BackgroundCompositor(
            predictor_factory(failing={"photo"}), sources, (50, 50), MaskReconciler(row_margin=0.0)
        )

        outcome = await compositor.apply_prompt(floor_prompt)

        assert outcome.contributed == ["depth"]
        assert compositor.composite.sum() == 25 * 50
        assert {i.kind for i in outcome.issues} == {ErrorKind.PREDICTOR_FAILURE}
        assert len(outcome.issues) == 2

    @pytest.mark.asyncio
    async def test_both_failing_raises(self, sources, floor_prompt, predictor_factory):
        compositor = BackgroundCompositor(
            predictor_factory(failing={"depth", "photo"}), sources, (50, 50)
        )

        with pytest.raises(MaskPredictionError):
            await compositor.apply_prompt(floor_prompt)

        assert compositor.step_count == 0

    @pytest.mark.asyncio
    async def test_undo_and_clear(self, sources, floor_prompt, predictor_factory):
        """Undo pops the last reconciled sub-mask; clear empties the history."""
        compositor = BackgroundCompositor(
            predictor_factory(), sources, (50, 50), MaskReconciler(row_margin=0.0)
        )
        await compositor.apply_prompt(floor_prompt)
        first = compositor.composite.copy()
        await compositor.apply_prompt(MaskPrompt(kind=PromptKind.BOX, box=(0.0, 0.5, 1.0, 1.0)))

        assert compositor.composite.sum() == 50 * 50
        assert compositor.undo() is True
        assert np.array_equal(compositor.composite, first)

        compositor.clear()
        assert compositor.step_count == 0
        assert compositor.undo() is False
