"""Reconciliation of two independently predicted masks of one region."""

import logging

import numpy as np

from . import raster

logger = logging.getLogger(__name__)


class MaskReconciler:
    """
    Intersects masks of the same region predicted on two image modalities.

    Requiring both modalities to agree keeps leaked foreground out of the
    background selection.
    """

    def __init__(self, row_margin: float = 0.05, binarize_threshold: float = 0.5) -> None:
        self.row_margin = row_margin
        self.binarize_threshold = binarize_threshold

    def prepare(self, mask: np.ndarray, target_shape: tuple[int, int]) -> np.ndarray:
        """Binarize a raster and bring it to the target resolution."""
        return raster.resample(raster.binarize(mask, self.binarize_threshold), target_shape)

    def finish(self, mask: np.ndarray, exclude: np.ndarray | None = None) -> np.ndarray:
        """Zero the top and bottom row margins and drop excluded pixels."""
        mask = mask.copy()
        height = mask.shape[0]
        cutoff = int(height * self.row_margin)
        if cutoff > 0:
            mask[:cutoff, :] = False
            mask[height - cutoff:, :] = False
        if exclude is not None:
            mask = raster.subtract(mask, exclude)
        return mask

    def reconcile(
        self,
        first: np.ndarray,
        second: np.ndarray,
        target_shape: tuple[int, int],
        exclude: np.ndarray | None = None,
    ) -> np.ndarray:
        """
        Intersect two masks at a target resolution.

        Args:
            first: Mask from one modality, any resolution
            second: Mask from the other modality, any resolution
            target_shape: (height, width) of the result
            exclude: Pixels already claimed by the object's contents

        Returns:
            Boolean mask of ``target_shape``
        """
        agreed = raster.intersect(self.prepare(first, target_shape), self.prepare(second, target_shape))
        result = self.finish(agreed, exclude)
        logger.debug(f"Reconciled masks: {int(result.sum())} pixels agree at {target_shape}")
        return result

    def single(
        self,
        mask: np.ndarray,
        target_shape: tuple[int, int],
        exclude: np.ndarray | None = None,
    ) -> np.ndarray:
        """Fallback for a single surviving modality; margins and exclusion still apply."""
        return self.finish(self.prepare(mask, target_shape), exclude)
