"""Mask predictor service client."""

from .client import (
    ImageEmbedding,
    MaskPredictionError,
    MaskPredictor,
    MaskPredictorClient,
    get_predictor_client,
)

__all__ = [
    "ImageEmbedding",
    "MaskPredictionError",
    "MaskPredictor",
    "MaskPredictorClient",
    "get_predictor_client",
]
