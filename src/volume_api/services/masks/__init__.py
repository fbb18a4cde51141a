"""Prompt-driven mask compositing and dual-view reconciliation."""

from .compositor import BackgroundCompositor, MaskCompositor, MaskSource, PromptOutcome, RegionMask
from .reconciler import MaskReconciler

__all__ = [
    "BackgroundCompositor",
    "MaskCompositor",
    "MaskReconciler",
    "MaskSource",
    "PromptOutcome",
    "RegionMask",
]
