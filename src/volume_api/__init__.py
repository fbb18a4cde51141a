"""Depth Volume API - prompt-guided volume estimation from depth captures."""

__version__ = "0.1.0"
