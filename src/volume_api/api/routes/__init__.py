"""API route modules."""

from . import scans

__all__ = ["scans"]
