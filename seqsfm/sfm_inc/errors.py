"""
Exceptions raised by the reconstruction engine.
"""

from __future__ import annotations


class ReconstructionError(RuntimeError):
    """Base class for errors that stop a reconstruction."""


class NoInitialPairError(ReconstructionError):
    """No candidate image pair produced a valid two-view reconstruction."""


class InvalidInputError(ReconstructionError, ValueError):
    """Malformed correspondences, features or scene description."""


__all__ = ["ReconstructionError", "NoInitialPairError", "InvalidInputError"]
