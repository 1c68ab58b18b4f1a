# pylint: disable=C0114
from __future__ import annotations


class MNNError(Exception):
    """Base class for errors raised during MNN batch correction."""

    def __init__(self, message: str, batch: str | None = None):
        if batch is not None:
            message = f"[batch '{batch}'] {message}"
        super().__init__(message)
        self.batch = batch


class InvalidInputError(MNNError, ValueError):
    """Empty feature set, mismatched dimensions, or ``k`` out of range."""


class NoMutualNeighborsError(MNNError, RuntimeError):
    """No mutual nearest neighbour pairs were found between a batch and the reference.

    A zero correction would be indistinguishable from "no batch effect",
    so the merge step is aborted instead. Increasing ``k`` usually helps.
    """


class NumericalInstabilityError(MNNError, ArithmeticError):
    """Projection or orthogonalization failed on degenerate input."""
