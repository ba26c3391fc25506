"""Typed failures raised by the frame analysis pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures. ``index`` names the frame, if any."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        self.message = message
        if index is not None:
            message = f"frame {index}: {message}"
        super().__init__(message)


class DecodeError(PipelineError):
    """Malformed or unsupported input frame."""


class ReductionError(PipelineError):
    """The reducer failed while folding a decoded frame."""


class DimensionMismatchError(PipelineError):
    """A frame disagrees with the geometry fixed by the first arrival."""


class DegenerateRangeError(PipelineError):
    """The logarithmic transform was asked to map non-positive values."""


class EmptyBatchError(PipelineError):
    """A batch was submitted without any files."""


class IncompleteBufferError(PipelineError):
    """Normalization was requested before every frame settled."""
