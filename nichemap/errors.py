"""
Exception types raised by the workflow stages.

Every error carries the name of the layer, model, threshold or record it was
processing, so a failed stage can be resumed from that point.
"""

from typing import Optional, Sequence


class NicheMapError(Exception):
    """Base class for workflow errors."""

    def __init__(self, message: str, item: Optional[str] = None):
        self.item = item
        if item is not None:
            message = f"{message} [while processing: {item}]"
        super().__init__(message)


class SpatialReferenceError(NicheMapError, ValueError):
    """Missing or mismatched CRS, transform or grid shape between layers."""


class EmptyInputError(NicheMapError, ValueError):
    """Input that is empty or degenerate (e.g. zero presence records)."""


class StageInputError(NicheMapError, FileNotFoundError):
    """A required artifact or decision is missing at a stage boundary."""


class EngineError(NicheMapError, RuntimeError):
    """An external engine process failed or timed out."""

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        params: Optional[dict] = None,
        item: Optional[str] = None,
    ):
        self.command = list(command)
        self.params = dict(params or {})
        super().__init__(message, item=item)
