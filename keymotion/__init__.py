"""Chroma-key composition of a looped foreground video over a still background, timed to an audio track."""

from .exceptions import (
    CapacityError,
    DependencyError,
    DownloadError,
    EncodeError,
    KeymotionError,
    PipelineError,
    PlanningError,
    ProbeError,
    ValidationError,
)
from .models import RenderRequest, RenderResult
from .pipeline import CompositionPipeline, run_composition

__version__ = "0.1.0"

__all__ = [
    "CapacityError",
    "CompositionPipeline",
    "DependencyError",
    "DownloadError",
    "EncodeError",
    "KeymotionError",
    "PipelineError",
    "PlanningError",
    "ProbeError",
    "RenderRequest",
    "RenderResult",
    "ValidationError",
    "run_composition",
]
