"""Revit model metadata extraction through Autodesk Platform Services."""

__version__ = "0.1.0"

from rvtmeta.models import (
    ExtractedResult,
    JobHandle,
    JobState,
    JobStatus,
    ObjectRef,
    PipelineConfig,
    PipelineResult,
)

__all__ = [
    "ExtractedResult",
    "JobHandle",
    "JobState",
    "JobStatus",
    "ObjectRef",
    "PipelineConfig",
    "PipelineResult",
    "__version__",
]
