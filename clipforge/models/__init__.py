from clipforge.models.job import (
    ClipRef,
    Job,
    JobStatus,
    MusicRef,
    OutputFormat,
    RenderRequest,
    ResolvedAsset,
)

__all__ = [
    "ClipRef",
    "Job",
    "JobStatus",
    "MusicRef",
    "OutputFormat",
    "RenderRequest",
    "ResolvedAsset",
]
