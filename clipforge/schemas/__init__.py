from clipforge.schemas.envelope import ErrorInfo, ErrorLocation, ErrorResponse
from clipforge.schemas.render import (
    RenderJobCreate,
    RenderJobCreated,
    RenderJobResponse,
    UploadResponse,
)

__all__ = [
    "ErrorInfo",
    "ErrorLocation",
    "ErrorResponse",
    "RenderJobCreate",
    "RenderJobCreated",
    "RenderJobResponse",
    "UploadResponse",
]
