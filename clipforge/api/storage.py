"""Upload endpoint for clip/music files and local storage file serving."""

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import FileResponse

from clipforge.api.deps import StorageDep
from clipforge.config import get_settings
from clipforge.schemas.render import UploadResponse
from clipforge.services.storage_service import new_storage_key

settings = get_settings()
router = APIRouter()


@router.put("/upload/{filename}", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(filename: str, request: Request, storage: StorageDep) -> UploadResponse:
    """Store the raw request body and return a public URL usable as a clip reference."""
    body = await request.body()
    if not body:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file data provided",
        )

    content_type = request.headers.get("content-type")
    storage_key = new_storage_key("uploads", content_type, filename)
    url = storage.upload_file_from_bytes(storage_key, body)
    return UploadResponse(url=url, storage_key=storage_key)


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str, storage: StorageDep):
    """Serve files from local storage."""
    if not settings.use_local_storage:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = storage.get_file_path(storage_key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    # Determine media type from extension
    ext = file_path.suffix.lower()
    media_types = {
        ".mp3": "audio/mpeg",
        ".wav": "audio/wav",
        ".m4a": "audio/mp4",
        ".aac": "audio/aac",
        ".mp4": "video/mp4",
        ".mov": "video/quicktime",
        ".webm": "video/webm",
    }
    media_type = media_types.get(ext, "application/octet-stream")

    return FileResponse(
        path=str(file_path),
        media_type=media_type,
        filename=file_path.name,
    )
