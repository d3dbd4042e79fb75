"""Object storage for uploaded assets and rendered videos.

Two backends share one surface:

- ``LocalStorageService`` keeps files on disk and serves them through
  ``/api/storage/files/{key}`` (development).
- ``GCSStorageService`` writes to a Google Cloud Storage bucket (production).

Besides ``put`` (used by the publisher) the services can map one of their own
URLs back to a storage key, which lets the asset resolver skip the network for
files this service already holds.
"""

import logging
import mimetypes
import uuid
from pathlib import Path
from urllib.parse import unquote

from clipforge.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

LOCAL_HANDLE_PREFIX = "local:"


def _extension_for(content_type: str | None, filename: str | None = None) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    if content_type:
        guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
        if guessed:
            return guessed.lstrip(".")
    return "bin"


def new_storage_key(prefix: str, content_type: str | None = None, filename: str | None = None) -> str:
    """Generate a collision-free storage key such as ``renders/<uuid>.mp4``."""
    return f"{prefix}/{uuid.uuid4()}.{_extension_for(content_type, filename)}"


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, base_path: str | None = None, public_base_url: str | None = None) -> None:
        self.base_path = Path(base_path or settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.files_url_prefix = f"{base_url}/api/storage/files/"

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self.files_url_prefix}{storage_key}"

    def storage_key_from_url(self, url: str) -> str | None:
        """Return the storage key if ``url`` points at a file served by this service."""
        if url.startswith(self.files_url_prefix):
            return unquote(url[len(self.files_url_prefix):].split("?", 1)[0])
        return None

    def upload_file_from_bytes(self, storage_key: str, data: bytes) -> str:
        """Upload file from bytes."""
        full_path = self._get_full_path(storage_key)
        full_path.write_bytes(data)
        return self.get_public_url(storage_key)

    def put(self, data: bytes, content_type: str, prefix: str = "renders") -> str:
        """Store ``data`` under a fresh key and return its public URL."""
        storage_key = new_storage_key(prefix, content_type)
        url = self.upload_file_from_bytes(storage_key, data)
        logger.info(f"[STORAGE] Stored {len(data)} bytes at {storage_key}")
        return url

    def local_path(self, storage_key: str) -> Path | None:
        """Path of the stored file on this machine, or None if it is not here."""
        full_path = self._get_full_path(storage_key)
        return full_path if full_path.is_file() else None

    def delete_file(self, storage_key: str) -> bool:
        """Delete file."""
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if file exists."""
        return self._get_full_path(storage_key).exists()

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, bucket_name: str | None = None) -> None:
        from google.cloud import storage

        self._storage = storage
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None
        self.bucket_name = bucket_name or settings.gcs_bucket_name
        self.files_url_prefix = f"https://storage.googleapis.com/{self.bucket_name}/"

    @property
    def client(self):
        if self._client is None:
            if settings.gcs_project_id:
                self._client = self._storage.Client(project=settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"{self.files_url_prefix}{storage_key}"

    def storage_key_from_url(self, url: str) -> str | None:
        if url.startswith(self.files_url_prefix):
            return unquote(url[len(self.files_url_prefix):].split("?", 1)[0])
        return None

    def upload_file_from_bytes(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        """Upload bytes directly to GCS."""
        blob = self.bucket.blob(storage_key)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        return self.get_public_url(storage_key)

    def put(self, data: bytes, content_type: str, prefix: str = "renders") -> str:
        """Store ``data`` under a fresh key and return its public URL."""
        storage_key = new_storage_key(prefix, content_type)
        url = self.upload_file_from_bytes(storage_key, data, content_type)
        logger.info(f"[STORAGE] Uploaded {len(data)} bytes to gs://{self.bucket_name}/{storage_key}")
        return url

    def local_path(self, storage_key: str) -> Path | None:
        """Bucket objects are never on local disk."""
        return None

    def delete_file(self, storage_key: str) -> bool:
        """Delete a file from GCS."""
        blob = self.bucket.blob(storage_key)
        if blob.exists():
            blob.delete()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if a file exists in GCS."""
        blob = self.bucket.blob(storage_key)
        return blob.exists()


StorageService = LocalStorageService | GCSStorageService

_storage_service: StorageService | None = None


def get_storage_service() -> StorageService:
    """Return the process-wide storage service for the configured backend."""
    global _storage_service
    if _storage_service is None:
        if settings.use_local_storage:
            _storage_service = LocalStorageService()
        else:
            _storage_service = GCSStorageService()
    return _storage_service
