"""Upload finished renders to durable storage."""

import asyncio
import logging
import os
from pathlib import Path

from clipforge.exceptions import PublishError
from clipforge.services.storage_service import StorageService, get_storage_service

logger = logging.getLogger(__name__)


class Publisher:
    """Makes a rendered file publicly fetchable.

    No retries: a failed upload is reported to the caller as PublishError.
    The local file is removed only once the upload succeeded.
    """

    def __init__(self, storage: StorageService | None = None):
        self.storage = storage or get_storage_service()

    async def publish(self, local_file: str, content_type: str = "video/mp4") -> str:
        """Upload ``local_file`` and return its public URL.

        Raises:
            PublishError: the file cannot be read or the storage backend failed
        """
        try:
            data = await asyncio.to_thread(Path(local_file).read_bytes)
        except OSError as e:
            raise PublishError(f"Cannot read rendered file {local_file}: {e}") from e

        try:
            url = await asyncio.to_thread(self.storage.put, data, content_type)
        except Exception as e:
            logger.error(f"[PUBLISH] Upload of {local_file} failed: {e}")
            raise PublishError(f"Upload failed: {e}") from e

        logger.info(f"[PUBLISH] {local_file} -> {url}")
        try:
            os.unlink(local_file)
        except OSError as e:
            logger.warning(f"[PUBLISH] Could not remove local copy {local_file}: {e}")
        return url
