"""Resolve clip and music references to files in a job's working directory.

A reference is either:

- an ``http(s)`` URL, downloaded with ``httpx``;
- a managed handle for a file this service stores itself: ``local:<key>`` or
  a URL under the storage service's own file prefix. These are copied from
  storage without touching the network when the file is present, and
  downloaded from the storage's public URL when it is not (local storage does
  not survive a restart of the container).

Anything else, in particular a browser ``blob:`` URL, is rejected.
"""

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlsplit

import httpx

from clipforge.config import get_settings
from clipforge.exceptions import DownloadError, InvalidReferenceError, TooManyRedirectsError
from clipforge.models.job import ResolvedAsset
from clipforge.services.storage_service import LOCAL_HANDLE_PREFIX, StorageService, get_storage_service

logger = logging.getLogger(__name__)

settings = get_settings()

_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ParsedReference:
    """Classification of a reference, computed without any I/O."""

    reference: str
    url: str  # where to download from if no local copy is available
    storage_key: Optional[str] = None  # set for files managed by our storage service


def _extension_from_url(url: str) -> str:
    suffix = PurePosixPath(urlsplit(url).path).suffix
    return suffix.lower() if _EXTENSION_RE.match(suffix) else ".bin"


class AssetResolver:
    """Materializes references as local files.

    Redirects are followed by hand so the hop count is bounded and no request
    header survives a redirect.
    """

    def __init__(
        self,
        storage: StorageService | None = None,
        *,
        timeout_seconds: float | None = None,
        max_redirects: int | None = None,
        max_bytes: int | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.storage = storage or get_storage_service()
        self.timeout_seconds = timeout_seconds or settings.download_timeout_seconds
        self.max_redirects = settings.download_max_redirects if max_redirects is None else max_redirects
        self.max_bytes = max_bytes or settings.download_max_bytes
        self.headers = dict(headers or {})
        self._transport = transport

    def check_reference(self, reference: str) -> ParsedReference:
        """Classify a reference or raise InvalidReferenceError.

        Raises:
            InvalidReferenceError: empty, browser-local, or unsupported reference
        """
        ref = (reference or "").strip()
        if not ref:
            raise InvalidReferenceError(reason="Asset reference is empty")

        if ref.startswith(LOCAL_HANDLE_PREFIX):
            key = ref[len(LOCAL_HANDLE_PREFIX):].lstrip("/")
            if not key or ".." in PurePosixPath(key).parts:
                raise InvalidReferenceError(ref, reason=f"Malformed local handle: {ref!r}")
            return ParsedReference(reference=ref, url=self.storage.get_public_url(key), storage_key=key)

        parts = urlsplit(ref)
        scheme = parts.scheme.lower()
        if scheme == "blob":
            raise InvalidReferenceError(
                ref,
                reason=(
                    f"Browser-local reference {ref!r} cannot be read by the render server; "
                    "upload the file and use the returned URL"
                ),
            )
        if scheme not in ("http", "https"):
            reason = (
                f"Unsupported reference scheme '{scheme}:' in {ref!r}; expected an http(s) URL or a local: handle"
                if scheme
                else f"Asset reference is not a URL: {ref!r}"
            )
            raise InvalidReferenceError(ref, reason=reason)
        if not parts.netloc:
            raise InvalidReferenceError(ref, reason=f"URL has no host: {ref!r}")

        return ParsedReference(reference=ref, url=ref, storage_key=self.storage.storage_key_from_url(ref))

    async def resolve(self, reference: str, dest_dir: str, job_id: str, name: str) -> ResolvedAsset:
        """Make ``reference`` available as ``<dest_dir>/<name>.<ext>``.

        Args:
            reference: clip or music reference
            dest_dir: job-scoped working directory
            job_id: owning job (recorded on the result for scoped cleanup)
            name: file stem, unique within the job

        Returns:
            ResolvedAsset with the absolute path and size of the local file

        Raises:
            InvalidReferenceError: reference cannot be resolved by this service
            DownloadError: non-2xx status, timeout or interrupted transfer
            TooManyRedirectsError: redirect chain longer than ``max_redirects``
        """
        parsed = self.check_reference(reference)
        os.makedirs(dest_dir, exist_ok=True)

        if parsed.storage_key is not None:
            try:
                local = self.storage.local_path(parsed.storage_key)
            except ValueError as e:
                raise InvalidReferenceError(parsed.reference, reason=str(e)) from e
            if local is not None:
                dest = os.path.join(dest_dir, f"{name}{local.suffix or '.bin'}")
                await asyncio.to_thread(shutil.copyfile, local, dest)
                size = os.path.getsize(dest)
                logger.info(f"[RESOLVE] job={job_id} {name}: local copy of {parsed.storage_key} ({size} bytes)")
                return ResolvedAsset(path=os.path.abspath(dest), size=size, job_id=job_id)
            logger.warning(
                f"[RESOLVE] job={job_id} {name}: {parsed.storage_key} missing from local storage, "
                f"downloading {parsed.url}"
            )

        dest = os.path.join(dest_dir, f"{name}{_extension_from_url(parsed.url)}")
        size = await self._download(parsed.url, dest)
        logger.info(f"[RESOLVE] job={job_id} {name}: downloaded {size} bytes")
        return ResolvedAsset(path=os.path.abspath(dest), size=size, job_id=job_id)

    async def _download(self, url: str, dest_path: str) -> int:
        """Download ``url`` to ``dest_path``, following at most ``max_redirects`` hops.

        ``timeout_seconds`` bounds the whole transfer, redirects included.
        """
        current = url
        headers = self.headers
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with httpx.AsyncClient(
                    timeout=self.timeout_seconds,
                    follow_redirects=False,
                    transport=self._transport,
                ) as client:
                    for _ in range(self.max_redirects + 1):
                        async with client.stream("GET", current, headers=headers) as response:
                            if response.is_redirect:
                                next_url = str(response.url.join(response.headers["location"]))
                                logger.debug(f"[RESOLVE] redirect {response.status_code}: {current} -> {next_url}")
                                current = next_url
                                headers = {}
                                continue
                            if not response.is_success:
                                raise DownloadError(current, status=response.status_code)
                            return await self._write_body(response, current, dest_path)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise DownloadError(current, reason=f"timed out after {self.timeout_seconds:g}s") from e
        except httpx.HTTPError as e:
            raise DownloadError(current, reason=f"transfer interrupted: {e}") from e

        raise TooManyRedirectsError(url, self.max_redirects)

    async def _write_body(self, response: httpx.Response, url: str, dest_path: str) -> int:
        """Stream the body to ``<dest>.part`` and rename it into place when complete."""
        part_path = f"{dest_path}.part"
        written = 0
        try:
            with open(part_path, "wb") as f:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise DownloadError(url, reason=f"asset larger than {self.max_bytes} bytes")
                    f.write(chunk)
            os.replace(part_path, dest_path)
        except BaseException:
            if os.path.exists(part_path):
                os.unlink(part_path)
            raise
        return written
