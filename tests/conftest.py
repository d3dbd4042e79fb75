"""
Pytest fixtures for ClipForge render tests.

Most tests run the pipeline against in-process fakes and never touch the
network or an encoder binary. Tests that run the real ffmpeg/ffprobe are
marked with @pytest.mark.requires_ffmpeg and are skipped when the binaries
are not on PATH:

    pytest -m "not requires_ffmpeg"
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

import pytest

from clipforge.exceptions import ClipForgeError
from clipforge.models.job import ResolvedAsset
from clipforge.render.asset_resolver import AssetResolver
from clipforge.render.encode_runner import EncodeResult
from clipforge.render.filter_graph import FilterGraphBuilder
from clipforge.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: test runs the real ffmpeg/ffprobe binaries (skipped when not installed)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip requires_ffmpeg tests when the encoder binaries are missing."""
    if _ffmpeg_available():
        return
    skip = pytest.mark.skip(reason="ffmpeg/ffprobe not installed")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="clipforge_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def local_storage(temp_output_dir) -> LocalStorageService:
    """Local storage rooted in a temp dir, serving URLs under http://testserver."""
    return LocalStorageService(
        base_path=str(temp_output_dir / "storage"),
        public_base_url="http://testserver",
    )


@pytest.fixture
def work_dir(temp_output_dir) -> Path:
    """Root for per-job working directories."""
    path = temp_output_dir / "work"
    path.mkdir()
    return path


# =============================================================================
# Pipeline fakes
# =============================================================================


class FakeResolver:
    """Writes a small file per reference instead of downloading.

    ``failures`` maps a reference to the exception resolve() raises for it;
    ``delays`` maps a reference to seconds to sleep before resolving.
    """

    def __init__(self, storage: LocalStorageService):
        # Real classification rules so submission-time checks behave as in production
        self._checker = AssetResolver(storage)
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def check_reference(self, reference: str):
        return self._checker.check_reference(reference)

    async def resolve(self, reference: str, dest_dir: str, job_id: str, name: str) -> ResolvedAsset:
        self.calls.append(reference)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self._checker.check_reference(reference)
            if reference in self.delays:
                await asyncio.sleep(self.delays[reference])
            if reference in self.failures:
                raise self.failures[reference]
            os.makedirs(dest_dir, exist_ok=True)
            path = os.path.join(dest_dir, f"{name}.mp4")
            with open(path, "wb") as f:
                f.write(reference.encode())
            return ResolvedAsset(path=path, size=os.path.getsize(path), job_id=job_id)
        finally:
            self.in_flight -= 1


class FakeRunner:
    """Records graphs and writes a placeholder output file."""

    def __init__(self):
        self.graphs = []
        self.error: ClipForgeError | None = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, graph, output_path: str, duration_cap: float) -> EncodeResult:
        self.graphs.append(graph)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            with open(output_path, "wb") as f:
                f.write(b"\x00" * 64)
            return EncodeResult(path=output_path, size=64, duration_ms=int(duration_cap * 1000))
        finally:
            self.in_flight -= 1


class FakePublisher:
    """Returns a deterministic URL per published file."""

    def __init__(self):
        self.published: list[str] = []
        self.error: ClipForgeError | None = None

    async def publish(self, local_file: str, content_type: str = "video/mp4") -> str:
        if self.error is not None:
            raise self.error
        self.published.append(local_file)
        return f"https://cdn.example.com/renders/{len(self.published)}.mp4"


@pytest.fixture
def fake_resolver(local_storage) -> FakeResolver:
    return FakeResolver(local_storage)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def graph_builder() -> FilterGraphBuilder:
    return FilterGraphBuilder(fill_policy="cover", fps=30, audio_sample_rate=48000)
