"""Run FFmpeg over a built transform graph.

The encoder writes to ``<output>.part``; the file is renamed to the requested
output path only after FFmpeg exits 0 and the result is non-empty. On failure,
timeout or cancellation the partial file is deleted, so nothing half-written
ever appears at the output path.
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass

from clipforge.config import get_settings
from clipforge.exceptions import EncodeError, EncodeTimeoutError
from clipforge.render.filter_graph import TransformGraph
from clipforge.utils.media_info import get_media_duration

logger = logging.getLogger(__name__)

settings = get_settings()


@dataclass(frozen=True)
class EncodeResult:
    """A finished encode."""

    path: str
    size: int
    duration_ms: int


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class EncodeRunner:
    """Invokes the encoder binary with a wall-clock timeout."""

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        timeout_seconds: float | None = None,
        stderr_tail_chars: int | None = None,
        preset: str | None = None,
        crf: int | None = None,
        audio_bitrate: str | None = None,
    ):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.ffprobe_path = ffprobe_path or settings.ffprobe_path
        self.timeout_seconds = timeout_seconds or settings.encode_timeout_seconds
        self.stderr_tail_chars = stderr_tail_chars or settings.encode_stderr_tail_chars
        self.preset = preset or settings.render_video_preset
        self.crf = settings.render_crf if crf is None else crf
        self.audio_bitrate = audio_bitrate or settings.render_audio_bitrate

    def build_command(self, graph: TransformGraph, output_path: str, duration_cap: float) -> list[str]:
        """Build the FFmpeg command for a graph without executing it.

        Args:
            graph: transform graph from FilterGraphBuilder
            output_path: file FFmpeg writes to
            duration_cap: maximum output length in seconds

        Returns:
            FFmpeg command as list[str]
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-loglevel", "warning",
            *graph.input_args(),
            "-filter_complex", graph.filter_complex(),
            "-map", graph.video_label,
        ]
        if graph.audio_label:
            cmd.extend(["-map", graph.audio_label])
        cmd.extend([
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", "yuv420p",
            "-r", str(graph.fps),
        ])
        if graph.has_audio:
            # Output ends with whichever of video and music runs out first
            cmd.extend(["-c:a", "aac", "-b:a", self.audio_bitrate, "-shortest"])
        else:
            cmd.append("-an")
        cmd.extend([
            "-t", f"{duration_cap:.3f}",
            "-movflags", "+faststart",
            "-f", "mp4",
            output_path,
        ])
        return cmd

    def _tail(self, stderr: bytes) -> str:
        text = stderr.decode("utf-8", errors="replace").strip()
        return text[-self.stderr_tail_chars:]

    async def run(self, graph: TransformGraph, output_path: str, duration_cap: float) -> EncodeResult:
        """Encode ``graph`` into ``output_path``.

        Raises:
            EncodeError: non-zero exit, missing binary, empty or unreadable output
            EncodeTimeoutError: encoder exceeded ``timeout_seconds`` and was killed
        """
        part_path = f"{output_path}.part"
        _discard(part_path)
        cmd = self.build_command(graph, part_path, duration_cap)
        logger.info(f"[ENCODE] {shlex.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeError(f"Encoder could not be started: {e}", exit_code=-1) from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"[ENCODE] Timed out after {self.timeout_seconds:g}s, killing pid {proc.pid}")
            await self._kill(proc)
            _discard(part_path)
            raise EncodeTimeoutError(self.timeout_seconds)
        except asyncio.CancelledError:
            await self._kill(proc)
            _discard(part_path)
            raise

        if proc.returncode != 0:
            _discard(part_path)
            tail = self._tail(stderr)
            logger.error(f"[ENCODE] FFmpeg exited with {proc.returncode}")
            logger.debug(f"[ENCODE] FFmpeg stderr: {stderr.decode('utf-8', errors='replace')}")
            raise EncodeError(exit_code=proc.returncode, diagnostic_tail=tail)

        if not os.path.exists(part_path) or os.path.getsize(part_path) == 0:
            _discard(part_path)
            raise EncodeError("Encoder produced no output", exit_code=0, diagnostic_tail=self._tail(stderr))

        os.replace(part_path, output_path)

        try:
            duration_ms = await asyncio.to_thread(get_media_duration, output_path, self.ffprobe_path)
        except RuntimeError as e:
            _discard(output_path)
            raise EncodeError(f"Encoded output is unreadable: {e}") from e

        size = os.path.getsize(output_path)
        logger.info(f"[ENCODE] Wrote {output_path} ({size} bytes, {duration_ms}ms)")
        return EncodeResult(path=output_path, size=size, duration_ms=duration_ms)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
