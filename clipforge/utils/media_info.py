"""Media file information utilities using FFprobe."""

import json
import subprocess

from clipforge.config import get_settings


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


def _run_ffprobe(file_path: str, *args, ffprobe_path: str | None = None) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path or _get_settings().ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise RuntimeError(f"ffprobe could not run: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}") from e


def get_media_duration(file_path: str, ffprobe_path: str | None = None) -> int:
    """
    Get media file duration in milliseconds.

    Args:
        file_path: Path to media file
        ffprobe_path: Override for the configured ffprobe binary

    Returns:
        Duration in milliseconds

    Raises:
        RuntimeError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format", ffprobe_path=ffprobe_path)
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise RuntimeError(f"Duration not found in: {file_path}")

    return int(float(format_info["duration"]) * 1000)
