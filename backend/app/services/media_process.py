"""
Async wrapper around the ffmpeg binary for probing and single-frame extraction.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from app.models.graph import parse_timestamp
from app.services.errors import (
    ConfigurationError,
    ExternalServiceError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"Duration:\s+(\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")
SEEK_MARGIN_SECONDS = 0.1


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


def resolve_binary(configured: str | None, default_name: str = "ffmpeg") -> str:
    """
    Locate the binary to run.

    An explicit path must exist; otherwise the default name is looked up on
    PATH. Raises ConfigurationError when neither is available.
    """
    if configured:
        if os.path.isfile(configured):
            return configured
        found = shutil.which(configured)
        if found:
            return found
        raise ConfigurationError(f"Configured binary not found: {configured}")
    found = shutil.which(default_name)
    if not found:
        raise ConfigurationError(
            f"{default_name} not found. Install it or set FFMPEG_PATH."
        )
    return found


async def run_process(binary: str | None, args: list[str], timeout: float) -> ProcessResult:
    """
    Run `binary args...` and capture its output.

    Non-zero exit codes are returned, not raised; callers decide what counts
    as success. A timeout kills the process and raises ExternalServiceError.
    """
    if not binary:
        raise ConfigurationError("Binary path is not configured")
    if not os.path.isfile(binary):
        raise ConfigurationError(f"Binary not found: {binary}")

    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ConfigurationError(f"Failed to start {binary}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ExternalServiceError(
            f"{os.path.basename(binary)} timed out after {timeout:g}s"
        )

    return ProcessResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode if process.returncode is not None else -1,
    )


def parse_duration(diagnostics: str) -> float:
    """Pull `Duration: HH:MM:SS.frac` out of ffmpeg's stderr."""
    match = DURATION_PATTERN.search(diagnostics)
    if not match:
        raise ExternalServiceError("Could not determine video duration")
    hours, minutes, seconds = match.groups()
    duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    if duration != duration or duration <= 0:
        raise ExternalServiceError(f"Invalid video duration: {duration}")
    return duration


async def probe_duration(binary: str, input_path: str | Path, timeout: float) -> float:
    """
    Duration of a media file in seconds.

    `ffmpeg -i <file>` with no output always exits non-zero; the duration is
    read from stderr regardless of exit code.
    """
    result = await run_process(binary, ["-i", str(input_path)], timeout)
    if "Invalid data found" in result.stderr:
        raise ExternalServiceError("Invalid video file")
    return parse_duration(result.stderr)


async def extract_frame(
    binary: str,
    input_path: str | Path,
    seek_seconds: float,
    output_path: str | Path,
    *,
    quality: int = 2,
    timeout: float,
) -> Path:
    """Grab exactly one frame at seek_seconds into output_path."""
    output_path = Path(output_path)
    args = [
        "-ss", f"{seek_seconds:.3f}",
        "-i", str(input_path),
        "-vframes", "1",
        "-q:v", str(quality),
        "-y",
        str(output_path),
    ]
    result = await run_process(binary, args, timeout)
    if result.exit_code != 0:
        tail = result.stderr.strip().splitlines()[-3:]
        raise ExternalServiceError(
            f"Frame extraction failed (exit code {result.exit_code}): {' '.join(tail)}"
        )
    if not output_path.is_file():
        raise ExternalServiceError("Frame extraction produced no output file")
    return output_path


def resolve_seek_seconds(timestamp: str, duration: float) -> float:
    """
    Turn a timestamp string into an absolute seek position.

    "NN%" is a share of the duration and must lie in [0, 100]. A plain number
    (optionally suffixed with "s") is seconds; values within the final 0.1s
    or past the end are pulled back to duration - 0.1.
    """
    try:
        is_percentage, number = parse_timestamp(timestamp)
    except ValueError as e:
        raise WorkflowValidationError(str(e)) from e
    if is_percentage:
        return number / 100 * duration

    seconds = number
    latest = max(duration - SEEK_MARGIN_SECONDS, 0.0)
    if seconds > latest:
        clamped = latest
        logger.info(
            "Timestamp %.3fs exceeds duration %.3fs, seeking to %.3fs",
            seconds, duration, clamped,
        )
        return clamped
    return seconds
