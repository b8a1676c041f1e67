"""
Media toolchain wrapper (ffmpeg / ffprobe).
Target audio: mono, 16kHz, WAV.
"""

import subprocess
import logging
from pathlib import Path

from subtitler.core.config import ToolSettings
from subtitler.core.security_utils import run_subprocess_capture
from subtitler.core.error_codes import JobError
from subtitler.core.constants import (
    ErrorCode, NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_FORMAT,
)

logger = logging.getLogger(__name__)


class MediaProbe:
    """Duration probing, audio extraction, silence detection and chunk cutting."""

    def __init__(self, tools: ToolSettings):
        self.tools = tools

    def _run(self, args: list, what: str, timeout: int | None = None) -> subprocess.CompletedProcess:
        try:
            result = run_subprocess_capture(args, timeout=timeout or self.tools.process_timeout_seconds)
        except FileNotFoundError as e:
            raise JobError(ErrorCode.CONFIG, f"{args[0]} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise JobError(ErrorCode.MEDIA_PROCESS, f"{what} timed out after {e.timeout}s") from e

        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            raise JobError(ErrorCode.MEDIA_PROCESS,
                           f"{what} failed (rc={result.returncode}): {stderr[-500:] or 'unknown error'}")
        return result

    def probe_duration(self, path: Path) -> float:
        """Duration in seconds via ffprobe."""
        result = self._run([
            self.tools.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=nw=1:nk=1",
            str(path),
        ], "ffprobe duration", timeout=60)
        try:
            return float(result.stdout.strip())
        except ValueError as e:
            raise JobError(ErrorCode.INVALID_INPUT,
                           f"Unable to read media duration from {path.name}") from e

    def extract_audio(self, video_path: Path, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run([
            self.tools.ffmpeg_path,
            "-y",
            "-i", str(video_path),
            "-vn",
            "-ac", str(NORM_CHANNELS),
            "-ar", str(NORM_SAMPLE_RATE),
            "-f", NORM_FORMAT,
            str(output_path),
        ], "ffmpeg audio extraction")

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise JobError(ErrorCode.NO_AUDIO, "Audio extraction produced no output.")

        logger.info("Extracted audio: %s", output_path)
        return output_path

    def detect_silence(self, audio_path: Path, noise: str, min_duration: float) -> str:
        """Raw silencedetect log (stderr followed by stdout)."""
        result = self._run([
            self.tools.ffmpeg_path,
            "-i", str(audio_path),
            "-af", f"silencedetect=noise={noise}:d={min_duration}",
            "-f", "null",
            "-",
        ], "ffmpeg silencedetect")
        return (result.stderr or "") + (result.stdout or "")

    def cut_chunk(self, audio_path: Path, start: float, duration: float, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run([
            self.tools.ffmpeg_path,
            "-y",
            "-ss", f"{start:.3f}",
            "-t", f"{duration:.3f}",
            "-i", str(audio_path),
            "-ac", str(NORM_CHANNELS),
            "-ar", str(NORM_SAMPLE_RATE),
            "-f", NORM_FORMAT,
            str(output_path),
        ], "ffmpeg chunk cut")

        if not output_path.exists():
            raise JobError(ErrorCode.CHUNKING, f"Chunk file {output_path.name} not created")
        return output_path
