"""
Embedded subtitle track extraction.
Picks the track matching the source language (by language tag or title)
and converts it to SRT with ffmpeg.
"""

import json
import logging
import subprocess
from pathlib import Path

from subtitler.core.config import ToolSettings
from subtitler.core.constants import ErrorCode, LANGUAGE_ALIASES, LANGUAGE_TITLE_WORDS
from subtitler.core.error_codes import JobError
from subtitler.core.security_utils import run_subprocess_capture
from subtitler.core.subtitle_parse import parse_srt_file

logger = logging.getLogger(__name__)


def language_aliases(language: str) -> list[str]:
    return LANGUAGE_ALIASES.get(language, [language])


def matches_language(stream: dict, preferred: str) -> bool:
    """True if the stream's language tag or title names ``preferred``."""
    preferred = (preferred or '').strip().lower().replace('_', '-')
    if not preferred:
        return False
    aliases = language_aliases(preferred)

    language = (stream.get('language') or '').lower().replace('_', '-')
    if language:
        for alias in aliases:
            if language == alias or language.startswith(alias + '-'):
                return True

    title = (stream.get('title') or '').lower()
    if title:
        if any(alias in title for alias in aliases):
            return True
        word = LANGUAGE_TITLE_WORDS.get(preferred)
        if word and word in title:
            return True

    return False


def select_stream(streams: list[dict], preferred: str | None,
                  fallback_to_first: bool) -> dict | None:
    if preferred:
        for stream in streams:
            if matches_language(stream, preferred):
                return stream
    if fallback_to_first and streams:
        return streams[0]
    return None


class EmbeddedSubtitleExtractor:
    def __init__(self, tools: ToolSettings, fallback_to_first_stream: bool = True):
        self.tools = tools
        self.fallback_to_first_stream = fallback_to_first_stream

    def extract(self, input_path: Path, temp_directory: Path,
                preferred_language: str | None = None,
                fallback_to_first_stream: bool | None = None) -> list[dict] | None:
        """Cues of the selected subtitle track, or None if there is no usable track."""
        streams = self.probe_streams(input_path)
        if not streams:
            return None

        fallback = (self.fallback_to_first_stream if fallback_to_first_stream is None
                    else fallback_to_first_stream)
        stream = select_stream(streams, preferred_language, fallback)
        if stream is None:
            logger.info("No subtitle stream matches %r", preferred_language)
            return None

        temp_directory.mkdir(parents=True, exist_ok=True)
        output_path = temp_directory / 'embedded-subtitles.srt'
        output_path.unlink(missing_ok=True)

        self._run([
            self.tools.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-map", f"0:{stream['index']}",
            "-c:s", "srt",
            str(output_path),
        ], "ffmpeg subtitle extraction")

        if not output_path.exists():
            return None
        try:
            cues = parse_srt_file(output_path)
        finally:
            output_path.unlink(missing_ok=True)

        logger.info("Embedded subtitles: stream %s (%s) -> %d cues",
                    stream['index'], stream.get('language') or '?', len(cues))
        return cues or None

    def probe_streams(self, input_path: Path) -> list[dict]:
        result = self._run([
            self.tools.ffprobe_path,
            "-v", "error",
            "-select_streams", "s",
            "-show_entries", "stream=index,codec_name:stream_tags=language,title",
            "-of", "json",
            str(input_path),
        ], "ffprobe subtitle streams")

        try:
            payload = json.loads(result.stdout or '{}')
        except ValueError:
            logger.warning("ffprobe returned unreadable JSON for %s", input_path)
            return []

        streams = payload.get('streams') if isinstance(payload, dict) else None
        if not isinstance(streams, list):
            return []

        return [
            {
                'index': int(s.get('index', 0)),
                'language': (s.get('tags') or {}).get('language'),
                'title': (s.get('tags') or {}).get('title'),
                'codec': s.get('codec_name'),
            }
            for s in streams
        ]

    def _run(self, args: list, what: str) -> subprocess.CompletedProcess:
        try:
            result = run_subprocess_capture(args, timeout=self.tools.process_timeout_seconds)
        except FileNotFoundError as e:
            raise JobError(ErrorCode.CONFIG, f"{args[0]} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise JobError(ErrorCode.EMBEDDED_FAILED, f"{what} timed out after {e.timeout}s") from e
        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise JobError(ErrorCode.EMBEDDED_FAILED,
                           f"{what} failed (rc={result.returncode}): {stderr[-300:] or 'unknown error'}")
        return result
