"""
Output writer: renders cues to SRT / WebVTT and stores both files.
"""

import logging

from subtitler.core.security_utils import sanitize_filename
from subtitler.core.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_BASE_NAME = "transcription"


def format_timestamp(seconds: float, separator: str = ',') -> str:
    """HH:MM:SS<sep>mmm, rounded to the nearest millisecond."""
    total_ms = max(0, int(round(float(seconds) * 1000)))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{ms:03d}"


def _display_text(cue: dict) -> str:
    return str(cue.get('formatted_text') or cue.get('text') or '')


def build_srt(cues: list[dict]) -> str:
    lines = []
    for index, cue in enumerate(cues, start=1):
        lines.append(str(index))
        lines.append(f"{format_timestamp(cue['start'])} --> {format_timestamp(cue['end'])}")
        lines.append(_display_text(cue))
        lines.append('')
    return '\n'.join(lines) + ('\n' if lines else '')


def build_vtt(cues: list[dict]) -> str:
    lines = ['WEBVTT', '']
    for cue in cues:
        lines.append(f"{format_timestamp(cue['start'], '.')} --> {format_timestamp(cue['end'], '.')}")
        lines.append(_display_text(cue))
        lines.append('')
    return '\n'.join(lines) + '\n'


def output_base_name(original_filename: str | None, target_language: str | None = None) -> str:
    """
    ``transcription`` for the first render, ``<name>_<lang>`` once translated.
    """
    if not target_language:
        return DEFAULT_BASE_NAME
    base = sanitize_filename(original_filename or '', fallback=DEFAULT_BASE_NAME)
    return f"{base}_{target_language.lower()}"


def write_outputs(storage: Storage, prefix: str, job_id: str, base_name: str,
                  cues: list[dict]) -> tuple[str, str]:
    """
    Write <prefix>/<job_id>/output/<base_name>.srt and .vtt.
    Returns (srt_path, vtt_path) as storage paths.
    """
    folder = f"{prefix.strip('/')}/{job_id}/output"
    srt_path = f"{folder}/{base_name}.srt"
    vtt_path = f"{folder}/{base_name}.vtt"

    storage.put(srt_path, build_srt(cues))
    storage.put(vtt_path, build_vtt(cues))

    logger.info("Wrote %d cues: %s, %s", len(cues), srt_path, vtt_path)
    return srt_path, vtt_path
