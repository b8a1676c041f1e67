"""
Subtitle text parsing.
- SRT/VTT cue blocks → [{start, end, text}]
- SRT/VTT file → plain text
"""

import re
import logging
from pathlib import Path

from subtitler.core.security_utils import sanitize_utf8

logger = logging.getLogger(__name__)

_BLOCK_SPLIT_RE = re.compile(r'(?:\r?\n){2,}')
_TIME_LINE_RE = re.compile(
    r'(\d{2}:\d{2}:\d{2}[,.]\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2}[,.]\d{3})'
)

_HTML_TAG_RE = re.compile(r'<[^>]+>')


def sanitize_text(text) -> str:
    """Drop invalid byte sequences and trim."""
    return sanitize_utf8(text).strip()


def srt_timestamp_to_seconds(timestamp: str) -> float:
    hours, minutes, rest = timestamp.strip().replace(',', '.').split(':')
    return int(hours) * 3600 + int(minutes) * 60 + float(rest)


def parse_srt(content: str) -> list[dict]:
    """
    Parse SRT (or VTT) cue blocks. Blocks without a readable time line or
    without text are skipped.
    """
    cues = []
    for block in _BLOCK_SPLIT_RE.split(sanitize_utf8(content).strip()):
        lines = [line.strip() for line in block.splitlines()]
        time_idx = next((i for i, line in enumerate(lines) if '-->' in line), None)
        if time_idx is None:
            continue

        match = _TIME_LINE_RE.search(lines[time_idx])
        if not match:
            continue

        text = ' '.join(line for line in lines[time_idx + 1:] if line)
        text = sanitize_text(_HTML_TAG_RE.sub('', text))
        if not text:
            continue

        cues.append({
            'start': srt_timestamp_to_seconds(match.group(1)),
            'end': srt_timestamp_to_seconds(match.group(2)),
            'text': text,
        })

    return cues


def parse_srt_file(path: Path) -> list[dict]:
    return parse_srt(path.read_bytes().decode('utf-8', errors='ignore'))


def parse_vtt_to_text(path: Path) -> str:
    """
    Convert an SRT/VTT file to plain text: one line per cue, timings and
    markup removed, consecutive repeats collapsed.
    """
    lines = []
    for cue in parse_srt_file(path):
        if lines and cue['text'] == lines[-1]:
            continue
        lines.append(cue['text'])
    return '\n'.join(lines)
