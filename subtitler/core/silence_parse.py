"""
Parse ffmpeg ``silencedetect`` log output into silence intervals.
"""

import re
import logging

logger = logging.getLogger(__name__)

_NUMBER = r'(\d+(?:\.\d+)?)'
_START_RE = re.compile(r'silence_start:\s*' + _NUMBER)
_END_RE = re.compile(r'silence_end:\s*' + _NUMBER + r'(?:\s*\|\s*silence_duration:\s*' + _NUMBER + r')?')


def parse_silences(output: str, min_duration: float) -> list[dict]:
    """
    Return ``[{start, end, duration}]`` for every silence of at least
    ``min_duration`` seconds, in log order.

    A ``silence_start`` with no matching end is dropped. An end without a
    preceding start is anchored at ``max(0, end - duration)``.
    """
    silences = []
    current_start = None

    for line in re.split(r'\r\n|\r|\n', output or ''):
        start_match = _START_RE.search(line)
        if start_match:
            current_start = float(start_match.group(1))
            continue

        end_match = _END_RE.search(line)
        if not end_match:
            continue

        end = float(end_match.group(1))
        duration = float(end_match.group(2)) if end_match.group(2) is not None else None

        if duration is None:
            if current_start is None:
                continue
            duration = end - current_start

        if duration >= min_duration:
            start = current_start if current_start is not None else max(0.0, end - duration)
            silences.append({
                'start': start,
                'end': end,
                'duration': duration,
            })

        current_start = None

    logger.debug("Parsed %d silences (min %.2fs)", len(silences), min_duration)
    return silences
