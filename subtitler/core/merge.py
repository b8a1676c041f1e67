"""
Merge cues from overlapping chunks into a single timeline.
Handles seam deduplication at chunk boundaries.
"""

import logging

from subtitler.core.constants import DEDUPE_SIMILARITY_PERCENT
from subtitler.core.text_similarity import is_similar_words

logger = logging.getLogger(__name__)


def cue_text(cue: dict) -> str:
    return str(cue.get('target_text') or cue.get('text') or '')


def dedupe_overlaps(cues: list[dict], tolerance: float,
                    threshold: float = DEDUPE_SIMILARITY_PERCENT) -> list[dict]:
    """
    Walk cues in start order. A cue that starts inside the previous kept cue
    (before ``prev.end - tolerance``) is dropped when its text repeats the
    previous one, otherwise its start is pushed to ``prev.end + tolerance``.
    Returned dicts are copies that keep every original key (``id`` included).
    """
    merged: list[dict] = []
    dropped = 0

    for cue in sorted(cues, key=lambda c: float(c['start'])):
        start = float(cue['start'])
        end = float(cue['end'])
        if end <= start:
            dropped += 1
            continue

        if merged:
            last = merged[-1]
            if start <= last['end'] - tolerance:
                if is_similar_words(cue_text(cue), cue_text(last), threshold):
                    dropped += 1
                    continue
                start = max(start, last['end'] + tolerance)
                if start >= end:
                    dropped += 1
                    continue

        kept = dict(cue)
        kept['start'] = round(start, 3)
        kept['end'] = round(end, 3)
        merged.append(kept)

    if dropped:
        logger.debug("Deduped %d of %d cues at chunk seams", dropped, len(cues))
    return merged
