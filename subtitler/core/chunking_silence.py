"""
Silence-aware chunk planning.
Chunks end on the latest silence inside the [min, max] window and overlap
the previous chunk by a fixed amount.
"""

import logging

from subtitler.core.constants import CHUNK_MIN_SEC, CHUNK_MAX_SEC, CHUNK_OVERLAP_SEC
from subtitler.core.models_sqlite import JobChunk

logger = logging.getLogger(__name__)


def plan_chunks(duration_sec: float, silences: list[dict],
                min_chunk_sec: float = CHUNK_MIN_SEC,
                max_chunk_sec: float = CHUNK_MAX_SEC,
                overlap_sec: float = CHUNK_OVERLAP_SEC) -> list[dict]:
    """
    Plan chunk boundaries over ``[0, duration_sec]``.
    Returns list of dicts with sequence, start, end (rounded to ms).

    Chunk ends strictly increase and the last end equals the duration.
    """
    if duration_sec <= 0:
        return []

    ends = sorted(float(s['end']) for s in silences)
    chunks = []
    base = 0.0
    sequence = 0

    while base < duration_sec:
        min_end = base + min_chunk_sec
        max_end = min(base + max_chunk_sec, duration_sec)

        chosen = None
        for end in ends:
            if end < min_end:
                continue
            if end > max_end:
                break
            chosen = end

        chunk_end = chosen if chosen is not None else max_end
        if duration_sec - chunk_end < min_chunk_sec:
            chunk_end = duration_sec

        start = 0.0 if sequence == 0 else max(0.0, base - overlap_sec)
        chunks.append({
            'sequence': sequence,
            'start': round(start, 3),
            'end': round(chunk_end, 3),
        })

        sequence += 1
        base = chunk_end
        if chunk_end >= duration_sec:
            break

    logger.info("Planned %d chunks over %.1fs (%d silences)",
                len(chunks), duration_sec, len(ends))
    return chunks


def create_job_chunks(job_id: str, plan: list[dict]) -> list[JobChunk]:
    """Create JobChunk objects from plan entries."""
    return [
        JobChunk(
            job_id=job_id,
            sequence=e['sequence'],
            start_sec=e['start'],
            end_sec=e['end'],
        )
        for e in plan
    ]
