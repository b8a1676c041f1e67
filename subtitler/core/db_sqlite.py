"""
SQLite database layer for VideoSubtitler.
Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import threading
import uuid
import logging
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path

from subtitler.core.constants import (
    DB_PATH, MAX_ERROR_MESSAGE_LEN, DEFAULT_FAILURE_MESSAGE,
    JobStatus, ChunkStatus, TERMINAL_STATUSES, can_transition,
)
from subtitler.core.models_sqlite import Job, JobChunk, Segment
from subtitler.core.security_utils import sanitize_utf8

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    source_path TEXT NOT NULL,
    original_filename TEXT,
    status TEXT NOT NULL DEFAULT 'uploaded',
    stage TEXT,
    audio_path TEXT,
    srt_path TEXT,
    vtt_path TEXT,
    duration_sec REAL,
    chunks_total INTEGER DEFAULT 0,
    chunks_completed INTEGER DEFAULT 0,
    meta TEXT,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS job_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    start_sec REAL NOT NULL,
    end_sec REAL NOT NULL,
    status TEXT DEFAULT 'pending',
    audio_path TEXT,
    stt_payload TEXT,
    translated_payload TEXT,
    segment_count INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,
    error_message TEXT,
    completed_at TEXT,
    UNIQUE (job_id, sequence),
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_job_chunks_job_status ON job_chunks(job_id, status);

CREATE TABLE IF NOT EXISTS segments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    chunk_id INTEGER,
    sequence INTEGER NOT NULL,
    start_sec REAL NOT NULL,
    end_sec REAL NOT NULL,
    source_text TEXT DEFAULT '',
    target_text TEXT DEFAULT '',
    formatted_text TEXT DEFAULT '',
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE,
    FOREIGN KEY (chunk_id) REFERENCES job_chunks(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_segments_job_sequence ON segments(job_id, sequence);
CREATE INDEX IF NOT EXISTS idx_segments_job_start ON segments(job_id, start_sec);
"""

_JOB_FIELDS = {f.name for f in fields(Job)}


def clean_error_message(message) -> str:
    """Sanitized, bounded failure text for storage."""
    text = sanitize_utf8(str(message or '')).strip()
    if not text:
        return DEFAULT_FAILURE_MESSAGE
    return text[:MAX_ERROR_MESSAGE_LEN]


class Database:
    """SQLite database wrapper for VideoSubtitler."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        data['meta'] = json.loads(data['meta']) if data.get('meta') else {}
        return Job(**data)

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> JobChunk:
        return JobChunk(**dict(row))

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> Segment:
        return Segment(**dict(row))

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, source_path: str, original_filename: str | None = None,
                   meta: dict | None = None,
                   status: JobStatus = JobStatus.UPLOADED) -> Job:
        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            source_path=source_path,
            original_filename=original_filename,
            status=JobStatus(status).value,
            meta=dict(meta or {}),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO jobs
                   (id, source_path, original_filename, status,
                    chunks_total, chunks_completed, meta, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.source_path, job.original_filename, job.status,
                 job.chunks_total, job.chunks_completed, json.dumps(job.meta),
                 job.created_at, job.updated_at),
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_all_jobs(self) -> list[Job]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job(self, job_id: str, **kwargs):
        unknown = set(kwargs) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        if 'meta' in kwargs:
            kwargs['meta'] = json.dumps(kwargs['meta'] or {})
        if 'status' in kwargs:
            kwargs['status'] = JobStatus(kwargs['status']).value
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def update_job_status(self, job_id: str, status: JobStatus, stage: str | None = None,
                          **extra) -> bool:
        """
        Move a job to ``status`` if the transition table allows it.
        Returns False (and leaves the row alone) for a disallowed transition.
        """
        status = JobStatus(status)
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                return False
            if not can_transition(job.status, status):
                logger.warning("Job %s: refusing transition %s -> %s",
                               job_id, job.status, status.value)
                return False
            fields_ = {'status': status}
            if stage is not None:
                fields_['stage'] = stage
            if status in TERMINAL_STATUSES or status == JobStatus.AWAITING_TRANSLATION:
                fields_['completed_at'] = self._now()
            fields_.update(extra)
            self.update_job(job_id, **fields_)
        return True

    def fail_job(self, job_id: str, message, stage: str | None = None) -> bool:
        return self.update_job_status(job_id, JobStatus.FAILED, stage=stage,
                                      error_message=clean_error_message(message))

    def update_job_meta(self, job_id: str, **values):
        """Merge ``values`` into the job's meta map."""
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                return
            meta = dict(job.meta)
            meta.update(values)
            self.update_job(job_id, meta=meta)

    def record_subtitle_progress(self, job_id: str, frame: int, total: int,
                                 percent: float) -> bool:
        """Store OCR progress only if it moves the stored percentage forward."""
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                return False
            current = job.meta.get('subtitle_progress_percent')
            if current is not None and float(current) >= percent:
                return False
            meta = dict(job.meta)
            meta.update({
                'subtitle_progress_percent': percent,
                'subtitle_frame': frame,
                'subtitle_frames_total': total,
            })
            self.update_job(job_id, meta=meta)
        return True

    def delete_job(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.conn.commit()

    # ── Chunk CRUD ────────────────────────────────────────────────────

    def upsert_chunks(self, chunks: list[JobChunk]) -> list[JobChunk]:
        """
        Insert or refresh chunk rows keyed by (job_id, sequence).
        Completed chunks are left untouched.
        """
        with self._lock:
            self.conn.executemany(
                """INSERT INTO job_chunks
                   (job_id, sequence, start_sec, end_sec, status, audio_path, attempts)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (job_id, sequence) DO UPDATE SET
                       start_sec = excluded.start_sec,
                       end_sec = excluded.end_sec,
                       status = excluded.status,
                       audio_path = excluded.audio_path,
                       error_message = NULL
                   WHERE job_chunks.status != 'completed'""",
                [(c.job_id, c.sequence, c.start_sec, c.end_sec,
                  ChunkStatus(c.status).value, c.audio_path, c.attempts)
                 for c in chunks],
            )
            self.conn.commit()
            if not chunks:
                return []
            return self.get_chunks(chunks[0].job_id)

    def get_chunk(self, chunk_id: int) -> JobChunk | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM job_chunks WHERE id = ?", (chunk_id,)
            ).fetchone()
        return self._row_to_chunk(row) if row else None

    def get_chunks(self, job_id: str) -> list[JobChunk]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM job_chunks WHERE job_id = ? ORDER BY sequence",
                (job_id,),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def update_chunk(self, chunk_id: int, **kwargs):
        if 'status' in kwargs:
            kwargs['status'] = ChunkStatus(kwargs['status']).value
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [chunk_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE job_chunks SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def claim_chunk(self, chunk_id: int) -> bool:
        """Mark a chunk processing and count the attempt; False if it is already completed."""
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE job_chunks SET status = ?, error_message = NULL,
                   attempts = attempts + 1
                   WHERE id = ? AND status != ?""",
                (ChunkStatus.PROCESSING.value, chunk_id, ChunkStatus.COMPLETED.value),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def fail_chunk(self, chunk_id: int, message: str):
        """Mark a chunk failed unless another attempt already completed it."""
        with self._lock:
            self.conn.execute(
                "UPDATE job_chunks SET status = ?, error_message = ? WHERE id = ? AND status != ?",
                (ChunkStatus.FAILED.value, message, chunk_id, ChunkStatus.COMPLETED.value),
            )
            self.conn.commit()

    def complete_chunk(self, chunk_id: int, stt_payload: list, translated_payload: list,
                       segment_count: int) -> tuple[int, int, bool]:
        """
        Mark a chunk completed and recount its job's completed chunks in one
        locked step. Returns (chunks_completed, chunks_total, finished) where
        ``finished`` is True only for the call that completed the last chunk.
        A chunk that is already completed is left untouched.
        """
        with self._lock:
            chunk = self.get_chunk(chunk_id)
            if chunk is None:
                raise ValueError(f"Chunk {chunk_id} does not exist")
            job = self.get_job(chunk.job_id)
            if chunk.status == ChunkStatus.COMPLETED:
                return job.chunks_completed, job.chunks_total, False
            now = self._now()
            self.conn.execute(
                """UPDATE job_chunks SET status = ?, stt_payload = ?,
                   translated_payload = ?, segment_count = ?, completed_at = ?,
                   error_message = NULL
                   WHERE id = ?""",
                (ChunkStatus.COMPLETED.value,
                 json.dumps(stt_payload, ensure_ascii=False),
                 json.dumps(translated_payload, ensure_ascii=False),
                 segment_count, now, chunk_id),
            )
            completed = self.conn.execute(
                "SELECT COUNT(*) FROM job_chunks WHERE job_id = ? AND status = ?",
                (chunk.job_id, ChunkStatus.COMPLETED.value),
            ).fetchone()[0]
            self.conn.execute(
                "UPDATE jobs SET chunks_completed = ?, updated_at = ? WHERE id = ?",
                (completed, now, chunk.job_id),
            )
            self.conn.commit()
        total = job.chunks_total
        return completed, total, bool(total) and job.chunks_completed < total <= completed

    def delete_chunks(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM job_chunks WHERE job_id = ?", (job_id,))
            self.conn.commit()

    # ── Segment CRUD ──────────────────────────────────────────────────

    def insert_segments(self, segments: list[Segment]):
        with self._lock:
            self.conn.executemany(
                """INSERT INTO segments
                   (job_id, chunk_id, sequence, start_sec, end_sec,
                    source_text, target_text, formatted_text)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [(s.job_id, s.chunk_id, s.sequence, s.start_sec, s.end_sec,
                  s.source_text, s.target_text, s.formatted_text)
                 for s in segments],
            )
            self.conn.commit()

    def replace_chunk_segments(self, chunk_id: int, segments: list[Segment]):
        """Swap a chunk's segments for a fresh set in one transaction."""
        with self._lock:
            self.conn.execute("DELETE FROM segments WHERE chunk_id = ?", (chunk_id,))
            self.conn.executemany(
                """INSERT INTO segments
                   (job_id, chunk_id, sequence, start_sec, end_sec,
                    source_text, target_text, formatted_text)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [(s.job_id, chunk_id, s.sequence, s.start_sec, s.end_sec,
                  s.source_text, s.target_text, s.formatted_text)
                 for s in segments],
            )
            self.conn.commit()

    def get_segments(self, job_id: str, order_by: str = 'sequence') -> list[Segment]:
        order = 'start_sec, sequence' if order_by == 'start' else 'sequence, start_sec'
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM segments WHERE job_id = ? ORDER BY {order}, id",
                (job_id,),
            ).fetchall()
        return [self._row_to_segment(r) for r in rows]

    def update_segment(self, segment_id: int, **kwargs):
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [segment_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE segments SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def rewrite_segments(self, job_id: str, cues: list[dict]):
        """
        Keep only the segments whose ids appear in ``cues``; renumber them
        1..N in cue order and store their (possibly corrected) timings/texts.
        """
        keep_ids = [c['id'] for c in cues]
        with self._lock:
            if keep_ids:
                placeholders = ', '.join('?' for _ in keep_ids)
                self.conn.execute(
                    f"DELETE FROM segments WHERE job_id = ? AND id NOT IN ({placeholders})",
                    [job_id] + keep_ids,
                )
            else:
                self.conn.execute("DELETE FROM segments WHERE job_id = ?", (job_id,))
            for sequence, cue in enumerate(cues, start=1):
                self.conn.execute(
                    """UPDATE segments SET sequence = ?, start_sec = ?, end_sec = ?,
                       target_text = ?, formatted_text = ?
                       WHERE id = ?""",
                    (sequence, cue['start'], cue['end'],
                     cue.get('target_text', ''), cue.get('formatted_text', ''),
                     cue['id']),
                )
            self.conn.commit()

    def delete_segments(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM segments WHERE job_id = ?", (job_id,))
            self.conn.commit()
