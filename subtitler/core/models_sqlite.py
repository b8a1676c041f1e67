"""
SQLite data models (plain dataclasses) for VideoSubtitler.
"""

import json
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Job:
    id: str                          # UUID
    source_path: str                 # storage path of the uploaded video
    original_filename: Optional[str] = None
    status: str = "uploaded"
    stage: Optional[str] = None
    audio_path: Optional[str] = None
    srt_path: Optional[str] = None
    vtt_path: Optional[str] = None
    duration_sec: Optional[float] = None
    chunks_total: int = 0
    chunks_completed: int = 0
    meta: dict = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class JobChunk:
    job_id: str
    sequence: int
    start_sec: float
    end_sec: float
    id: Optional[int] = None
    status: str = "pending"
    audio_path: Optional[str] = None
    stt_payload: Optional[str] = None         # JSON list of {start, end, text}
    translated_payload: Optional[str] = None  # JSON list of {start, end, text}
    segment_count: int = 0
    attempts: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def duration(self) -> float:
        return round(self.end_sec - self.start_sec, 3)

    def payload(self, name: str = 'stt_payload') -> list[dict]:
        raw = getattr(self, name)
        return json.loads(raw) if raw else []


@dataclass
class Segment:
    job_id: str
    sequence: int
    start_sec: float
    end_sec: float
    id: Optional[int] = None
    chunk_id: Optional[int] = None
    source_text: str = ""
    target_text: str = ""
    formatted_text: str = ""

    def as_cue(self) -> dict:
        """Plain cue dict used by the formatter, deduplicator and renderer."""
        return {
            'id': self.id,
            'start': self.start_sec,
            'end': self.end_sec,
            'text': self.formatted_text or self.target_text,
            'source_text': self.source_text,
            'target_text': self.target_text,
            'formatted_text': self.formatted_text,
        }
