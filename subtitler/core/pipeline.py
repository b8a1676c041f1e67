"""
Pipeline orchestrator: the four job stages and their failure hooks.

    Start          download source, probe, pick a subtitle source; either
                   store extracted cues directly or chunk the audio and
                   dispatch one ProcessChunk per chunk
    ProcessChunk   transcribe (+ translate) + format one chunk's audio
    Finalize       dedupe chunk seams, renumber, render SRT/VTT
    Translate      translate stored cues in batches, dedupe, render

Stages are plain methods; a TaskQueue runs them with retries and calls the
``*_failed`` hooks once a stage gives up.
"""

import logging
import time
import uuid
from pathlib import Path

from subtitler.core.chunking_silence import plan_chunks, create_job_chunks
from subtitler.core.cleanup import ScratchDirectory
from subtitler.core.config import PipelineSettings, resolve_stop_after, resolve_subtitle_source
from subtitler.core.constants import (
    JobStatus, ChunkStatus, Stage, StopAfter, SubtitleSource, ErrorCode,
    TERMINAL_STATUSES,
)
from subtitler.core.db_sqlite import Database, clean_error_message
from subtitler.core.error_codes import JobError
from subtitler.core.formatter import CueFormatter
from subtitler.core.job_queue import attempt_cancelled, raise_if_cancelled
from subtitler.core.media_probe import MediaProbe
from subtitler.core.merge import dedupe_overlaps
from subtitler.core.models_sqlite import Job, JobChunk, Segment
from subtitler.core.output_writer import write_outputs, output_base_name
from subtitler.core.progress import ProgressChannel
from subtitler.core.security_utils import sanitize_utf8
from subtitler.core.silence_parse import parse_silences
from subtitler.core.storage import Storage, download_to_local, store_from_local, stream_to_local
from subtitler.core.stt import SpeechToText, create_stt_provider
from subtitler.core.subtitle_embedded import EmbeddedSubtitleExtractor
from subtitler.core.subtitle_ocr import OcrSubtitleExtractor, extract_with_passes
from subtitler.core.text_similarity import is_likely_chinese
from subtitler.core.translation import Translator, create_translator

logger = logging.getLogger(__name__)


def _error_text(error: BaseException) -> str:
    if isinstance(error, JobError):
        return error.message
    return str(error)


class PipelineOrchestrator:
    """
    Owns the collaborators every stage needs. Providers are built from
    ``settings`` unless passed in; an unknown driver raises
    ``JobError(ERR_CONFIG)`` here, before any stage runs.
    """

    def __init__(self, settings: PipelineSettings, db: Database, storage: Storage,
                 queue=None,
                 media: MediaProbe | None = None,
                 stt: SpeechToText | None = None,
                 translator: Translator | None = None,
                 embedded: EmbeddedSubtitleExtractor | None = None,
                 ocr_factory=None,
                 sleep=time.sleep):
        self.settings = settings
        self.db = db
        self.storage = storage
        self.media = media or MediaProbe(settings.tools)
        self.stt = stt or create_stt_provider(settings.stt)
        self.translator = translator or create_translator(settings.translator, settings.translation)
        self.embedded = embedded or EmbeddedSubtitleExtractor(
            settings.tools, settings.subtitle.fallback_to_first_stream)
        self._ocr_factory = ocr_factory or (
            lambda language: OcrSubtitleExtractor(settings.ocr, settings.tools, language))
        self.formatter = CueFormatter(settings.subtitle)
        self._sleep = sleep
        self.queue = None
        if queue is not None:
            self.attach(queue)

    # ── Wiring ────────────────────────────────────────────────────────

    def attach(self, queue):
        """Register the stage handlers and failure hooks on ``queue``."""
        self.queue = queue
        queue.register(Stage.START, self.start, self.start_failed)
        queue.register(Stage.PROCESS_CHUNK, self.process_chunk, self.process_chunk_failed)
        queue.register(Stage.TRANSLATE, self.translate, self.translate_failed)
        queue.register(Stage.FINALIZE, self.finalize, self.finalize_failed)

    def _dispatch(self, stage: Stage, *args):
        if self.queue is None:
            raise RuntimeError("Pipeline has no task queue attached")
        raise_if_cancelled()
        self.queue.dispatch(stage, *args)

    @property
    def prefix(self) -> str:
        return self.settings.storage_prefix.strip('/')

    # ── Entry points ──────────────────────────────────────────────────

    def submit_job(self, video_path: Path, original_filename: str | None = None,
                   meta: dict | None = None) -> Job:
        """Upload a local video into storage, create its job and dispatch Start."""
        video_path = Path(video_path)
        filename = original_filename or video_path.name
        job = self.db.create_job('', filename, meta, status=JobStatus.UPLOADING)

        suffix = video_path.suffix or '.mp4'
        source_path = f"{self.prefix}/{job.id}/source/source{suffix.lower()}"
        store_from_local(self.storage, video_path, source_path)
        self.db.update_job(job.id, source_path=source_path)
        self.db.update_job_status(job.id, JobStatus.UPLOADED)
        logger.info("Job %s: uploaded %s -> %s", job.id, filename, source_path)

        self._dispatch(Stage.START, job.id)
        return self.db.get_job(job.id)

    def request_translation(self, job_id: str, target_language: str | None = None) -> bool:
        """Resume a job parked in awaiting-translation."""
        job = self.db.get_job(job_id)
        if job is None or job.status != JobStatus.AWAITING_TRANSLATION:
            logger.warning("Job %s: translation requested in status %s",
                           job_id, job.status if job else None)
            return False
        if target_language:
            self.db.update_job_meta(job_id, target_language=target_language.strip().lower())
        self._dispatch(Stage.TRANSLATE, job_id)
        return True

    def retry_job(self, job_id: str) -> bool:
        """Reset a failed job to uploaded and run it again from Start."""
        job = self.db.get_job(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        self.db.delete_chunks(job_id)
        self.db.delete_segments(job_id)
        self.storage.delete_prefix(f"{self.prefix}/{job_id}/chunks")
        self.storage.delete_prefix(f"{self.prefix}/{job_id}/output")
        self.db.update_job_status(job_id, JobStatus.UPLOADED, stage=None,
                                  error_message=None, chunks_total=0, chunks_completed=0,
                                  srt_path=None, vtt_path=None, completed_at=None)
        logger.info("Job %s: retry requested", job_id)
        self._dispatch(Stage.START, job_id)
        return True

    # ── Job helpers ───────────────────────────────────────────────────

    def resolve_source_language(self, job: Job) -> str:
        supported = list(self.settings.supported_languages)
        language = str(job.meta.get('source_language') or self.settings.default_source_language)
        language = language.strip().lower()
        if language and language in supported:
            return language
        if 'ja' in supported:
            return 'ja'
        return supported[0] if supported else 'ja'

    def stop_after(self, job: Job) -> StopAfter:
        return resolve_stop_after(job.meta.get('stop_after'), self.settings.stop_after)

    def target_language(self, job: Job) -> str:
        return str(job.meta.get('target_language') or self.settings.translation.target_language)

    def translation_code(self, language: str) -> str:
        """Provider-specific code for ``language`` (e.g. zh -> zh-Hans on Azure)."""
        entry = self.settings.supported_languages.get(language.lower()) or {}
        codes = entry.get('translation') or {}
        driver = getattr(self.translator, 'name', '')
        return codes.get(driver) or codes.get('default') or language

    def ocr_language(self, language: str) -> str:
        entry = self.settings.supported_languages.get(language) or {}
        return entry.get('ocr') or 'jpn'

    def _scratch(self, job_id: str, name: str) -> ScratchDirectory:
        """One scratch directory per attempt; a retry never shares it with an abandoned run."""
        return ScratchDirectory(self.settings.temp_directory, job_id,
                                f"{name}-{uuid.uuid4().hex[:8]}",
                                keep_debug=self.settings.keep_debug_artifacts)

    # ── Stage: Start ──────────────────────────────────────────────────

    def start(self, job_id: str):
        job = self.db.get_job(job_id)
        if job is None:
            logger.warning("Start: job %s not found", job_id)
            return
        if JobStatus(job.status) in TERMINAL_STATUSES:
            logger.info("Start: job %s already %s — skipping", job_id, job.status)
            return

        self.db.update_job_status(job_id, JobStatus.PROCESSING, stage=Stage.START.value,
                                  error_message=None)

        with self._scratch(job_id, 'start') as scratch:
            source = scratch / f"source{Path(job.source_path).suffix or '.mp4'}"
            download_to_local(self.storage, job.source_path, source,
                              self.settings.download, sleep=self._sleep)
            duration = self.media.probe_duration(source)
            language = self.resolve_source_language(job)

            mode = resolve_subtitle_source(
                job.meta.get('subtitle_source') or self.settings.subtitle.source,
                self.settings.subtitle.prefer_embedded,
            )
            logger.info("Job %s: %.1fs source, language %s, subtitle source %s",
                        job_id, duration, language, mode.value)

            cues, found = self._extract_subtitles(job, mode, source, scratch, language)
            raise_if_cancelled()
            if cues:
                self._store_subtitle_segments(job, cues, found, duration)
                return

            self._plan_audio_chunks(job, source, scratch)

    def _extract_subtitles(self, job: Job, mode: SubtitleSource, source: Path,
                           scratch: Path, language: str):
        """Returns (cues, source) or (None, None) when audio should be used."""
        if mode == SubtitleSource.OCR:
            if not self.settings.ocr.enabled:
                raise JobError(ErrorCode.CONFIG, "OCR is disabled for this environment.",
                               retryable=False)
            try:
                cues = self._run_ocr(job, source, scratch, language)
            except Exception as e:
                raise JobError(ErrorCode.OCR_FAILED, f"OCR failed: {_error_text(e)}",
                               retryable=False) from e
            if not cues:
                raise JobError(ErrorCode.NO_SUBTITLES, "OCR did not detect any subtitles.",
                               retryable=False)
            return cues, SubtitleSource.OCR

        if mode == SubtitleSource.EMBEDDED:
            try:
                cues = self.embedded.extract(source, scratch, language)
            except Exception as e:
                raise JobError(ErrorCode.EMBEDDED_FAILED,
                               f"Embedded subtitle extraction failed: {_error_text(e)}",
                               retryable=False) from e
            if not cues:
                raise JobError(ErrorCode.NO_SUBTITLES, "No embedded subtitle track found.",
                               retryable=False)
            return cues, SubtitleSource.EMBEDDED

        if mode == SubtitleSource.AUTO:
            if self.settings.ocr.enabled:
                try:
                    cues = self._run_ocr(job, source, scratch, language)
                except Exception as e:
                    logger.warning("Job %s: OCR failed (%s) — trying embedded subtitles",
                                   job.id, _error_text(e))
                    cues = None
                if cues:
                    return cues, SubtitleSource.OCR

            try:
                cues = self.embedded.extract(source, scratch, language)
            except Exception as e:
                logger.warning("Job %s: embedded extraction failed (%s) — using audio",
                               job.id, _error_text(e))
                cues = None
            if cues:
                return cues, SubtitleSource.EMBEDDED

        return None, None

    def _run_ocr(self, job: Job, source: Path, scratch: Path, language: str):
        extractor = self._ocr_factory(self.ocr_language(language))
        channel = ProgressChannel()
        unsubscribe = channel.subscribe(
            lambda event: self.db.record_subtitle_progress(job.id, event.frame, event.total,
                                                           event.percent))
        try:
            return extract_with_passes(extractor, source, scratch, channel,
                                       context={'job_id': job.id})
        finally:
            unsubscribe()

    def _store_subtitle_segments(self, job: Job, cues: list[dict], found: SubtitleSource,
                                 duration: float):
        self.db.delete_chunks(job.id)
        self.db.delete_segments(job.id)

        segments = []
        for cue in cues:
            text = sanitize_utf8(cue.get('text', '')).strip()
            start = float(cue.get('start', 0.0))
            end = float(cue.get('end', 0.0))
            if not text or end <= start:
                continue
            segments.append(Segment(
                job_id=job.id,
                sequence=len(segments) + 1,
                start_sec=round(start, 3),
                end_sec=round(end, 3),
                source_text=text,
                target_text=text,
                formatted_text=self.formatter.wrap_text(text) or text,
            ))

        if not segments:
            raise JobError(ErrorCode.NO_SUBTITLES, "Extracted subtitles contained no text.",
                           retryable=False)

        self.db.insert_segments(segments)
        self.db.update_job_meta(job.id, subtitle_source=found.value,
                                subtitle_segment_count=len(segments),
                                subtitle_progress_percent=100)
        self.db.update_job_status(job.id, JobStatus.PROCESSING, stage=Stage.START.value,
                                  duration_sec=duration, chunks_total=0, chunks_completed=0)
        logger.info("Job %s: stored %d %s subtitle segments",
                    job.id, len(segments), found.value)

        if self.stop_after(job) == StopAfter.TRANSCRIPTION:
            self._dispatch(Stage.FINALIZE, job.id)
        else:
            self._dispatch(Stage.TRANSLATE, job.id)

    def _plan_audio_chunks(self, job: Job, source: Path, scratch: Path):
        audio = scratch / 'audio.wav'
        audio_path = f"{self.prefix}/{job.id}/audio.wav"
        if job.audio_path and self.storage.exists(job.audio_path):
            stream_to_local(self.storage, job.audio_path, audio, self.settings.download.chunk_bytes)
        else:
            self.media.extract_audio(source, audio)
            store_from_local(self.storage, audio, audio_path)
            self.db.update_job(job.id, audio_path=audio_path)

        duration = self.media.probe_duration(audio)
        silence_log = self.media.detect_silence(audio, self.settings.silence.noise,
                                                self.settings.silence.min_seconds)
        silences = parse_silences(silence_log, self.settings.silence.min_seconds)
        plan = plan_chunks(duration, silences,
                           self.settings.chunk.min_seconds,
                           self.settings.chunk.max_seconds,
                           self.settings.chunk.overlap_seconds)
        if not plan:
            raise JobError(ErrorCode.CHUNKING, "Unable to split audio into chunks.",
                           retryable=False)

        planned = {entry['sequence'] for entry in plan}
        chunks = [c for c in self.db.upsert_chunks(create_job_chunks(job.id, plan))
                  if c.sequence in planned]
        completed = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETED)

        self.db.update_job_status(job.id, JobStatus.PROCESSING, stage=Stage.START.value,
                                  duration_sec=duration, chunks_total=len(plan),
                                  chunks_completed=completed)
        self.db.update_job_meta(job.id, silences=silences, subtitle_source=SubtitleSource.AUDIO.value)

        pending = [c for c in chunks if c.status != ChunkStatus.COMPLETED]
        for chunk in pending:
            local = scratch / f"chunk-{chunk.sequence}.wav"
            self.media.cut_chunk(audio, chunk.start_sec, max(0.1, chunk.end_sec - chunk.start_sec),
                                 local)
            chunk_path = f"{self.prefix}/{job.id}/chunks/{chunk.sequence}.wav"
            store_from_local(self.storage, local, chunk_path)
            self.db.update_chunk(chunk.id, audio_path=chunk_path)
            local.unlink(missing_ok=True)

        logger.info("Job %s: %d chunks planned, %d to process",
                    job.id, len(plan), len(pending))
        for chunk in pending:
            self._dispatch(Stage.PROCESS_CHUNK, chunk.id)

    # ── Stage: ProcessChunk ───────────────────────────────────────────

    def process_chunk(self, chunk_id: int):
        chunk = self.db.get_chunk(chunk_id)
        if chunk is None:
            logger.warning("ProcessChunk: chunk %s not found", chunk_id)
            return
        if chunk.status == ChunkStatus.COMPLETED:
            logger.debug("ProcessChunk: chunk %s already completed", chunk_id)
            return
        job = self.db.get_job(chunk.job_id)
        if job is None or JobStatus(job.status) in TERMINAL_STATUSES:
            return

        if not self.db.claim_chunk(chunk_id):
            logger.debug("ProcessChunk: chunk %s completed by another attempt", chunk_id)
            return
        self.db.update_job_status(job.id, JobStatus.PROCESSING, stage=Stage.PROCESS_CHUNK.value)

        if not chunk.audio_path or not self.storage.exists(chunk.audio_path):
            self.db.fail_chunk(chunk_id, "Missing chunk audio file.")
            raise JobError(ErrorCode.MISSING_CHUNK_AUDIO, "Missing chunk audio file.",
                           retryable=False)

        try:
            with self._scratch(job.id, f"chunk-{chunk.sequence}") as scratch:
                local = scratch / f"chunk-{chunk.sequence}.wav"
                stream_to_local(self.storage, chunk.audio_path, local,
                                self.settings.download.chunk_bytes)
                segments, stt_payload, translated_payload = self._transcribe_chunk(job, local)
                raise_if_cancelled()
                self._store_chunk_segments(chunk, segments)
        except Exception as e:
            if not attempt_cancelled():
                self.db.fail_chunk(chunk_id, clean_error_message(_error_text(e)))
            raise

        raise_if_cancelled()
        completed, total, finished = self.db.complete_chunk(
            chunk_id, stt_payload, translated_payload, len(segments))
        logger.info("Job %s: chunk %d done (%d segments) — %d/%d",
                    job.id, chunk.sequence, len(segments), completed, total)

        if finished:
            self._dispatch(Stage.FINALIZE, job.id)

    def _transcribe_chunk(self, job: Job, audio: Path):
        language = self.resolve_source_language(job)
        stt_segments = self.stt.transcribe(audio, language)
        translated = []

        if self.stop_after(job) == StopAfter.TRANSCRIPTION:
            cues = [dict(s, source_text=s['text']) for s in stt_segments]
        else:
            texts = [s['text'] for s in stt_segments]
            translations = self.translator.translate(
                texts, self.translation_code(language),
                self.translation_code(self.target_language(job)))
            for segment, translation in zip(stt_segments, translations):
                text = (translation or '').strip()
                if not text:
                    continue
                translated.append({'start': segment['start'], 'end': segment['end'],
                                   'text': text, 'source_text': segment['text']})
            cues = translated

        return self.formatter.format(cues), stt_segments, translated

    def _store_chunk_segments(self, chunk: JobChunk, cues: list[dict]):
        offset = chunk.start_sec
        segments = [
            Segment(
                job_id=chunk.job_id,
                chunk_id=chunk.id,
                sequence=index,
                start_sec=round(offset + cue['start'], 3),
                end_sec=round(offset + cue['end'], 3),
                source_text=cue.get('source_text') or cue['text'],
                target_text=cue['text'],
                formatted_text=cue['formatted_text'],
            )
            for index, cue in enumerate(cues, start=1)
        ]
        self.db.replace_chunk_segments(chunk.id, segments)

    # ── Stage: Finalize ───────────────────────────────────────────────

    def finalize(self, job_id: str):
        job = self.db.get_job(job_id)
        if job is None:
            logger.warning("Finalize: job %s not found", job_id)
            return
        if JobStatus(job.status) in TERMINAL_STATUSES:
            logger.info("Finalize: job %s already %s — skipping", job_id, job.status)
            return

        raise_if_cancelled()
        srt_path, vtt_path, count = self._dedupe_and_render(job, output_base_name(None))

        if self.stop_after(job) == StopAfter.TRANSCRIPTION:
            status = JobStatus.AWAITING_TRANSLATION
        else:
            status = JobStatus.COMPLETED
        self.db.update_job_status(job_id, status, stage=Stage.FINALIZE.value,
                                  srt_path=srt_path, vtt_path=vtt_path)
        logger.info("Job %s: finalized %d cues -> %s", job_id, count, status.value)

    def _dedupe_and_render(self, job: Job, base_name: str) -> tuple[str, str, int]:
        cues = [s.as_cue() for s in self.db.get_segments(job.id, order_by='start')]
        deduped = dedupe_overlaps(cues, self.settings.subtitle.gap_seconds)
        self.db.rewrite_segments(job.id, deduped)
        srt_path, vtt_path = write_outputs(self.storage, self.prefix, job.id, base_name, deduped)
        return srt_path, vtt_path, len(deduped)

    # ── Stage: Translate ──────────────────────────────────────────────

    def translate(self, job_id: str):
        job = self.db.get_job(job_id)
        if job is None:
            logger.warning("Translate: job %s not found", job_id)
            return
        if job.status not in (JobStatus.AWAITING_TRANSLATION, JobStatus.PROCESSING):
            logger.info("Translate: job %s is %s — skipping", job_id, job.status)
            return

        self.db.update_job_status(job_id, JobStatus.PROCESSING, stage=Stage.TRANSLATE.value,
                                  error_message=None)

        language = self.resolve_source_language(job)
        segments = self._filter_segments(job, self.db.get_segments(job_id), language)
        if not segments:
            raise JobError(ErrorCode.TRANSLATION_EMPTY,
                           "No subtitle segments available for translation.", retryable=False)

        target = self.target_language(job)
        source_code = self.translation_code(language)
        target_code = self.translation_code(target)
        batch_size = max(1, self.settings.translation.batch_size)
        throttle = max(0, self.settings.translation.throttle_ms) / 1000.0

        for offset in range(0, len(segments), batch_size):
            if offset and throttle:
                self._sleep(throttle)
            batch = segments[offset:offset + batch_size]
            translations = self.translator.translate(
                [s.source_text or s.target_text for s in batch], source_code, target_code)

            for segment, translation in zip(batch, translations):
                text = (translation or '').strip()
                if not text:
                    continue
                self.db.update_segment(segment.id, target_text=text,
                                       formatted_text=self.formatter.wrap_text(text))

        raise_if_cancelled()
        srt_path, vtt_path, count = self._dedupe_and_render(
            job, output_base_name(job.original_filename, target))
        self.db.update_job_status(job_id, JobStatus.COMPLETED, stage=Stage.TRANSLATE.value,
                                  srt_path=srt_path, vtt_path=vtt_path)
        logger.info("Job %s: translated %d cues to %s", job_id, count, target)

    def _filter_segments(self, job: Job, segments: list[Segment], language: str) -> list[Segment]:
        """Chinese sources drop lines that are not Chinese (and too-short OCR flashes)."""
        if language != 'zh':
            return segments

        min_duration = 0.0
        if job.meta.get('subtitle_source') == SubtitleSource.OCR.value:
            min_duration = self.settings.ocr.min_segment_seconds

        kept = [s for s in segments
                if s.end_sec - s.start_sec >= min_duration and is_likely_chinese(s.source_text)]
        if len(kept) != len(segments):
            logger.info("Job %s: dropped %d non-Chinese segments before translation",
                        job.id, len(segments) - len(kept))
            self.db.rewrite_segments(job.id, [s.as_cue() for s in kept])
            kept = self.db.get_segments(job.id)
        return kept

    # ── Failure hooks ─────────────────────────────────────────────────

    def _fail(self, job_id: str, error: BaseException, stage: Stage):
        message = clean_error_message(_error_text(error))
        logger.error("Job %s failed in %s: %s", job_id, stage.value, message)
        self.db.fail_job(job_id, message, stage=stage.value)

    def start_failed(self, job_id: str, error: BaseException):
        self._fail(job_id, error, Stage.START)

    def translate_failed(self, job_id: str, error: BaseException):
        self._fail(job_id, error, Stage.TRANSLATE)

    def finalize_failed(self, job_id: str, error: BaseException):
        self._fail(job_id, error, Stage.FINALIZE)

    def process_chunk_failed(self, chunk_id: int, error: BaseException):
        chunk = self.db.get_chunk(chunk_id)
        if chunk is None:
            return
        message = clean_error_message(_error_text(error))
        self.db.fail_chunk(chunk_id, message)
        self._fail(chunk.job_id, error, Stage.PROCESS_CHUNK)
