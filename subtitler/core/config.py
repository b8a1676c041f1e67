"""
Application configuration manager.
Stores settings in a JSON file and hands out an immutable settings tree
that every pipeline component receives at construction.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from subtitler.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_STORAGE_ROOT, DEFAULT_STORAGE_PREFIX, JOBS_CACHE_DIR,
    PROCESS_TIMEOUT_SEC, SILENCE_MIN_SEC, SILENCE_NOISE,
    CHUNK_MIN_SEC, CHUNK_MAX_SEC, CHUNK_OVERLAP_SEC,
    MAX_CHARS_PER_LINE, MAX_LINES, MIN_CUE_DURATION, MAX_CUE_DURATION,
    MAX_CHARS_PER_SECOND, CUE_GAP_SEC,
    OCR_FPS, OCR_SCALE, OCR_PSM, OCR_OEM, OCR_MIN_CHARS, OCR_MIN_CONFIDENCE,
    OCR_MIN_LINE_CONFIDENCE, OCR_MIN_LINE_HEIGHT_RATIO, OCR_MIN_LINE_BOTTOM_RATIO,
    OCR_CROP_WIDTH_RATIO, OCR_CROP_HEIGHT_RATIO, OCR_CROP_BOTTOM_PADDING_RATIO,
    OCR_SIMILARITY_THRESHOLD, OCR_MIN_SEGMENT_SEC, OCR_MAX_BLANK_SEC,
    OCR_MERGE_GAP_SEC, OCR_LOG_EVERY,
    DOWNLOAD_MAX_ATTEMPTS, DOWNLOAD_BACKOFF_SEC, DOWNLOAD_MAX_IN_MEMORY_MB,
    DOWNLOAD_CHUNK_BYTES, DOWNLOAD_PROGRESS_BYTES,
    TRANSLATION_BATCH_SIZE, TRANSLATION_THROTTLE_MS, TRANSLATION_RETRY_DELAYS_MS,
    DEFAULT_TARGET_LANGUAGE,
    START_TRIES, START_BACKOFF, CHUNK_TRIES, CHUNK_BACKOFF,
    TRANSLATE_TRIES, TRANSLATE_BACKOFF, FINALIZE_TRIES, FINALIZE_BACKOFF,
    START_TIMEOUT_SEC, CHUNK_TIMEOUT_SEC, TRANSLATE_TIMEOUT_SEC, FINALIZE_TIMEOUT_SEC,
    QUEUE_WORKERS,
    OPENAI_API_BASE, OPENAI_WHISPER_MODEL, DEEPL_API_BASE,
    AZURE_TRANSLATOR_BASE, AZURE_TRANSLATOR_API_VERSION,
    DEFAULT_SOURCE_LANGUAGE, SUPPORTED_LANGUAGES,
    StopAfter, STOP_AFTER_ALIASES, SubtitleSource,
)

# Validation bounds
_CHUNK_MIN_BOUNDS = (5, 600)
_CHUNK_MAX_BOUNDS = (10, 3600)
_OVERLAP_BOUNDS = (0, 30)
_RATIO_BOUNDS = (0.0, 1.0)

logger = logging.getLogger(__name__)

_DEFAULTS = {
    # paths
    'storage_root': str(DEFAULT_STORAGE_ROOT),
    'storage_prefix': DEFAULT_STORAGE_PREFIX,
    'temp_directory': str(JOBS_CACHE_DIR),
    'db_path': str(DB_PATH),
    'keep_debug_artifacts': False,
    # tools
    'ffmpeg_path': 'ffmpeg',
    'ffprobe_path': 'ffprobe',
    'tesseract_path': 'tesseract',
    'process_timeout_seconds': PROCESS_TIMEOUT_SEC,
    # silence / chunking
    'silence_min_seconds': SILENCE_MIN_SEC,
    'silence_noise': SILENCE_NOISE,
    'chunk_min_seconds': CHUNK_MIN_SEC,
    'chunk_max_seconds': CHUNK_MAX_SEC,
    'chunk_overlap_seconds': CHUNK_OVERLAP_SEC,
    # subtitle layout
    'subtitle_max_chars_per_line': MAX_CHARS_PER_LINE,
    'subtitle_max_lines': MAX_LINES,
    'subtitle_min_duration': MIN_CUE_DURATION,
    'subtitle_max_duration': MAX_CUE_DURATION,
    'subtitle_max_chars_per_second': MAX_CHARS_PER_SECOND,
    'subtitle_gap_seconds': CUE_GAP_SEC,
    'subtitle_prefer_embedded': True,
    'subtitle_fallback_to_first_stream': True,
    'subtitle_source': SubtitleSource.AUTO.value,
    # ocr
    'ocr_enabled': True,
    'ocr_fps': OCR_FPS,
    'ocr_scale': OCR_SCALE,
    'ocr_psm': OCR_PSM,
    'ocr_oem': OCR_OEM,
    'ocr_min_chars': OCR_MIN_CHARS,
    'ocr_min_confidence': OCR_MIN_CONFIDENCE,
    'ocr_min_line_confidence': OCR_MIN_LINE_CONFIDENCE,
    'ocr_min_line_height_ratio': OCR_MIN_LINE_HEIGHT_RATIO,
    'ocr_min_line_bottom_ratio': OCR_MIN_LINE_BOTTOM_RATIO,
    'ocr_crop_width_ratio': OCR_CROP_WIDTH_RATIO,
    'ocr_crop_height_ratio': OCR_CROP_HEIGHT_RATIO,
    'ocr_crop_bottom_padding_ratio': OCR_CROP_BOTTOM_PADDING_RATIO,
    'ocr_filters': '',
    'ocr_similarity_threshold': OCR_SIMILARITY_THRESHOLD,
    'ocr_min_segment_seconds': OCR_MIN_SEGMENT_SEC,
    'ocr_max_blank_seconds': OCR_MAX_BLANK_SEC,
    'ocr_merge_gap_seconds': OCR_MERGE_GAP_SEC,
    'ocr_log_every': OCR_LOG_EVERY,
    'ocr_second_pass_enabled': False,
    'ocr_second_pass_width_ratio': None,
    'ocr_second_pass_height_ratio': None,
    'ocr_second_pass_bottom_padding_ratio': None,
    # download
    'download_max_attempts': DOWNLOAD_MAX_ATTEMPTS,
    'download_backoff_seconds': DOWNLOAD_BACKOFF_SEC,
    'download_max_in_memory_mb': DOWNLOAD_MAX_IN_MEMORY_MB,
    'download_chunk_bytes': DOWNLOAD_CHUNK_BYTES,
    'download_progress_bytes': DOWNLOAD_PROGRESS_BYTES,
    'download_use_temporary_url': True,
    'download_http_timeout_seconds': 3600,
    'download_http_connect_timeout_seconds': 10,
    # translation
    'translation_batch_size': TRANSLATION_BATCH_SIZE,
    'translation_throttle_ms': TRANSLATION_THROTTLE_MS,
    'translation_retry_delays_ms': list(TRANSLATION_RETRY_DELAYS_MS),
    'translation_retry_only_429': True,
    'translation_target_language': DEFAULT_TARGET_LANGUAGE,
    # queue
    'queue_workers': QUEUE_WORKERS,
    'queue_start_tries': START_TRIES,
    'queue_start_backoff': list(START_BACKOFF),
    'queue_start_timeout_seconds': START_TIMEOUT_SEC,
    'queue_chunk_tries': CHUNK_TRIES,
    'queue_chunk_backoff': list(CHUNK_BACKOFF),
    'queue_chunk_timeout_seconds': CHUNK_TIMEOUT_SEC,
    'queue_translate_tries': TRANSLATE_TRIES,
    'queue_translate_backoff': list(TRANSLATE_BACKOFF),
    'queue_translate_timeout_seconds': TRANSLATE_TIMEOUT_SEC,
    'queue_finalize_tries': FINALIZE_TRIES,
    'queue_finalize_backoff': list(FINALIZE_BACKOFF),
    'queue_finalize_timeout_seconds': FINALIZE_TIMEOUT_SEC,
    # speech-to-text provider
    'stt_driver': 'whisper_api',
    'whisper_api_key': None,
    'whisper_base_url': OPENAI_API_BASE,
    'whisper_model': OPENAI_WHISPER_MODEL,
    'whisper_cpp_binary': 'whisper-cli',
    'whisper_cpp_model': None,
    'whisper_cpp_threads': None,
    'whisper_cpp_output_format': 'srt',
    'whisper_cpp_timeout_seconds': None,
    'whisper_cpp_best_of': None,
    'whisper_cpp_beam_size': None,
    'whisper_cpp_suppress_non_speech': False,
    'whisper_cpp_no_gpu': False,
    # translation provider
    'translation_driver': 'deepl',
    'deepl_api_key': None,
    'deepl_base_url': DEEPL_API_BASE,
    'deepl_formality': None,
    'azure_api_key': None,
    'azure_base_url': AZURE_TRANSLATOR_BASE,
    'azure_region': None,
    'azure_api_version': AZURE_TRANSLATOR_API_VERSION,
    # languages / pipeline
    'default_source_language': DEFAULT_SOURCE_LANGUAGE,
    'supported_languages': SUPPORTED_LANGUAGES,
    'stop_after': StopAfter.TRANSCRIPTION.value,
}

# Environment variables that override file values (credentials mostly)
_ENV_OVERRIDES = {
    'OPENAI_API_KEY': 'whisper_api_key',
    'DEEPL_API_KEY': 'deepl_api_key',
    'AZURE_TRANSLATOR_KEY': 'azure_api_key',
    'AZURE_TRANSLATOR_REGION': 'azure_region',
    'SUBTITLER_STT_DRIVER': 'stt_driver',
    'SUBTITLER_TRANSLATION_DRIVER': 'translation_driver',
    'SUBTITLER_STOP_AFTER': 'stop_after',
}

_INT_BOUNDS = {
    'subtitle_max_chars_per_line': (10, 200),
    'subtitle_max_lines': (1, 5),
    'ocr_scale': (1, 8),
    'ocr_log_every': (1, 100000),
    'download_max_attempts': (1, 20),
    'translation_batch_size': (1, 1000),
    'translation_throttle_ms': (0, 60000),
    'queue_workers': (1, 64),
}

_RATIO_KEYS = {
    'ocr_min_line_height_ratio',
    'ocr_min_line_bottom_ratio',
    'ocr_crop_width_ratio',
    'ocr_crop_height_ratio',
    'ocr_crop_bottom_padding_ratio',
}


# ── Immutable settings tree ───────────────────────────────────────────

@dataclass(frozen=True)
class ToolSettings:
    ffmpeg_path: str = 'ffmpeg'
    ffprobe_path: str = 'ffprobe'
    tesseract_path: str = 'tesseract'
    process_timeout_seconds: int = PROCESS_TIMEOUT_SEC


@dataclass(frozen=True)
class SilenceSettings:
    min_seconds: float = SILENCE_MIN_SEC
    noise: str = SILENCE_NOISE


@dataclass(frozen=True)
class ChunkSettings:
    min_seconds: float = CHUNK_MIN_SEC
    max_seconds: float = CHUNK_MAX_SEC
    overlap_seconds: float = CHUNK_OVERLAP_SEC


@dataclass(frozen=True)
class SubtitleSettings:
    max_chars_per_line: int = MAX_CHARS_PER_LINE
    max_lines: int = MAX_LINES
    min_duration: float = MIN_CUE_DURATION
    max_duration: float = MAX_CUE_DURATION
    max_chars_per_second: float = MAX_CHARS_PER_SECOND
    gap_seconds: float = CUE_GAP_SEC
    prefer_embedded: bool = True
    fallback_to_first_stream: bool = True
    source: str = SubtitleSource.AUTO.value


@dataclass(frozen=True)
class OcrSettings:
    enabled: bool = True
    fps: float = OCR_FPS
    scale: int = OCR_SCALE
    psm: int = OCR_PSM
    oem: int = OCR_OEM
    min_chars: int = OCR_MIN_CHARS
    min_confidence: float = OCR_MIN_CONFIDENCE
    min_line_confidence: float = OCR_MIN_LINE_CONFIDENCE
    min_line_height_ratio: float = OCR_MIN_LINE_HEIGHT_RATIO
    min_line_bottom_ratio: float = OCR_MIN_LINE_BOTTOM_RATIO
    crop_width_ratio: float = OCR_CROP_WIDTH_RATIO
    crop_height_ratio: float = OCR_CROP_HEIGHT_RATIO
    crop_bottom_padding_ratio: float = OCR_CROP_BOTTOM_PADDING_RATIO
    filters: str = ''
    similarity_threshold: float = OCR_SIMILARITY_THRESHOLD
    min_segment_seconds: float = OCR_MIN_SEGMENT_SEC
    max_blank_seconds: float = OCR_MAX_BLANK_SEC
    merge_gap_seconds: float = OCR_MERGE_GAP_SEC
    log_every: int = OCR_LOG_EVERY
    second_pass_enabled: bool = False
    second_pass_width_ratio: float | None = None
    second_pass_height_ratio: float | None = None
    second_pass_bottom_padding_ratio: float | None = None


@dataclass(frozen=True)
class DownloadSettings:
    max_attempts: int = DOWNLOAD_MAX_ATTEMPTS
    backoff_seconds: float = DOWNLOAD_BACKOFF_SEC
    max_in_memory_mb: int = DOWNLOAD_MAX_IN_MEMORY_MB
    chunk_bytes: int = DOWNLOAD_CHUNK_BYTES
    progress_bytes: int = DOWNLOAD_PROGRESS_BYTES
    use_temporary_url: bool = True
    http_timeout_seconds: int = 3600
    http_connect_timeout_seconds: int = 10


@dataclass(frozen=True)
class TranslationSettings:
    batch_size: int = TRANSLATION_BATCH_SIZE
    throttle_ms: int = TRANSLATION_THROTTLE_MS
    retry_delays_ms: tuple = tuple(TRANSLATION_RETRY_DELAYS_MS)
    retry_only_429: bool = True
    target_language: str = DEFAULT_TARGET_LANGUAGE


@dataclass(frozen=True)
class RetryPolicy:
    tries: int
    backoff: tuple
    timeout_seconds: float

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt after ``attempt`` (1-based); last value repeats."""
        if not self.backoff:
            return 0.0
        return float(self.backoff[min(attempt, len(self.backoff)) - 1])


@dataclass(frozen=True)
class QueueSettings:
    workers: int = QUEUE_WORKERS
    start: RetryPolicy = RetryPolicy(START_TRIES, tuple(START_BACKOFF), START_TIMEOUT_SEC)
    process_chunk: RetryPolicy = RetryPolicy(CHUNK_TRIES, tuple(CHUNK_BACKOFF), CHUNK_TIMEOUT_SEC)
    translate: RetryPolicy = RetryPolicy(TRANSLATE_TRIES, tuple(TRANSLATE_BACKOFF), TRANSLATE_TIMEOUT_SEC)
    finalize: RetryPolicy = RetryPolicy(FINALIZE_TRIES, tuple(FINALIZE_BACKOFF), FINALIZE_TIMEOUT_SEC)


@dataclass(frozen=True)
class SttSettings:
    driver: str = 'whisper_api'
    api_key: str | None = None
    base_url: str = OPENAI_API_BASE
    model: str = OPENAI_WHISPER_MODEL
    cpp_binary: str | None = 'whisper-cli'
    cpp_model: str | None = None
    cpp_threads: int | None = None
    cpp_output_format: str = 'srt'
    cpp_timeout_seconds: int | None = None
    cpp_best_of: int | None = None
    cpp_beam_size: int | None = None
    cpp_suppress_non_speech: bool = False
    cpp_no_gpu: bool = False


@dataclass(frozen=True)
class TranslatorSettings:
    driver: str = 'deepl'
    deepl_api_key: str | None = None
    deepl_base_url: str = DEEPL_API_BASE
    deepl_formality: str | None = None
    azure_api_key: str | None = None
    azure_base_url: str = AZURE_TRANSLATOR_BASE
    azure_region: str | None = None
    azure_api_version: str = AZURE_TRANSLATOR_API_VERSION


@dataclass(frozen=True)
class PipelineSettings:
    storage_root: Path = DEFAULT_STORAGE_ROOT
    storage_prefix: str = DEFAULT_STORAGE_PREFIX
    temp_directory: Path = JOBS_CACHE_DIR
    db_path: Path = DB_PATH
    keep_debug_artifacts: bool = False
    tools: ToolSettings = ToolSettings()
    silence: SilenceSettings = SilenceSettings()
    chunk: ChunkSettings = ChunkSettings()
    subtitle: SubtitleSettings = SubtitleSettings()
    ocr: OcrSettings = OcrSettings()
    download: DownloadSettings = DownloadSettings()
    translation: TranslationSettings = TranslationSettings()
    queue: QueueSettings = QueueSettings()
    stt: SttSettings = SttSettings()
    translator: TranslatorSettings = TranslatorSettings()
    default_source_language: str = DEFAULT_SOURCE_LANGUAGE
    supported_languages: dict = field(default_factory=lambda: dict(SUPPORTED_LANGUAGES))
    stop_after: StopAfter = StopAfter.TRANSCRIPTION


def resolve_stop_after(value, default: StopAfter = StopAfter.TRANSCRIPTION) -> StopAfter:
    """Map a stop-after selector (or provider alias) onto StopAfter."""
    if isinstance(value, StopAfter):
        return value
    normalized = str(value or '').strip().lower()
    if normalized in STOP_AFTER_ALIASES:
        return STOP_AFTER_ALIASES[normalized]
    if normalized:
        logger.warning("Unknown stop_after %r — using %s", value, default.value)
    return default


def resolve_subtitle_source(value, prefer_subtitles: bool) -> SubtitleSource:
    normalized = str(value or '').strip().lower()
    try:
        return SubtitleSource(normalized)
    except ValueError:
        return SubtitleSource.AUTO if prefer_subtitles else SubtitleSource.AUDIO


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, overrides: dict | None = None):
        env_path = os.environ.get('SUBTITLER_CONFIG')
        self.path = config_path or (Path(env_path) if env_path else CONFIG_PATH)
        self._overrides = dict(overrides or {})
        self._data: dict = {}
        self._saved: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults, env and overrides."""
        self._data = dict(_DEFAULTS)
        self._saved = {}
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("config root must be a JSON object")
                for key, value in saved.items():
                    self._saved[key] = self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

        for env_name, key in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                self._data[key] = self._validate(key, value)

        for key, value in self._overrides.items():
            self._data[key] = self._validate(key, value)

    def save(self):
        """Persist values read from or set into the file; env and overrides stay out."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._saved, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._saved[key] = self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        default = _DEFAULTS.get(key)

        if key == 'chunk_min_seconds':
            return self._clamp_float(key, value, *_CHUNK_MIN_BOUNDS)

        if key == 'chunk_max_seconds':
            return self._clamp_float(key, value, *_CHUNK_MAX_BOUNDS)

        if key == 'chunk_overlap_seconds':
            return self._clamp_float(key, value, *_OVERLAP_BOUNDS)

        if key in _INT_BOUNDS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return default
            low, high = _INT_BOUNDS[key]
            return max(low, min(high, value))

        if key in _RATIO_KEYS:
            return self._clamp_float(key, value, *_RATIO_BOUNDS)

        if key == 'stop_after':
            return resolve_stop_after(value).value

        if key in ('stt_driver', 'translation_driver'):
            # Unknown drivers are rejected by the provider factories.
            return str(value).strip().lower()

        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        if isinstance(default, float) and not isinstance(value, bool):
            try:
                return float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return default

        return value

    @staticmethod
    def _clamp_float(key: str, value, low: float, high: float):
        try:
            value = float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s %r — using default", key, value)
            return _DEFAULTS.get(key)
        return max(low, min(high, value))

    def as_dict(self, redact: bool = True) -> dict:
        """Current values; API keys are masked unless ``redact`` is False."""
        data = dict(self._data)
        if redact:
            for key in data:
                if key.endswith('_api_key') and data[key]:
                    data[key] = '********'
        return data

    def settings(self) -> PipelineSettings:
        """Build the immutable settings tree from the current values."""
        d = self._data
        return PipelineSettings(
            storage_root=Path(d['storage_root']),
            storage_prefix=str(d['storage_prefix']).strip('/'),
            temp_directory=Path(d['temp_directory']),
            db_path=Path(d['db_path']),
            keep_debug_artifacts=bool(d['keep_debug_artifacts']),
            tools=ToolSettings(
                ffmpeg_path=d['ffmpeg_path'],
                ffprobe_path=d['ffprobe_path'],
                tesseract_path=d['tesseract_path'],
                process_timeout_seconds=int(d['process_timeout_seconds']),
            ),
            silence=SilenceSettings(
                min_seconds=float(d['silence_min_seconds']),
                noise=str(d['silence_noise']),
            ),
            chunk=ChunkSettings(
                min_seconds=float(d['chunk_min_seconds']),
                max_seconds=max(float(d['chunk_max_seconds']), float(d['chunk_min_seconds'])),
                overlap_seconds=float(d['chunk_overlap_seconds']),
            ),
            subtitle=SubtitleSettings(
                max_chars_per_line=int(d['subtitle_max_chars_per_line']),
                max_lines=int(d['subtitle_max_lines']),
                min_duration=float(d['subtitle_min_duration']),
                max_duration=float(d['subtitle_max_duration']),
                max_chars_per_second=float(d['subtitle_max_chars_per_second']),
                gap_seconds=float(d['subtitle_gap_seconds']),
                prefer_embedded=bool(d['subtitle_prefer_embedded']),
                fallback_to_first_stream=bool(d['subtitle_fallback_to_first_stream']),
                source=str(d['subtitle_source'] or SubtitleSource.AUTO.value).strip().lower(),
            ),
            ocr=OcrSettings(
                enabled=bool(d['ocr_enabled']),
                fps=float(d['ocr_fps']),
                scale=int(d['ocr_scale']),
                psm=int(d['ocr_psm']),
                oem=int(d['ocr_oem']),
                min_chars=int(d['ocr_min_chars']),
                min_confidence=float(d['ocr_min_confidence']),
                min_line_confidence=float(d['ocr_min_line_confidence']),
                min_line_height_ratio=float(d['ocr_min_line_height_ratio']),
                min_line_bottom_ratio=float(d['ocr_min_line_bottom_ratio']),
                crop_width_ratio=float(d['ocr_crop_width_ratio']),
                crop_height_ratio=float(d['ocr_crop_height_ratio']),
                crop_bottom_padding_ratio=float(d['ocr_crop_bottom_padding_ratio']),
                filters=str(d['ocr_filters'] or ''),
                similarity_threshold=float(d['ocr_similarity_threshold']),
                min_segment_seconds=float(d['ocr_min_segment_seconds']),
                max_blank_seconds=float(d['ocr_max_blank_seconds']),
                merge_gap_seconds=float(d['ocr_merge_gap_seconds']),
                log_every=int(d['ocr_log_every']),
                second_pass_enabled=bool(d['ocr_second_pass_enabled']),
                second_pass_width_ratio=_optional_float(d['ocr_second_pass_width_ratio']),
                second_pass_height_ratio=_optional_float(d['ocr_second_pass_height_ratio']),
                second_pass_bottom_padding_ratio=_optional_float(
                    d['ocr_second_pass_bottom_padding_ratio']),
            ),
            download=DownloadSettings(
                max_attempts=int(d['download_max_attempts']),
                backoff_seconds=float(d['download_backoff_seconds']),
                max_in_memory_mb=int(d['download_max_in_memory_mb']),
                chunk_bytes=int(d['download_chunk_bytes']),
                progress_bytes=int(d['download_progress_bytes']),
                use_temporary_url=bool(d['download_use_temporary_url']),
                http_timeout_seconds=int(d['download_http_timeout_seconds']),
                http_connect_timeout_seconds=int(d['download_http_connect_timeout_seconds']),
            ),
            translation=TranslationSettings(
                batch_size=int(d['translation_batch_size']),
                throttle_ms=int(d['translation_throttle_ms']),
                retry_delays_ms=tuple(int(x) for x in d['translation_retry_delays_ms']),
                retry_only_429=bool(d['translation_retry_only_429']),
                target_language=str(d['translation_target_language']),
            ),
            queue=QueueSettings(
                workers=int(d['queue_workers']),
                start=RetryPolicy(int(d['queue_start_tries']),
                                  tuple(d['queue_start_backoff']),
                                  float(d['queue_start_timeout_seconds'])),
                process_chunk=RetryPolicy(int(d['queue_chunk_tries']),
                                          tuple(d['queue_chunk_backoff']),
                                          float(d['queue_chunk_timeout_seconds'])),
                translate=RetryPolicy(int(d['queue_translate_tries']),
                                      tuple(d['queue_translate_backoff']),
                                      float(d['queue_translate_timeout_seconds'])),
                finalize=RetryPolicy(int(d['queue_finalize_tries']),
                                     tuple(d['queue_finalize_backoff']),
                                     float(d['queue_finalize_timeout_seconds'])),
            ),
            stt=SttSettings(
                driver=str(d['stt_driver']),
                api_key=d['whisper_api_key'],
                base_url=str(d['whisper_base_url']),
                model=str(d['whisper_model']),
                cpp_binary=d['whisper_cpp_binary'],
                cpp_model=d['whisper_cpp_model'],
                cpp_threads=_optional_int(d['whisper_cpp_threads']),
                cpp_output_format=str(d['whisper_cpp_output_format']),
                cpp_timeout_seconds=_optional_int(d['whisper_cpp_timeout_seconds']),
                cpp_best_of=_optional_int(d['whisper_cpp_best_of']),
                cpp_beam_size=_optional_int(d['whisper_cpp_beam_size']),
                cpp_suppress_non_speech=bool(d['whisper_cpp_suppress_non_speech']),
                cpp_no_gpu=bool(d['whisper_cpp_no_gpu']),
            ),
            translator=TranslatorSettings(
                driver=str(d['translation_driver']),
                deepl_api_key=d['deepl_api_key'],
                deepl_base_url=str(d['deepl_base_url']),
                deepl_formality=d['deepl_formality'],
                azure_api_key=d['azure_api_key'],
                azure_base_url=str(d['azure_base_url']),
                azure_region=d['azure_region'],
                azure_api_version=str(d['azure_api_version']),
            ),
            default_source_language=str(d['default_source_language']).strip().lower(),
            supported_languages=dict(d['supported_languages']),
            stop_after=resolve_stop_after(d['stop_after']),
        )


def _optional_float(value):
    return float(value) if value is not None else None


def _optional_int(value):
    return int(value) if value not in (None, '') else None
