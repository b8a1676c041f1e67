"""
Shared constants for VideoSubtitler.
Single source of truth — imported by every other module.
"""

import enum
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "VideoSubtitler"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_DATA_DIR = HOME / ".local" / "share" / "video-subtitler"
APP_CACHE_DIR = HOME / ".cache" / "video-subtitler"
JOBS_CACHE_DIR = APP_CACHE_DIR / "jobs"
DEFAULT_STORAGE_ROOT = APP_DATA_DIR / "storage"
DB_PATH = APP_DATA_DIR / "app.db"
CONFIG_PATH = APP_DATA_DIR / "config.json"
LOG_DIR = APP_DATA_DIR / "logs"

DEFAULT_STORAGE_PREFIX = "transcriptions"


# ── Job status values ─────────────────────────────────────────────────
class JobStatus(str, enum.Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    AWAITING_TRANSLATION = "awaiting-translation"
    COMPLETED = "completed"
    FAILED = "failed"


# Failed only leaves via an explicit retry (back to UPLOADED).
JOB_TRANSITIONS = {
    JobStatus.UPLOADING: {JobStatus.UPLOADED, JobStatus.FAILED},
    JobStatus.UPLOADED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {
        JobStatus.PROCESSING,
        JobStatus.AWAITING_TRANSLATION,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    },
    JobStatus.AWAITING_TRANSLATION: {
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    },
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: {JobStatus.UPLOADED},
}

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in JOB_TRANSITIONS[JobStatus(current)]


# ── Chunk status ──────────────────────────────────────────────────────
class ChunkStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Pipeline stages (task kinds) ──────────────────────────────────────
class Stage(str, enum.Enum):
    START = "start"
    PROCESS_CHUNK = "process_chunk"
    TRANSLATE = "translate"
    FINALIZE = "finalize"


# ── Subtitle sources ──────────────────────────────────────────────────
class SubtitleSource(str, enum.Enum):
    AUTO = "auto"
    OCR = "ocr"
    EMBEDDED = "embedded"
    AUDIO = "audio"


# ── Stop-after selector ───────────────────────────────────────────────
class StopAfter(str, enum.Enum):
    TRANSCRIPTION = "transcription"
    TRANSLATION = "translation"


STOP_AFTER_ALIASES = {
    "transcription": StopAfter.TRANSCRIPTION,
    "whisper": StopAfter.TRANSCRIPTION,
    "whisper_api": StopAfter.TRANSCRIPTION,
    "whisper_cpp": StopAfter.TRANSCRIPTION,
    "translation": StopAfter.TRANSLATION,
    "deepl": StopAfter.TRANSLATION,
    "azure": StopAfter.TRANSLATION,
}


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_INPUT = "ERR_INVALID_INPUT"
    NO_AUDIO = "ERR_NO_AUDIO"
    NO_SUBTITLES = "ERR_NO_SUBTITLES"
    OCR_FAILED = "ERR_OCR_FAILED"
    EMBEDDED_FAILED = "ERR_EMBEDDED_FAILED"
    CHUNKING = "ERR_CHUNKING"
    CONFIG = "ERR_CONFIG"
    MISSING_CHUNK_AUDIO = "ERR_MISSING_CHUNK_AUDIO"
    TRANSLATION_EMPTY = "ERR_TRANSLATION_EMPTY"

    # Retryable
    MEDIA_PROCESS = "ERR_MEDIA_PROCESS"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    STT_FAILED = "ERR_STT_FAILED"
    STT_TIMEOUT = "ERR_STT_TIMEOUT"
    TRANSLATION_FAILED = "ERR_TRANSLATION_FAILED"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    STORAGE = "ERR_STORAGE"
    STAGE_TIMEOUT = "ERR_STAGE_TIMEOUT"

    UNEXPECTED = "ERR_UNEXPECTED"


RETRYABLE_ERRORS = {
    ErrorCode.MEDIA_PROCESS,
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.STT_FAILED,
    ErrorCode.STT_TIMEOUT,
    ErrorCode.TRANSLATION_FAILED,
    ErrorCode.RATE_LIMITED,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.STORAGE,
    ErrorCode.STAGE_TIMEOUT,
    ErrorCode.UNEXPECTED,
}

DEFAULT_FAILURE_MESSAGE = "Transcription failed."
MAX_ERROR_MESSAGE_LEN = 2000

# ── Audio pipeline defaults ───────────────────────────────────────────
SILENCE_MIN_SEC = 0.6
SILENCE_NOISE = "-30dB"
CHUNK_MIN_SEC = 30
CHUNK_MAX_SEC = 90
CHUNK_OVERLAP_SEC = 2

# Extraction target
NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_FORMAT = "wav"

PROCESS_TIMEOUT_SEC = 1200

# ── Subtitle layout defaults ──────────────────────────────────────────
MAX_CHARS_PER_LINE = 42
MAX_LINES = 2
MIN_CUE_DURATION = 1.0
MAX_CUE_DURATION = 6.0
MAX_CHARS_PER_SECOND = 17.0
CUE_GAP_SEC = 0.05

DEDUPE_SIMILARITY_PERCENT = 85.0

# ── OCR defaults ──────────────────────────────────────────────────────
OCR_FPS = 2.0
OCR_SCALE = 2
OCR_PSM = 7
OCR_OEM = 1
OCR_MIN_CHARS = 2
OCR_MIN_CONFIDENCE = 0
OCR_MIN_LINE_CONFIDENCE = 55
OCR_MIN_LINE_HEIGHT_RATIO = 0.7
OCR_MIN_LINE_BOTTOM_RATIO = 0.55
OCR_CROP_WIDTH_RATIO = 0.8
OCR_CROP_HEIGHT_RATIO = 0.2
OCR_CROP_BOTTOM_PADDING_RATIO = 0.02
OCR_SIMILARITY_THRESHOLD = 90.0
OCR_MIN_SEGMENT_SEC = 0.5
OCR_MAX_BLANK_SEC = 0.75
OCR_MERGE_GAP_SEC = 0.05
OCR_LOG_EVERY = 25

# ── Download defaults ─────────────────────────────────────────────────
DOWNLOAD_MAX_ATTEMPTS = 3
DOWNLOAD_BACKOFF_SEC = 5
DOWNLOAD_MAX_IN_MEMORY_MB = 200
DOWNLOAD_CHUNK_BYTES = 8 * 1024 * 1024
DOWNLOAD_PROGRESS_BYTES = 50 * 1024 * 1024

# ── Translation defaults ──────────────────────────────────────────────
TRANSLATION_BATCH_SIZE = 50
TRANSLATION_THROTTLE_MS = 300
TRANSLATION_RETRY_DELAYS_MS = [1000, 2000, 4000, 8000]
DEFAULT_TARGET_LANGUAGE = "en"

# ── Queue / retry defaults (seconds) ──────────────────────────────────
START_TRIES = 3
START_BACKOFF = [60, 300, 600]
CHUNK_TRIES = 4
CHUNK_BACKOFF = [60, 180, 300, 600]
TRANSLATE_TRIES = 3
TRANSLATE_BACKOFF = [120, 300, 600]
FINALIZE_TRIES = 3
FINALIZE_BACKOFF = [120, 300, 600]

START_TIMEOUT_SEC = 3600
CHUNK_TIMEOUT_SEC = 1800
TRANSLATE_TIMEOUT_SEC = 600
FINALIZE_TIMEOUT_SEC = 600
QUEUE_WORKERS = 4

# ── Providers ─────────────────────────────────────────────────────────
OPENAI_API_BASE = "https://api.openai.com"
OPENAI_WHISPER_MODEL = "whisper-1"
DEEPL_API_BASE = "https://api.deepl.com"
AZURE_TRANSLATOR_BASE = "https://api.cognitive.microsofttranslator.com"
AZURE_TRANSLATOR_API_VERSION = "3.0"

# ── Languages ─────────────────────────────────────────────────────────
DEFAULT_SOURCE_LANGUAGE = "ja"

SUPPORTED_LANGUAGES = {
    "ja": {
        "label": "Japanese",
        "ocr": "jpn",
        "translation": {"deepl": "JA", "azure": "ja", "default": "ja"},
    },
    "zh": {
        "label": "Chinese",
        "ocr": "chi_sim",
        "translation": {"deepl": "ZH", "azure": "zh-Hans", "default": "zh"},
    },
    "en": {
        "label": "English",
        "ocr": "eng",
        "translation": {"deepl": "EN", "azure": "en", "default": "en"},
    },
}

LANGUAGE_ALIASES = {
    "zh": ["zh", "zho", "chi", "zh-hans", "zh-hant", "zh-cn", "zh-tw", "cn"],
    "ja": ["ja", "jpn", "jp"],
}

LANGUAGE_TITLE_WORDS = {
    "zh": "chinese",
    "ja": "japanese",
}

# Characters forbidden in output file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 200
