"""
Speech-to-text provider interface and factory.

Providers are registered by driver name and imported lazily, so the
local-binary provider does not load HTTP machinery and vice versa.
"""

import importlib
import logging
from pathlib import Path

from subtitler.core.config import SttSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.security_utils import sanitize_utf8

logger = logging.getLogger(__name__)

# driver name -> "module.ClassName"
_STT_REGISTRY: dict[str, str] = {
    "whisper_api": "subtitler.core.transcribe_whisper_api.WhisperApiSttProvider",
    "whisper_cpp": "subtitler.core.transcribe_whisper_cpp.WhisperCppSttProvider",
}


class SpeechToText:
    """Transcribes one audio file into timed text segments."""

    name = "base"

    def transcribe(self, audio_path: Path, language: str) -> list[dict]:
        """Return ``[{start, end, text}]`` relative to the start of the file."""
        raise NotImplementedError


def clean_segments(raw_segments) -> list[dict]:
    """Normalize provider segments; text is UTF-8 sanitized and empty ones dropped."""
    segments = []
    for item in raw_segments or []:
        if not isinstance(item, dict):
            continue
        text = sanitize_utf8(item.get('text', '')).strip()
        if not text:
            continue
        try:
            start = float(item.get('start', 0.0))
            end = float(item.get('end', start))
        except (TypeError, ValueError):
            continue
        segments.append({'start': start, 'end': end, 'text': text})
    return segments


def list_stt_drivers() -> list[str]:
    return list(_STT_REGISTRY)


def _load_class(dotted: str):
    module_name, class_name = dotted.rsplit('.', 1)
    return getattr(importlib.import_module(module_name), class_name)


def create_stt_provider(settings: SttSettings) -> SpeechToText:
    """Build the provider named by ``settings.driver``."""
    driver = (settings.driver or '').strip().lower()
    if driver not in _STT_REGISTRY:
        raise JobError(ErrorCode.CONFIG,
                       f"Unknown speech-to-text driver '{settings.driver}'. "
                       f"Available: {', '.join(_STT_REGISTRY)}",
                       retryable=False)
    provider_cls = _load_class(_STT_REGISTRY[driver])
    logger.info("Speech-to-text provider: %s", driver)
    return provider_cls(settings)
