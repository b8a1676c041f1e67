"""
OpenAI Whisper API speech-to-text.
Multipart upload, verbose_json response (timed segments).
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import time
import random
import requests
from pathlib import Path

from subtitler.core.config import SttSettings
from subtitler.core.error_codes import JobError
from subtitler.core.constants import ErrorCode
from subtitler.core.stt import SpeechToText, clean_segments

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubled each retry plus jitter


def verify_api_key(settings: SttSettings) -> tuple[bool, str]:
    """
    Verify the Whisper API key with a lightweight request.
    Returns (success: bool, message: str).
    """
    if not settings.api_key:
        return False, "No API key configured"
    try:
        resp = requests.get(
            f"{settings.base_url.rstrip('/')}/v1/models",
            headers={"Authorization": f"Bearer {settings.api_key}"},
            timeout=10,
        )
        if resp.status_code == 200:
            return True, "Key verified"
        elif resp.status_code in (401, 403):
            return False, "Key invalid or rejected"
        else:
            return False, f"Unexpected response: {resp.status_code}"
    except requests.exceptions.ConnectionError:
        return False, "Network error — could not reach the Whisper API"
    except requests.exceptions.Timeout:
        return False, "Network error — request timed out"
    except requests.exceptions.RequestException as e:
        return False, f"Network error: {e}"


class WhisperApiSttProvider(SpeechToText):
    """Remote Whisper transcription over HTTP."""

    name = "whisper_api"

    def __init__(self, settings: SttSettings, sleep=time.sleep):
        self.settings = settings
        self._sleep = sleep

    @property
    def url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/v1/audio/transcriptions"

    def transcribe(self, audio_path: Path, language: str) -> list[dict]:
        """
        Upload ``audio_path`` and return its timed segments.
        Retries up to 4 times with exponential backoff on 429 responses.
        """
        if not self.settings.api_key:
            raise JobError(ErrorCode.CONFIG,
                           "Missing OpenAI API key for Whisper transcription.",
                           retryable=False)

        headers = {"Authorization": f"Bearer {self.settings.api_key}"}
        data = {
            "model": self.settings.model,
            "language": language,
            "response_format": "verbose_json",
        }

        file_size = audio_path.stat().st_size
        # ~1 min per 10MB, minimum 120s
        timeout_sec = max(120, int(file_size / (10 * 1024 * 1024) * 60) + 60)

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                with open(audio_path, 'rb') as f:
                    resp = requests.post(
                        self.url,
                        headers=headers,
                        data=data,
                        files={"file": (audio_path.name, f)},
                        timeout=timeout_sec,
                    )
            except requests.exceptions.Timeout:
                raise JobError(ErrorCode.STT_TIMEOUT,
                               "Whisper request timed out", retryable=True)
            except requests.exceptions.ConnectionError:
                raise JobError(ErrorCode.NETWORK_TRANSIENT,
                               "Network error connecting to the Whisper API", retryable=True)
            except requests.exceptions.RequestException as e:
                raise JobError(ErrorCode.STT_FAILED,
                               f"Whisper request failed: {e}", retryable=True)

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Whisper rate limited (429) — retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    self._sleep(delay)
                    continue
                raise JobError(ErrorCode.RATE_LIMITED,
                               f"Whisper rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                               retryable=True)

            if resp.status_code in (401, 403):
                raise JobError(ErrorCode.CONFIG,
                               f"Whisper API rejected the credentials ({resp.status_code})",
                               retryable=False)

            if resp.status_code != 200:
                # never echo request headers (API key)
                error_body = resp.text[:300] if resp.text else "No response body"
                raise JobError(ErrorCode.STT_FAILED,
                               f"Whisper returned {resp.status_code}: {error_body}",
                               retryable=resp.status_code >= 500)

            try:
                payload = resp.json()
            except json.JSONDecodeError:
                raise JobError(ErrorCode.STT_FAILED,
                               "Failed to parse Whisper response JSON")

            segments = clean_segments(payload.get('segments') if isinstance(payload, dict) else None)
            logger.info("Whisper API: %s -> %d segments", audio_path.name, len(segments))
            return segments

        raise JobError(ErrorCode.RATE_LIMITED, "Whisper request exhausted retries", retryable=True)
