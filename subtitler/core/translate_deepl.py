"""
DeepL translation (v2 REST API, form-encoded).
"""

import logging
import requests

from subtitler.core.config import TranslatorSettings, TranslationSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.translation import Translator

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 60


class DeepLTranslator(Translator):
    name = "deepl"

    def __init__(self, settings: TranslatorSettings,
                 translation: TranslationSettings | None = None):
        self.settings = settings
        self.translation = translation or TranslationSettings()

    def _translate(self, texts: list[str], source_language: str,
                   target_language: str) -> list[str]:
        if not self.settings.deepl_api_key:
            raise JobError(ErrorCode.CONFIG, "Missing DeepL API key for translation.",
                           retryable=False)

        payload = {
            'text': texts,
            'source_lang': source_language.upper(),
            'target_lang': target_language.upper(),
        }
        if self.settings.deepl_formality:
            payload['formality'] = self.settings.deepl_formality

        try:
            resp = requests.post(
                f"{self.settings.deepl_base_url.rstrip('/')}/v2/translate",
                headers={"Authorization": f"DeepL-Auth-Key {self.settings.deepl_api_key}"},
                data=payload,
                timeout=_TIMEOUT_SEC,
            )
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.TRANSLATION_FAILED, "DeepL request timed out")
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, f"DeepL request failed: {e}")

        if resp.status_code == 429:
            raise JobError(ErrorCode.RATE_LIMITED, "DeepL rate limited (429)")
        if resp.status_code != 200:
            error_body = resp.text[:300] if resp.text else "No response body"
            raise JobError(ErrorCode.TRANSLATION_FAILED,
                           f"DeepL returned {resp.status_code}: {error_body}")

        try:
            data = resp.json()
        except ValueError:
            raise JobError(ErrorCode.TRANSLATION_FAILED, "Failed to parse DeepL response JSON")

        translations = data.get('translations', []) if isinstance(data, dict) else []
        return [str((t or {}).get('text', '')) for t in translations]
