"""
Azure Translator (v3 REST API, JSON).
Retries through a configurable delay ladder, by default only on 429.
"""

import logging
import time
import requests

from subtitler.core.config import TranslatorSettings, TranslationSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.translation import Translator

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 60


class AzureTranslator(Translator):
    name = "azure"

    def __init__(self, settings: TranslatorSettings,
                 translation: TranslationSettings | None = None, sleep=time.sleep):
        self.settings = settings
        self.translation = translation or TranslationSettings()
        self.retry_delays_ms = [max(0, int(d)) for d in self.translation.retry_delays_ms]
        self.retry_only_429 = self.translation.retry_only_429
        self._sleep = sleep

    def _translate(self, texts: list[str], source_language: str,
                   target_language: str) -> list[str]:
        if not self.settings.azure_api_key:
            raise JobError(ErrorCode.CONFIG, "Missing Azure Translator API key for translation.",
                           retryable=False)

        headers = {
            'Ocp-Apim-Subscription-Key': self.settings.azure_api_key,
            'Content-Type': 'application/json',
        }
        if self.settings.azure_region:
            headers['Ocp-Apim-Subscription-Region'] = self.settings.azure_region

        params = {
            'api-version': self.settings.azure_api_version,
            'from': source_language.lower(),
            'to': target_language.lower(),
        }
        body = [{'Text': text} for text in texts]

        delays = self.retry_delays_ms or [0]
        attempts = len(delays) + 1
        for attempt in range(1, attempts + 1):
            try:
                resp = self._post(headers, params, body)
                break
            except JobError as e:
                if attempt >= attempts or not self._should_retry(e):
                    raise
                delay_ms = delays[attempt - 1]
                logger.warning("Azure translate failed (%s) — retrying in %dms (attempt %d/%d)",
                               e.code, delay_ms, attempt, attempts - 1)
                self._sleep(delay_ms / 1000.0)

        try:
            data = resp.json()
        except ValueError:
            raise JobError(ErrorCode.TRANSLATION_FAILED, "Failed to parse Azure response JSON")

        if not isinstance(data, list):
            return []

        results = []
        for item in data:
            translations = (item or {}).get('translations') or [{}]
            results.append(str(translations[0].get('text', '')))
        return results

    def _should_retry(self, error: JobError) -> bool:
        if not self.retry_only_429:
            return True
        return error.code == ErrorCode.RATE_LIMITED

    def _post(self, headers: dict, params: dict, body: list) -> requests.Response:
        try:
            resp = requests.post(
                f"{self.settings.azure_base_url.rstrip('/')}/translate",
                headers=headers,
                params=params,
                json=body,
                timeout=_TIMEOUT_SEC,
            )
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.TRANSLATION_FAILED, "Azure request timed out")
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, f"Azure request failed: {e}")

        if resp.status_code == 429:
            raise JobError(ErrorCode.RATE_LIMITED, "Azure Translator rate limited (429)")
        if resp.status_code != 200:
            error_body = resp.text[:300] if resp.text else "No response body"
            raise JobError(ErrorCode.TRANSLATION_FAILED,
                           f"Azure Translator returned {resp.status_code}: {error_body}")
        return resp
