"""
Translator interface and factory.
"""

import importlib
import logging

from subtitler.core.config import TranslatorSettings, TranslationSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError

logger = logging.getLogger(__name__)

# driver name -> "module.ClassName"
_TRANSLATOR_REGISTRY: dict[str, str] = {
    "deepl": "subtitler.core.translate_deepl.DeepLTranslator",
    "azure": "subtitler.core.translate_azure.AzureTranslator",
}


def align_translations(texts: list[str], translations: list) -> list[str]:
    """Pad with '' or truncate so output index i always belongs to input i."""
    aligned = [str(t) if t is not None else '' for t in (translations or [])][:len(texts)]
    if len(aligned) < len(texts):
        logger.warning("Translator returned %d of %d items — padding",
                       len(aligned), len(texts))
        aligned += [''] * (len(texts) - len(aligned))
    return aligned


class Translator:
    """Translates a batch of strings, preserving order and length."""

    name = "base"

    def translate(self, texts: list[str], source_language: str,
                  target_language: str) -> list[str]:
        if not texts:
            return []
        return align_translations(texts, self._translate(list(texts), source_language,
                                                         target_language))

    def _translate(self, texts: list[str], source_language: str,
                   target_language: str) -> list[str]:
        raise NotImplementedError


def list_translation_drivers() -> list[str]:
    return list(_TRANSLATOR_REGISTRY)


def create_translator(settings: TranslatorSettings,
                      translation: TranslationSettings | None = None) -> Translator:
    """Build the translator named by ``settings.driver``."""
    driver = (settings.driver or '').strip().lower()
    if driver not in _TRANSLATOR_REGISTRY:
        raise JobError(ErrorCode.CONFIG,
                       f"Unknown translation driver '{settings.driver}'. "
                       f"Available: {', '.join(_TRANSLATOR_REGISTRY)}",
                       retryable=False)
    module_name, class_name = _TRANSLATOR_REGISTRY[driver].rsplit('.', 1)
    translator_cls = getattr(importlib.import_module(module_name), class_name)
    logger.info("Translation provider: %s", driver)
    return translator_cls(settings, translation or TranslationSettings())
