"""
Diagnostics: tool version detection and provider checks.
"""

import shutil
import logging

from subtitler.core.config import PipelineSettings
from subtitler.core.security_utils import run_subprocess_capture
from subtitler.core.stt import list_stt_drivers
from subtitler.core.transcribe_whisper_api import verify_api_key
from subtitler.core.translation import list_translation_drivers

logger = logging.getLogger(__name__)


def get_tool_version(binary: str, version_flag: str = "-version") -> str:
    """Return the first line of ``<binary> <flag>``, or an error message."""
    try:
        result = run_subprocess_capture([binary, version_flag], timeout=10)
        if result.returncode == 0:
            output = (result.stdout or result.stderr or '').strip()
            return output.splitlines()[0] if output else "Unknown version"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def missing_tools(settings: PipelineSettings) -> list[str]:
    """Binaries the configured pipeline needs but cannot find on PATH."""
    required = [settings.tools.ffmpeg_path, settings.tools.ffprobe_path]
    if settings.ocr.enabled:
        required.append(settings.tools.tesseract_path)
    if settings.stt.driver == 'whisper_cpp' and settings.stt.cpp_binary:
        required.append(settings.stt.cpp_binary)
    return [tool for tool in required if not shutil.which(tool)]


def check_credentials(settings: PipelineSettings) -> dict:
    """Which configured providers have credentials; never the keys themselves."""
    checks = {}
    if settings.stt.driver == 'whisper_api':
        checks['whisper_api'] = bool(settings.stt.api_key)
    elif settings.stt.driver == 'whisper_cpp':
        checks['whisper_cpp_model'] = bool(settings.stt.cpp_model)

    if settings.translator.driver == 'deepl':
        checks['deepl'] = bool(settings.translator.deepl_api_key)
    elif settings.translator.driver == 'azure':
        checks['azure'] = bool(settings.translator.azure_api_key)
    return checks


def get_diagnostics(settings: PipelineSettings, verify: bool = False) -> dict:
    """Gather all diagnostic information. ``verify`` calls the STT API to test the key."""
    info = {
        "ffmpeg_version": get_tool_version(settings.tools.ffmpeg_path),
        "ffprobe_version": get_tool_version(settings.tools.ffprobe_path),
        "tesseract_version": get_tool_version(settings.tools.tesseract_path, "--version"),
        "stt_driver": settings.stt.driver,
        "translation_driver": settings.translator.driver,
        "available_stt_drivers": list_stt_drivers(),
        "available_translation_drivers": list_translation_drivers(),
        "credentials": check_credentials(settings),
        "missing_tools": missing_tools(settings),
    }
    if verify and settings.stt.driver == "whisper_api":
        ok, message = verify_api_key(settings.stt)
        info["whisper_api_key_check"] = {"ok": ok, "message": message}
    return info
