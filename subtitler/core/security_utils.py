"""
Security utilities for VideoSubtitler.
- Filename sanitization for rendered outputs
- Storage path containment
- UTF-8 sanitizing of externally produced text
- Safe subprocess execution (argument arrays only)
"""

import re
import subprocess
import pathlib
import logging

from subtitler.core.constants import UNSAFE_FILENAME_CHARS, MAX_FILENAME_LEN

logger = logging.getLogger(__name__)


# ── Text safety ───────────────────────────────────────────────────────

def sanitize_utf8(value) -> str:
    """
    Return ``value`` as valid UTF-8 text, dropping any byte sequence (or lone
    surrogate) that cannot be encoded. Never raises.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='ignore')
    return str(value).encode('utf-8', errors='ignore').decode('utf-8', errors='ignore')


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_filename(name: str, fallback: str = "transcription") -> str:
    """Sanitize an uploaded file's base name for use in output file names."""
    if not name:
        return fallback
    stem = pathlib.PurePath(name.replace('\\', '/')).stem
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', sanitize_utf8(stem))
    safe = safe.replace('..', '')
    safe = re.sub(r'[_\s]+', '_', safe).strip('_. ')
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN].rstrip('_. ')
    return safe if safe else fallback


def safe_join(root: pathlib.Path, relative: str) -> pathlib.Path:
    """
    Resolve ``relative`` under ``root``. Raises ValueError when the result
    would escape the root.
    """
    real_root = root.resolve(strict=False)
    candidate = (real_root / relative.lstrip('/')).resolve(strict=False)
    if candidate != real_root and real_root not in candidate.parents:
        raise ValueError(f"Path traversal detected: {relative}")
    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run([str(a) for a in args], shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr as (lossily decoded) UTF-8 text."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        encoding='utf-8',
        errors='ignore',
        timeout=timeout,
        **kwargs,
    )
