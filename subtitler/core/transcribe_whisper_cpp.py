"""
Local whisper.cpp speech-to-text.
Runs the CLI binary and reads back its SRT or JSON output file.
"""

import json
import logging
import subprocess
from pathlib import Path

from subtitler.core.config import SttSettings
from subtitler.core.constants import ErrorCode, PROCESS_TIMEOUT_SEC
from subtitler.core.error_codes import JobError
from subtitler.core.security_utils import run_subprocess_capture
from subtitler.core.stt import SpeechToText, clean_segments
from subtitler.core.subtitle_parse import parse_srt

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ('srt', 'json')


def parse_whisper_json(content: str) -> list[dict]:
    try:
        payload = json.loads(content)
    except ValueError as e:
        raise JobError(ErrorCode.STT_FAILED, f"whisper.cpp wrote unreadable JSON: {e}") from e
    segments = payload.get('segments') if isinstance(payload, dict) else None
    return clean_segments(segments if isinstance(segments, list) else [])


class WhisperCppSttProvider(SpeechToText):
    name = "whisper_cpp"

    def __init__(self, settings: SttSettings):
        self.settings = settings

    def build_command(self, audio_path: Path, language: str, fmt: str) -> list[str]:
        s = self.settings
        command = [s.cpp_binary, "-m", s.cpp_model, "-f", str(audio_path)]
        if language and language.strip():
            command += ["-l", language]
        if s.cpp_threads:
            command += ["-t", str(s.cpp_threads)]
        if s.cpp_best_of is not None:
            command += ["-bo", str(s.cpp_best_of)]
        if s.cpp_beam_size is not None:
            command += ["-bs", str(s.cpp_beam_size)]
        if s.cpp_suppress_non_speech:
            command.append("-sns")
        if s.cpp_no_gpu:
            command.append("-ng")
        command.append("--output-json" if fmt == 'json' else "--output-srt")
        return command

    @staticmethod
    def output_candidates(audio_path: Path, fmt: str) -> list[Path]:
        return [
            audio_path.with_name(f"{audio_path.name}.{fmt}"),
            audio_path.with_name(f"{audio_path.stem}.{fmt}"),
        ]

    def transcribe(self, audio_path: Path, language: str) -> list[dict]:
        s = self.settings
        if not s.cpp_binary:
            raise JobError(ErrorCode.CONFIG, "Missing whisper.cpp binary path.", retryable=False)
        if not s.cpp_model:
            raise JobError(ErrorCode.CONFIG, "Missing whisper.cpp model path.", retryable=False)
        if not audio_path.exists():
            raise JobError(ErrorCode.MISSING_CHUNK_AUDIO, f"Audio file not found: {audio_path}")

        fmt = (s.cpp_output_format or '').lower()
        if fmt not in SUPPORTED_FORMATS:
            raise JobError(ErrorCode.CONFIG,
                           f"Unsupported whisper.cpp output format [{s.cpp_output_format}].",
                           retryable=False)

        timeout = s.cpp_timeout_seconds or PROCESS_TIMEOUT_SEC
        try:
            try:
                result = run_subprocess_capture(self.build_command(audio_path, language, fmt),
                                                timeout=timeout)
            except FileNotFoundError as e:
                raise JobError(ErrorCode.CONFIG, f"whisper.cpp binary not found: {e}",
                               retryable=False) from e
            except subprocess.TimeoutExpired as e:
                raise JobError(ErrorCode.STT_TIMEOUT,
                               f"whisper.cpp timed out after {timeout}s") from e

            if result.returncode != 0:
                stderr = (result.stderr or '').strip()
                raise JobError(ErrorCode.STT_FAILED,
                               f"whisper.cpp failed (rc={result.returncode}): {stderr[-300:]}")

            output = self._read_output(audio_path, fmt) or (result.stdout or '').strip()
            if not output:
                stderr = (result.stderr or '').strip()
                raise JobError(ErrorCode.STT_FAILED, stderr or "whisper.cpp returned no output.")

            segments = parse_whisper_json(output) if fmt == 'json' else clean_segments(parse_srt(output))
        finally:
            for candidate in self.output_candidates(audio_path, fmt):
                candidate.unlink(missing_ok=True)

        logger.info("whisper.cpp: %s -> %d segments", audio_path.name, len(segments))
        return segments

    def _read_output(self, audio_path: Path, fmt: str) -> str:
        for candidate in self.output_candidates(audio_path, fmt):
            if candidate.exists():
                return candidate.read_bytes().decode('utf-8', errors='ignore')
        return ''
