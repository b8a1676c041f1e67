"""
Burned-in subtitle extraction.

ffmpeg samples cropped frames from the bottom of the picture, tesseract
reads each frame (TSV output), and consecutive frames showing the same text
are collapsed into timed cues. Several crop passes can be merged.
"""

import dataclasses
import functools
import logging
import shutil
import subprocess
from pathlib import Path

from subtitler.core.config import OcrSettings, ToolSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.progress import ProgressChannel, ScaledProgress
from subtitler.core.security_utils import run_subprocess_capture, sanitize_utf8
from subtitler.core.text_similarity import (
    is_similar_compact, normalize_compact, pick_preferred_text, similarity_percent,
)

logger = logging.getLogger(__name__)

_TSV_COLUMNS = 12


class OcrSubtitleExtractor:
    """Frame sampling + tesseract recognition + temporal collapse."""

    def __init__(self, settings: OcrSettings, tools: ToolSettings, language: str = 'jpn'):
        self.settings = settings
        self.tools = tools
        self.language = language

    def with_crop_overrides(self, width_ratio: float | None = None,
                            height_ratio: float | None = None,
                            bottom_padding_ratio: float | None = None) -> "OcrSubtitleExtractor":
        """A copy of this extractor with a different crop window."""
        s = self.settings
        settings = dataclasses.replace(
            s,
            crop_width_ratio=s.crop_width_ratio if width_ratio is None else width_ratio,
            crop_height_ratio=s.crop_height_ratio if height_ratio is None else height_ratio,
            crop_bottom_padding_ratio=(s.crop_bottom_padding_ratio
                                       if bottom_padding_ratio is None else bottom_padding_ratio),
        )
        return type(self)(settings, self.tools, self.language)

    # ── Extraction ────────────────────────────────────────────────────

    def extract(self, input_path: Path, temp_directory: Path, context: dict | None = None,
                progress: ProgressChannel | ScaledProgress | None = None) -> list[dict] | None:
        """
        Return ``[{start, end, text}]`` for the subtitles burned into
        ``input_path``, or None when no frame carried readable text.
        """
        context = context or {}
        frames_dir = Path(temp_directory) / 'ocr_frames'
        if frames_dir.exists():
            shutil.rmtree(frames_dir)
        frames_dir.mkdir(parents=True, exist_ok=True)

        try:
            logger.info("OCR: extracting frames (fps=%s, scale=%s) %s",
                        self.settings.fps, self.settings.scale, context)
            self._extract_frames(input_path, frames_dir)

            frames = self._list_frames(frames_dir)
            if not frames:
                logger.warning("OCR: no frames extracted %s", context)
                return None

            logger.info("OCR: %d frames ready %s", len(frames), context)
            segments = self._collapse(frames, progress, context)
        finally:
            shutil.rmtree(frames_dir, ignore_errors=True)

        logger.info("OCR: %d segments built %s", len(segments), context)
        return segments or None

    def _collapse(self, frames: list[Path], progress, context: dict) -> list[dict]:
        s = self.settings
        fps = max(0.1, s.fps)
        frame_duration = 1 / fps
        total = len(frames)
        log_every = max(1, s.log_every)

        segments = []
        current_text = None
        current_normalized = None
        current_start = None
        last_seen = None

        def emit(end: float):
            if end - current_start >= s.min_segment_seconds:
                segments.append({
                    'start': round(current_start, 3),
                    'end': round(end, 3),
                    'text': current_text,
                })

        for index, frame in enumerate(frames):
            timestamp = index / fps
            text = sanitize_utf8(self._ocr_frame(frame)).strip()
            normalized = normalize_compact(text)

            if (index + 1) % log_every == 0:
                percent = round((index + 1) / total * 100, 1)
                logger.info("OCR: progress %d/%d (%.1f%%) %s", index + 1, total, percent, context)
                if progress is not None:
                    progress.publish(index + 1, total, percent)

            if not normalized or len(normalized) < s.min_chars:
                if current_text is not None:
                    if timestamp - last_seen <= s.max_blank_seconds:
                        continue
                    emit(last_seen + frame_duration)
                current_text = current_normalized = current_start = last_seen = None
                continue

            if current_normalized is None:
                current_text, current_normalized = text, normalized
                current_start = last_seen = timestamp
                continue

            if current_normalized == normalized or self._is_similar(current_normalized, normalized):
                last_seen = timestamp
                continue

            emit(max(timestamp, last_seen + frame_duration))
            current_text, current_normalized = text, normalized
            current_start = last_seen = timestamp

        if current_text is not None:
            emit(last_seen + frame_duration)

        return segments

    def _is_similar(self, current: str, candidate: str) -> bool:
        if not current or not candidate:
            return False
        return similarity_percent(current, candidate) >= self.settings.similarity_threshold

    # ── Toolchain seams ───────────────────────────────────────────────

    def build_filters(self) -> str:
        s = self.settings
        fps = max(0.1, s.fps)
        width = max(0.1, min(1.0, s.crop_width_ratio))
        height = max(0.1, min(1.0, s.crop_height_ratio))
        bottom = max(0.0, min(0.3, s.crop_bottom_padding_ratio))
        scale = max(1, int(s.scale))

        filters = [
            f"fps={fps:.3f}",
            f"crop=iw*{width:.4f}:ih*{height:.4f}:(iw*(1-{width:.4f})/2):(ih-(ih*{height:.4f})-(ih*{bottom:.4f}))",
            f"scale=iw*{scale}:ih*{scale}",
        ]
        extra = (s.filters or '').strip().strip(',')
        if extra:
            filters.append(extra)
        return ','.join(filters)

    def _extract_frames(self, input_path: Path, frames_dir: Path):
        args = [
            self.tools.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-vf", self.build_filters(),
            "-q:v", "2",
            str(frames_dir / "frame_%06d.png"),
        ]
        self._run(args, "ffmpeg frame extraction")

    @staticmethod
    def _list_frames(frames_dir: Path) -> list[Path]:
        return sorted(frames_dir.glob('frame_*.png'))

    def _ocr_frame(self, frame_path: Path) -> str:
        if not frame_path.exists():
            return ''
        result = self._run([
            self.tools.tesseract_path,
            str(frame_path),
            "stdout",
            "-l", self.language,
            "--psm", str(self.settings.psm),
            "--oem", str(self.settings.oem),
            "tsv",
        ], "tesseract")
        return self.parse_tsv(result.stdout)

    def _run(self, args: list, what: str) -> subprocess.CompletedProcess:
        try:
            result = run_subprocess_capture(args, timeout=self.tools.process_timeout_seconds)
        except FileNotFoundError as e:
            raise JobError(ErrorCode.CONFIG, f"{args[0]} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise JobError(ErrorCode.OCR_FAILED, f"{what} timed out after {e.timeout}s") from e
        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise JobError(ErrorCode.OCR_FAILED,
                           f"{what} failed (rc={result.returncode}): {stderr[-300:] or 'unknown error'}")
        return result

    # ── TSV parsing ───────────────────────────────────────────────────

    def parse_tsv(self, tsv: str) -> str:
        """Pick the most plausible subtitle line from tesseract TSV output."""
        s = self.settings
        rows = (tsv or '').strip().splitlines()
        lines_by_key: dict[tuple, dict] = {}
        page_width = page_height = None

        for row in rows[1:]:
            columns = row.split('\t')
            if len(columns) < _TSV_COLUMNS:
                continue

            level, page, block, par, line, word_num, left, top, width, height = (
                _to_int(c) for c in columns[:10])
            confidence = _to_float(columns[10], -1.0)
            text = columns[11].strip()

            if level == 1 and width > 0 and height > 0:
                page_width, page_height = width, height
                continue

            if level != 5 or word_num <= 0:
                continue

            if confidence < s.min_confidence or not text:
                continue

            entry = lines_by_key.setdefault((page, block, par, line), {
                'words': [],
                'left': left,
                'top': top,
                'right': left + width,
                'bottom': top + height,
                'confidence_total': 0.0,
                'confidence_count': 0,
            })
            entry['words'].append(text)
            entry['left'] = min(entry['left'], left)
            entry['top'] = min(entry['top'], top)
            entry['right'] = max(entry['right'], left + width)
            entry['bottom'] = max(entry['bottom'], top + height)
            entry['confidence_total'] += max(0.0, confidence)
            entry['confidence_count'] += 1

        candidates = []
        max_height = 0
        for entry in lines_by_key.values():
            # CJK subtitles carry no spaces between recognized words
            text = sanitize_utf8(''.join(entry['words'])).strip()
            if not text:
                continue
            line_height = max(0, entry['bottom'] - entry['top'])
            max_height = max(max_height, line_height)
            candidates.append({
                'text': text,
                'left': entry['left'],
                'right': entry['right'],
                'bottom': entry['bottom'],
                'height': line_height,
                'width': max(0, entry['right'] - entry['left']),
                'avg_confidence': entry['confidence_total'] / max(1, entry['confidence_count']),
            })

        if not candidates:
            return ''

        min_height = max_height * max(0.0, min(1.0, s.min_line_height_ratio)) if max_height > 0 else 0
        filtered = [c for c in candidates if c['height'] >= min_height] or candidates

        if page_height:
            min_bottom = page_height * max(0.0, min(1.0, s.min_line_bottom_ratio))
            filtered = [c for c in filtered if c['bottom'] >= min_bottom] or filtered

        filtered = [c for c in filtered if c['avg_confidence'] >= s.min_line_confidence] or filtered

        def rank(c):
            if page_width:
                placement = abs((c['left'] + c['right']) / 2 - page_width / 2)
            elif page_height:
                placement = page_height - c['bottom']
            else:
                placement = 0
            return (-c['avg_confidence'], -c['width'], -len(c['text']), placement)

        return min(filtered, key=rank)['text']


def _to_int(value: str) -> int:
    try:
        return int(float(value))
    except ValueError:
        return 0


def _to_float(value: str, default: float) -> float:
    try:
        return float(value)
    except ValueError:
        return default


# ── Multi-pass merging ────────────────────────────────────────────────

def merge_ocr_passes(primary: list[dict], secondary: list[dict], gap: float,
                     threshold: float = 90.0) -> list[dict]:
    """
    Merge two OCR passes. Overlapping (within ``gap``) cues with similar text
    become one cue spanning both, keeping the preferred text.
    """
    if not secondary:
        return primary

    merged: list[dict] = []
    for cue in sorted(primary + secondary, key=lambda c: (c['start'], c['end'])):
        text = (cue.get('text') or '').strip()
        start = float(cue.get('start', 0.0))
        end = float(cue.get('end', 0.0))
        if not text or end <= start:
            continue

        if merged:
            last = merged[-1]
            if start <= last['end'] + gap and is_similar_compact(last['text'], text, threshold):
                last['end'] = max(last['end'], end)
                last['text'] = pick_preferred_text(last['text'], text)
                continue

        merged.append({'start': start, 'end': end, 'text': text})

    return merged


def merge_ocr_pass_results(results: list, gap: float, threshold: float = 90.0) -> list[dict] | None:
    """
    Fold ordered pass results into one cue list. A primary pass with no
    result aborts (None); later empty passes are skipped.
    """
    if not results or results[0] is None:
        return None

    later = []
    for index, result in enumerate(results[1:], start=2):
        if result is None:
            logger.warning("OCR: pass %d returned no subtitles", index)
            continue
        later.append(result)

    return functools.reduce(
        lambda acc, nxt: merge_ocr_passes(acc, nxt, gap, threshold),
        later,
        results[0],
    )


def resolve_ocr_passes(settings: OcrSettings) -> list[tuple]:
    """
    Crop overrides per pass as (width, height, bottom); None keeps the
    primary value. The second pass is dropped when it would repeat the first.
    """
    passes = [(None, None, None)]
    if not settings.second_pass_enabled:
        return passes

    override = (settings.second_pass_width_ratio,
                settings.second_pass_height_ratio,
                settings.second_pass_bottom_padding_ratio)
    if all(v is None for v in override):
        return passes

    primary = (settings.crop_width_ratio, settings.crop_height_ratio,
               settings.crop_bottom_padding_ratio)
    effective = tuple(p if o is None else float(o) for p, o in zip(primary, override))
    if effective == primary:
        return passes

    passes.append(override)
    return passes


def extract_with_passes(extractor: OcrSubtitleExtractor, input_path: Path, temp_directory: Path,
                        progress: ProgressChannel | None = None,
                        context: dict | None = None) -> list[dict] | None:
    """Run every configured crop pass and merge the results."""
    settings = extractor.settings
    passes = resolve_ocr_passes(settings)
    results = []

    for index, (width, height, bottom) in enumerate(passes, start=1):
        pass_extractor = extractor
        if any(v is not None for v in (width, height, bottom)):
            pass_extractor = extractor.with_crop_overrides(width, height, bottom)
            logger.info("OCR: running pass %d/%d (crop %s, %s, %s)",
                        index, len(passes), width, height, bottom)

        scaled = progress.scaled(index, len(passes)) if progress is not None else None
        pass_context = dict(context or {}, ocr_pass=index, ocr_pass_total=len(passes))
        result = pass_extractor.extract(input_path, temp_directory, pass_context, scaled)
        results.append(result)

        if index == 1 and result is None:
            break

    return merge_ocr_pass_results(results, settings.merge_gap_seconds,
                                  settings.similarity_threshold)
