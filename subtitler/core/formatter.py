"""
Cue formatting: splits timed text into screen-safe subtitle cues.

Each input cue is divided into parts so that every part fits in
``max_lines`` lines of ``max_chars_per_line`` characters, lasts between
``min_duration`` and ``max_duration`` and stays under the reading-speed
limit. Parts are laid out back to back and never overlap earlier cues.
"""

import math
import re
import logging

from subtitler.core.config import SubtitleSettings

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r'\s+')


class CueFormatter:
    def __init__(self, settings: SubtitleSettings):
        self.max_chars_per_line = max(1, settings.max_chars_per_line)
        self.max_lines = max(1, settings.max_lines)
        self.min_duration = settings.min_duration
        self.max_duration = max(settings.max_duration, settings.min_duration)
        self.max_chars_per_second = max(0.1, settings.max_chars_per_second)
        self.gap_seconds = settings.gap_seconds

    def format(self, cues: list[dict]) -> list[dict]:
        """
        Format ``[{start, end, text, source_text?}]`` into display cues
        ``[{start, end, text, formatted_text, source_text}]``.

        Every part gets at least its own reading time; time left over from
        the source cue is shared out by text length.
        """
        formatted = []
        cursor = 0.0

        for cue in cues:
            text = str(cue.get('text') or '').strip()
            if not text:
                continue
            source_text = str(cue.get('source_text') or '')
            start = float(cue['start'])
            end = float(cue['end'])

            duration = max(0.01, end - start)
            start = round(max(start, cursor + self.gap_seconds), 3)

            part_texts = self.split_for_display(text, duration)
            needs = [self._required_duration(p) for p in part_texts]
            extra = max(0.0, duration - sum(needs))
            remaining = max(duration, sum(needs))
            total_chars = sum(len(p) for p in part_texts) or 1

            part_start = start
            for index, (part_text, need) in enumerate(zip(part_texts, needs)):
                if index == len(part_texts) - 1:
                    length = remaining
                else:
                    length = need + math.floor(extra * len(part_text) / total_chars * 1000) / 1000
                length = max(need, min(length, self.max_duration))
                remaining -= length

                part_end = round(part_start + length, 3)
                formatted.append({
                    'start': part_start,
                    'end': part_end,
                    'text': part_text,
                    'formatted_text': self.wrap_lines(part_text),
                    'source_text': source_text,
                })
                part_start = part_end
            cursor = part_start

        return formatted

    def split_for_display(self, text: str, duration: float = 0.0) -> list[str]:
        """
        Split ``text`` into the fewest parts that each fit on screen and can
        be read within ``max_duration``; falls back to one word per part.
        """
        words = self.split_words(text)
        chars_per_part = self.max_chars_per_line * self.max_lines
        required = max(duration, self._required_duration(text))
        parts = max(1,
                    math.ceil(len(text) / chars_per_part),
                    math.ceil(required / self.max_duration))

        while parts < len(words):
            part_texts = self.split_into_parts(text, parts)
            if all(self._fits(p) for p in part_texts):
                return part_texts
            parts += 1

        return words or [text]

    def _fits(self, text: str) -> bool:
        return (self._required_duration(text) <= self.max_duration
                and len(self._wrap(text)) <= self.max_lines)

    def wrap_text(self, text: str) -> str:
        """Re-wrap a standalone text (e.g. after translation)."""
        text = (text or '').strip()
        if not text:
            return ''
        return self.wrap_lines(text)

    def _required_duration(self, text: str) -> float:
        """Reading time for ``text``, rounded up to whole milliseconds."""
        seconds = max(self.min_duration, len(text) / self.max_chars_per_second)
        return math.ceil(seconds * 1000 - 1e-6) / 1000

    def split_into_parts(self, text: str, parts: int) -> list[str]:
        """Greedy word split into roughly ``parts`` pieces of balanced length."""
        if parts <= 1:
            return [text]

        target_length = max(1, math.ceil(len(text) / parts))
        segments = []
        current = ''
        for word, separator in self._pieces(text):
            candidate = word if not current else f"{current}{separator}{word}"
            if len(candidate) <= target_length or not current:
                current = candidate
                continue
            segments.append(current)
            current = word

        if current:
            segments.append(current)
        return segments or [text]

    def wrap_lines(self, text: str) -> str:
        """Greedy wrap; anything beyond ``max_lines`` lines is dropped."""
        lines = self._wrap(text) or [text]
        return '\n'.join(lines[:self.max_lines])

    def _wrap(self, text: str) -> list[str]:
        lines = []
        current = ''
        for word in self.split_words(text):
            candidate = word if not current else f"{current} {word}"
            if len(candidate) <= self.max_chars_per_line:
                current = candidate
                continue
            if current:
                lines.append(current)
            current = word

        if current:
            lines.append(current)
        return lines

    def split_words(self, text: str) -> list[str]:
        """Whitespace split; words longer than a line are hard-split."""
        return [word for word, _ in self._pieces(text)]

    def _pieces(self, text: str):
        # Pieces of a hard-split word rejoin without a separator.
        step = self.max_chars_per_line
        for word in _WHITESPACE_RE.split(text.strip()):
            for i in range(0, len(word), step):
                yield word[i:i + step], ' ' if i == 0 else ''
