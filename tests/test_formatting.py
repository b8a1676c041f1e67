#!/usr/bin/env python3
"""
Tests for cue formatting, seam deduplication and SRT/VTT rendering.
"""

import random
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from subtitler.core.config import SubtitleSettings
from subtitler.core.formatter import CueFormatter
from subtitler.core.merge import dedupe_overlaps
from subtitler.core.output_writer import (
    build_srt, build_vtt, format_timestamp, output_base_name, write_outputs,
)
from subtitler.core.storage import LocalStorage
from subtitler.core.subtitle_parse import parse_srt


def _words(count: int) -> str:
    return ' '.join(f"word{i:02d}" for i in range(1, count + 1))


class TestCueFormatter(unittest.TestCase):

    def setUp(self):
        self.settings = SubtitleSettings()
        self.formatter = CueFormatter(self.settings)

    def test_short_cue_unchanged(self):
        result = self.formatter.format([
            {'start': 1, 'end': 3, 'text': 'Hello world', 'source_text': 'こんにちは'},
        ])
        self.assertEqual(result, [{
            'start': 1.0,
            'end': 3.0,
            'text': 'Hello world',
            'formatted_text': 'Hello world',
            'source_text': 'こんにちは',
        }])

    def test_min_duration_applied(self):
        result = self.formatter.format([{'start': 5, 'end': 5.2, 'text': 'Hi'}])
        self.assertEqual((result[0]['start'], result[0]['end']), (5.0, 6.0))

    def test_long_text_split_by_line_capacity(self):
        text = _words(20)
        result = self.formatter.format([{'start': 1, 'end': 2, 'text': text}])

        self.assertEqual(len(result), 2)
        self.assertEqual(' '.join(c['text'] for c in result), text)
        self.assertEqual(result[0]['end'], result[1]['start'])
        for cue in result:
            lines = cue['formatted_text'].split('\n')
            self.assertLessEqual(len(lines), self.settings.max_lines)
            for line in lines:
                self.assertLessEqual(len(line), self.settings.max_chars_per_line)
            duration = cue['end'] - cue['start']
            self.assertGreaterEqual(duration, self.settings.min_duration)
            self.assertLessEqual(len(cue['text']) / duration,
                                 self.settings.max_chars_per_second + 0.01)

    def test_long_duration_split(self):
        result = self.formatter.format([
            {'start': 1, 'end': 21, 'text': 'one two three four five six'},
        ])
        self.assertGreater(len(result), 1)
        for cue in result:
            self.assertLessEqual(cue['end'] - cue['start'], self.settings.max_duration + 1e-6)
            self.assertGreaterEqual(cue['end'] - cue['start'], self.settings.min_duration - 1e-6)
        self.assertEqual(result[0]['start'], 1.0)
        self.assertAlmostEqual(result[-1]['end'], 21.0, places=3)

    def test_cues_never_overlap(self):
        result = self.formatter.format([
            {'start': 1, 'end': 3, 'text': 'Hello'},
            {'start': 2, 'end': 4, 'text': 'World'},
            {'start': 2.5, 'end': 2.6, 'text': 'Again'},
        ])
        self.assertEqual(len(result), 3)
        for prev, cue in zip(result, result[1:]):
            self.assertGreaterEqual(cue['start'] + 1e-9, prev['end'] + self.settings.gap_seconds)
        self.assertEqual(result[1]['start'], 3.05)

    def test_long_cjk_run_respects_reading_speed(self):
        result = self.formatter.format([{'start': 0, 'end': 2, 'text': '字' * 200}])
        self.assertEqual(''.join(c['text'] for c in result), '字' * 200)
        self.assertGreater(len(result), 1)
        self.assertCuesWithinLimits(result)

    def test_random_cues_respect_limits(self):
        rng = random.Random(20261018)
        cues = []
        start = 0.0
        for _ in range(400):
            if rng.random() < 0.2:
                text = ''.join(rng.choice('你好世界字幕测试') for _ in range(rng.randint(1, 260)))
            else:
                text = ' '.join('x' * rng.randint(1, 15) for _ in range(rng.randint(1, 40)))
            duration = rng.uniform(0.05, 25.0)
            cues.append({'start': start, 'end': start + duration, 'text': text})
            start += rng.uniform(0.0, duration + 2.0)

        result = self.formatter.format(cues)
        self.assertCuesWithinLimits(result)
        for prev, cue in zip(result, result[1:]):
            self.assertGreaterEqual(cue['start'] + 1e-9, prev['end'])

    def assertCuesWithinLimits(self, cues):
        s = self.settings
        for cue in cues:
            duration = cue['end'] - cue['start']
            self.assertGreaterEqual(duration, s.min_duration - 1e-6, cue)
            self.assertLessEqual(duration, s.max_duration + 1e-6, cue)
            self.assertLessEqual(len(cue['text']) / duration, s.max_chars_per_second + 1e-3, cue)
            lines = cue['formatted_text'].split('\n')
            self.assertLessEqual(len(lines), s.max_lines, cue)
            self.assertTrue(all(len(line) <= s.max_chars_per_line for line in lines), cue)
            self.assertEqual(' '.join(lines), ' '.join(self.formatter.split_words(cue['text'])))

    def test_empty_text_skipped(self):
        self.assertEqual(self.formatter.format([{'start': 0, 'end': 1, 'text': '   '}]), [])

    def test_long_word_hard_split(self):
        parts = self.formatter.split_words('a' * 100)
        self.assertEqual([len(p) for p in parts], [42, 42, 16])

    def test_wrap_drops_overflow_lines(self):
        wrapped = self.formatter.wrap_text(_words(30))
        lines = wrapped.split('\n')
        self.assertEqual(len(lines), 2)
        self.assertTrue(all(len(line) <= 42 for line in lines))

    def test_wrap_text_empty(self):
        self.assertEqual(self.formatter.wrap_text(''), '')
        self.assertEqual(self.formatter.wrap_text(None), '')


class TestOverlapDedupe(unittest.TestCase):

    def test_seam_example(self):
        cues = [
            {'start': 0, 'end': 2, 'text': 'Hello world'},
            {'start': 1.6, 'end': 3, 'text': 'Hello world'},
            {'start': 2.8, 'end': 4.2, 'text': 'Next line'},
        ]
        result = dedupe_overlaps(cues, 0.05)
        self.assertEqual(len(result), 2)
        self.assertEqual((result[0]['start'], result[0]['end'], result[0]['text']),
                         (0, 2, 'Hello world'))
        self.assertGreaterEqual(result[1]['start'], 2.0)
        self.assertEqual(result[1]['text'], 'Next line')

    def test_similar_seam_cue_dropped(self):
        cues = [
            {'id': 2, 'start': 2.5, 'end': 4.0, 'text': 'hello world!'},
            {'id': 1, 'start': 0.0, 'end': 3.0, 'text': 'Hello, world'},
        ]
        result = dedupe_overlaps(cues, 0.1)
        self.assertEqual([c['id'] for c in result], [1])

    def test_dissimilar_overlap_is_clipped(self):
        cues = [
            {'id': 1, 'start': 0.0, 'end': 3.0, 'text': 'Hello world'},
            {'id': 2, 'start': 2.8, 'end': 5.0, 'text': 'Something else entirely'},
        ]
        result = dedupe_overlaps(cues, 0.1)
        self.assertEqual(len(result), 2)
        self.assertEqual(result[1]['id'], 2)
        self.assertEqual(result[1]['start'], 3.1)
        self.assertEqual(result[1]['end'], 5.0)

    def test_clip_that_inverts_drops_cue(self):
        cues = [
            {'start': 0.0, 'end': 3.0, 'text': 'Hello world'},
            {'start': 2.85, 'end': 3.0, 'text': 'Other'},
        ]
        self.assertEqual(len(dedupe_overlaps(cues, 0.1)), 1)

    def test_non_overlapping_kept_and_inputs_untouched(self):
        cues = [
            {'start': 0.0, 'end': 1.0, 'text': 'Same'},
            {'start': 2.0, 'end': 3.0, 'text': 'Same'},
        ]
        result = dedupe_overlaps(cues, 0.1)
        self.assertEqual(len(result), 2)
        self.assertIsNot(result[0], cues[0])

    def test_translated_text_compared(self):
        cues = [
            {'start': 0.0, 'end': 3.0, 'text': 'a', 'target_text': 'Good morning'},
            {'start': 2.0, 'end': 4.0, 'text': 'b', 'target_text': 'Good morning'},
        ]
        self.assertEqual(len(dedupe_overlaps(cues, 0.1)), 1)


class TestRendering(unittest.TestCase):

    CUES = [
        {'start': 1, 'end': 2.5, 'text': 'Hello'},
        {'start': 3, 'end': 4, 'text': 'x', 'formatted_text': 'Line one\nLine two'},
    ]

    def test_timestamp_carry(self):
        self.assertEqual(format_timestamp(3599.9996), "01:00:00,000")
        self.assertEqual(format_timestamp(59.9999), "00:01:00,000")
        self.assertEqual(format_timestamp(1.5, '.'), "00:00:01.500")
        self.assertEqual(format_timestamp(-1), "00:00:00,000")

    def test_build_srt(self):
        self.assertEqual(
            build_srt(self.CUES),
            "1\n00:00:01,000 --> 00:00:02,500\nHello\n\n"
            "2\n00:00:03,000 --> 00:00:04,000\nLine one\nLine two\n\n",
        )
        self.assertEqual(build_srt([]), "")

    def test_build_vtt(self):
        self.assertEqual(
            build_vtt(self.CUES[:1]),
            "WEBVTT\n\n00:00:01.000 --> 00:00:02.500\nHello\n\n",
        )
        self.assertEqual(build_vtt([]), "WEBVTT\n\n")

    def test_srt_parses_back(self):
        cues = [
            {'start': 0.5, 'end': 1.25, 'text': 'First'},
            {'start': 61.25, 'end': 3725.75, 'text': '第二'},
        ]
        self.assertEqual(parse_srt(build_srt(cues)), cues)

    def test_output_base_name(self):
        self.assertEqual(output_base_name("My Movie.mp4"), "transcription")
        self.assertEqual(output_base_name("My Movie.mp4", "EN"), "My_Movie_en")
        self.assertEqual(output_base_name(None, "de"), "transcription_de")

    def test_write_outputs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = LocalStorage(Path(tmpdir))
            srt_path, vtt_path = write_outputs(storage, "transcriptions/", "job-1",
                                               "transcription", self.CUES)
            self.assertEqual(srt_path, "transcriptions/job-1/output/transcription.srt")
            self.assertEqual(vtt_path, "transcriptions/job-1/output/transcription.vtt")
            self.assertEqual(storage.get(srt_path).decode('utf-8'), build_srt(self.CUES))
            self.assertTrue(storage.get(vtt_path).decode('utf-8').startswith("WEBVTT\n\n"))


if __name__ == "__main__":
    unittest.main()
