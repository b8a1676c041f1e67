#!/usr/bin/env python3
"""
Tests for burned-in subtitle OCR: frame collapsing, tesseract TSV parsing,
multi-pass merging and progress reporting.
"""

import sys
import tempfile
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from subtitler.core.config import OcrSettings, ToolSettings
from subtitler.core.progress import ProgressChannel
from subtitler.core.subtitle_ocr import (
    OcrSubtitleExtractor, extract_with_passes, merge_ocr_pass_results,
    merge_ocr_passes, resolve_ocr_passes,
)

PRIMARY_FRAMES = ['', 'Hello', 'Hello', 'Hello', '', '', '', 'World', 'World', '']

# frame texts per crop height; the second pass sees a line the first crop misses
FRAMES_BY_HEIGHT = {
    0.2: PRIMARY_FRAMES,
    0.3: ['', 'Hello', 'Hello', 'Hello', '', 'Extra', 'Extra', '', '', ''],
}


class FakeOcrExtractor(OcrSubtitleExtractor):
    """Writes placeholder frames and reads text from a fixed table."""

    def _extract_frames(self, input_path, frames_dir):
        for index in range(len(self._frames())):
            (frames_dir / f"frame_{index + 1:06d}.png").write_bytes(b'')

    def _ocr_frame(self, frame_path):
        index = int(frame_path.stem.split('_')[1]) - 1
        return self._frames()[index]

    def _frames(self):
        return FRAMES_BY_HEIGHT[self.settings.crop_height_ratio]


def _settings(**overrides) -> OcrSettings:
    base = OcrSettings(fps=2.0, min_segment_seconds=0.5, max_blank_seconds=0.75,
                       crop_height_ratio=0.2, log_every=1)
    return replace(base, **overrides)


class TestOcrCollapse(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.temp = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_collapse_frames_into_cues(self):
        extractor = FakeOcrExtractor(_settings(), ToolSettings())
        cues = extractor.extract(self.temp / 'video.mp4', self.temp)
        self.assertEqual(cues, [
            {'start': 0.5, 'end': 2.0, 'text': 'Hello'},
            {'start': 3.5, 'end': 4.5, 'text': 'World'},
        ])
        self.assertFalse((self.temp / 'ocr_frames').exists())

    def test_blank_video_returns_none(self):
        FRAMES_BY_HEIGHT[0.25] = ['', 'x', '', '']
        try:
            extractor = FakeOcrExtractor(_settings(crop_height_ratio=0.25), ToolSettings())
            self.assertIsNone(extractor.extract(self.temp / 'video.mp4', self.temp))
        finally:
            del FRAMES_BY_HEIGHT[0.25]

    def test_short_flash_dropped(self):
        FRAMES_BY_HEIGHT[0.25] = ['', 'Flash', '', '', '', '']
        try:
            extractor = FakeOcrExtractor(_settings(crop_height_ratio=0.25,
                                                   min_segment_seconds=0.6), ToolSettings())
            self.assertIsNone(extractor.extract(self.temp / 'video.mp4', self.temp))
        finally:
            del FRAMES_BY_HEIGHT[0.25]

    def test_progress_is_monotonic(self):
        channel = ProgressChannel()
        seen = []
        channel.subscribe(lambda event: seen.append(event.percent))
        extractor = FakeOcrExtractor(_settings(), ToolSettings())
        extractor.extract(self.temp / 'video.mp4', self.temp, progress=channel)

        self.assertEqual(seen, sorted(set(seen)))
        self.assertEqual(seen[-1], 100.0)
        self.assertEqual(channel.latest().frame, len(PRIMARY_FRAMES))

    def test_second_pass_merged(self):
        extractor = FakeOcrExtractor(_settings(second_pass_enabled=True,
                                               second_pass_height_ratio=0.3), ToolSettings())
        channel = ProgressChannel()
        cues = extract_with_passes(extractor, self.temp / 'video.mp4', self.temp, channel)

        self.assertEqual([c['text'] for c in cues], ['Hello', 'Extra', 'World'])
        self.assertEqual(channel.latest().percent, 100.0)

    def test_build_filters(self):
        extractor = OcrSubtitleExtractor(_settings(filters=',eq=contrast=1.5,'), ToolSettings())
        filters = extractor.build_filters()
        self.assertTrue(filters.startswith("fps=2.000,crop=iw*0.8000:ih*0.2000"))
        self.assertTrue(filters.endswith(",scale=iw*2:ih*2,eq=contrast=1.5"))


class TestTsvParsing(unittest.TestCase):

    HEADER = ("level\tpage_num\tblock_num\tpar_num\tline_num\tword_num\t"
              "left\ttop\twidth\theight\tconf\ttext")

    def test_picks_bottom_subtitle_line(self):
        rows = [
            self.HEADER,
            "1\t1\t0\t0\t0\t0\t0\t0\t640\t200\t-1\t",
            "5\t1\t1\t1\t1\t1\t10\t10\t50\t20\t90\tlogo",
            "5\t1\t2\t1\t1\t1\t200\t150\t100\t40\t92\t你好",
            "5\t1\t2\t1\t1\t2\t300\t150\t80\t40\t88\t世界",
            "5\t1\t2\t1\t1\t3\t390\t150\t10\t40\t-1\t|",
        ]
        extractor = OcrSubtitleExtractor(OcrSettings(), ToolSettings())
        self.assertEqual(extractor.parse_tsv('\n'.join(rows)), '你好世界')

    def test_empty_output(self):
        extractor = OcrSubtitleExtractor(OcrSettings(), ToolSettings())
        self.assertEqual(extractor.parse_tsv(''), '')
        self.assertEqual(extractor.parse_tsv(self.HEADER + "\n5\t1\t1"), '')

    PAGE = "1\t1\t0\t0\t0\t0\t0\t0\t640\t200\t-1\t"

    def _pick(self, *lines):
        """Each line is (left, width, confidence, text) on its own block near the bottom."""
        rows = [self.HEADER, self.PAGE]
        for block, (left, width, confidence, text) in enumerate(lines, start=1):
            rows.append(f"5\t1\t{block}\t1\t1\t1\t{left}\t150\t{width}\t30\t{confidence}\t{text}")
        extractor = OcrSubtitleExtractor(OcrSettings(), ToolSettings())
        return extractor.parse_tsv('\n'.join(rows))

    def test_rank_prefers_confidence(self):
        self.assertEqual(self._pick((20, 100, 95, '高'), (170, 300, 80, '低置信度')), '高')

    def test_rank_prefers_wider_line_on_equal_confidence(self):
        self.assertEqual(self._pick((270, 100, 90, '较窄的行'), (10, 300, 90, '宽')), '宽')

    def test_rank_prefers_longer_text_on_equal_width(self):
        self.assertEqual(self._pick((220, 200, 90, '短'), (0, 200, 90, '长一点的字幕')), '长一点的字幕')

    def test_rank_prefers_centred_line_when_otherwise_equal(self):
        self.assertEqual(self._pick((0, 200, 90, '左边'), (220, 200, 90, '中间')), '中间')

    def test_lines_above_subtitle_area_filtered_before_ranking(self):
        rows = [
            self.HEADER,
            self.PAGE,
            "5\t1\t1\t1\t1\t1\t220\t10\t200\t30\t99\t标题",
            "5\t1\t2\t1\t1\t1\t220\t150\t200\t30\t70\t字幕",
        ]
        extractor = OcrSubtitleExtractor(OcrSettings(), ToolSettings())
        self.assertEqual(extractor.parse_tsv('\n'.join(rows)), '字幕')

    def test_low_confidence_lines_filtered_before_ranking(self):
        self.assertEqual(self._pick((0, 400, 40, '很宽但不可信'), (220, 100, 60, '可信')), '可信')


class TestPassMerging(unittest.TestCase):

    def test_merge_example(self):
        primary = [
            {'start': 0, 'end': 1, 'text': '你好'},
            {'start': 3, 'end': 4, 'text': '再见'},
        ]
        secondary = [
            {'start': 0.9, 'end': 1.4, 'text': '你好'},
            {'start': 2.9, 'end': 4.2, 'text': '再见'},
        ]
        merged = merge_ocr_passes(primary, secondary, 0.1)
        self.assertEqual([(c['start'], c['end'], c['text']) for c in merged],
                         [(0, 1.4, '你好'), (2.9, 4.2, '再见')])

    def test_preferred_text_kept(self):
        merged = merge_ocr_passes(
            [{'start': 0, 'end': 1, 'text': '我们今天去公园'}],
            [{'start': 0.5, 'end': 1.5, 'text': '我们今天去公园了'}],
            0.1, threshold=80,
        )
        self.assertEqual(merged, [{'start': 0.0, 'end': 1.5, 'text': '我们今天去公园了'}])

    def test_fold_skips_empty_later_passes(self):
        first = [{'start': 0, 'end': 1, 'text': 'AB'}]
        third = [{'start': 5, 'end': 6, 'text': 'CD'}]
        merged = merge_ocr_pass_results([first, None, third], 0.1)
        self.assertEqual([c['text'] for c in merged], ['AB', 'CD'])

    def test_fold_empty_primary(self):
        self.assertIsNone(merge_ocr_pass_results([None, [{'start': 0, 'end': 1, 'text': 'x'}]], 0.1))
        self.assertIsNone(merge_ocr_pass_results([], 0.1))

    def test_resolve_passes(self):
        self.assertEqual(resolve_ocr_passes(OcrSettings()), [(None, None, None)])
        same = OcrSettings(second_pass_enabled=True, second_pass_width_ratio=0.8)
        self.assertEqual(len(resolve_ocr_passes(same)), 1)
        wider = OcrSettings(second_pass_enabled=True, second_pass_width_ratio=1.0)
        self.assertEqual(resolve_ocr_passes(wider), [(None, None, None), (1.0, None, None)])


if __name__ == "__main__":
    unittest.main()
