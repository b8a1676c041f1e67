#!/usr/bin/env python3
"""
Tests for the storage collaborator, downloads into scratch space,
scratch directory cleanup and configuration loading.
"""

import json
import os
import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from subtitler.core.cleanup import ScratchDirectory, cleanup_job_artifacts
from subtitler.core.config import (
    AppConfig, DownloadSettings, RetryPolicy, resolve_stop_after, resolve_subtitle_source,
)
from subtitler.core.constants import ErrorCode, StopAfter, SubtitleSource
from subtitler.core.error_codes import JobError
from subtitler.core.storage import LocalStorage, download_to_local, store_from_local


class TestLocalStorage(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.storage = LocalStorage(Path(self.tmpdir.name) / 'store')

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_put_get_size(self):
        self.storage.put('transcriptions/j1/output/a.srt', 'héllo')
        self.assertTrue(self.storage.exists('transcriptions/j1/output/a.srt'))
        self.assertEqual(self.storage.get('transcriptions/j1/output/a.srt'), 'héllo'.encode('utf-8'))
        self.assertEqual(self.storage.size('transcriptions/j1/output/a.srt'), 6)
        self.assertIsNone(self.storage.temporary_url('transcriptions/j1/output/a.srt'))

    def test_streams(self):
        local = Path(self.tmpdir.name) / 'clip.wav'
        local.write_bytes(b'\x00' * 1000)
        store_from_local(self.storage, local, 'transcriptions/j1/chunks/0.wav')
        with self.storage.read_stream('transcriptions/j1/chunks/0.wav') as stream:
            self.assertEqual(len(stream.read()), 1000)

    def test_missing_object(self):
        self.assertFalse(self.storage.exists('nope.bin'))
        with self.assertRaises(JobError) as ctx:
            self.storage.get('nope.bin')
        self.assertEqual(ctx.exception.code, ErrorCode.STORAGE)

    def test_traversal_rejected(self):
        with self.assertRaises(ValueError):
            self.storage.put('../escape.txt', 'x')

    def test_delete_prefix(self):
        self.storage.put('transcriptions/j1/a.txt', 'a')
        self.storage.put('transcriptions/j2/b.txt', 'b')
        self.storage.delete_prefix('transcriptions/j1')
        self.assertFalse(self.storage.exists('transcriptions/j1/a.txt'))
        self.assertTrue(self.storage.exists('transcriptions/j2/b.txt'))
        with self.assertRaises(ValueError):
            self.storage.delete_prefix('')


class WrongSizeStorage(LocalStorage):
    def size(self, path):
        return super().size(path) + 1


class UrlStorage(LocalStorage):
    def temporary_url(self, path, expires_minutes=60):
        return f"https://files.example/{path}"


class TestDownload(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.sleeps = []

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_small_object(self):
        storage = LocalStorage(self.root / 'store')
        storage.put('src/video.mp4', b'abc' * 100)
        target = self.root / 'scratch' / 'video.mp4'
        size = download_to_local(storage, 'src/video.mp4', target, DownloadSettings(),
                                 sleep=self.sleeps.append)
        self.assertEqual(size, 300)
        self.assertEqual(target.read_bytes(), b'abc' * 100)

    def test_large_object_streamed(self):
        storage = LocalStorage(self.root / 'store')
        payload = os.urandom(3 * 1024 * 1024)
        storage.put('src/video.mp4', payload)
        target = self.root / 'scratch' / 'video.mp4'
        settings = DownloadSettings(max_in_memory_mb=1, chunk_bytes=1024 * 1024,
                                    progress_bytes=1024 * 1024)
        self.assertEqual(download_to_local(storage, 'src/video.mp4', target, settings),
                         len(payload))
        self.assertEqual(target.read_bytes(), payload)

    def test_size_mismatch_retried_then_fails(self):
        storage = WrongSizeStorage(self.root / 'store')
        storage.put('src/video.mp4', b'abc')
        settings = DownloadSettings(max_attempts=3, backoff_seconds=5)
        with self.assertRaises(JobError) as ctx:
            download_to_local(storage, 'src/video.mp4', self.root / 'v.mp4', settings,
                              sleep=self.sleeps.append)
        self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FAILED)
        self.assertIn('size mismatch', ctx.exception.message)
        self.assertEqual(self.sleeps, [5, 10])

    def test_empty_object_fails(self):
        storage = LocalStorage(self.root / 'store')
        storage.put('src/video.mp4', b'')
        with self.assertRaises(JobError):
            download_to_local(storage, 'src/video.mp4', self.root / 'v.mp4',
                              DownloadSettings(max_attempts=1))

    @mock.patch('subtitler.core.storage.requests.get')
    def test_temporary_url_used(self, get):
        storage = UrlStorage(self.root / 'store')
        storage.put('src/video.mp4', b'abcdef')
        resp = mock.MagicMock()
        resp.iter_content.return_value = [b'abc', b'def']
        get.return_value.__enter__.return_value = resp

        target = self.root / 'v.mp4'
        self.assertEqual(download_to_local(storage, 'src/video.mp4', target, DownloadSettings()), 6)
        self.assertEqual(get.call_args[0][0], 'https://files.example/src/video.mp4')
        self.assertEqual(target.read_bytes(), b'abcdef')


class TestScratchDirectory(unittest.TestCase):

    def test_removed_on_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            scratch_path = None
            with self.assertRaises(RuntimeError):
                with ScratchDirectory(Path(tmpdir), 'job-1', 'start') as scratch:
                    scratch_path = scratch
                    (scratch / 'audio.wav').write_bytes(b'x')
                    raise RuntimeError('boom')
            self.assertFalse(scratch_path.exists())

    def test_keep_debug_drops_only_media(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            workspace = Path(tmpdir) / 'job-1'
            (workspace / 'chunks').mkdir(parents=True)
            (workspace / 'notes.txt').write_text('keep')
            cleanup_job_artifacts(workspace, keep_debug=True)
            self.assertFalse((workspace / 'chunks').exists())
            self.assertTrue((workspace / 'notes.txt').exists())


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.tmpdir.name) / 'config.json'

    def tearDown(self):
        self.tmpdir.cleanup()

    def _load(self, data=None, env=None, overrides=None):
        if data is not None:
            self.config_path.write_text(json.dumps(data), encoding='utf-8')
        with mock.patch.dict(os.environ, env or {}, clear=True):
            return AppConfig(self.config_path, overrides)

    def test_defaults(self):
        settings = self._load().settings()
        self.assertEqual(settings.chunk.min_seconds, 30)
        self.assertEqual(settings.chunk.max_seconds, 90)
        self.assertEqual(settings.subtitle.max_chars_per_line, 42)
        self.assertEqual(settings.subtitle.source, 'auto')
        self.assertEqual(settings.stop_after, StopAfter.TRANSCRIPTION)
        self.assertEqual(settings.queue.start.tries, 3)
        self.assertEqual(settings.queue.process_chunk.backoff, (60, 180, 300, 600))

    def test_values_clamped_and_coerced(self):
        config = self._load({
            'chunk_min_seconds': 1,
            'chunk_max_seconds': 99999,
            'subtitle_max_lines': 9,
            'ocr_enabled': 'false',
            'queue_workers': 'many',
            'ocr_crop_width_ratio': 3,
            'stop_after': 'DeepL',
        })
        self.assertEqual(config.get('chunk_min_seconds'), 5)
        self.assertEqual(config.get('chunk_max_seconds'), 3600)
        self.assertEqual(config.get('subtitle_max_lines'), 5)
        self.assertIs(config.get('ocr_enabled'), False)
        self.assertEqual(config.get('queue_workers'), 4)
        self.assertEqual(config.get('ocr_crop_width_ratio'), 1.0)
        self.assertEqual(config.settings().stop_after, StopAfter.TRANSLATION)

    def test_env_and_overrides(self):
        config = self._load(env={'DEEPL_API_KEY': 'env-key', 'SUBTITLER_STT_DRIVER': 'Whisper_CPP'},
                            overrides={'translation_target_language': 'de'})
        settings = config.settings()
        self.assertEqual(settings.translator.deepl_api_key, 'env-key')
        self.assertEqual(settings.stt.driver, 'whisper_cpp')
        self.assertEqual(settings.translation.target_language, 'de')

    def test_unreadable_file_uses_defaults(self):
        self.config_path.write_text('{broken', encoding='utf-8')
        config = self._load()
        self.assertEqual(config.get('chunk_min_seconds'), 30)

    def test_set_persists(self):
        config = self._load()
        with mock.patch.dict(os.environ, {}, clear=True):
            config.set('subtitle_max_chars_per_line', 50)
            reloaded = AppConfig(self.config_path)
        self.assertEqual(reloaded.get('subtitle_max_chars_per_line'), 50)

    def test_env_secrets_not_saved(self):
        config = self._load(env={'DEEPL_API_KEY': 'env-key'})
        with mock.patch.dict(os.environ, {'DEEPL_API_KEY': 'env-key'}, clear=True):
            config.set('ocr_fps', 3)
        saved = json.loads(self.config_path.read_text(encoding='utf-8'))
        self.assertEqual(saved, {'ocr_fps': 3.0})
        self.assertEqual(config.as_dict()['deepl_api_key'], '********')
        self.assertEqual(config.as_dict(redact=False)['deepl_api_key'], 'env-key')

    def test_non_object_file_ignored(self):
        config = self._load([1, 2])
        self.assertEqual(config.get('chunk_max_seconds'), 90)

    def test_resolvers(self):
        self.assertEqual(resolve_stop_after('whisper'), StopAfter.TRANSCRIPTION)
        self.assertEqual(resolve_stop_after(' Azure '), StopAfter.TRANSLATION)
        self.assertEqual(resolve_stop_after('???', StopAfter.TRANSLATION), StopAfter.TRANSLATION)
        self.assertEqual(resolve_subtitle_source('OCR', True), SubtitleSource.OCR)
        self.assertEqual(resolve_subtitle_source('bogus', True), SubtitleSource.AUTO)
        self.assertEqual(resolve_subtitle_source(None, False), SubtitleSource.AUDIO)

    def test_retry_policy_backoff(self):
        policy = RetryPolicy(3, (60, 300, 600), 3600)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3, 4)], [60, 300, 600, 600])
        self.assertEqual(RetryPolicy(1, (), 10).delay_for(1), 0.0)


if __name__ == "__main__":
    unittest.main()
