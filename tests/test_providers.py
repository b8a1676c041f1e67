#!/usr/bin/env python3
"""
Tests for speech-to-text and translation providers, their factories, and
embedded subtitle track selection. HTTP and subprocess calls are mocked.
"""

import subprocess
import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from subtitler.core.config import SttSettings, ToolSettings, TranslationSettings, TranslatorSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.stt import clean_segments, create_stt_provider
from subtitler.core.subtitle_embedded import EmbeddedSubtitleExtractor, select_stream
from subtitler.core.transcribe_whisper_api import WhisperApiSttProvider, verify_api_key
from subtitler.core.transcribe_whisper_cpp import WhisperCppSttProvider, parse_whisper_json
from subtitler.core.translate_azure import AzureTranslator
from subtitler.core.translate_deepl import DeepLTranslator
from subtitler.core.translation import align_translations, create_translator


def _response(status_code=200, payload=None, text=''):
    resp = mock.MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = payload
    return resp


class TestFactories(unittest.TestCase):

    def test_unknown_stt_driver(self):
        with self.assertRaises(JobError) as ctx:
            create_stt_provider(SttSettings(driver='nope'))
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG)
        self.assertFalse(ctx.exception.retryable)

    def test_unknown_translation_driver(self):
        with self.assertRaises(JobError) as ctx:
            create_translator(TranslatorSettings(driver='babelfish'))
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG)

    def test_known_drivers(self):
        self.assertIsInstance(create_stt_provider(SttSettings(driver='whisper_cpp')),
                              WhisperCppSttProvider)
        self.assertIsInstance(create_stt_provider(SttSettings(driver=' Whisper_API ')),
                              WhisperApiSttProvider)
        translator = create_translator(TranslatorSettings(driver='azure'),
                                       TranslationSettings(retry_delays_ms=(5,)))
        self.assertIsInstance(translator, AzureTranslator)
        self.assertEqual(translator.retry_delays_ms, [5])


class TestSegmentCleaning(unittest.TestCase):

    def test_invalid_text_sanitized(self):
        segments = clean_segments([
            {'start': 0, 'end': 1, 'text': ' \ud800ok '},
            {'start': 1, 'end': 2, 'text': '   '},
            {'start': 'x', 'end': 2, 'text': 'bad time'},
            'not a dict',
        ])
        self.assertEqual(segments, [{'start': 0.0, 'end': 1.0, 'text': 'ok'}])

    def test_align_translations(self):
        self.assertEqual(align_translations(['a', 'b'], ['A']), ['A', ''])
        self.assertEqual(align_translations(['a'], ['A', 'B']), ['A'])
        self.assertEqual(align_translations(['a'], [None]), [''])


class TestWhisperApi(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.audio = Path(self.tmpdir.name) / 'chunk.wav'
        self.audio.write_bytes(b'RIFF0000WAVE')
        self.sleeps = []
        self.provider = WhisperApiSttProvider(
            SttSettings(api_key='sk-test', base_url='https://stt.example/'),
            sleep=self.sleeps.append,
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    @mock.patch('subtitler.core.transcribe_whisper_api.requests.post')
    def test_retries_rate_limit_then_parses(self, post):
        post.side_effect = [
            _response(429),
            _response(200, {'segments': [{'start': 0.0, 'end': 1.2, 'text': ' こんにちは '}]}),
        ]
        segments = self.provider.transcribe(self.audio, 'ja')

        self.assertEqual(segments, [{'start': 0.0, 'end': 1.2, 'text': 'こんにちは'}])
        self.assertEqual(post.call_count, 2)
        self.assertEqual(len(self.sleeps), 1)
        self.assertTrue(1.8 <= self.sleeps[0] <= 2.2)
        args, kwargs = post.call_args
        self.assertEqual(args[0], 'https://stt.example/v1/audio/transcriptions')
        self.assertEqual(kwargs['data']['language'], 'ja')
        self.assertEqual(kwargs['data']['response_format'], 'verbose_json')

    @mock.patch('subtitler.core.transcribe_whisper_api.requests.post')
    def test_rejected_credentials_not_retryable(self, post):
        post.return_value = _response(401)
        with self.assertRaises(JobError) as ctx:
            self.provider.transcribe(self.audio, 'ja')
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG)
        self.assertFalse(ctx.exception.retryable)

    @mock.patch('subtitler.core.transcribe_whisper_api.requests.post')
    def test_server_error_retryable(self, post):
        post.return_value = _response(502, text='bad gateway')
        with self.assertRaises(JobError) as ctx:
            self.provider.transcribe(self.audio, 'ja')
        self.assertEqual(ctx.exception.code, ErrorCode.STT_FAILED)
        self.assertTrue(ctx.exception.retryable)
        self.assertIn('bad gateway', ctx.exception.message)

    @mock.patch('subtitler.core.transcribe_whisper_api.requests.post')
    def test_network_error(self, post):
        post.side_effect = requests.exceptions.ConnectionError()
        with self.assertRaises(JobError) as ctx:
            self.provider.transcribe(self.audio, 'ja')
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)

    def test_missing_key(self):
        provider = WhisperApiSttProvider(SttSettings(api_key=None))
        with self.assertRaises(JobError) as ctx:
            provider.transcribe(self.audio, 'ja')
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG)

    @mock.patch('subtitler.core.transcribe_whisper_api.requests.get')
    def test_verify_api_key(self, get):
        get.return_value = _response(200)
        self.assertEqual(verify_api_key(SttSettings(api_key='sk')), (True, "Key verified"))
        get.return_value = _response(403)
        self.assertFalse(verify_api_key(SttSettings(api_key='sk'))[0])
        self.assertEqual(verify_api_key(SttSettings()), (False, "No API key configured"))


class TestWhisperCpp(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.audio = Path(self.tmpdir.name) / 'chunk.wav'
        self.audio.write_bytes(b'RIFF')

    def tearDown(self):
        self.tmpdir.cleanup()

    def _settings(self, **kw):
        values = dict(driver='whisper_cpp', cpp_binary='whisper-cli',
                      cpp_model='/models/ggml-base.bin', cpp_threads=4)
        values.update(kw)
        return SttSettings(**values)

    def test_parse_json(self):
        content = ('{"segments": [{"start": 0, "end": 1.5, "text": " hi "},'
                   ' {"start": 2, "end": 3, "text": ""}]}')
        self.assertEqual(parse_whisper_json(content), [{'start': 0.0, 'end': 1.5, 'text': 'hi'}])
        with self.assertRaises(JobError):
            parse_whisper_json('{not json')

    def test_build_command(self):
        provider = WhisperCppSttProvider(self._settings(cpp_no_gpu=True))
        command = provider.build_command(self.audio, 'zh', 'srt')
        self.assertEqual(command[:5], ['whisper-cli', '-m', '/models/ggml-base.bin',
                                       '-f', str(self.audio)])
        self.assertIn('-l', command)
        self.assertIn('-ng', command)
        self.assertEqual(command[-1], '--output-srt')

    def test_transcribe_reads_output_file(self):
        srt = "1\n00:00:00,000 --> 00:00:01,500\n你好\n\n"
        output = self.audio.with_name('chunk.wav.srt')

        def fake_run(args, timeout=300, **kwargs):
            output.write_text(srt, encoding='utf-8')
            return subprocess.CompletedProcess(args, 0, stdout='', stderr='')

        provider = WhisperCppSttProvider(self._settings())
        with mock.patch('subtitler.core.transcribe_whisper_cpp.run_subprocess_capture',
                        side_effect=fake_run):
            segments = provider.transcribe(self.audio, 'zh')

        self.assertEqual(segments, [{'start': 0.0, 'end': 1.5, 'text': '你好'}])
        self.assertFalse(output.exists())

    def test_failure_exit_code(self):
        provider = WhisperCppSttProvider(self._settings())
        result = subprocess.CompletedProcess([], 3, stdout='', stderr='model not found')
        with mock.patch('subtitler.core.transcribe_whisper_cpp.run_subprocess_capture',
                        return_value=result):
            with self.assertRaises(JobError) as ctx:
                provider.transcribe(self.audio, 'zh')
        self.assertEqual(ctx.exception.code, ErrorCode.STT_FAILED)
        self.assertIn('model not found', ctx.exception.message)

    def test_unsupported_format(self):
        provider = WhisperCppSttProvider(self._settings(cpp_output_format='txt'))
        with self.assertRaises(JobError) as ctx:
            provider.transcribe(self.audio, 'zh')
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG)


class TestDeepL(unittest.TestCase):

    @mock.patch('subtitler.core.translate_deepl.requests.post')
    def test_translate_preserves_order(self, post):
        post.return_value = _response(200, {'translations': [{'text': 'Hello'}, {'text': 'Bye'}]})
        translator = DeepLTranslator(TranslatorSettings(deepl_api_key='key'))
        self.assertEqual(translator.translate(['你好', '再见'], 'zh', 'en'), ['Hello', 'Bye'])

        _, kwargs = post.call_args
        self.assertEqual(kwargs['data']['source_lang'], 'ZH')
        self.assertEqual(kwargs['data']['target_lang'], 'EN')
        self.assertEqual(kwargs['headers']['Authorization'], 'DeepL-Auth-Key key')

    @mock.patch('subtitler.core.translate_deepl.requests.post')
    def test_short_response_padded(self, post):
        post.return_value = _response(200, {'translations': [{'text': 'A'}]})
        translator = DeepLTranslator(TranslatorSettings(deepl_api_key='key'))
        self.assertEqual(translator.translate(['a', 'b'], 'ja', 'en'), ['A', ''])

    @mock.patch('subtitler.core.translate_deepl.requests.post')
    def test_rate_limit(self, post):
        post.return_value = _response(429)
        translator = DeepLTranslator(TranslatorSettings(deepl_api_key='key'))
        with self.assertRaises(JobError) as ctx:
            translator.translate(['a'], 'ja', 'en')
        self.assertEqual(ctx.exception.code, ErrorCode.RATE_LIMITED)
        self.assertTrue(ctx.exception.retryable)

    @mock.patch('subtitler.core.translate_deepl.requests.post')
    def test_empty_input_skips_request(self, post):
        translator = DeepLTranslator(TranslatorSettings(deepl_api_key='key'))
        self.assertEqual(translator.translate([], 'ja', 'en'), [])
        post.assert_not_called()


class TestAzure(unittest.TestCase):

    def _translator(self, delays=(1,), only_429=True):
        self.sleeps = []
        return AzureTranslator(
            TranslatorSettings(azure_api_key='key', azure_region='westeurope'),
            TranslationSettings(retry_delays_ms=delays, retry_only_429=only_429),
            sleep=self.sleeps.append,
        )

    @mock.patch('subtitler.core.translate_azure.requests.post')
    def test_retries_429_ladder(self, post):
        post.side_effect = [
            _response(429),
            _response(200, [{'translations': [{'text': 'a1'}]},
                            {'translations': [{'text': 'b1'}]}]),
        ]
        translator = self._translator()
        self.assertEqual(translator.translate(['a', 'b'], 'ZH', 'EN'), ['a1', 'b1'])
        self.assertEqual(post.call_count, 2)
        self.assertEqual(self.sleeps, [0.001])

        _, kwargs = post.call_args
        self.assertEqual(kwargs['params']['from'], 'zh')
        self.assertEqual(kwargs['params']['to'], 'en')
        self.assertEqual(kwargs['headers']['Ocp-Apim-Subscription-Region'], 'westeurope')
        self.assertEqual(kwargs['json'], [{'Text': 'a'}, {'Text': 'b'}])

    @mock.patch('subtitler.core.translate_azure.requests.post')
    def test_ladder_exhausted(self, post):
        post.return_value = _response(429)
        translator = self._translator(delays=(1, 2))
        with self.assertRaises(JobError) as ctx:
            translator.translate(['a'], 'ja', 'en')
        self.assertEqual(ctx.exception.code, ErrorCode.RATE_LIMITED)
        self.assertEqual(post.call_count, 3)
        self.assertEqual(self.sleeps, [0.001, 0.002])

    @mock.patch('subtitler.core.translate_azure.requests.post')
    def test_other_errors_fail_immediately(self, post):
        post.return_value = _response(500, text='boom')
        translator = self._translator()
        with self.assertRaises(JobError) as ctx:
            translator.translate(['a'], 'ja', 'en')
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSLATION_FAILED)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(self.sleeps, [])

    @mock.patch('subtitler.core.translate_azure.requests.post')
    def test_retry_any_error_when_configured(self, post):
        post.side_effect = [_response(500, text='boom'), _response(200, [{'translations': [{'text': 'x'}]}])]
        translator = self._translator(only_429=False)
        self.assertEqual(translator.translate(['a'], 'ja', 'en'), ['x'])


class FakeEmbeddedExtractor(EmbeddedSubtitleExtractor):

    streams = [
        {'index': 2, 'language': 'eng', 'title': 'English', 'codec': 'subrip'},
        {'index': 3, 'language': 'chi', 'title': None, 'codec': 'subrip'},
    ]
    srt = "1\n00:00:01,000 --> 00:00:02,000\n你好\n\n2\n00:00:03,000 --> 00:00:04,000\n再见\n\n"

    def probe_streams(self, input_path):
        return list(self.streams)

    def _run(self, args, what):
        self.commands = getattr(self, 'commands', []) + [args]
        Path(args[-1]).write_text(self.srt, encoding='utf-8')
        return subprocess.CompletedProcess(args, 0, stdout='', stderr='')


class TestEmbeddedSubtitles(unittest.TestCase):

    STREAMS = [
        {'index': 0, 'language': 'eng', 'title': None},
        {'index': 1, 'language': 'und', 'title': 'Chinese (Simplified)'},
        {'index': 2, 'language': 'zh-Hant', 'title': None},
    ]

    def test_select_by_title_word(self):
        self.assertEqual(select_stream(self.STREAMS, 'zh', False)['index'], 1)

    def test_select_by_language_alias(self):
        self.assertEqual(select_stream(self.STREAMS[2:], 'zh', False)['index'], 2)
        self.assertEqual(select_stream([{'index': 5, 'language': 'jpn'}], 'ja', False)['index'], 5)

    def test_fallback_to_first(self):
        self.assertIsNone(select_stream(self.STREAMS[:1], 'ja', False))
        self.assertEqual(select_stream(self.STREAMS[:1], 'ja', True)['index'], 0)
        self.assertIsNone(select_stream([], 'ja', True))

    def test_extract_selected_track(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            temp = Path(tmpdir)
            extractor = FakeEmbeddedExtractor(ToolSettings(), fallback_to_first_stream=False)
            cues = extractor.extract(temp / 'video.mkv', temp, 'zh')

            self.assertEqual([c['text'] for c in cues], ['你好', '再见'])
            self.assertIn('0:3', extractor.commands[0])
            self.assertFalse((temp / 'embedded-subtitles.srt').exists())

    def test_extract_no_match(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            extractor = FakeEmbeddedExtractor(ToolSettings(), fallback_to_first_stream=False)
            self.assertIsNone(extractor.extract(Path(tmpdir) / 'video.mkv', Path(tmpdir), 'ko'))


if __name__ == "__main__":
    unittest.main()
