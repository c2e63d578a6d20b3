"""
Tests for the Deepgram transcript stream adapter.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from src.voicedesk.stt import DeepgramTranscriptStream, TranscriptionEvent


def results_message(text: str, is_final: bool) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.93}]},
    }


async def collect(stream) -> list:
    return [event async for event in stream.events()]


class TestBuildUrl:
    def test_containerized_audio_omits_encoding(self, config):
        url = DeepgramTranscriptStream(config).build_url()

        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "interim_results=true" in url
        assert "model=nova-2" in url
        assert "encoding=" not in url
        assert "sample_rate=" not in url

    def test_raw_encoding_includes_sample_rate(self):
        with patch.dict("os.environ", {"DEEPGRAM_ENCODING": "linear16", "DEEPGRAM_SAMPLE_RATE": "16000"}):
            from src.voicedesk.config import get_config
            get_config.cache_clear()
            url = DeepgramTranscriptStream(get_config()).build_url()

        assert "encoding=linear16" in url
        assert "sample_rate=16000" in url


class TestMessages:
    @pytest.mark.asyncio
    async def test_results_become_events_in_order(self, config):
        stream = DeepgramTranscriptStream(config)

        stream._handle_message(results_message("I have", False))
        stream._handle_message(results_message("I have dog hair", True))
        stream._finish()

        events = await collect(stream)
        assert [(e.text, e.is_final) for e in events] == [
            ("I have", False),
            ("I have dog hair", True),
        ]
        assert stream.metrics.final_transcripts == 1

    @pytest.mark.asyncio
    async def test_empty_transcripts_are_dropped(self, config):
        stream = DeepgramTranscriptStream(config)

        stream._handle_message(results_message("", False))
        stream._handle_message(results_message("   ", True))
        stream._handle_message({"type": "Results", "channel": {"alternatives": []}})
        stream._handle_message({"type": "Metadata"})
        stream._finish()

        assert await collect(stream) == []

    @pytest.mark.asyncio
    async def test_error_message_ends_the_stream(self, config):
        stream = DeepgramTranscriptStream(config)

        stream._handle_message(results_message("hello", True))
        stream._handle_message({"type": "Error", "description": "bad audio"})
        stream._handle_message(results_message("ignored", True))

        events = await collect(stream)
        assert [e.text for e in events] == ["hello"]
        assert stream.failed is True

    @pytest.mark.asyncio
    async def test_events_allow_a_single_subscriber(self, config):
        stream = DeepgramTranscriptStream(config)
        stream._finish()

        await collect(stream)
        with pytest.raises(RuntimeError):
            await collect(stream)


class TestFeedAndClose:
    @pytest.mark.asyncio
    async def test_feed_sends_audio_verbatim(self, config):
        stream = DeepgramTranscriptStream(config)
        stream._ws = AsyncMock()

        await stream.feed(b"\x1a\x45\xdf\xa3")

        stream._ws.send.assert_awaited_once_with(b"\x1a\x45\xdf\xa3")
        assert stream.metrics.audio_bytes == 4

    @pytest.mark.asyncio
    async def test_send_failure_marks_stream_failed_and_drops_later_audio(self, config):
        stream = DeepgramTranscriptStream(config)
        stream._ws = AsyncMock()
        stream._ws.send.side_effect = ConnectionError("reset")

        await stream.feed(b"one")
        await stream.feed(b"two")

        assert stream.failed is True
        assert stream._ws.send.await_count == 1

    @pytest.mark.asyncio
    async def test_connect_failure_is_logged_not_raised(self, config):
        stream = DeepgramTranscriptStream(config)

        with patch("src.voicedesk.stt.websockets.connect", AsyncMock(side_effect=OSError("dns"))):
            ok = await stream.connect()

        assert ok is False
        assert stream.failed is True
        assert await collect(stream) == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config):
        stream = DeepgramTranscriptStream(config)
        ws = AsyncMock()
        stream._ws = ws

        await stream.close()
        await stream.close()

        ws.close.assert_awaited_once()
        ws.send.assert_awaited_once_with(json.dumps({"type": "CloseStream"}))
        assert stream.closed is True
        assert await collect(stream) == []

        await stream.feed(b"late")
        assert ws.send.await_count == 1


def test_transcription_event_usability():
    assert TranscriptionEvent(text="hi", is_final=False).is_usable is True
    assert TranscriptionEvent(text="  ", is_final=True).is_usable is False
    assert TranscriptionEvent(text="", is_final=True).is_usable is False
