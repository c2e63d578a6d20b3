"""
Deepgram Speech-to-Text streaming adapter.

Wraps the caller's raw audio feed into an ordered, non-restartable sequence of
TranscriptionEvent values (interim and final) for a single subscriber:

    stream = DeepgramTranscriptStream(config)
    await stream.connect()
    await stream.feed(chunk)          # forward raw audio verbatim
    async for event in stream.events():
        ...
    await stream.close()              # idempotent

Recognition failures are logged and end the event sequence. The stream is
never restarted.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.voicedesk.config import get_config
from src.voicedesk.errors import RecognitionStreamError

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass(frozen=True)
class TranscriptionEvent:
    """An incremental recognition result."""
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_usable(self) -> bool:
        return bool(self.text and self.text.strip())


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    audio_bytes: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


class TranscriptStream(ABC):
    """
    Base transcript stream: an event queue with one consumer.

    Subclasses forward audio in `feed` and call `_publish` / `_fail` / `_finish`
    from their receive side.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[TranscriptionEvent]] = asyncio.Queue()
        self._subscribed = False
        self._finished = False
        self._failed = False
        self._closed = False
        self._logged_feed_after_failure = False
        self._metrics = STTMetrics()

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        return True

    @abstractmethod
    async def feed(self, chunk: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    async def events(self) -> AsyncIterator[TranscriptionEvent]:
        """Yield transcription events in arrival order until the stream ends."""
        if self._subscribed:
            raise RuntimeError("Transcript stream already has a subscriber")
        self._subscribed = True

        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def _publish(self, event: TranscriptionEvent) -> None:
        if self._finished:
            return
        self._metrics.record_transcript(event.is_final)
        self._queue.put_nowait(event)

    def _fail(self, error: BaseException) -> None:
        """Record a recognition failure and end the event sequence."""
        if self._failed or self._closed:
            return
        self._failed = True
        logger.error(
            "Recognition stream failed",
            error_type=type(error).__name__,
            error=str(error),
        )
        self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(None)

    def _can_feed(self) -> bool:
        if self._failed or self._closed:
            if not self._logged_feed_after_failure:
                self._logged_feed_after_failure = True
                logger.warning(
                    "Dropping audio for unavailable recognition stream",
                    failed=self._failed,
                    closed=self._closed,
                )
            return False
        return True


class DeepgramTranscriptStream(TranscriptStream):
    """
    Deepgram streaming recognition over a raw WebSocket.
    """

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        if config is None:
            config = get_config()

        self.config = config
        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "endpointing": str(self.config.deepgram_endpointing_ms),
        }
        # Containerized audio (WebM/Opus from a browser) must not carry an encoding.
        if self.config.deepgram_encoding:
            params["encoding"] = self.config.deepgram_encoding
            params["sample_rate"] = str(self.config.deepgram_sample_rate)
            params["channels"] = "1"
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Connect to Deepgram and start relaying results."""
        if self._ws is not None:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            self._fail(RecognitionStreamError(f"Deepgram connection failed: {e}"))
            return False

        logger.info(
            "Deepgram STT connected",
            model=self.config.deepgram_model,
            encoding=self.config.deepgram_encoding or "container",
        )
        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def feed(self, chunk: bytes) -> None:
        """Forward raw audio to Deepgram; a failed stream drops it."""
        if not chunk or not self._can_feed() or self._ws is None:
            return

        try:
            self._metrics.audio_bytes += len(chunk)
            await self._ws.send(chunk)
        except Exception as e:
            self._fail(RecognitionStreamError(f"Failed to send audio to Deepgram: {e}"))

    async def close(self) -> None:
        """Release the Deepgram connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not sent", error=str(e))

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._finish()
        logger.info(
            "Deepgram STT disconnected",
            audio_bytes=self._metrics.audio_bytes,
            transcripts=self._metrics.total_transcripts,
            final_transcripts=self._metrics.final_transcripts,
        )

    async def _receive_loop(self) -> None:
        """Receive and relay messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                self._handle_message(data)

        except websockets.exceptions.ConnectionClosed as e:
            if not self._closed:
                self._fail(RecognitionStreamError(f"Deepgram connection closed: {e}"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(RecognitionStreamError(f"Deepgram receive loop error: {e}"))
        finally:
            self._finish()

    def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            channel = data.get("channel") or {}
            alternatives = channel.get("alternatives") or []
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if not transcript or not transcript.strip():
                return

            event = TranscriptionEvent(
                text=transcript,
                is_final=bool(data.get("is_final", False)),
                confidence=alternatives[0].get("confidence", 0.0),
            )

            logger.debug(
                "STT transcript",
                text=transcript[:50] if len(transcript) > 50 else transcript,
                is_final=event.is_final,
            )
            self._publish(event)

        elif msg_type_norm == "error":
            self._fail(
                RecognitionStreamError(
                    f"Deepgram error: {data.get('description') or data.get('message') or 'unknown'}"
                )
            )
