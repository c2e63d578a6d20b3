"""
Session: one caller connection.

Owns the transcript stream, the dialogue history, the turn controller and the
outbound channel. Lifecycle:

    session = create_session(outbound, knowledge_base)
    await session.start()         # connect STT, greet, then consume events
    await session.feed(chunk)     # for every inbound audio frame
    await session.close()         # on disconnect; idempotent
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, Optional

import structlog

from src.voicedesk.config import Config, get_config
from src.voicedesk.llm import ChatLLM, DialogueHistory
from src.voicedesk.outbound import OutboundChannel
from src.voicedesk.pipeline import ResponsePipeline
from src.voicedesk.stt import DeepgramTranscriptStream, TranscriptStream
from src.voicedesk.tts import SpeechSynthesizer
from src.voicedesk.turns import TurnController, TurnState

logger = structlog.get_logger(__name__)


class Session:
    """A single live conversation."""

    def __init__(
        self,
        outbound: OutboundChannel,
        *,
        stream: TranscriptStream,
        llm: Any,
        synthesizer: Any,
        config: Optional[Config] = None,
        session_id: Optional[str] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.history = DialogueHistory()

        self._outbound = outbound
        self._stream = stream
        self._llm = llm
        self._synthesizer = synthesizer
        self._pipeline = ResponsePipeline(
            llm, synthesizer, outbound, session_id=self.session_id
        )
        self._controller = TurnController(
            self.history, self._pipeline, outbound, session_id=self.session_id
        )

        self._run_task: Optional[asyncio.Task] = None
        self._release_task: Optional[asyncio.Task] = None
        self._is_closed = False
        self._start_time = time.time()

    @property
    def state(self) -> TurnState:
        return self._controller.state

    @property
    def controller(self) -> TurnController:
        return self._controller

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    async def start(self) -> None:
        """Connect transcription and begin the greeting + event loop."""
        logger.info("Session starting", session_id=self.session_id)

        if not await self._stream.connect():
            logger.error(
                "Transcription unavailable; agent will greet but cannot listen",
                session_id=self.session_id,
            )

        self._run_task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._controller.run_greeting(self.config.greeting)

            async for event in self._stream.events():
                await self._controller.handle_event(event)

            logger.info("Transcription ended", session_id=self.session_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Session event loop error",
                session_id=self.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def feed(self, chunk: bytes) -> None:
        """Forward one inbound audio frame verbatim to transcription."""
        if self._is_closed:
            return
        await self._stream.feed(chunk)

    async def close(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self._is_closed:
            return
        self._is_closed = True

        self._outbound.close()
        self._controller.shutdown()

        try:
            await self._stream.close()
        except Exception as e:
            logger.error("Error closing transcript stream", session_id=self.session_id, error=str(e))

        if self._run_task and not self._run_task.done():
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)

        # Turn tasks still suspended in a provider call keep their clients
        # until they finish.
        if self._controller.pending_tasks:
            self._release_task = asyncio.create_task(self._release_after_turns())
        else:
            await self._release_providers()

        logger.info(
            "Session closed",
            session_id=self.session_id,
            metrics=self.metrics(),
        )

    async def _release_after_turns(self) -> None:
        await self._controller.drain()
        await self._release_providers()

    async def _release_providers(self) -> None:
        for name, provider in (("llm", self._llm), ("synthesizer", self._synthesizer)):
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(
                    "Error closing provider",
                    session_id=self.session_id,
                    provider=name,
                    error=str(e),
                )

    def metrics(self) -> Dict[str, Any]:
        data = self._controller.metrics.to_dict()
        data.update(
            {
                "session_id": self.session_id,
                "duration_seconds": round(time.time() - self._start_time, 2),
                "history_len": len(self.history),
                "audio_sent": self._outbound.audio_sent,
                "stops_sent": self._outbound.stops_sent,
            }
        )
        return data


def create_session(
    outbound: OutboundChannel,
    knowledge_base: Any,
    config: Optional[Config] = None,
    system_prompt: Optional[str] = None,
) -> Session:
    """Build a session wired to Deepgram, the configured LLM and TTS."""
    if config is None:
        config = get_config()

    return Session(
        outbound,
        stream=DeepgramTranscriptStream(config),
        llm=ChatLLM(knowledge_base, config, system_prompt=system_prompt),
        synthesizer=SpeechSynthesizer(config),
        config=config,
    )
