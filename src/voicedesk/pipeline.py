"""Response pipeline: reply generation -> speech synthesis -> delivery.

Run once per agent turn. Collaborator calls are never interrupted; instead the
turn's validity flag is checked right after each one:

- after the reply arrives: a cancelled turn leaves no trace (no history
  entry, no synthesis, no audio)
- after synthesis: a cancelled turn keeps its reply in history (it was
  "said" for context purposes) but sends no audio

Collaborator failures abandon the turn, get logged for the operator, and
leave the caller with silence.
"""

import time
from typing import Any

import structlog

from src.voicedesk.errors import ReplyGenerationError, SynthesisError
from src.voicedesk.llm import DialogueHistory
from src.voicedesk.outbound import OutboundChannel
from src.voicedesk.turns import AgentTurn, TurnOutcome

logger = structlog.get_logger(__name__)


class ResponsePipeline:
    """
    Produces and delivers one agent reply per turn.

    `llm` needs `async generate(history) -> str`; `synthesizer` needs
    `async synthesize(text) -> bytes`.
    """

    def __init__(
        self,
        llm: Any,
        synthesizer: Any,
        outbound: OutboundChannel,
        *,
        session_id: str = "",
    ):
        self._llm = llm
        self._synthesizer = synthesizer
        self._outbound = outbound
        self._session_id = session_id

    async def run(self, history: DialogueHistory, turn: AgentTurn) -> TurnOutcome:
        """Generate, synthesize and deliver the reply for `turn`."""
        start_time = time.time()

        try:
            reply = await self._llm.generate(history)
        except ReplyGenerationError as e:
            logger.error(
                "Reply generation failed",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                error=str(e),
            )
            return TurnOutcome.REPLY_FAILED

        llm_ms = (time.time() - start_time) * 1000

        if turn.cancelled:
            logger.info(
                "Agent turn cancelled after reply generation",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                llm_ms=round(llm_ms, 2),
            )
            return TurnOutcome.CANCELLED_AFTER_REPLY

        logger.info(
            "Agent reply",
            session_id=self._session_id,
            turn_id=turn.turn_id,
            text=reply[:80],
            llm_ms=round(llm_ms, 2),
        )
        history.add_assistant_message(reply)

        return await self._speak(turn, reply, started_at=time.time())

    async def greet(self, turn: AgentTurn) -> TurnOutcome:
        """Synthesize and deliver the greeting; it is not added to history."""
        logger.info("Sending greeting", session_id=self._session_id, text=turn.utterance)
        return await self._speak(turn, turn.utterance, started_at=time.time())

    async def _speak(self, turn: AgentTurn, text: str, *, started_at: float) -> TurnOutcome:
        try:
            audio = await self._synthesizer.synthesize(text)
        except SynthesisError as e:
            logger.error(
                "Speech synthesis failed",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                error=str(e),
            )
            return TurnOutcome.SYNTHESIS_FAILED

        tts_ms = (time.time() - started_at) * 1000

        if turn.cancelled:
            logger.info(
                "Agent turn cancelled after speech synthesis",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                tts_ms=round(tts_ms, 2),
            )
            return TurnOutcome.CANCELLED_AFTER_SYNTHESIS

        if not await self._outbound.send_audio(audio):
            return TurnOutcome.UNDELIVERED

        logger.debug(
            "Agent audio delivered",
            session_id=self._session_id,
            turn_id=turn.turn_id,
            audio_bytes=len(audio),
            tts_ms=round(tts_ms, 2),
        )
        return TurnOutcome.DELIVERED
