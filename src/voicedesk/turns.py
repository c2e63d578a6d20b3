"""Turn-taking and interruption state machine.

One TurnController per session decides, event by event, who is speaking:

    IDLE            --final-->            AGENT_SPEAKING (new turn)
    AGENT_SPEAKING  --partial/final-->    INTERRUPTED (turn cancelled, stop sent)
    INTERRUPTED     --partial-->          INTERRUPTED
    INTERRUPTED     --final-->            IDLE -> AGENT_SPEAKING (new turn)

A final event that arrives while the agent is speaking both interrupts the
running turn and becomes the next turn's utterance.

Cancellation is cooperative: each AgentTurn carries its own validity flag,
written only here and read only by the pipeline task that runs that turn.
The pipeline checks it before anything observable (history append, audio send).
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

import structlog

if TYPE_CHECKING:
    from src.voicedesk.llm import DialogueHistory
    from src.voicedesk.outbound import OutboundChannel
    from src.voicedesk.pipeline import ResponsePipeline
    from src.voicedesk.stt import TranscriptionEvent

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Who holds the floor."""
    IDLE = "idle"
    AGENT_SPEAKING = "agent_speaking"
    INTERRUPTED = "interrupted"


class TurnOutcome(str, Enum):
    """How a single agent turn ended."""
    DELIVERED = "delivered"
    CANCELLED_AFTER_REPLY = "cancelled_after_reply"
    CANCELLED_AFTER_SYNTHESIS = "cancelled_after_synthesis"
    REPLY_FAILED = "reply_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    UNDELIVERED = "undelivered"

    @property
    def is_failure(self) -> bool:
        return self in (
            TurnOutcome.REPLY_FAILED,
            TurnOutcome.SYNTHESIS_FAILED,
            TurnOutcome.UNDELIVERED,
        )

    @property
    def is_cancelled(self) -> bool:
        return self in (
            TurnOutcome.CANCELLED_AFTER_REPLY,
            TurnOutcome.CANCELLED_AFTER_SYNTHESIS,
        )


@dataclass
class AgentTurn:
    """One in-flight agent reply and its validity flag."""
    turn_id: int
    utterance: str
    is_greeting: bool = False
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)

    def cancel(self) -> bool:
        """Mark the turn cancelled. Returns False if it already was."""
        if self.cancelled:
            return False
        self.cancelled = True
        return True


@dataclass
class TurnMetrics:
    """Per-session turn counters."""
    turns_started: int = 0
    turns_delivered: int = 0
    turns_cancelled: int = 0
    turns_failed: int = 0
    interruptions: int = 0

    def record(self, outcome: TurnOutcome) -> None:
        if outcome == TurnOutcome.DELIVERED:
            self.turns_delivered += 1
        elif outcome.is_cancelled:
            self.turns_cancelled += 1
        elif outcome.is_failure:
            self.turns_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turns_started": self.turns_started,
            "turns_delivered": self.turns_delivered,
            "turns_cancelled": self.turns_cancelled,
            "turns_failed": self.turns_failed,
            "interruptions": self.interruptions,
        }


class TurnController:
    """
    Consumes transcription events in order and starts, cancels and retires
    agent turns.

    Event handling never waits for a running pipeline: turns run as separate
    tasks so the next event can interrupt them mid-flight.
    """

    def __init__(
        self,
        history: "DialogueHistory",
        pipeline: "ResponsePipeline",
        outbound: "OutboundChannel",
        *,
        session_id: str = "",
    ):
        self._history = history
        self._pipeline = pipeline
        self._outbound = outbound
        self._session_id = session_id

        self._state = TurnState.IDLE
        self._current_turn: Optional[AgentTurn] = None
        self._turn_ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._is_shutdown = False
        self.metrics = TurnMetrics()

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def current_turn(self) -> Optional[AgentTurn]:
        return self._current_turn

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    async def run_greeting(self, text: str) -> TurnOutcome:
        """Speak the greeting as the session's first agent turn, then go idle."""
        turn = AgentTurn(turn_id=next(self._turn_ids), utterance=text, is_greeting=True)
        self._current_turn = turn
        self._state = TurnState.AGENT_SPEAKING
        self.metrics.turns_started += 1

        try:
            outcome = await self._pipeline.greet(turn)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Greeting crashed",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = TurnOutcome.SYNTHESIS_FAILED
        self.metrics.record(outcome)

        if self._current_turn is turn and self._state == TurnState.AGENT_SPEAKING:
            self._state = TurnState.IDLE
        logger.info(
            "Greeting finished",
            session_id=self._session_id,
            outcome=outcome.value,
            state=self._state.value,
        )
        return outcome

    async def handle_event(self, event: "TranscriptionEvent") -> None:
        """Apply one transcription event to the state machine."""
        if self._is_shutdown or not event.is_usable:
            return

        text = event.text.strip()

        if self._state == TurnState.AGENT_SPEAKING:
            await self._interrupt(text)

        if self._state == TurnState.INTERRUPTED:
            if event.is_final:
                logger.info(
                    "Interrupting utterance finished",
                    session_id=self._session_id,
                    text=text[:80],
                )
                self._state = TurnState.IDLE
                self._start_turn(text)
            return

        if event.is_final:
            self._start_turn(text)

    async def _interrupt(self, text: str) -> None:
        turn = self._current_turn
        if turn is not None:
            turn.cancel()
        self._state = TurnState.INTERRUPTED
        self.metrics.interruptions += 1

        logger.info(
            "Interruption: caller speech during agent turn",
            session_id=self._session_id,
            turn_id=turn.turn_id if turn else None,
            text=text[:50],
        )
        await self._outbound.send_stop()

    def _start_turn(self, utterance: str) -> None:
        if self._state != TurnState.IDLE:
            raise RuntimeError(f"Cannot start a turn while {self._state.value}")

        self._history.add_user_message(utterance)
        turn = AgentTurn(turn_id=next(self._turn_ids), utterance=utterance)
        self._current_turn = turn
        self._state = TurnState.AGENT_SPEAKING
        self.metrics.turns_started += 1

        logger.info(
            "Agent turn started",
            session_id=self._session_id,
            turn_id=turn.turn_id,
            text=utterance[:80],
        )

        task = asyncio.create_task(self._run_turn(turn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_turn(self, turn: AgentTurn) -> None:
        try:
            outcome = await self._pipeline.run(self._history, turn)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Agent turn crashed",
                session_id=self._session_id,
                turn_id=turn.turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = TurnOutcome.REPLY_FAILED

        self.metrics.record(outcome)

        # A failed turn gives the floor back; a delivered one keeps it until
        # the caller next speaks.
        if outcome.is_failure and self._current_turn is turn and self._state == TurnState.AGENT_SPEAKING:
            self._state = TurnState.IDLE

        logger.info(
            "Agent turn finished",
            session_id=self._session_id,
            turn_id=turn.turn_id,
            outcome=outcome.value,
            total_ms=round((time.time() - turn.started_at) * 1000, 2),
            state=self._state.value,
        )

    def shutdown(self) -> None:
        """Invalidate the running turn; later events are ignored."""
        self._is_shutdown = True
        if self._current_turn is not None:
            self._current_turn.cancel()

    async def drain(self) -> None:
        """Wait for every turn task started so far to finish."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
