"""
Outbound channel to the caller.

Two kinds of message leave a session:
- binary frames: one synthesized audio payload to play
- text frames: `{"command": "stop_playing"}` to cut off audio already playing

Delivery is best-effort once the connection is gone: sends after close are
dropped and send failures are logged, never raised.
"""

from __future__ import annotations

import json
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

STOP_PLAYING_COMMAND = "stop_playing"


def create_stop_message() -> str:
    return json.dumps({"command": STOP_PLAYING_COMMAND})


class OutboundChannel:
    """Best-effort sender for audio payloads and stop signals."""

    def __init__(
        self,
        send_bytes: Callable[[bytes], Awaitable[None]],
        send_text: Callable[[str], Awaitable[None]],
    ):
        self._send_bytes = send_bytes
        self._send_text = send_text
        self._is_open = True
        self.audio_sent = 0
        self.stops_sent = 0

    @property
    def is_open(self) -> bool:
        return self._is_open

    def close(self) -> None:
        self._is_open = False

    async def send_audio(self, audio: bytes) -> bool:
        """Send one audio payload. Returns False if it was dropped."""
        if not self._is_open:
            logger.debug("Dropping audio for closed channel", bytes=len(audio))
            return False
        try:
            await self._send_bytes(audio)
        except Exception as e:
            logger.warning("Failed to send audio", error=str(e))
            return False
        self.audio_sent += 1
        return True

    async def send_stop(self) -> bool:
        """Tell the caller's player to stop anything currently playing."""
        if not self._is_open:
            return False
        try:
            await self._send_text(create_stop_message())
        except Exception as e:
            logger.warning("Failed to send stop command", error=str(e))
            return False
        self.stops_sent += 1
        return True
