"""
In-memory collaborators for driving sessions deterministically.

Each fake can be "gated": calls block on an asyncio.Event until the test
releases them, which lets tests land a transcription event in the middle of
reply generation or synthesis.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock

from src.voicedesk.outbound import OutboundChannel
from src.voicedesk.stt import TranscriptionEvent, TranscriptStream


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ScriptedTranscriptStream(TranscriptStream):
    """Transcript stream whose events are pushed by the test."""

    def __init__(self, connect_ok: bool = True):
        super().__init__()
        self.connect_ok = connect_ok
        self.fed: List[bytes] = []
        self.close_count = 0

    async def connect(self) -> bool:
        if not self.connect_ok:
            self._fail(RuntimeError("connect refused"))
        return self.connect_ok

    async def feed(self, chunk: bytes) -> None:
        if not self._can_feed():
            return
        self.fed.append(chunk)

    async def close(self) -> None:
        self.close_count += 1
        if self._closed:
            return
        self._closed = True
        self._finish()

    def emit(self, text: str, is_final: bool) -> None:
        self._publish(TranscriptionEvent(text=text, is_final=is_final))

    def fail(self, error: BaseException) -> None:
        self._fail(error)


class FakeLLM:
    """Reply generator returning scripted replies in order."""

    def __init__(self, replies: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.replies = list(replies or ["Happy to help."])
        self.error = error
        self.calls: List[List[dict]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    async def generate(self, history) -> str:
        self.calls.append(history.get_messages())
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def close(self) -> None:
        self.closed = True


class FakeSynthesizer:
    """Synthesizer returning `b"audio:" + text`."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return b"audio:" + text.encode()

    async def close(self) -> None:
        self.closed = True


def make_outbound() -> OutboundChannel:
    """Outbound channel whose sends are recorded by AsyncMocks."""
    return OutboundChannel(send_bytes=AsyncMock(), send_text=AsyncMock())


def sent_audio(outbound: OutboundChannel) -> List[bytes]:
    return [c.args[0] for c in outbound._send_bytes.await_args_list]


def sent_text(outbound: OutboundChannel) -> List[str]:
    return [c.args[0] for c in outbound._send_text.await_args_list]


class EchoTranscriptStream(ScriptedTranscriptStream):
    """Treats every fed chunk as a final transcript of its UTF-8 text."""

    async def feed(self, chunk: bytes) -> None:
        await super().feed(chunk)
        if not self._failed and not self._closed:
            self.emit(chunk.decode("utf-8", errors="ignore"), True)
