from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicedesk.config import get_config
from src.voicedesk.errors import SynthesisError

logger = structlog.get_logger(__name__)

CARTESIA_BYTES_URL = "https://api.cartesia.ai/tts/bytes"
CARTESIA_API_VERSION = "2024-06-10"
CARTESIA_SAMPLE_RATE = 44100


class TTSProvider(ABC):
    """Text in, one complete audio payload out."""

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Audio is returned in the configured container (Ogg/Opus by default), which
    browsers play without transcoding.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        try:
            resp = await self._client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format=self.config.openai_tts_format,
            )
        except Exception as e:
            raise SynthesisError(f"OpenAI TTS failed: {e}") from e

        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if not isinstance(data, (bytes, bytearray)):
            read = getattr(resp, "read", None)
            data = read() if callable(read) else None
        if not data:
            raise SynthesisError("OpenAI TTS returned no audio")
        return bytes(data)


class CartesiaTTS(TTSProvider):
    """
    Cartesia TTS over the HTTP bytes endpoint (one WAV per request).
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        request = {
            "model_id": self.config.cartesia_model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
            "output_format": {
                "container": "wav",
                "encoding": "pcm_s16le",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
        }
        headers = {
            "X-API-Key": self.config.cartesia_api_key,
            "Cartesia-Version": CARTESIA_API_VERSION,
        }

        try:
            response = await self._client.post(CARTESIA_BYTES_URL, json=request, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SynthesisError(f"Cartesia synthesis failed: {e}") from e

        if not response.content:
            raise SynthesisError("Cartesia returned no audio")
        return response.content

    async def close(self) -> None:
        await self._client.aclose()


class SpeechSynthesizer:
    """
    Per-session synthesizer with a pluggable provider.

    - `openai`: OpenAI Audio Speech API (default)
    - `cartesia`: Cartesia bytes API
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider

    def _get_provider(self) -> TTSProvider:
        if self._provider is not None:
            return self._provider

        tts = (self.config.tts_provider or "openai").strip().lower()
        if tts == "openai":
            self._provider = OpenAITTS(self.config)
        elif tts == "cartesia":
            self._provider = CartesiaTTS(self.config)
        else:
            raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")
        return self._provider

    async def synthesize(self, text: str) -> bytes:
        """
        Synthesize `text` to one audio payload.

        Raises:
            SynthesisError: If the provider fails or returns no audio
        """
        provider = self._get_provider()
        start_time = time.time()
        audio = await provider.synthesize(text)
        logger.debug(
            "TTS synthesized",
            provider=type(provider).__name__,
            characters=len(text),
            audio_bytes=len(audio),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
            self._provider = None
