"""
Configuration management for the voice mediator.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

LLM_PROVIDERS = ("groq", "openai")
TTS_PROVIDERS = ("openai", "cartesia")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 3003
    log_level: str = "INFO"

    # Business persona
    agent_name: str = "Ava"
    company_name: str = "Ministry of Detailing"
    company_location: str = "Bentleigh, Victoria"
    greeting_text: str = ""
    knowledge_base_path: str = "data/services.json"

    # Deepgram (STT)
    # - deepgram_encoding empty means containerized audio (browser WebM/Opus),
    #   which Deepgram detects on its own; sample rate is only sent with an encoding.
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_encoding: str = ""
    deepgram_sample_rate: int = 48000
    deepgram_endpointing_ms: int = 300

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 150
    llm_temperature: float = 0.7
    validate_llm_model: bool = True

    # TTS Provider (OpenAI/Cartesia)
    tts_provider: str = "openai"  # "openai" | "cartesia"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "coral"
    openai_tts_format: str = "opus"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model_id: str = "sonic-english"

    @property
    def greeting(self) -> str:
        """Get the greeting spoken when a session opens."""
        if self.greeting_text:
            return self.greeting_text
        return f"Welcome to the {self.company_name}! How can I help you today?"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        tts = (self.tts_provider or "openai").strip().lower()
        if tts not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'openai' or 'cartesia'."
            )

        if tts == "openai" and not self.openai_api_key and "OPENAI_API_KEY" not in missing:
            missing.append("OPENAI_API_KEY")
        if tts == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            company_name=self.company_name,
            knowledge_base_path=self.knowledge_base_path,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_encoding=self.deepgram_encoding or "container",
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_max_tokens=self.llm_max_tokens,
            tts_provider=self.tts_provider,
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 3003),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Business persona
        agent_name=os.getenv("AGENT_NAME", "Ava"),
        company_name=os.getenv("COMPANY_NAME", "Ministry of Detailing"),
        company_location=os.getenv("COMPANY_LOCATION", "Bentleigh, Victoria"),
        greeting_text=os.getenv("GREETING_TEXT", ""),
        knowledge_base_path=os.getenv("KNOWLEDGE_BASE_PATH", "data/services.json"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_encoding=os.getenv("DEEPGRAM_ENCODING", "").strip().lower(),
        deepgram_sample_rate=_get_int("DEEPGRAM_SAMPLE_RATE", 48000),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 150),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        validate_llm_model=_get_bool("VALIDATE_LLM_MODEL", True),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "openai").strip().lower(),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "coral"),
        openai_tts_format=os.getenv("OPENAI_TTS_FORMAT", "opus"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model_id=os.getenv("CARTESIA_MODEL_ID", "sonic-english"),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
