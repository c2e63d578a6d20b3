"""
Pytest configuration and fixtures.
"""

import os
from unittest.mock import patch

import pytest

from fakes import FakeLLM, FakeSynthesizer, ScriptedTranscriptStream, make_outbound


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3003",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "LLM_PROVIDER": "groq",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "openai",
        "VALIDATE_LLM_MODEL": "false",
        "KNOWLEDGE_BASE_PATH": "data/services.json",
        "GREETING_TEXT": "Welcome to the Ministry of Detailing! How can I help you today?",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicedesk.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.voicedesk.config import get_config
    return get_config()


@pytest.fixture
def knowledge_base():
    return {
        "services": [
            {"name": "Interior Detail", "pricing": {"small": 180, "medium": 210, "large": 240}},
        ],
        "add_ons": [{"name": "Scratch Removal", "price": 50}],
    }


@pytest.fixture
def outbound():
    return make_outbound()


@pytest.fixture
def llm():
    return FakeLLM(replies=["For dog hair, I'd recommend our Interior Detail. What kind of car do you have?"])


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def stream():
    return ScriptedTranscriptStream()
