"""
Voicedesk: a real-time voice mediator between a caller, speech-to-text,
an LLM and text-to-speech.

Public names resolve lazily so `src.voicedesk.turns` and friends import
without pulling in the provider SDKs.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voicedesk.config import Config, get_config
    from src.voicedesk.session import Session, create_session
    from src.voicedesk.turns import TurnState

_EXPORTS = {
    "Config": "src.voicedesk.config",
    "get_config": "src.voicedesk.config",
    "Session": "src.voicedesk.session",
    "create_session": "src.voicedesk.session",
    "TurnState": "src.voicedesk.turns",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(module), name)
