"""
Knowledge-base loading.

The knowledge base is a static JSON document (services, prices, descriptions)
that is rendered verbatim into the assistant's system prompt.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


class KnowledgeBaseError(Exception):
    """Raised when the knowledge base cannot be read or parsed."""
    pass


def _project_root() -> Path:
    # src/voicedesk/knowledge.py -> src/voicedesk -> src -> project root
    return Path(__file__).resolve().parent.parent.parent


def resolve_knowledge_base_path(path: Optional[str] = None) -> Path:
    """
    Resolve a knowledge-base path.

    If path is relative, it is interpreted relative to the project root.
    Defaults to `data/services.json` in the project root.
    """
    if not path:
        return _project_root() / "data" / "services.json"

    resolved = Path(path)
    if resolved.is_absolute():
        return resolved
    return _project_root() / resolved


def load_knowledge_base(path: Optional[str] = None) -> Any:
    """Load and parse the knowledge base, raising KnowledgeBaseError on failure."""
    resolved = resolve_knowledge_base_path(path)
    try:
        raw = resolved.read_text(encoding="utf-8")
    except OSError as e:
        raise KnowledgeBaseError(f"Cannot read knowledge base at {resolved}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise KnowledgeBaseError(f"Knowledge base at {resolved} is not valid JSON: {e}") from e

    logger.info(
        "Knowledge base loaded",
        path=str(resolved),
        top_level_entries=len(data) if isinstance(data, (dict, list)) else 1,
    )
    return data


def render_knowledge_base(data: Any) -> str:
    """Render the knowledge base for inclusion in a prompt."""
    return json.dumps(data, indent=2, ensure_ascii=False)
