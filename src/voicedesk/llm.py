"""
LLM wrapper with OpenAI-compatible API (Groq or OpenAI).

Provides:
- Append-only dialogue history for one session
- Persona/system prompt built around the knowledge base
- Non-streaming reply generation for a full dialogue history
- Startup model validation (Groq)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicedesk.config import get_config
from src.voicedesk.errors import ReplyGenerationError
from src.voicedesk.knowledge import render_knowledge_base

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class Role(str, Enum):
    """Who contributed a dialogue entry."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class DialogueTurn:
    """A single entry in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)


class DialogueHistory:
    """
    Append-only conversation history for one session.

    Entries are never reordered or removed; insertion order is conversation order.
    """

    def __init__(self) -> None:
        self._turns: List[DialogueTurn] = []

    def add_user_message(self, content: str) -> None:
        """Add a caller utterance."""
        self._turns.append(DialogueTurn(role=Role.USER, content=content))

    def add_assistant_message(self, content: str) -> None:
        """Add an agent reply."""
        self._turns.append(DialogueTurn(role=Role.ASSISTANT, content=content))

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [
            {"role": turn.role.value, "content": turn.content}
            for turn in self._turns
        ]

    @property
    def turns(self) -> tuple[DialogueTurn, ...]:
        return tuple(self._turns)

    def __iter__(self) -> Iterator[DialogueTurn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(knowledge_base: Any, config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the voice agent.

    This defines the sales-assistant persona, the knowledge base it must stick
    to, and the conversational rules for spoken replies.
    """
    if config is None:
        config = get_config()

    services = render_knowledge_base(knowledge_base)

    return f"""You are {config.agent_name}, a friendly, conversational sales assistant for the {config.company_name}, {config.company_location}, speaking to a customer on the phone. Your primary goal is to listen to the customer's problem and guide them to the best service package. Be helpful and sound like a real person, not a robot.

Here is your knowledge base of all services, prices, and their detailed descriptions. You must stick to these offerings:
{services}

CONVERSATIONAL RULES:
- Make and model first: if the customer asks about a service with size-based pricing (like a Full Detail), your FIRST response must be to ask for the vehicle's make and model. Example: "Absolutely. What's the make and model of your vehicle?"
- Vehicle classification: once the customer gives a make and model, classify it into a size category to find the price:
    - small: sedans (Toyota Camry, Honda Civic) and hatchbacks.
    - medium: small SUVs and crossovers (Toyota RAV4, Honda CR-V).
    - large: trucks (Ford F-150), vans, and large SUVs (Chevrolet Tahoe).
- Concise recommendations: state the service and price, then offer more detail. Example: "For a BMW hatchback, I'd recommend our Premium Exterior service, which is $110. Would you like to know more about what that includes?"
- For flat-rate add-ons (like Scratch Removal), state the price directly, e.g. "The Scratch Removal is a flat $50."
- When a customer describes a problem (like dog hair), confidently recommend the best service and then ask for the make and model if needed. Example: "For dog hair, I'd recommend our Interior Detail. What kind of car do you have?"
- Never say you can't help. Find the closest service we offer.

RESPONSE STYLE:
- This is spoken audio: no paragraphs, bullet points or numbered lists, just a concise answer.
- Use contractions (I'm, you're, we'll) for natural speech."""


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Calls GET https://api.groq.com/openai/v1/models to check.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error(
            "Groq model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update GROQ_MODEL in your .env file."
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class ChatLLM:
    """
    Reply generator over an OpenAI-compatible chat-completions API.

    One request per agent turn; the whole dialogue history is sent each time.
    """

    def __init__(
        self,
        knowledge_base: Any,
        config: Optional[Any] = None,
        client: Optional[AsyncOpenAI] = None,
        system_prompt: Optional[str] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model
        self._system_prompt = system_prompt or get_system_prompt(knowledge_base, config)

        if client is None:
            if config.llm_provider == "openai":
                client = AsyncOpenAI(api_key=config.openai_api_key)
            else:
                client = AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)
        self._client = client

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    async def close(self) -> None:
        await self._client.close()

    async def generate(self, history: DialogueHistory) -> str:
        """
        Generate one reply for the given history.

        Raises:
            ReplyGenerationError: If the request fails or returns no text
        """
        messages = [{"role": "system", "content": self._system_prompt}]
        messages.extend(history.get_messages())

        start_time = time.time()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
        except Exception as e:
            raise ReplyGenerationError(f"LLM request failed: {e}") from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise ReplyGenerationError("LLM returned an empty reply")

        logger.debug(
            "LLM reply generated",
            model=self.model,
            total_ms=round((time.time() - start_time) * 1000, 2),
            history_len=len(history),
        )
        return text


async def initialize_llm(config: Optional[Any] = None) -> None:
    """Validate the configured LLM at startup (Groq only)."""
    if config is None:
        config = get_config()
    if config.llm_provider == "groq" and config.validate_llm_model:
        await validate_groq_model(config.groq_api_key, config.groq_model)
