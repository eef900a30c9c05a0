"""
Completion client with OpenAI-compatible API.

Provides:
- Startup model validation
- Chat completion over the full conversation memory
- OpenAI or Groq as provider
"""

from abc import ABC, abstractmethod
import time
from typing import Any, Optional, Sequence

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.callturn.config import get_config
from src.callturn.errors import CompletionError
from src.callturn.memory import ConversationTurn

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def provider_settings(config: Any) -> tuple[str, str, str]:
    """Return (base_url, api_key, model) for the configured provider."""
    if (config.llm_provider or "openai").strip().lower() == "groq":
        return GROQ_BASE_URL, config.groq_api_key, config.groq_model
    return OPENAI_BASE_URL, config.openai_api_key, config.openai_model


async def validate_model(base_url: str, api_key: str, model_name: str) -> bool:
    """
    Validate that the configured completion model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    logger.info("Validating completion model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate completion model. API returned status {response.status_code}. "
                    "Check your API key."
                )

            data = response.json()
            models = data.get("data", [])
            model_ids = [m.get("id") for m in models]

            if model_name not in model_ids:
                available = ", ".join(sorted(str(m) for m in model_ids)[:10])
                logger.error(
                    "Completion model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"Model '{model_name}' not found in available models.\n"
                    f"Available models include: {available}\n"
                    "Please update your .env file."
                )

            logger.info("Completion model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to completion API", error=str(e))
            raise SystemExit(
                f"Failed to connect to completion API: {e}\n"
                "Check your network connection and API key."
            )


class CompletionClient(ABC):
    @abstractmethod
    async def complete(self, turns: Sequence[ConversationTurn]) -> str:
        """Generate the next assistant reply. Raises CompletionError."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChatCompletionClient(CompletionClient):
    """
    Chat completion client for OpenAI or Groq.

    Uses the OpenAI SDK; Groq is reached through its OpenAI-compatible base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        base_url, api_key, self.model = provider_settings(config)
        self._base_url = base_url
        self._api_key = api_key
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=config.llm_timeout_seconds,
            max_retries=config.openai_max_retries,
        )

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_model(self._base_url, self._api_key, self.model)

    async def complete(self, turns: Sequence[ConversationTurn]) -> str:
        messages = [turn.to_message() for turn in turns]
        start_time = time.time()

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
            )
        except openai.OpenAIError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if not response.choices:
            raise CompletionError("Completion returned no choices")

        text = (response.choices[0].message.content or "").strip()

        logger.debug(
            "Completion received",
            model=self.model,
            messages=len(messages),
            latency_ms=round((time.time() - start_time) * 1000, 2),
            chars=len(text),
        )
        return text

    async def close(self) -> None:
        await self._client.close()


async def initialize_llm(config: Optional[Any] = None) -> ChatCompletionClient:
    """
    Create the completion client and validate its model at startup.

    Returns:
        Initialized and validated ChatCompletionClient
    """
    llm = ChatCompletionClient(config)
    await llm.validate_model()
    return llm
