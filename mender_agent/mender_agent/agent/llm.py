"""Chat completion client used by the agent."""

import logging
import os
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel

from mender_agent.agent.errors import GenerationError
from mender_agent.agent.responses import content_to_text
from mender_agent.config import AIConfig

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: str = "assistant"
    content: str | None = None


class Choice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class ChatCompletion(BaseModel):
    """OpenAI-shaped completion response."""
    model: str = ""
    choices: list[Choice] = []

    @classmethod
    def from_content(cls, content: str, model: str = "") -> "ChatCompletion":
        return cls(model=model, choices=[Choice(message=ChatMessage(content=content))])


class CompletionClient(Protocol):
    async def create_chat_completion(
        self,
        *,
        model: str,
        temperature: float,
        messages: Sequence[BaseMessage],
        response_format: dict[str, Any] | None = None,
    ) -> ChatCompletion: ...


ChatModelFactory = Callable[[str, float], BaseChatModel]


class LangChainCompletionClient:
    """
    Adapt a LangChain chat model to the completion client interface.

    Models are built lazily by `factory` and cached per (model, temperature).
    """

    def __init__(self, factory: ChatModelFactory):
        self._factory = factory
        self._models: dict[tuple[str, float], BaseChatModel] = {}

    def _get_model(self, model: str, temperature: float) -> BaseChatModel:
        key = (model, temperature)
        if key not in self._models:
            self._models[key] = self._factory(model, temperature)
        return self._models[key]

    async def create_chat_completion(
        self,
        *,
        model: str,
        temperature: float,
        messages: Sequence[BaseMessage],
        response_format: dict[str, Any] | None = None,
    ) -> ChatCompletion:
        chat_model = self._get_model(model, temperature)
        if response_format and response_format.get("type") == "json_object":
            chat_model = chat_model.bind(response_mime_type="application/json")

        logger.debug("Requesting completion from %s (%d messages)", model, len(messages))
        response = await chat_model.ainvoke(list(messages))
        return ChatCompletion.from_content(content_to_text(response.content), model=model)


def gemini_model_factory(api_key: str) -> ChatModelFactory:
    def factory(model: str, temperature: float) -> BaseChatModel:
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=api_key,
            temperature=temperature,
        )

    return factory


def create_completion_client(ai_config: AIConfig) -> LangChainCompletionClient:
    """Build the default completion client from configuration."""
    api_key = os.environ.get(ai_config.api_key_env, "")
    if not api_key:
        raise GenerationError(f"{ai_config.api_key_env} environment variable not set")

    return LangChainCompletionClient(gemini_model_factory(api_key))
