"""
LLM Service Module

Streaming, tool-calling chat completions behind one interface:
- OpenAI (or any OpenAI-compatible endpoint through base_url)
- Ollama (local models with tool support, e.g. llama3.1)

Design Rationale:
- Providers normalise their native stream into StreamEvents: text
  deltas as they arrive, then the completed tool calls of the round
- Messages use the OpenAI chat format; providers convert when needed
- Clients are created lazily so importing never needs credentials

Usage:
    llm = LLMService()
    for event in llm.stream_chat(messages, tools=[tool.to_openai_tool()]):
        if event.type == "delta":
            print(event.content, end="")
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from config.settings import get_settings, LLMConfig

logger = logging.getLogger(__name__)


@dataclass
class ToolCallRequest:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the JSON arguments (raises ValueError when malformed)."""
        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return value

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class StreamEvent:
    """
    One normalised streaming event.

    Attributes:
        type: "delta" (text), "tool_calls" (round's tool calls) or "done"
        content: Text delta for "delta" events
        tool_calls: Completed tool calls for "tool_calls" events
        finish_reason: Why generation stopped, on "done"
    """

    type: str
    content: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    finish_reason: Optional[str] = None


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    All providers must implement:
    - stream_chat: Stream a chat completion with optional tools
    """

    @abstractmethod
    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
    ) -> Iterator[StreamEvent]:
        """
        Stream a chat completion.

        Args:
            messages: OpenAI format chat messages
            tools: OpenAI format tool definitions
            temperature: Sampling temperature

        Yields:
            StreamEvent objects; "tool_calls" at most once, "done" last
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI chat completions provider.

    Tool call fragments arrive spread over many chunks keyed by index;
    they are stitched together and emitted once the stream ends.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

        logger.info(f"Initializing OpenAIProvider: model={model}, base_url={base_url}")

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError("openai package required. Install with: pip install openai")

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment variable."
                )
            self._client = OpenAI(api_key=api_key, base_url=self._base_url)
            logger.info("OpenAI client initialized")
        return self._client

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
    ) -> Iterator[StreamEvent]:
        kwargs: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        stream = self._get_client().chat.completions.create(**kwargs)

        pending: Dict[int, ToolCallRequest] = {}
        finish_reason = None
        for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta.content:
                yield StreamEvent(type="delta", content=delta.content)

            for fragment in delta.tool_calls or []:
                call = pending.setdefault(
                    fragment.index, ToolCallRequest(id="", name="", arguments="")
                )
                if fragment.id:
                    call.id = fragment.id
                if fragment.function is not None:
                    if fragment.function.name:
                        call.name += fragment.function.name
                    if fragment.function.arguments:
                        call.arguments += fragment.function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        if pending:
            calls = [pending[i] for i in sorted(pending)]
            for i, call in enumerate(calls):
                call.id = call.id or f"call_{i}"
            yield StreamEvent(type="tool_calls", tool_calls=calls)

        yield StreamEvent(type="done", finish_reason=finish_reason)

    @property
    def model_name(self) -> str:
        return self._model


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider for local models.

    Ollama returns complete tool calls with dict arguments; they are
    re-encoded as JSON strings to match the OpenAI message format.
    """

    def __init__(
        self,
        model: str = "llama3.1",
        base_url: str = "http://localhost:11434",
    ):
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = None

        logger.info(f"Initializing OllamaProvider: model={model}, url={base_url}")

    def _get_client(self):
        """Get or create Ollama client."""
        if self._client is None:
            try:
                import ollama
            except ImportError:
                raise ImportError("ollama package required. Install with: pip install ollama")
            self._client = ollama.Client(host=self._base_url)
            logger.info("Ollama client initialized")
        return self._client

    @staticmethod
    def _to_ollama_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for message in messages:
            message = dict(message)
            if message.get("tool_calls"):
                message["tool_calls"] = [
                    {
                        "function": {
                            "name": call["function"]["name"],
                            "arguments": json.loads(call["function"]["arguments"] or "{}"),
                        }
                    }
                    for call in message["tool_calls"]
                ]
            message.pop("tool_call_id", None)
            if message.get("content") is None:
                message["content"] = ""
            converted.append(message)
        return converted

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
    ) -> Iterator[StreamEvent]:
        stream = self._get_client().chat(
            model=self._model,
            messages=self._to_ollama_messages(messages),
            tools=tools or None,
            stream=True,
            options={"temperature": temperature},
        )

        calls: List[ToolCallRequest] = []
        finish_reason = None
        for chunk in stream:
            message = chunk["message"]
            if message.get("content"):
                yield StreamEvent(type="delta", content=message["content"])
            for call in message.get("tool_calls") or []:
                calls.append(ToolCallRequest(
                    id=f"call_{len(calls)}",
                    name=call["function"]["name"],
                    arguments=json.dumps(dict(call["function"]["arguments"] or {})),
                ))
            if chunk.get("done"):
                finish_reason = chunk.get("done_reason") or "stop"

        if calls:
            yield StreamEvent(type="tool_calls", tool_calls=calls)
        yield StreamEvent(type="done", finish_reason=finish_reason)

    @property
    def model_name(self) -> str:
        return self._model


class LLMService:
    """
    Main LLM Service with unified interface.

    Example:
        llm = LLMService()                  # provider from config
        llm = LLMService(provider="ollama")
        events = llm.stream_chat(messages, tools)
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        config: Optional[LLMConfig] = None,
    ):
        """
        Initialize the LLM service.

        Args:
            provider: "openai" or "ollama" (default from config)
            config: Optional LLMConfig instance
        """
        self.config = config or get_settings().llm
        provider = provider or self.config.provider

        if provider == "openai":
            self._provider = OpenAIProvider(
                model=self.config.openai_model,
                api_key=self.config.openai_api_key,
                base_url=self.config.openai_base_url,
            )
        elif provider == "ollama":
            self._provider = OllamaProvider(
                model=self.config.ollama_model,
                base_url=self.config.ollama_base_url,
            )
        else:
            raise ValueError(f"Unknown LLM provider: {provider}")

        self._provider_name = provider
        logger.info(f"LLMService initialized with {provider} provider")

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
    ) -> Iterator[StreamEvent]:
        """Stream a chat completion through the configured provider."""
        return self._provider.stream_chat(
            messages,
            tools=tools,
            temperature=self.config.temperature if temperature is None else temperature,
        )

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        return self._provider_name
