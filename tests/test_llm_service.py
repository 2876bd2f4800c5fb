"""
Tests for LLM Service module.

Run with: pytest tests/test_llm_service.py -v

Provider clients are mocked; no API key or local model is needed.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from config.settings import LLMConfig
from kbchat.llm_service import (
    LLMService,
    OllamaProvider,
    OpenAIProvider,
    StreamEvent,
    ToolCallRequest,
)


def openai_chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class TestToolCallRequest:
    """Tests for ToolCallRequest."""

    def test_parsed_arguments(self):
        assert ToolCallRequest(id="1", name="x", arguments='{"q": "a"}').parsed_arguments() == {"q": "a"}
        assert ToolCallRequest(id="1", name="x", arguments="").parsed_arguments() == {}

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            ToolCallRequest(id="1", name="x", arguments="[1, 2]").parsed_arguments()

    def test_malformed_rejected(self):
        with pytest.raises(ValueError):
            ToolCallRequest(id="1", name="x", arguments='{"q": ').parsed_arguments()

    def test_to_message(self):
        message = ToolCallRequest(id="call_1", name="search_data", arguments="{}").to_message()
        assert message == {
            "id": "call_1",
            "type": "function",
            "function": {"name": "search_data", "arguments": "{}"},
        }


class TestOpenAIProvider:
    """Tests for OpenAIProvider stream normalisation."""

    @pytest.fixture
    def provider(self):
        provider = OpenAIProvider(model="gpt-test", api_key="sk-test")
        provider._client = MagicMock()
        return provider

    def test_text_deltas(self, provider):
        provider._client.chat.completions.create.return_value = iter([
            openai_chunk(content="Hel"),
            openai_chunk(content="lo"),
            openai_chunk(finish_reason="stop"),
        ])

        events = list(provider.stream_chat([{"role": "user", "content": "hi"}]))

        assert [e.content for e in events if e.type == "delta"] == ["Hel", "lo"]
        assert events[-1] == StreamEvent(type="done", finish_reason="stop")
        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert "tools" not in kwargs

    def test_tool_call_fragments_are_stitched(self, provider):
        provider._client.chat.completions.create.return_value = iter([
            openai_chunk(tool_calls=[fragment(0, id="call_a", name="search_", arguments='{"query"')]),
            openai_chunk(tool_calls=[fragment(0, name="data", arguments=': "refund policy"}')]),
            openai_chunk(tool_calls=[fragment(1, id="call_b", name="report_data_gap", arguments="{}")]),
            openai_chunk(finish_reason="tool_calls"),
        ])

        events = list(provider.stream_chat([], tools=[{"type": "function"}]))
        calls = [e for e in events if e.type == "tool_calls"][0].tool_calls

        assert [c.name for c in calls] == ["search_data", "report_data_gap"]
        assert calls[0].id == "call_a"
        assert calls[0].parsed_arguments() == {"query": "refund policy"}
        assert events[-1].finish_reason == "tool_calls"

    def test_missing_call_id_is_filled(self, provider):
        provider._client.chat.completions.create.return_value = iter([
            openai_chunk(tool_calls=[fragment(0, name="search_data", arguments="{}")]),
        ])
        events = list(provider.stream_chat([], tools=[{"type": "function"}]))
        assert events[0].tool_calls[0].id == "call_0"

    def test_empty_choices_skipped(self, provider):
        provider._client.chat.completions.create.return_value = iter([
            SimpleNamespace(choices=[]),
            openai_chunk(content="ok", finish_reason="stop"),
        ])
        events = list(provider.stream_chat([]))
        assert [e.type for e in events] == ["delta", "done"]

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError, match="API key"):
            OpenAIProvider(model="gpt-test")._get_client()


class TestOllamaProvider:
    """Tests for OllamaProvider."""

    def test_message_conversion(self):
        messages = [
            {"role": "assistant", "content": None, "tool_calls": [
                {"id": "call_0", "type": "function",
                 "function": {"name": "search_data", "arguments": '{"query": "a b c d"}'}},
            ]},
            {"role": "tool", "tool_call_id": "call_0", "content": "result"},
        ]
        converted = OllamaProvider._to_ollama_messages(messages)

        assert converted[0]["content"] == ""
        assert converted[0]["tool_calls"][0]["function"]["arguments"] == {"query": "a b c d"}
        assert "tool_call_id" not in converted[1]
        assert messages[1]["tool_call_id"] == "call_0"

    def test_stream(self):
        provider = OllamaProvider(model="llama-test")
        provider._client = MagicMock()
        provider._client.chat.return_value = iter([
            {"message": {"content": "Let me check. "}},
            {"message": {"content": "", "tool_calls": [
                {"function": {"name": "search_data", "arguments": {"query": "refund policy for orders"}}},
            ]}, "done": True, "done_reason": "stop"},
        ])

        events = list(provider.stream_chat([{"role": "user", "content": "refunds?"}], tools=[{}]))

        assert events[0] == StreamEvent(type="delta", content="Let me check. ")
        calls = events[1].tool_calls
        assert calls[0].name == "search_data"
        assert calls[0].parsed_arguments() == {"query": "refund policy for orders"}
        assert events[2].finish_reason == "stop"


class TestLLMService:
    """Tests for the LLMService facade."""

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMService(provider="gemini", config=LLMConfig())

    def test_provider_from_config(self):
        service = LLMService(config=LLMConfig(provider="ollama", ollama_model="llama-test"))
        assert service.provider_name == "ollama"
        assert service.model_name == "llama-test"

    def test_default_temperature(self):
        service = LLMService(config=LLMConfig(provider="ollama", temperature=0.7))
        service._provider = MagicMock()

        service.stream_chat([{"role": "user", "content": "hi"}])
        assert service._provider.stream_chat.call_args.kwargs["temperature"] == 0.7

        service.stream_chat([], temperature=0.0)
        assert service._provider.stream_chat.call_args.kwargs["temperature"] == 0.0
