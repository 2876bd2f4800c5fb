"""
Tests for the ChatAgent loop.

Run with: pytest tests/test_agent.py -v

The LLM is scripted: each round yields a fixed list of StreamEvents.
"""

import copy
import threading
from unittest.mock import MagicMock

import pytest

from config.settings import LLMConfig, RetrievalConfig
from kbchat.agent import AgentListener, CITATION_PROMPT, ChatAgent
from kbchat.indexer import SearchResult
from kbchat.llm_service import StreamEvent, ToolCallRequest
from kbchat.tools import DataGap, SearchCall


class ScriptedLLM:
    """Replays one scripted list of events per stream_chat call."""

    def __init__(self, rounds):
        self.rounds = list(rounds)
        self.calls = []

    def stream_chat(self, messages, tools=None, temperature=None):
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        events = self.rounds.pop(0) if self.rounds else [StreamEvent(type="delta", content="fallback")]
        for event in events:
            yield event


class RecordingListener(AgentListener):
    def __init__(self):
        self.deltas = []
        self.stages = []
        self.tool_results = []

    def on_delta(self, content):
        self.deltas.append(content)

    def on_stage(self, query=None, action=None):
        self.stages.append((query, action))

    def on_tool_result(self, tool_id, result):
        self.tool_results.append(tool_id)


def text(*parts):
    return [StreamEvent(type="delta", content=p) for p in parts] + [StreamEvent(type="done", finish_reason="stop")]


def tool_round(*calls):
    requests = [ToolCallRequest(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls)]
    return [StreamEvent(type="tool_calls", tool_calls=requests), StreamEvent(type="done", finish_reason="tool_calls")]


@pytest.fixture
def indexer():
    indexer = MagicMock()
    indexer.search_text.return_value = []
    indexer.process.return_value = [
        SearchResult(locator="https://acme.dev/refunds", content="Refunds take 14 days.", score=0.9, fetch_id="12345"),
    ]
    return indexer


def make_agent(indexer, rounds, max_tool_rounds=8):
    llm = ScriptedLLM(rounds)
    agent = ChatAgent(
        indexer,
        llm_service=llm,
        config=LLMConfig(max_tool_rounds=max_tool_rounds),
        retrieval_config=RetrievalConfig(),
    )
    return agent, llm


class TestBuildMessages:
    """Tests for prompt assembly."""

    def test_system_history_user(self, indexer):
        agent, _ = make_agent(indexer, [])
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        messages = agent.build_messages("refunds?", history)

        assert messages[0]["role"] == "system"
        assert CITATION_PROMPT in messages[0]["content"]
        assert messages[1:3] == history
        assert messages[-1] == {"role": "user", "content": "refunds?"}

    def test_custom_system_prompt(self, indexer):
        agent = ChatAgent(indexer, llm_service=ScriptedLLM([]), system_prompt="You are Acme's helper.",
                          config=LLMConfig(), retrieval_config=RetrievalConfig())
        assert agent.build_messages("q")[0]["content"].startswith("You are Acme's helper.")


class TestRunTurn:
    """Tests for ChatAgent.run_turn."""

    def test_plain_answer_streams_deltas(self, indexer):
        agent, llm = make_agent(indexer, [text("Hel", "lo")])
        listener = RecordingListener()

        result = agent.run_turn("acme", "hi", listener=listener)

        assert listener.deltas == ["Hel", "lo"]
        assert result.content == "Hello"
        assert result.queries == []
        assert len(llm.calls) == 1
        names = [t["function"]["name"] for t in llm.calls[0]["tools"]]
        assert names[:2] == ["search_data", "report_data_gap"]

    def test_search_round(self, indexer):
        agent, llm = make_agent(indexer, [
            tool_round(("search_data", '{"query": "how do refunds work"}')),
            text("Refunds take 14 days !!12345!!"),
        ])
        listener = RecordingListener()

        result = agent.run_turn("acme", "refunds?", listener=listener)

        assert listener.stages == [("how do refunds work", None)]
        assert listener.tool_results == ["search_data"]
        assert result.queries == ["how do refunds work"]
        assert result.content == "Refunds take 14 days !!12345!!"
        assert isinstance(result.side_effects[0], SearchCall)
        indexer.search_text.assert_called_once_with("acme", "how do refunds work", top_k=20)

        second = llm.calls[1]["messages"]
        assert second[-2]["role"] == "assistant"
        assert second[-2]["tool_calls"][0]["function"]["name"] == "search_data"
        assert second[-1]["role"] == "tool"
        assert second[-1]["tool_call_id"] == "call_0"
        assert "fetchUniqueId" in second[-1]["content"]

    def test_rejected_search_has_no_stage(self, indexer):
        agent, _ = make_agent(indexer, [tool_round(("search_data", '{"query": "refund"}')), text("ok")])
        listener = RecordingListener()

        result = agent.run_turn("acme", "refunds?", listener=listener)

        assert listener.stages == []
        assert result.queries == []
        indexer.search_text.assert_not_called()

    def test_data_gap(self, indexer):
        agent, _ = make_agent(indexer, [
            tool_round(("report_data_gap", '{"title": "Warranty", "description": "missing"}')),
            text("I don't know."),
        ])
        result = agent.run_turn("acme", "warranty?")
        assert result.side_effects == [DataGap(title="Warranty", description="missing")]

    def test_unknown_tool_and_bad_arguments(self, indexer):
        agent, llm = make_agent(indexer, [
            tool_round(("delete_everything", "{}"), ("search_data", '{"query": ')),
            text("done"),
        ])
        agent.run_turn("acme", "q")

        tool_messages = [m for m in llm.calls[1]["messages"] if m["role"] == "tool"]
        assert tool_messages[0]["content"].startswith("Unknown tool delete_everything")
        assert tool_messages[1]["content"].startswith("Invalid arguments for search_data")

    def test_round_cap_forces_answer(self, indexer):
        rounds = [tool_round(("search_data", f'{{"query": "refund question number {i}"}}')) for i in range(2)]
        agent, llm = make_agent(indexer, rounds + [text("final")], max_tool_rounds=2)

        result = agent.run_turn("acme", "q")

        assert len(llm.calls) == 3
        assert llm.calls[2]["tools"] is None
        assert result.content == "final"

    def test_cancel_before_stream(self, indexer):
        agent, _ = make_agent(indexer, [text("never")])
        cancel = threading.Event()
        cancel.set()
        listener = RecordingListener()

        result = agent.run_turn("acme", "q", listener=listener, cancel_event=cancel)

        assert result.cancelled
        assert listener.deltas == []
        assert result.content == ""

    def test_cancel_during_tool_discards_result(self, indexer):
        cancel = threading.Event()

        def search(*args, **kwargs):
            cancel.set()
            return []

        indexer.search_text.side_effect = search
        agent, llm = make_agent(indexer, [tool_round(("search_data", '{"query": "how do refunds work"}'))])
        listener = RecordingListener()

        result = agent.run_turn("acme", "q", listener=listener, cancel_event=cancel)

        assert result.cancelled
        assert result.tool_results == []
        assert listener.tool_results == []
        assert len(llm.calls) == 1

    def test_history_passed_through(self, indexer):
        agent, llm = make_agent(indexer, [text("yes")])
        agent.run_turn("acme", "and then?", history=[{"role": "user", "content": "first"}])
        roles = [m["role"] for m in llm.calls[0]["messages"]]
        assert roles == ["system", "user", "user"]
