"""
Tests for the client-side ChatSession state machine.

Run with: pytest tests/test_chat_session.py -v
"""

import pytest

from kbchat.chat_session import PROVISIONAL_ID, AskStage, ChatSession
from kbchat.errors import StreamProtocolError


def chunk(content="", end=False, message=None):
    data = {"content": content}
    if end:
        data["end"] = True
    if message is not None:
        data["message"] = message
    return {"type": "llm-chunk", "data": data}


@pytest.fixture
def committed():
    return []


@pytest.fixture
def errors():
    return []


@pytest.fixture
def session(committed, errors):
    return ChatSession(thread_id="t-1", on_commit=committed.append, on_error=errors.append)


class TestAsk:
    """Tests for starting a turn."""

    def test_ask_envelope(self, session):
        envelope = session.ask("  How do refunds work?  ")

        assert envelope == {"type": "ask", "data": {"query": "How do refunds work?", "thread_id": "t-1"}}
        assert session.stage == AskStage.ASKED
        assert session.messages[-1].id == PROVISIONAL_ID
        assert session.messages[-1].role == "user"

    def test_empty_query_ignored(self, session):
        assert session.ask("   ") is None
        assert session.is_idle
        assert session.messages == []

    def test_second_ask_while_in_flight(self, session):
        session.ask("first question")
        with pytest.raises(StreamProtocolError):
            session.ask("second question")
        assert len(session.messages) == 1

    def test_generated_thread_id(self):
        assert ChatSession().thread_id


class TestStreaming:
    """Tests for stage and chunk handling."""

    def test_chunks_commit_on_end(self, session, committed):
        session.ask("greet me please")
        session.handle(chunk("Hel"))
        assert session.stage == AskStage.ANSWERING
        session.handle(chunk("lo"))
        assert session.content == "Hello"
        session.handle(chunk(end=True))

        assert committed[0].content == "Hello"
        assert committed[0].role == "assistant"
        assert session.messages[-1] is committed[0]
        assert session.is_idle
        assert session.content == ""

    def test_server_message_wins(self, session, committed):
        session.ask("refunds?")
        session.handle(chunk("partial"))
        session.handle(chunk(end=True, message={
            "id": "m-42", "role": "assistant", "content": "Full answer", "links": ["https://acme.dev"],
        }))

        assert committed[0].id == "m-42"
        assert committed[0].content == "Full answer"
        assert committed[0].metadata == {"links": ["https://acme.dev"]}

    def test_stages(self, session):
        session.ask("refunds?")
        session.handle({"type": "stage", "data": {"query": "refund policy details"}})
        assert session.stage == AskStage.SEARCHING
        assert session.search_query == "refund policy details"

        session.handle({"type": "stage", "data": {"action": "Create Ticket"}})
        assert session.stage == AskStage.ACTION_CALL
        assert session.action_title == "Create Ticket"

    def test_malformed_data_resets(self, session):
        session.ask("refunds?")
        session.handle(chunk("half"))
        with pytest.raises(StreamProtocolError):
            session.handle({"type": "llm-chunk", "data": ["not", "a", "dict"]})
        assert session.is_idle
        assert session.content == ""

    def test_non_string_content(self, session, committed):
        session.ask("refunds?")
        with pytest.raises(StreamProtocolError):
            session.handle({"type": "llm-chunk", "data": {"content": 42}})
        assert session.is_idle
        assert committed == []

    def test_unknown_type_resets(self, session):
        session.ask("refunds?")
        session.handle(chunk("half"))
        with pytest.raises(StreamProtocolError, match="Unknown message type"):
            session.handle({"type": "bogus", "data": {}})
        assert session.is_idle
        assert session.content == ""

    def test_error_resets(self, session, errors, committed):
        session.ask("refunds?")
        session.handle(chunk("half"))
        session.handle({"type": "error", "data": {"message": "Not enough credits. Contact the owner!"}})

        assert errors == ["Not enough credits. Contact the owner!"]
        assert session.is_idle
        assert committed == []
        # A new ask is possible after the error
        assert session.ask("try again later") is not None


class TestReconciliation:
    """Tests for query-message id reconciliation."""

    def test_provisional_id_replaced(self, session):
        session.ask("refunds?")
        session.handle({"type": "query-message", "data": {"id": "u-1", "role": "user", "content": "refunds?"}})
        assert session.messages[0].id == "u-1"

    def test_idempotent(self, session):
        session.ask("refunds?")
        envelope = {"type": "query-message", "data": {"id": "u-1"}}
        session.handle(envelope)
        session.handle(envelope)

        assert [m.id for m in session.messages] == ["u-1"]

    def test_only_first_provisional_replaced(self, session):
        session.ask("first")
        session.handle(chunk(end=True))
        session.ask("second")
        session.handle({"type": "query-message", "data": {"id": "u-1"}})
        session.handle({"type": "query-message", "data": {"id": "u-2"}})

        ids = [m.id for m in session.messages if m.role == "user"]
        assert ids == ["u-1", "u-2"]

    def test_error_drops_unreconciled_question(self, session):
        session.ask("far too long a question")
        session.handle({"type": "error", "data": {"message": "Question too long. Please shorten it."}})
        assert session.messages == []

        session.ask("shorter question")
        session.handle({"type": "query-message", "data": {"id": "u-2", "role": "user"}})

        assert [(m.id, m.content) for m in session.messages] == [("u-2", "shorter question")]

    def test_error_keeps_reconciled_question(self, session):
        session.ask("refunds?")
        session.handle({"type": "query-message", "data": {"id": "u-1"}})
        session.handle({"type": "error", "data": {"message": "Something went wrong!"}})

        assert [m.id for m in session.messages] == ["u-1"]


class TestObservedTurn:
    """Tests for following a turn asked by another session on the thread."""

    def test_stage_while_idle_follows_turn(self, session):
        session.handle({"type": "stage", "data": {"query": "refund policy details"}})
        assert session.stage == AskStage.SEARCHING
        assert session.search_query == "refund policy details"

    def test_observed_answer_committed(self, session, committed):
        session.handle({"type": "query-message", "data": {"id": "u-7", "role": "user", "content": "refunds?"}})
        session.handle(chunk("Hel"))
        assert session.stage == AskStage.ANSWERING
        session.handle(chunk("lo"))
        session.handle(chunk(end=True, message={"id": "a-7", "role": "assistant", "content": "Hello"}))

        assert [(m.id, m.content) for m in session.messages] == [("u-7", "refunds?"), ("a-7", "Hello")]
        assert committed[0].id == "a-7"
        assert session.is_idle

    def test_observed_question_not_duplicated(self, session):
        envelope = {"type": "query-message", "data": {"id": "u-7", "role": "user", "content": "refunds?"}}
        session.handle(envelope)
        session.handle(envelope)
        assert [m.id for m in session.messages] == ["u-7"]

    def test_own_ask_after_observed_turn(self, session):
        session.handle(chunk("Hi"))
        session.handle(chunk(end=True))
        assert session.ask("my own question") is not None
        session.handle({"type": "query-message", "data": {"id": "u-8"}})
        assert session.messages[-1].id == "u-8"
