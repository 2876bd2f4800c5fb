"""
Chat Agent Module

The tool-calling agent loop that answers one user question:
1. Build the turn's tools (search, actions, data gap) and a fresh QueryBudget
2. Stream a completion; text deltas go straight to the listener
3. Run requested tool calls one by one, feeding results back as
   role "tool" messages, then stream again
4. Stop when a round makes no tool calls (or the round cap is reached)

Design Rationale:
- Tools are built per turn so budget and identity never leak between turns
- Tool calls block the token stream until they return
- Stage notifications fire only when a search/action actually runs
- A set cancel event stops consuming the stream and discards any
  in-flight tool result
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config.settings import get_settings, LLMConfig, RetrievalConfig
from kbchat.indexer import Indexer
from kbchat.llm_service import LLMService, ToolCallRequest
from kbchat.tools import (
    ActionDefinition,
    ActionTool,
    BaseTool,
    DataGapTool,
    QueryBudget,
    SearchTool,
    SecretResolver,
    SessionIdentity,
    ToolResult,
)

logger = logging.getLogger(__name__)


def multi_line_prompt(lines: List[str]) -> str:
    return "\n".join(lines)


CITATION_PROMPT = multi_line_prompt([
    "Cite the sources in the format of !!<fetchUniqueId>!! at the end of the sentence or paragraph. Example: !!12345!!",
    "<fetchUniqueId> should be the 'fetchUniqueId' mentioned in the context json.",
    "Cite only the sources that are used to answer the query.",
    "Don't add the citations as a separate section at the end of the answer.",
])

DEFAULT_SYSTEM_PROMPT = multi_line_prompt([
    "You are a helpful assistant that answers questions using the knowledge base.",
    "Use the search_data tool to find information before answering.",
    "Answer only from the context returned by the tools. Don't hallucinate.",
    "If the context doesn't answer the question, say you don't know.",
    "Keep answers concise and use markdown formatting.",
])


class AgentListener:
    """Receives streaming output of a turn. Override what you need."""

    def on_delta(self, content: str) -> None:
        pass

    def on_stage(self, query: Optional[str] = None, action: Optional[str] = None) -> None:
        pass

    def on_tool_result(self, tool_id: str, result: ToolResult) -> None:
        pass


@dataclass
class AgentTurnResult:
    """Outcome of one agent turn."""

    content: str
    queries: List[str] = field(default_factory=list)
    tool_results: List[Tuple[str, ToolResult]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def side_effects(self) -> List[Any]:
        return [r.side_effect for _, r in self.tool_results if r.side_effect is not None]


class ChatAgent:
    """
    Runs agent turns against one indexer.

    Example:
        agent = ChatAgent(indexer, actions=[refund_action])
        result = agent.run_turn("acme", "How do I get a refund?", listener=ui)
        print(result.content)
    """

    def __init__(
        self,
        indexer: Indexer,
        llm_service: Optional[LLMService] = None,
        actions: Optional[List[ActionDefinition]] = None,
        secret_resolver: Optional[SecretResolver] = None,
        system_prompt: Optional[str] = None,
        config: Optional[LLMConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
    ):
        """
        Initialize the agent.

        Args:
            indexer: Retrieval engine used by the search tool
            llm_service: Streaming LLM (default from config)
            actions: HTTP actions exposed as tools
            secret_resolver: Supplies secrets for action headers
            system_prompt: Prompt prepended to every turn
            config: Optional LLMConfig
            retrieval_config: Optional RetrievalConfig for the search tool
        """
        settings = get_settings()
        self.indexer = indexer
        self.config = config or settings.llm
        self.retrieval_config = retrieval_config or settings.retrieval
        self.llm_service = llm_service or LLMService(config=self.config)
        self.actions = list(actions or [])
        self.secret_resolver = secret_resolver
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    def build_tools(
        self,
        tenant_id: str,
        listener: AgentListener,
        identity: Optional[SessionIdentity] = None,
    ) -> Tuple[List[BaseTool], QueryBudget]:
        """Fresh tools and query budget for one turn."""
        budget = QueryBudget(self.retrieval_config.max_queries)
        tools: List[BaseTool] = [
            SearchTool(
                self.indexer,
                tenant_id,
                budget=budget,
                config=self.retrieval_config,
                on_pre_search=lambda query: listener.on_stage(query=query),
            ),
            DataGapTool(),
        ]
        for action in self.actions:
            tools.append(ActionTool(
                action,
                identity=identity,
                secret_resolver=self.secret_resolver,
                on_pre_action=lambda title: listener.on_stage(action=title),
            ))
        return tools, budget

    def build_messages(self, question: str, history: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        system = multi_line_prompt([self.system_prompt, "", CITATION_PROMPT])
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": question})
        return messages

    def _run_tool(self, tools: Dict[str, BaseTool], call: ToolCallRequest) -> ToolResult:
        tool = tools.get(call.name)
        if tool is None:
            return ToolResult(content=f"Unknown tool {call.name}. Use one of: {', '.join(tools)}.")
        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            return ToolResult(content=f"Invalid arguments for {call.name}: {e}")
        return tool.run(arguments)

    def run_turn(
        self,
        tenant_id: str,
        question: str,
        history: Optional[List[Dict[str, Any]]] = None,
        listener: Optional[AgentListener] = None,
        identity: Optional[SessionIdentity] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AgentTurnResult:
        """
        Answer one question, streaming output to the listener.

        Args:
            tenant_id: Knowledge base to search
            question: The user's question
            history: Previous messages in OpenAI format
            listener: Receives deltas, stage events and tool results
            identity: Session identity for action tools
            cancel_event: Set to abandon the turn

        Returns:
            AgentTurnResult with the full answer text
        """
        listener = listener or AgentListener()
        cancel_event = cancel_event or threading.Event()

        tool_list, budget = self.build_tools(tenant_id, listener, identity)
        tools = {tool.id: tool for tool in tool_list}
        tool_defs = [tool.to_openai_tool() for tool in tool_list]
        messages = self.build_messages(question, history)

        answer_parts: List[str] = []
        result = AgentTurnResult(content="")

        for round_index in range(self.config.max_tool_rounds + 1):
            # The last round offers no tools so the model has to answer
            offer_tools = round_index < self.config.max_tool_rounds
            round_text: List[str] = []
            calls: List[ToolCallRequest] = []

            stream = self.llm_service.stream_chat(messages, tools=tool_defs if offer_tools else None)
            try:
                for event in stream:
                    if cancel_event.is_set():
                        break
                    if event.type == "delta":
                        round_text.append(event.content)
                        listener.on_delta(event.content)
                    elif event.type == "tool_calls":
                        calls = event.tool_calls
            finally:
                close = getattr(stream, "close", None)
                if close:
                    close()

            answer_parts.extend(round_text)
            if cancel_event.is_set():
                logger.info(f"Turn cancelled for tenant {tenant_id}")
                result.cancelled = True
                break
            if not calls:
                break

            messages.append({
                "role": "assistant",
                "content": "".join(round_text) or None,
                "tool_calls": [call.to_message() for call in calls],
            })

            for call in calls:
                tool_result = self._run_tool(tools, call)
                if cancel_event.is_set():
                    # Drop the in-flight result; the client is gone
                    result.cancelled = True
                    break
                listener.on_tool_result(call.name, tool_result)
                result.tool_results.append((call.name, tool_result))
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": tool_result.content,
                })

            if result.cancelled:
                break
        else:
            logger.warning(f"Agent hit the tool round cap for tenant {tenant_id}")

        result.content = "".join(answer_parts)
        result.queries = budget.queries
        return result
