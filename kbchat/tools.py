"""
Agent Tools Module

The capabilities the chat agent can call during a turn:
- SearchTool (search_data): tenant-scoped knowledge base search
- ActionTool: one per configured HTTP action
- DataGapTool (report_data_gap): records missing knowledge

Design Rationale:
- Every tool validates its own input and returns a ToolResult whose
  content is fed back to the model; refusals are content, not crashes
- BaseTool.run() turns any exception into content so a tool can never
  break the turn
- Per-turn QueryBudget caps and deduplicates searches (exact match)
- Action parameters are resolved into explicit tagged values
  (StringValue | NumberValue | BooleanValue) at call time
- Secrets are injected into headers just before the request and never
  returned to the model or logged
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from config.settings import get_settings, RetrievalConfig
from kbchat.errors import ActionExecutionError, ToolInputRejected
from kbchat.indexer import Indexer, SearchResult

logger = logging.getLogger(__name__)

VERIFIED_EMAIL_MARKER = "VERIFIED_EMAIL"
SECRET_PLACEHOLDER = "{{secret}}"


# ---------------------------------------------------------------------------
# Results and side effects
# ---------------------------------------------------------------------------


@dataclass
class ActionCall:
    """Audit record of one action execution."""

    action_id: str
    data: Dict[str, Any]
    response: str
    status_code: int
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "data": self.data,
            "response": self.response,
            "status_code": self.status_code,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DataGap:
    """A reported gap in the knowledge base."""

    title: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "description": self.description}


@dataclass
class SearchCall:
    """Record of one accepted search."""

    query: str
    results: List[SearchResult]

    def to_dict(self) -> Dict[str, Any]:
        return {"query": self.query, "results": [r.to_dict() for r in self.results]}


@dataclass
class ToolResult:
    """What a tool hands back to the agent loop."""

    content: str
    side_effect: Optional[Union[ActionCall, DataGap, SearchCall]] = None


# ---------------------------------------------------------------------------
# Tagged values
# ---------------------------------------------------------------------------


class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class NumberValue:
    value: Union[int, float]


@dataclass(frozen=True)
class BooleanValue:
    value: bool


ToolValue = Union[StringValue, NumberValue, BooleanValue]


def coerce_value(key: str, data_type: DataType, raw: Any) -> ToolValue:
    """
    Validate a raw argument against its declared type.

    Strings holding numbers or booleans are accepted for those types.

    Raises:
        ToolInputRejected: If the value does not fit the type
    """
    if raw is None:
        raise ToolInputRejected(f"Missing value for '{key}'.")

    if data_type == DataType.STRING:
        if isinstance(raw, (dict, list)):
            raise ToolInputRejected(f"'{key}' must be a string.")
        return StringValue(str(raw))

    if data_type == DataType.NUMBER:
        if isinstance(raw, bool):
            raise ToolInputRejected(f"'{key}' must be a number.")
        if isinstance(raw, (int, float)):
            return NumberValue(raw)
        try:
            text = str(raw).strip()
            return NumberValue(int(text) if re.fullmatch(r"-?\d+", text) else float(text))
        except ValueError:
            raise ToolInputRejected(f"'{key}' must be a number.")

    if isinstance(raw, bool):
        return BooleanValue(raw)
    if str(raw).strip().lower() in ("true", "false"):
        return BooleanValue(str(raw).strip().lower() == "true")
    raise ToolInputRejected(f"'{key}' must be a boolean.")


# ---------------------------------------------------------------------------
# Action definitions and session identity
# ---------------------------------------------------------------------------


def title_to_id(title: str) -> str:
    """Slug used as tool name: lowercase, dashes, [a-z0-9-] only."""
    slug = re.sub(r"[^a-z0-9-]", "", title.lower().replace(" ", "-"))
    return slug or "action"


@dataclass
class ActionItem:
    """
    One request parameter of an action.

    type "dynamic" values come from the model, "value" items are static.
    An item whose description mentions VERIFIED_EMAIL is derived from the
    session identity instead and is never exposed to the model.
    """

    key: str
    type: str = "dynamic"
    data_type: DataType = DataType.STRING
    description: str = ""
    value: Optional[str] = None

    @property
    def is_derived(self) -> bool:
        return VERIFIED_EMAIL_MARKER in (self.description or "")

    @property
    def is_dynamic(self) -> bool:
        return self.type == "dynamic" and not self.is_derived

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionItem":
        return cls(
            key=data["key"],
            type=data.get("type", "dynamic"),
            data_type=DataType(data.get("data_type", data.get("dataType", "string"))),
            description=data.get("description", ""),
            value=data.get("value"),
        )


@dataclass
class ActionDefinition:
    """A configured HTTP call the agent may make."""

    title: str
    description: str
    method: str
    url: str
    data: List[ActionItem] = field(default_factory=list)
    headers: List[ActionItem] = field(default_factory=list)
    require_email_verification: bool = False
    id: str = ""

    def __post_init__(self):
        self.method = self.method.upper()
        if not self.id:
            self.id = title_to_id(self.title)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionDefinition":
        return cls(
            id=data.get("id", ""),
            title=data["title"],
            description=data.get("description", ""),
            method=data.get("method", "GET"),
            url=data["url"],
            data=[ActionItem.from_dict(i) for i in data.get("data", [])],
            headers=[ActionItem.from_dict(i) for i in data.get("headers", [])],
            require_email_verification=data.get("require_email_verification", False),
        )


@dataclass
class SessionIdentity:
    """Identity facts supplied by the session collaborator."""

    email: Optional[str] = None
    email_verified_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None and bool(self.email)


SecretResolver = Callable[[ActionDefinition], Optional[str]]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class BaseTool(ABC):
    """
    Abstract base class for agent tools.

    All tools must provide:
    - id / description: shown to the model
    - parameters: JSON schema of the input
    - execute: do the work, may raise
    """

    id: str
    description: str

    @property
    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        pass

    def run(self, arguments: Dict[str, Any]) -> ToolResult:
        """Execute, converting every failure into content for the model."""
        try:
            return self.execute(arguments or {})
        except ToolInputRejected as e:
            logger.info(f"Tool {self.id} rejected input: {e}")
            return ToolResult(content=str(e))
        except Exception as e:
            logger.exception(f"Tool {self.id} failed")
            return ToolResult(content=f"The tool {self.id} failed: {e}. Tell the user it did not work.")

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class QueryBudget:
    """Ordered set of searches issued in one turn, with a capacity."""

    def __init__(self, capacity: int = 5):
        self.capacity = capacity
        self._queries: List[str] = []

    def __contains__(self, query: str) -> bool:
        return query in self._queries

    def __len__(self) -> int:
        return len(self._queries)

    @property
    def is_full(self) -> bool:
        return len(self._queries) >= self.capacity

    @property
    def queries(self) -> List[str]:
        return list(self._queries)

    def add(self, query: str) -> None:
        if query not in self._queries:
            self._queries.append(query)


class SearchTool(BaseTool):
    """Searches the tenant's knowledge base under the turn's query budget."""

    id = "search_data"
    description = "\n".join([
        "Search the knowledge base for information relevant to the user's question.",
        "Use descriptive queries of at least 4 words.",
        "Do not repeat a query you already made.",
    ])

    NO_RESULTS = (
        "No relevant information found. Don't answer the query. "
        "Inform that you don't know the answer."
    )
    BUDGET_EXHAUSTED = "Maximum number of queries reached. Now frame your answer."

    def __init__(
        self,
        indexer: Indexer,
        tenant_id: str,
        budget: Optional[QueryBudget] = None,
        config: Optional[RetrievalConfig] = None,
        on_pre_search: Optional[Callable[[str], None]] = None,
    ):
        self.indexer = indexer
        self.tenant_id = tenant_id
        self.config = config or get_settings().retrieval
        self.budget = budget or QueryBudget(self.config.max_queries)
        self.on_pre_search = on_pre_search

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
            },
            "required": ["query"],
        }

    def _too_short(self, query: str) -> bool:
        return (
            len(query) < self.config.min_query_chars
            or len(query.split()) < self.config.min_query_words
        )

    def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        query = str(arguments.get("query") or "")

        if query in self.budget:
            raise ToolInputRejected(f'The query "{query}" is already searched.')
        if self.budget.is_full:
            raise ToolInputRejected(self.BUDGET_EXHAUSTED)
        if self._too_short(query):
            raise ToolInputRejected(
                f'The query "{query}" is too short. Search again with a longer query.'
            )

        if self.on_pre_search:
            self.on_pre_search(query)

        hits = self.indexer.search_text(self.tenant_id, query, top_k=self.config.top_k)
        results = self.indexer.process(query, hits, min_score=self.config.min_score)
        self.budget.add(query)

        logger.info(f"Search '{query}' returned {len(results)} results for {self.tenant_id}")

        if not results:
            return ToolResult(content=self.NO_RESULTS, side_effect=SearchCall(query, []))

        payload = json.dumps([r.to_llm_dict() for r in results])
        return ToolResult(
            content=f"<context>\n{payload}\n</context>",
            side_effect=SearchCall(query, results),
        )


class ActionTool(BaseTool):
    """Calls one configured HTTP action on behalf of the user."""

    VERIFY_EMAIL = (
        "User needs to verify the email. Use the verify-email rich block to verify the email."
    )

    def __init__(
        self,
        action: ActionDefinition,
        identity: Optional[SessionIdentity] = None,
        secret_resolver: Optional[SecretResolver] = None,
        client: Optional[httpx.Client] = None,
        on_pre_action: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ):
        self.action = action
        self.id = action.id
        self.description = action.description or action.title
        self.identity = identity or SessionIdentity()
        self.secret_resolver = secret_resolver
        self.on_pre_action = on_pre_action
        self._client = client
        self._timeout = timeout or get_settings().connectors.http_timeout

    @property
    def parameters(self) -> Dict[str, Any]:
        properties = {}
        for item in self.action.data + self.action.headers:
            if item.is_dynamic:
                properties[item.key] = {
                    "type": item.data_type.value,
                    "description": item.description,
                }
        return {
            "type": "object",
            "properties": properties,
            "required": list(properties),
        }

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=True)
        return self._client

    def _resolve(self, item: ActionItem, arguments: Dict[str, Any]) -> ToolValue:
        if item.is_derived:
            if self.identity.email_verified_at is None:
                raise ToolInputRejected("Email is not verified!")
            if not self.identity.email:
                raise ToolInputRejected("Email is not entered!")
            return StringValue(self.identity.email)
        if item.type == "dynamic":
            return coerce_value(item.key, item.data_type, arguments.get(item.key))
        return coerce_value(item.key, item.data_type, item.value)

    def _inject_secret(self, value: str) -> str:
        if SECRET_PLACEHOLDER not in value:
            return value
        secret = self.secret_resolver(self.action) if self.secret_resolver else None
        if not secret:
            raise ToolInputRejected(f"The action {self.action.title} is missing its secret.")
        return value.replace(SECRET_PLACEHOLDER, secret)

    def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        if self.action.require_email_verification and not self.identity.is_verified:
            raise ToolInputRejected(self.VERIFY_EMAIL)

        # Resolve everything before any network call so failures stay closed
        data = {item.key: self._resolve(item, arguments).value for item in self.action.data}
        headers = {
            item.key: str(self._resolve(item, arguments).value)
            for item in self.action.headers
        }

        if self.on_pre_action:
            self.on_pre_action(self.action.title)

        headers = {key: self._inject_secret(value) for key, value in headers.items()}
        call_input = {k: arguments.get(k) for k in self.parameters["properties"]}

        logger.info(f"Calling action {self.action.id}: {self.action.method} {self.action.url}")
        try:
            response = self._send(data, headers)
        except ActionExecutionError as e:
            logger.warning(f"Action {self.action.id} failed: {e}")
            return ToolResult(
                content=f"The action failed: {e}. {e.body}".strip(),
                side_effect=ActionCall(
                    action_id=self.action.id,
                    data=call_input,
                    response=e.body,
                    status_code=e.status_code or 0,
                ),
            )

        return ToolResult(
            content=response.text,
            side_effect=ActionCall(
                action_id=self.action.id,
                data=call_input,
                response=response.text,
                status_code=response.status_code,
            ),
        )

    def _send(self, data: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        client = self._get_client()
        try:
            if self.action.method == "GET":
                response = client.request("GET", self.action.url, params=data, headers=headers)
            else:
                response = client.request(self.action.method, self.action.url, json=data, headers=headers)
        except httpx.HTTPError as e:
            raise ActionExecutionError(f"request error ({type(e).__name__})") from e

        if response.status_code >= 400:
            raise ActionExecutionError(
                f"status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response


class DataGapTool(BaseTool):
    """Lets the agent report questions the knowledge base cannot answer."""

    id = "report_data_gap"
    description = "\n".join([
        "Report a gap or missing information in the knowledge base.",
        "Use this when search_data returned results but they don't match or answer the user's query.",
        "Do NOT use this if search_data returned no results.",
        "Do NOT use this for questions unrelated to the knowledge base topic.",
    ])

    SUCCESS = "Data gap reported successfully. Thank you for the feedback."

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Short title of the missing information"},
                "description": {"type": "string", "description": "What was asked and what is missing"},
            },
            "required": ["title", "description"],
        }

    def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        gap = DataGap(
            title=str(arguments.get("title") or ""),
            description=str(arguments.get("description") or ""),
        )
        logger.info(f"Data gap reported: {gap.title}")
        return ToolResult(content=self.SUCCESS, side_effect=gap)
