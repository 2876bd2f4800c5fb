"""
Chat Server Module

FastAPI application exposing the engine:
- GET  /health
- POST /api/knowledge-groups                 register a knowledge group
- GET  /api/knowledge-groups/{id}            status and progress
- POST /api/knowledge-groups/{id}/process    ingest in the background
- POST /api/search                           tenant-scoped retrieval
- WS   /ws                                   streamed chat

Every websocket message is an envelope {"type", "data"}. Client to server:
`join-room` and `ask`. Server to client: `connected`, `query-message`,
`stage`, `llm-chunk` and `error`.

Threads belong to the tenant that first joins or asks on them; other
tenants get `Thread not found.` and never receive the thread's
broadcasts. Idle threads are pruned by a background task started in the
app lifespan.

The agent is synchronous; each turn runs in the default executor and its
listener callbacks are bridged into an asyncio.Queue with
loop.call_soon_threadsafe, which the socket task drains.
"""

import asyncio
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from config.settings import get_settings, Settings
from kbchat.agent import AgentListener, AgentTurnResult, ChatAgent
from kbchat.connectors import GroupStatus, KnowledgeGroup
from kbchat.errors import ThreadAccessError
from kbchat.ingestion import IngestionRunner, InMemoryKnowledgeStore, KnowledgeStore
from kbchat.memory import ThreadManager, ThreadMemory
from kbchat.tools import ActionCall, DataGap, SessionIdentity

logger = logging.getLogger(__name__)

QUESTION_TOO_LONG = "Question too long. Please shorten it."
SOMETHING_WENT_WRONG = "Something went wrong! Please refresh and try again."
NOT_ENOUGH_CREDITS = "Not enough credits. Contact the owner!"
ALREADY_ASKING = "A question is already being answered. Please wait."
THREAD_NOT_FOUND = "Thread not found."


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class AskData(BaseModel):
    query: str
    thread_id: Optional[str] = None


class JoinRoomData(BaseModel):
    thread_id: str


class SearchRequest(BaseModel):
    tenant_id: str
    query: str
    top_k: Optional[int] = None
    top_n: Optional[int] = None
    min_score: Optional[float] = None


class SearchHit(BaseModel):
    locator: str
    content: str
    score: float
    fetch_id: str
    title: Optional[str] = None


class SearchResponse(BaseModel):
    results: List[SearchHit]


class KnowledgeGroupRequest(BaseModel):
    id: str
    scrape_id: str
    type: str
    title: str = ""
    url: Optional[str] = None
    urls: List[str] = Field(default_factory=list)
    api_key: Optional[str] = None
    email: Optional[str] = None
    host: Optional[str] = None
    include_url: Optional[str] = None
    skip_page_regex: Optional[str] = None
    skip_issue_statuses: Optional[str] = None
    skip_project_statuses: Optional[str] = None
    issue_states: Optional[str] = None
    match_prefix: bool = True
    page_limit: Optional[int] = None
    text: Optional[str] = None


def make_envelope(kind: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"type": kind, "data": data or {}}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class ConnectedSession:
    """One websocket connection and its in-flight turn."""

    id: str
    websocket: WebSocket
    tenant_id: str
    thread_ids: set = field(default_factory=set)
    busy: bool = False
    cancel_event: Optional[threading.Event] = None
    task: Optional[asyncio.Task] = None


class SessionRegistry:
    """
    Live websocket sessions, owned by the app.

    Sessions are added on connect and removed on disconnect; removal
    cancels the session's in-flight turn.
    """

    def __init__(self):
        self._sessions: Dict[str, ConnectedSession] = {}

    def add(self, websocket: WebSocket, tenant_id: str) -> ConnectedSession:
        session = ConnectedSession(id=str(uuid.uuid4()), websocket=websocket, tenant_id=tenant_id)
        self._sessions[session.id] = session
        logger.info(f"Session {session.id} connected (tenant {tenant_id})")
        return session

    def remove(self, session_id: str) -> Optional[ConnectedSession]:
        session = self._sessions.pop(session_id, None)
        if session and session.cancel_event:
            session.cancel_event.set()
        if session:
            logger.info(f"Session {session_id} disconnected")
        return session

    def get(self, session_id: str) -> Optional[ConnectedSession]:
        return self._sessions.get(session_id)

    def join(self, session: ConnectedSession, thread_id: str) -> None:
        session.thread_ids.add(thread_id)

    def in_thread(self, thread_id: str, tenant_id: Optional[str] = None) -> List[ConnectedSession]:
        return [
            s for s in self._sessions.values()
            if thread_id in s.thread_ids and (tenant_id is None or s.tenant_id == tenant_id)
        ]

    async def send(self, session: ConnectedSession, envelope: Dict[str, Any]) -> bool:
        try:
            await session.websocket.send_json(envelope)
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Could not send to session {session.id}: {e}")
            return False

    async def broadcast(self, thread_id: str, envelope: Dict[str, Any], tenant_id: Optional[str] = None) -> int:
        """Send an envelope to every session of tenant_id joined to a thread."""
        sent = 0
        for session in self.in_thread(thread_id, tenant_id=tenant_id):
            if await self.send(session, envelope):
                sent += 1
        return sent

    def __len__(self) -> int:
        return len(self._sessions)


class QueueListener(AgentListener):
    """Forwards agent callbacks from the executor thread into an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        self.loop = loop
        self.queue = queue

    def _put(self, envelope: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, envelope)

    def on_delta(self, content: str) -> None:
        self._put(make_envelope("llm-chunk", {"content": content}))

    def on_stage(self, query: Optional[str] = None, action: Optional[str] = None) -> None:
        data: Dict[str, Any] = {"stage": "tool-call"}
        if query:
            data["query"] = query
        if action:
            data["action"] = action
        self._put(make_envelope("stage", data))


def answer_metadata(result: AgentTurnResult) -> Dict[str, Any]:
    """Side effects of a turn in storable form."""
    return {
        "queries": result.queries,
        "actions": [e.to_dict() for e in result.side_effects if isinstance(e, ActionCall)],
        "data_gaps": [e.to_dict() for e in result.side_effects if isinstance(e, DataGap)],
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    agent: ChatAgent,
    runner: Optional[IngestionRunner] = None,
    groups: Optional[List[KnowledgeGroup]] = None,
    store: Optional[KnowledgeStore] = None,
    threads: Optional[ThreadManager] = None,
    has_budget: Optional[Callable[[str], bool]] = None,
    identity_provider: Optional[Callable[[str], Optional[SessionIdentity]]] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        agent: ChatAgent answering questions
        runner: IngestionRunner for knowledge group processing
        groups: Knowledge groups known at startup
        store: KnowledgeStore for ingestion runs
        threads: ThreadManager holding conversation history
        has_budget: Credit gate, called with the tenant id
        identity_provider: Returns the SessionIdentity for a thread id
        settings: Optional settings (default: global settings)

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()
    store = store or InMemoryKnowledgeStore()
    threads = threads or ThreadManager()
    registry = SessionRegistry()
    known_groups: Dict[str, KnowledgeGroup] = {g.id: g for g in groups or []}

    def budget_ok(tenant_id: str) -> bool:
        return has_budget(tenant_id) if has_budget else True

    def prune_threads() -> int:
        return threads.cleanup_old_threads(max_age_hours=settings.chat.thread_max_age_hours)

    async def prune_threads_forever() -> None:
        while True:
            await asyncio.sleep(settings.chat.thread_cleanup_seconds)
            try:
                prune_threads()
            except Exception:
                logger.exception("Thread cleanup failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup = asyncio.create_task(prune_threads_forever())
        try:
            yield
        finally:
            cleanup.cancel()

    app = FastAPI(title="kbchat", lifespan=lifespan)
    app.state.registry = registry
    app.state.threads = threads
    app.state.store = store
    app.state.groups = known_groups
    app.state.prune_threads = prune_threads

    @app.get("/health")
    def health():
        return {"status": "ok", "sessions": len(registry)}

    @app.post("/api/knowledge-groups")
    def register_group(req: KnowledgeGroupRequest):
        group = KnowledgeGroup(**req.model_dump())
        known_groups[group.id] = group
        return group.to_dict()

    @app.get("/api/knowledge-groups/{group_id}")
    def group_status(group_id: str):
        group = known_groups.get(group_id)
        if group is None:
            raise HTTPException(status_code=404, detail="Knowledge group not found")
        data = group.to_dict()
        progress = getattr(store, "progress", {}).get(group_id)
        data["progress"] = progress.to_dict() if progress else None
        return data

    @app.post("/api/knowledge-groups/{group_id}/process", status_code=202)
    def process_group(group_id: str, background_tasks: BackgroundTasks):
        if runner is None:
            raise HTTPException(status_code=503, detail="Ingestion is not configured")
        group = known_groups.get(group_id)
        if group is None:
            raise HTTPException(status_code=404, detail="Knowledge group not found")
        if group.status == GroupStatus.PROCESSING:
            raise HTTPException(status_code=409, detail="Knowledge group is already processing")

        # Marked before queueing; runner.run sets it again when it starts
        group.status = GroupStatus.PROCESSING
        store.set_status(group, GroupStatus.PROCESSING)
        background_tasks.add_task(
            runner.run, group, store, lambda: budget_ok(group.scrape_id)
        )
        logger.info(f"Queued knowledge group {group_id} for processing")
        return {"id": group_id, "status": "queued"}

    @app.post("/api/search", response_model=SearchResponse)
    def search(req: SearchRequest):
        indexer = agent.indexer
        hits = indexer.search_text(req.tenant_id, req.query, top_k=req.top_k)
        results = indexer.process(req.query, hits, min_score=req.min_score, top_n=req.top_n)
        return SearchResponse(results=[SearchHit(**r.to_dict()) for r in results])

    async def enter_thread(session: ConnectedSession, thread_id: str) -> Optional[ThreadMemory]:
        """Join a thread owned by the session's tenant, claiming it if new."""
        try:
            memory = threads.get_thread(thread_id, tenant_id=session.tenant_id)
        except ThreadAccessError:
            await registry.send(session, make_envelope("error", {"message": THREAD_NOT_FOUND}))
            return None
        registry.join(session, thread_id)
        return memory

    async def answer(session: ConnectedSession, ask: AskData, thread_id: str, memory: ThreadMemory) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        cancel_event = threading.Event()
        session.cancel_event = cancel_event
        tenant_id = session.tenant_id

        history = memory.get_messages_for_llm(limit=settings.chat.history_messages)
        question = memory.add_message("user", ask.query)
        await registry.broadcast(thread_id, make_envelope("query-message", question.to_dict()), tenant_id=tenant_id)

        identity = identity_provider(thread_id) if identity_provider else None
        listener = QueueListener(loop, queue)

        future = loop.run_in_executor(
            None,
            lambda: agent.run_turn(
                session.tenant_id,
                ask.query,
                history=history,
                listener=listener,
                identity=identity,
                cancel_event=cancel_event,
            ),
        )
        future.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                envelope = await queue.get()
                if envelope is None:
                    break
                await registry.broadcast(thread_id, envelope, tenant_id=tenant_id)

            try:
                result = future.result()
            except Exception:
                logger.exception(f"Turn failed on thread {thread_id}")
                await registry.send(session, make_envelope("error", {"message": SOMETHING_WENT_WRONG}))
                return

            if result.cancelled:
                logger.info(f"Discarded cancelled turn on thread {thread_id}")
                return

            reply = memory.add_message("assistant", result.content, metadata=answer_metadata(result))
            await registry.broadcast(
                thread_id,
                make_envelope("llm-chunk", {"end": True, "content": "", "message": reply.to_dict()}),
                tenant_id=tenant_id,
            )
        finally:
            session.busy = False
            session.cancel_event = None

    async def handle_ask(session: ConnectedSession, data: Dict[str, Any]) -> None:
        try:
            ask = AskData.model_validate(data)
        except ValidationError:
            await registry.send(session, make_envelope("error", {"message": "Invalid ask message."}))
            return

        if session.busy:
            await registry.send(session, make_envelope("error", {"message": ALREADY_ASKING}))
            return
        if not ask.query.strip():
            return
        if len(ask.query) > settings.chat.max_question_length:
            await registry.send(session, make_envelope("error", {"message": QUESTION_TOO_LONG}))
            return
        if not budget_ok(session.tenant_id):
            await registry.send(session, make_envelope("error", {"message": NOT_ENOUGH_CREDITS}))
            return

        thread_id = ask.thread_id or str(uuid.uuid4())
        memory = await enter_thread(session, thread_id)
        if memory is None:
            return
        session.busy = True
        session.task = asyncio.create_task(answer(session, ask, thread_id, memory))

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket, tenant_id: str = "default"):
        await websocket.accept()
        session = registry.add(websocket, tenant_id)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    envelope = Envelope.model_validate_json(raw)
                except ValidationError:
                    await registry.send(session, make_envelope("error", {"message": "Invalid message."}))
                    continue

                if envelope.type == "join-room":
                    try:
                        join = JoinRoomData.model_validate(envelope.data)
                    except ValidationError:
                        await registry.send(session, make_envelope("error", {"message": "Invalid message."}))
                        continue
                    if await enter_thread(session, join.thread_id) is not None:
                        await registry.send(session, make_envelope("connected", {"message": "Connected"}))
                elif envelope.type == "ask":
                    await handle_ask(session, envelope.data)
                else:
                    await registry.send(
                        session, make_envelope("error", {"message": f"Unknown message type: {envelope.type}"})
                    )
        except WebSocketDisconnect:
            pass
        finally:
            registry.remove(session.id)

    return app
