# concierge/api/server.py
"""
FastAPI server for the concierge core:

- /chat              : one user turn (queued behind any turn in flight)
- /stop              : cancel the turn in flight
- /archive/*         : read and search the conversation archive
- /spend             : today's and this month's LLM spend
- /health            : basic health check

The core is built lazily on first use and shared by all requests; tests
swap it through app.dependency_overrides[get_core].
"""

import threading
import time
from typing import List, Optional
import uuid

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from concierge.config.settings import load_settings
from concierge.core.chat import ConciergeCore, create_core
from concierge.core.errors import ChunkNotFoundError, StorageCorruptionError, UpstreamError
from concierge.memory.models import ConversationChunk, Message
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Concierge Core API",
    description="Local API for the personal assistant core (turn loop, archive, spend).",
    version="1.0.0",
)

_core: Optional[ConciergeCore] = None
_core_lock = threading.Lock()


def get_core() -> ConciergeCore:
    global _core
    with _core_lock:
        if _core is None:
            _core = create_core(load_settings())
        return _core


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User message in plain text.")
    reply_to_id: Optional[str] = Field(default=None, description="Id of the message being replied to.")


class ChatResponse(BaseModel):
    reply: str
    state: str
    rounds: int
    cost_usd: float
    error: Optional[str] = None


class StopResponse(BaseModel):
    stopped: bool


class ChunkResponse(BaseModel):
    id: str
    kind: str
    start: str
    end: str
    token_count: int
    message_count: int
    summary: str
    unavailable: bool = False


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    timestamp: str
    tool_call_id: Optional[str] = None
    tool_calls: List[str] = Field(default_factory=list)


class ChunkContentResponse(BaseModel):
    chunk: ChunkResponse
    messages: List[MessageResponse]


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)


class SearchMatchResponse(BaseModel):
    chunk_id: str
    relevance: str
    summary: str


class SpendResponse(BaseModel):
    today_usd: float
    month_usd: float
    daily_limit_usd: Optional[float]
    monthly_limit_usd: Optional[float]
    per_turn_limit_usd: float


def _chunk_response(chunk: ConversationChunk) -> ChunkResponse:
    return ChunkResponse(
        id=chunk.id,
        kind=chunk.kind.value,
        start=chunk.start.isoformat(),
        end=chunk.end.isoformat(),
        token_count=chunk.token_count,
        message_count=chunk.message_count,
        summary=chunk.summary,
        unavailable=chunk.unavailable,
    )


def _message_response(msg: Message) -> MessageResponse:
    return MessageResponse(
        id=msg.id,
        role=msg.role.value,
        content=msg.content,
        timestamp=msg.timestamp.isoformat(),
        tool_call_id=msg.tool_call_id,
        tool_calls=[c.name for c in msg.tool_calls],
    )


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/chat", response_model=ChatResponse)
def chat(req: ChatRequest, core: ConciergeCore = Depends(get_core)) -> ChatResponse:
    """
    Run one turn. Failed and cancelled turns still answer 200 with a
    user-facing reply; `state` tells them apart.
    """
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    logger.info("[chat] request_id=%s message_len=%d", request_id, len(req.message))

    try:
        result = core.process_user_message(req.message, reply_to_id=req.reply_to_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    latency_ms = int((time.monotonic() - start_time) * 1000)
    logger.info("[chat] request_id=%s state=%s rounds=%d latency_ms=%d",
                request_id, result.state.value, result.rounds, latency_ms)
    return ChatResponse(
        reply=result.reply,
        state=result.state.value,
        rounds=result.rounds,
        cost_usd=result.cost_usd,
        error=result.error,
    )


@app.post("/stop", response_model=StopResponse)
def stop(core: ConciergeCore = Depends(get_core)) -> StopResponse:
    return StopResponse(stopped=core.stop())


@app.get("/health")
def health_check() -> dict:
    """
    Very simple health check endpoint.
    """
    return {"status": "ok", "core_ready": _core is not None}


# ---------------------------------------------------------------------------
# Archive endpoints
# ---------------------------------------------------------------------------

@app.get("/archive/chunks", response_model=List[ChunkResponse])
def list_chunks(core: ConciergeCore = Depends(get_core)) -> List[ChunkResponse]:
    """
    All archived chunks, oldest first (summaries only).
    """
    return [_chunk_response(c) for c in core.store.list_summaries()]


@app.get("/archive/chunks/{chunk_id}", response_model=ChunkContentResponse)
def read_chunk(chunk_id: str, core: ConciergeCore = Depends(get_core)) -> ChunkContentResponse:
    chunk = core.store.get(chunk_id)
    try:
        messages = core.store.read_chunk_content(chunk_id)
    except ChunkNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageCorruptionError as e:
        logger.error("[archive] chunk_id=%s unreadable: %s", chunk_id, e)
        raise HTTPException(status_code=500, detail="Archived content for this chunk is unavailable.")
    return ChunkContentResponse(
        chunk=_chunk_response(chunk),
        messages=[_message_response(m) for m in messages],
    )


@app.post("/archive/search", response_model=List[SearchMatchResponse])
def search_archive(req: SearchRequest, core: ConciergeCore = Depends(get_core)) -> List[SearchMatchResponse]:
    """
    Candidate chunks for a query, judged from summaries only.
    """
    try:
        matches = core.store.search(req.query)
    except UpstreamError as e:
        logger.error("[archive] search failed: %s", e)
        raise HTTPException(status_code=502, detail="The model provider is unavailable right now.")

    summaries = {c.id: c.summary for c in core.store.list_summaries()}
    return [
        SearchMatchResponse(chunk_id=m.chunkId, relevance=m.relevance, summary=summaries.get(m.chunkId, ""))
        for m in matches
    ]


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------

@app.get("/spend", response_model=SpendResponse)
def spend(core: ConciergeCore = Depends(get_core)) -> SpendResponse:
    snap = core.budget.snapshot()
    limits = core.budget.limits
    return SpendResponse(
        today_usd=snap.today,
        month_usd=snap.month,
        daily_limit_usd=limits.daily,
        monthly_limit_usd=limits.monthly,
        per_turn_limit_usd=limits.per_turn,
    )
