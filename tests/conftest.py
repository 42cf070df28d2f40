"""
Shared pytest fixtures for concierge tests.

Provides:
- Settings pointing at a per-test data dir (small chunk size)
- ScriptedLLM: replays queued chat responses and summary completions
- Chunk store / live window / core fixtures built on top of them
"""

import os
import tempfile

# Keep log files out of the source tree; must be set before concierge imports
os.environ.setdefault("CONCIERGE_LOG_DIR", tempfile.mkdtemp(prefix="concierge-test-logs-"))

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from concierge.clients.openai_client import Completion, LLMResponse, Usage
from concierge.config.settings import Settings
from concierge.core.chat import ConciergeCore
from concierge.memory.chunk_store import ChunkStore
from concierge.memory.db import init_db
from concierge.memory.live_window import LiveWindow
from concierge.memory.models import ABSENT, Message, OpaquePayload, Role, ToolCall
from concierge.memory.summarizer import Summarizer

DEFAULT_SUMMARY = '{"summary": "Discussed things.", "key_topics": ["things"]}'
BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class ScriptedLLM:
    """Stands in for LLMClient with queued answers."""

    def __init__(self) -> None:
        self.chat_responses: List[Any] = []
        self.completions: List[Any] = []
        self.complete_error: Optional[Exception] = None
        self.chat_calls: List[Dict[str, Any]] = []
        self.complete_calls: List[Dict[str, Any]] = []

    def chat(self, system_prompt, messages, tools=None, reasoning_effort=None) -> LLMResponse:
        self.chat_calls.append({"system": system_prompt, "messages": messages, "tools": tools})
        if not self.chat_responses:
            raise AssertionError("ScriptedLLM ran out of chat responses")
        item = self.chat_responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item()
        return item

    def complete(self, system_prompt, user_prompt, max_tokens=2000) -> Completion:
        self.complete_calls.append({"system": system_prompt, "user": user_prompt})
        if self.complete_error is not None:
            raise self.complete_error
        if not self.completions:
            return Completion(text=DEFAULT_SUMMARY)
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item if isinstance(item, Completion) else Completion(text=item)


def text_response(text: str, cost: Optional[float] = None) -> LLMResponse:
    return LLMResponse(text=text, usage=Usage(cost_usd=cost))


def tool_response(*calls: ToolCall, cost: Optional[float] = None,
                  reasoning: OpaquePayload = ABSENT, text: str = "") -> LLMResponse:
    return LLMResponse(text=text, tool_calls=tuple(calls), reasoning=reasoning, usage=Usage(cost_usd=cost))


def make_messages(count: int, chars: int = 200, start: datetime = BASE_TIME) -> List[Message]:
    """Alternating user/assistant messages of `chars` characters (chars // 4 tokens each)."""
    messages = []
    for i in range(count):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        body = f"m{i:03d} " + "x" * (chars - 5)
        messages.append(Message(role=role, content=body[:chars], timestamp=start + timedelta(minutes=i)))
    return messages


@pytest.fixture
def settings(tmp_path) -> Settings:
    # chunk_size below the env floor on purpose: tests build the dataclass directly
    return Settings(
        openai_api_key="test-key",
        data_dir=str(tmp_path / "data"),
        chunk_size=100,
        archive_multiplier=2,
        consolidation_group_size=4,
        recovery_attempts=2,
    )


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def live(settings) -> LiveWindow:
    init_db(settings.db_path)
    return LiveWindow(settings.db_path)


@pytest.fixture
def store(settings, llm, live) -> ChunkStore:
    return ChunkStore(
        settings.db_path,
        settings.archive_dir,
        Summarizer(llm),
        chunk_size=settings.chunk_size,
        archive_multiplier=settings.archive_multiplier,
        recovery_policy=settings.recovery_policy,
        recovery_attempts=settings.recovery_attempts,
        sleep=lambda _s: None,
    )


@pytest.fixture
def core(settings, llm):
    c = ConciergeCore(settings, llm)
    yield c
    c.shutdown()
