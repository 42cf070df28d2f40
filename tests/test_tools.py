import json
import threading

import pytest

from concierge.core.errors import ToolArgumentError, UpstreamError
from concierge.core.tools import (
    REVEAL_TOOL,
    Dispatcher,
    GateState,
    ToolConfig,
    ToolError,
    ToolErrorKind,
    ToolParameter,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    register_builtin_tools,
    validate_arguments,
    visible_tools,
)
from concierge.memory.models import Role, ToolCall

from conftest import make_messages


def _noop(args):
    return "ok"


def _show(args):
    return "unlocked"


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(ToolSpec("lookup", "Look something up.", _noop,
                          parameters={"x": ToolParameter("string"), "limit": ToolParameter("integer")},
                          required=("x",)))
    reg.register(ToolSpec("send_email", "Send an email.", _noop, gated=True, feature="email:imap"))
    reg.register(ToolSpec("web_search", "Search the web.", _noop, feature="web_search"))
    reg.register(ToolSpec(REVEAL_TOOL, "Unlock gated tools.", _show))
    return reg


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

def test_visible_tools_follow_config_and_gate(registry):
    specs = registry.specs()
    plain = ToolConfig()
    assert visible_tools(plain, GateState(), specs) == {"lookup"}

    config = ToolConfig(email_backend="imap", web_search_enabled=True)
    assert visible_tools(config, GateState(), specs) == {"lookup", "web_search", REVEAL_TOOL}
    assert visible_tools(config, GateState(revealed=True), specs) == {"lookup", "web_search", "send_email"}


def test_visible_tools_is_pure(registry):
    config = ToolConfig(email_backend="imap")
    gate = GateState()
    first = visible_tools(config, gate, registry.specs())
    assert visible_tools(config, gate, registry.specs()) == first
    assert gate.revealed is False


def test_email_backend_must_match_and_disabled_tools_are_hidden(registry):
    gmail = ToolConfig(email_backend="gmail", web_search_enabled=True, disabled_tools=frozenset({"web_search"}))
    assert visible_tools(gmail, GateState(revealed=True), registry.specs()) == {"lookup"}


def test_schemas_only_cover_visible_tools(registry):
    dispatcher = Dispatcher(registry, ToolConfig())
    schemas = dispatcher.schemas(GateState())
    assert [s["function"]["name"] for s in schemas] == ["lookup"]
    params = schemas[0]["function"]["parameters"]
    assert params["required"] == ["x"]
    assert params["properties"]["limit"]["type"] == "integer"


def test_duplicate_registration_is_rejected(registry):
    with pytest.raises(ValueError):
        registry.register(ToolSpec("lookup", "again", _noop))


# ---------------------------------------------------------------------------
# Argument validation and single execution
# ---------------------------------------------------------------------------

def test_validate_arguments(registry):
    spec = registry.get("lookup")
    assert validate_arguments(spec, '{"x": "a", "limit": 3}') == {"x": "a", "limit": 3}
    for bad in ('{"limit": 3}', '{"x": null}', '{"x": 1}', '{"x": "a", "limit": true}', "[1]", "{oops"):
        with pytest.raises(ToolArgumentError):
            validate_arguments(spec, bad)
    assert validate_arguments(registry.get(REVEAL_TOOL), "") == {}


def test_missing_required_argument_never_reaches_handler():
    calls = []
    reg = ToolRegistry()
    reg.register(ToolSpec("lookup", "", lambda args: calls.append(args) or "ok",
                          parameters={"x": ToolParameter("string")}, required=("x",)))
    dispatcher = Dispatcher(reg, ToolConfig())

    outcome = dispatcher.execute("lookup", "{}", GateState())

    assert isinstance(outcome, ToolError)
    assert outcome.kind == ToolErrorKind.INVALID_ARGUMENTS
    assert "x" in outcome.message
    assert calls == []


def test_unknown_tool_and_handler_failure(registry):
    def explode(args):
        raise RuntimeError("disk on fire")

    registry.register(ToolSpec("explode", "", explode))
    dispatcher = Dispatcher(registry, ToolConfig())

    unknown = dispatcher.execute("nope", "{}", GateState())
    assert unknown.kind == ToolErrorKind.UNKNOWN_TOOL

    failed = dispatcher.execute("explode", "{}", GateState())
    assert failed.kind == ToolErrorKind.EXECUTION_FAILED
    assert "disk on fire" in failed.message


def test_gated_tool_blocked_until_revealed(registry):
    dispatcher = Dispatcher(registry, ToolConfig(email_backend="imap"))

    blocked = dispatcher.execute("send_email", "{}", GateState())
    assert blocked.kind == ToolErrorKind.NOT_AVAILABLE
    assert REVEAL_TOOL in blocked.message

    assert isinstance(dispatcher.execute("send_email", "{}", GateState(revealed=True)), ToolResult)

    reused = dispatcher.execute(REVEAL_TOOL, "{}", GateState(revealed=True))
    assert reused.kind == ToolErrorKind.NOT_AVAILABLE
    assert "already used" in reused.message


def test_error_renders_as_json():
    rendered = json.loads(ToolError(ToolErrorKind.BUDGET_EXCEEDED, "over the daily limit").render())
    assert rendered == {"error": "over the daily limit", "kind": "budget_exceeded"}


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------

def test_round_keeps_emitted_order():
    release = threading.Event()

    def slow(args):
        release.wait(timeout=5)
        return "slow done"

    def fast(args):
        release.set()
        return "fast done"

    reg = ToolRegistry()
    reg.register(ToolSpec("slow", "", slow))
    reg.register(ToolSpec("fast", "", fast))
    dispatcher = Dispatcher(reg, ToolConfig())

    result = dispatcher.execute_round(
        [ToolCall(id="a", name="slow"), ToolCall(id="b", name="fast")], GateState())

    assert [o.call.id for o in result.outcomes] == ["a", "b"]
    assert [o.content for o in result.outcomes] == ["slow done", "fast done"]


def test_round_runs_duplicate_ids_once(registry):
    calls = []
    registry.register(ToolSpec("count", "", lambda args: calls.append(1) or "counted"))
    dispatcher = Dispatcher(registry, ToolConfig())

    result = dispatcher.execute_round(
        [ToolCall(id="c1", name="count"), ToolCall(id="c1", name="count")], GateState())

    assert len(result.outcomes) == 1
    assert calls == [1]


def test_round_cancelled_before_start(registry):
    dispatcher = Dispatcher(registry, ToolConfig())
    cancel = threading.Event()
    cancel.set()

    result = dispatcher.execute_round([ToolCall(id="c1", name="lookup", arguments='{"x": "a"}')],
                                      GateState(), cancel)

    assert result.outcomes[0].error.kind == ToolErrorKind.CANCELLED


def test_reveal_opens_gate(registry):
    dispatcher = Dispatcher(registry, ToolConfig(email_backend="imap"))

    result = dispatcher.execute_round([ToolCall(id="r", name=REVEAL_TOOL)], GateState())

    assert result.outcomes[0].ok
    assert result.gate.revealed
    assert dispatcher.visible(result.gate) == {"lookup", "send_email"}


def test_refuse_round_answers_every_call_without_running(registry):
    dispatcher = Dispatcher(registry, ToolConfig())
    calls = [ToolCall(id="a", name="lookup"), ToolCall(id="b", name="nope")]

    result = dispatcher.refuse_round(calls, ToolErrorKind.BUDGET_EXCEEDED, "daily limit reached")

    messages = [o.to_message() for o in result.outcomes]
    assert [m.tool_call_id for m in messages] == ["a", "b"]
    assert all(m.role == Role.TOOL for m in messages)
    assert all(json.loads(m.content)["kind"] == "budget_exceeded" for m in messages)


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------

@pytest.fixture
def builtins(store):
    reg = ToolRegistry()
    register_builtin_tools(reg, store)
    return Dispatcher(reg, ToolConfig())


def test_builtins_visible_without_gated_tools(builtins):
    assert builtins.visible(GateState()) == {"view_conversation_chunk", "search_conversation_archive"}


def test_view_chunk_lists_and_reads(builtins, store, live):
    assert builtins.execute("view_conversation_chunk", "{}", GateState()).content == \
        "No archived conversation chunks yet."

    live.extend(make_messages(8))
    chunk = store.archive_if_needed(live)[0]

    listing = builtins.execute("view_conversation_chunk", "{}", GateState()).content
    assert chunk.id in listing
    assert chunk.summary in listing

    body = builtins.execute("view_conversation_chunk", json.dumps({"chunk_id": chunk.id}), GateState()).content
    assert "User: m000" in body
    assert "Assistant: m001" in body


def test_view_chunk_with_query_returns_excerpts(builtins, store, live, llm):
    live.extend(make_messages(8))
    chunk = store.archive_if_needed(live)[0]
    llm.completions.append(json.dumps({"excerpts": ["[User]: m000"]}))

    args = json.dumps({"chunk_id": chunk.id, "query": "what came first"})
    outcome = builtins.execute("view_conversation_chunk", args, GateState())

    assert json.loads(outcome.content) == {"chunkId": chunk.id, "excerpts": ["[User]: m000"]}
    assert "QUERY: what came first" in llm.complete_calls[-1]["user"]


def test_view_unknown_chunk_is_invalid_arguments(builtins):
    outcome = builtins.execute("view_conversation_chunk", '{"chunk_id": "ghost"}', GateState())
    assert outcome.kind == ToolErrorKind.INVALID_ARGUMENTS
    assert "ghost" in outcome.message


def test_search_archive_tool(builtins, store, live, llm):
    live.extend(make_messages(8))
    chunk = store.archive_if_needed(live)[0]
    llm.completions.append(json.dumps({"relevant_chunks": [{"chunkId": chunk.id, "relevance": "trip"}]}))

    outcome = builtins.execute("search_conversation_archive", '{"query": "the trip"}', GateState())

    assert json.loads(outcome.content) == {"relevant_chunks": [{"chunkId": chunk.id, "relevance": "trip"}]}


def test_search_archive_upstream_failure_is_execution_failed(builtins, store, live, llm):
    live.extend(make_messages(8))
    store.archive_if_needed(live)
    llm.complete_error = UpstreamError("boom", code="openai_500")

    outcome = builtins.execute("search_conversation_archive", '{"query": "x"}', GateState())

    assert outcome.kind == ToolErrorKind.EXECUTION_FAILED
