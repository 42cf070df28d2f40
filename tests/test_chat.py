import dataclasses
import json
import threading

import pytest

from concierge.core.chat import CANCELLED_REPLY, FAILURE_REPLY, ConciergeCore
from concierge.core.errors import TransientUpstreamError, UpstreamError
from concierge.core.state import TurnState
from concierge.core.tools import REVEAL_TOOL, ToolParameter, ToolSpec
from concierge.memory.models import ChunkKind, OpaquePayload, Role, ToolCall

from conftest import text_response, tool_response


@pytest.fixture
def lookups(core):
    """Registers a `lookup(x)` tool on the core and records its calls."""
    seen = []

    def lookup(args):
        seen.append(args["x"])
        return f"{args['x']} is 42"

    core.tools.register(ToolSpec("lookup", "Look up a value.", lookup,
                                 parameters={"x": ToolParameter("string")}, required=("x",)))
    return seen


def _roles(core):
    return [m.role for m in core.live.messages()]


def test_plain_question_and_answer(core, llm):
    llm.chat_responses.append(text_response("4", cost=0.0012))

    result = core.process_user_message("What's 2+2")

    assert result.reply == "4"
    assert result.state == TurnState.DONE
    assert result.rounds == 0
    messages = core.live.messages()
    assert [(m.role, m.content) for m in messages] == [(Role.USER, "What's 2+2"), (Role.ASSISTANT, "4")]
    assert core.budget.snapshot().today == pytest.approx(0.0012)
    assert llm.chat_calls[0]["messages"] == [{"role": "user", "content": "What's 2+2"}]


def test_single_tool_round(core, llm, lookups):
    llm.chat_responses.extend([
        tool_response(ToolCall(id="call_1", name="lookup", arguments='{"x": "x"}'), cost=0.001),
        text_response("x is 42.", cost=0.002),
    ])

    result = core.process_user_message("look up x")

    assert result.state == TurnState.DONE
    assert result.rounds == 1
    assert lookups == ["x"]
    assert _roles(core) == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
    call_msg, tool_msg = core.live.messages()[1:3]
    assert call_msg.tool_calls[0].id == "call_1"
    assert tool_msg.tool_call_id == "call_1"
    assert tool_msg.content == "x is 42"
    assert core.budget.snapshot().today == pytest.approx(0.003)
    assert result.cost_usd == pytest.approx(0.003)

    second = llm.chat_calls[1]["messages"]
    assert second[1]["tool_calls"][0]["function"] == {"name": "lookup", "arguments": '{"x": "x"}'}
    assert second[2] == {"role": "tool", "tool_call_id": "call_1", "content": "x is 42"}
    assert "lookup" in [t["function"]["name"] for t in llm.chat_calls[0]["tools"]]


def test_invalid_arguments_go_back_to_the_model(core, llm, lookups):
    llm.chat_responses.extend([
        tool_response(ToolCall(id="c1", name="lookup", arguments="{}")),
        tool_response(ToolCall(id="c2", name="lookup", arguments='{"x": "y"}')),
        text_response("y is 42."),
    ])

    result = core.process_user_message("look up y")

    assert result.state == TurnState.DONE
    assert result.rounds == 2
    assert lookups == ["y"]
    first_result = core.live.messages()[2]
    assert json.loads(first_result.content)["kind"] == "invalid_arguments"


def test_reasoning_is_echoed_with_the_tool_call(core, llm, lookups):
    details = [{"type": "reasoning.encrypted", "data": "abc=="}]
    llm.chat_responses.extend([
        tool_response(ToolCall(id="c1", name="lookup", arguments='{"x": "x"}'),
                      reasoning=OpaquePayload.from_value(details)),
        text_response("done"),
    ])

    core.process_user_message("look up x")

    assert llm.chat_calls[1]["messages"][1]["reasoning_details"] == details


def test_budget_exceeded_refuses_tools_and_finishes_without_them(settings, llm):
    core = ConciergeCore(dataclasses.replace(settings, spend_limit_daily_usd=1.0), llm)
    try:
        called = []
        core.tools.register(ToolSpec("lookup", "", lambda args: called.append(args) or "ok",
                                     parameters={"x": ToolParameter("string")}))
        core.budget.record_spend(1.0)
        llm.chat_responses.extend([
            tool_response(ToolCall(id="c1", name="lookup", arguments='{"x": "x"}')),
            text_response("I can't look that up right now."),
        ])

        result = core.process_user_message("look up x")

        assert result.state == TurnState.DONE
        assert called == []
        refused = core.live.messages()[2]
        assert json.loads(refused.content)["kind"] == "budget_exceeded"
        assert llm.chat_calls[1]["tools"] is None
    finally:
        core.shutdown()


def test_round_cap_fails_the_turn(settings, llm):
    core = ConciergeCore(dataclasses.replace(settings, max_tool_rounds=2), llm)
    try:
        for i in range(3):
            llm.chat_responses.append(tool_response(ToolCall(id=f"c{i}", name="view_conversation_chunk")))

        result = core.process_user_message("loop forever")

        assert result.state == TurnState.FAILED
        assert result.error == "round_cap"
        assert result.rounds == 2
        assert "2 rounds" in result.reply
        # user + two (call, result) pairs; the over-cap call is not kept
        assert len(core.live) == 5
    finally:
        core.shutdown()


def test_empty_model_reply_appends_nothing(core, llm):
    llm.chat_responses.append(text_response("   "))

    result = core.process_user_message("hello?")

    assert result.state == TurnState.DONE
    assert result.reply == ""
    assert _roles(core) == [Role.USER]


def test_transient_failure_keeps_user_message(core, llm):
    llm.chat_responses.append(TransientUpstreamError("timed out", code="openai_timeout"))

    result = core.process_user_message("hi")

    assert result.state == TurnState.FAILED
    assert result.error == "openai_timeout"
    assert _roles(core) == [Role.USER]


def test_rejected_request_fails_the_turn(core, llm):
    llm.chat_responses.append(UpstreamError("bad request", code="openai_400"))

    result = core.process_user_message("hi")

    assert result.state == TurnState.FAILED
    assert result.error == "openai_400"


def test_unexpected_error_fails_the_turn_and_next_turn_runs(core, llm):
    llm.chat_responses.extend([RuntimeError("boom"), text_response("hello again")])

    result = core.process_user_message("hi")

    assert result.state == TurnState.FAILED
    assert result.error == "internal"
    assert result.reply == FAILURE_REPLY
    assert _roles(core) == [Role.USER]

    assert core.process_user_message("still there?").state == TurnState.DONE


def test_broken_calendar_provider_is_left_out(settings, llm):
    def calendar():
        raise RuntimeError("calendar API down")

    core = ConciergeCore(settings, llm, calendar_context=calendar, email_context=lambda: "2 unread")
    try:
        llm.chat_responses.append(text_response("Morning!"))

        result = core.process_user_message("good morning")

        assert result.state == TurnState.DONE
        system = llm.chat_calls[0]["system"]
        assert "## CALENDAR" not in system
        assert "## EMAIL\n2 unread" in system
    finally:
        core.shutdown()


def test_empty_input_is_rejected(core, llm):
    with pytest.raises(ValueError):
        core.process_user_message("   ")
    assert len(core.live) == 0
    assert llm.chat_calls == []


def test_gate_resets_every_turn(settings, llm):
    core = ConciergeCore(settings, llm)
    try:
        core.tools.register(ToolSpec("delete_event", "", lambda args: "deleted", gated=True))
        llm.chat_responses.extend([
            tool_response(ToolCall(id="r1", name=REVEAL_TOOL)),
            text_response("unlocked"),
            text_response("next turn"),
        ])

        core.process_user_message("first")
        core.process_user_message("second")

        def names(call):
            return {t["function"]["name"] for t in call["tools"]}

        assert REVEAL_TOOL in names(llm.chat_calls[0])
        assert "delete_event" not in names(llm.chat_calls[0])
        assert "delete_event" in names(llm.chat_calls[1])
        assert REVEAL_TOOL not in names(llm.chat_calls[1])
        assert "delete_event" not in names(llm.chat_calls[2])
    finally:
        core.shutdown()


def test_turns_run_in_submission_order(core, llm):
    gate = threading.Event()

    def held():
        gate.wait(timeout=5)
        return text_response("one")

    llm.chat_responses.extend([held, text_response("two")])

    first = core.submit_user_message("1")
    second = core.submit_user_message("2")
    gate.set()

    assert first.result(timeout=5).reply == "one"
    assert second.result(timeout=5).reply == "two"
    assert [m.content for m in core.live.messages()] == ["1", "one", "2", "two"]


def test_stop_cancels_the_turn(core, llm):
    def stopping(args):
        core.stop()
        return "partial"

    core.tools.register(ToolSpec("slow_tool", "", stopping))
    llm.chat_responses.append(tool_response(ToolCall(id="c1", name="slow_tool")))

    result = core.process_user_message("do the slow thing")

    assert result.state == TurnState.CANCELLED
    assert result.reply == CANCELLED_REPLY
    assert len(llm.chat_calls) == 1
    assert core.stop() is False


def test_archival_and_consolidation_after_turns(core, llm):
    for i in range(3):
        llm.chat_responses.append(text_response("r" * 400))
        core.process_user_message(f"q{i} " + "q" * 400)

    chunks = core.store.list_summaries()
    assert [c.kind for c in chunks] == [ChunkKind.CONSOLIDATED, ChunkKind.TEMPORARY]
    assert core.live.token_count() < core.store.trigger_tokens

    history = []
    for chunk in chunks:
        history.extend(core.store.read_chunk_content(chunk.id))
    contents = [m.content for m in history + core.live.messages()]
    assert contents == [c for i in range(3) for c in (f"q{i} " + "q" * 400, "r" * 400)]
