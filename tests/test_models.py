import json

from concierge.memory.models import (
    ABSENT,
    Attachment,
    ChunkIndex,
    ChunkKind,
    ConversationChunk,
    Message,
    OpaquePayload,
    Role,
    ToolCall,
    estimate_tokens,
    estimate_total_tokens,
)

from conftest import BASE_TIME


def test_token_estimate_counts_text_and_tool_calls():
    assert estimate_tokens(Message(role=Role.USER, content="a" * 400)) == 100
    assert estimate_tokens(Message(role=Role.USER, content="")) == 1

    call = ToolCall(id="c1", name="lookup", arguments='{"x": "' + "y" * 100 + '"}')
    msg = Message(role=Role.ASSISTANT, content="", tool_calls=(call,))
    assert estimate_tokens(msg) == (len("lookup") + len(call.arguments)) // 4


def test_token_estimate_attachments():
    def tokens(att):
        return estimate_tokens(Message(role=Role.USER, content="", attachments=(att,)))

    assert tokens(Attachment(name="photo.jpg", mime_type="image/jpeg", size=204800)) == 100
    assert tokens(Attachment(name="photo.png", mime_type="image/png")) == 250
    assert tokens(Attachment(name="tiny.png", mime_type="image/png", size=10)) == 50
    assert tokens(Attachment(name="voice.ogg", mime_type="audio/ogg", size=99999)) == 1
    assert tokens(Attachment(name="song.mp3", mime_type="audio/mpeg")) == 200
    assert tokens(Attachment(name="notes.pdf", size=100_000)) == 3000
    assert tokens(Attachment(name="clip.mp4")) == 50
    assert tokens(Attachment(name="archive.zip")) == 50


def test_total_tokens():
    msgs = [Message(role=Role.USER, content="a" * 40), Message(role=Role.ASSISTANT, content="b" * 80)]
    assert estimate_total_tokens(msgs) == 30


def test_opaque_payload_keeps_exact_text():
    raw = '{"b":1,"a":[1.0,2,{"z":null}],"type":"reasoning.encrypted"}'
    msg = Message(role=Role.ASSISTANT, content="", reasoning=OpaquePayload(raw=raw),
                  tool_calls=(ToolCall(id="c1", name="lookup"),))

    restored = Message.from_dict(json.loads(json.dumps(msg.to_dict())))
    assert restored.reasoning.raw == raw
    assert restored == msg


def test_opaque_payload_absent_variant():
    assert OpaquePayload.from_value(None) is ABSENT
    assert ABSENT.is_absent
    assert ABSENT.value() is None

    payload = OpaquePayload.from_value([{"type": "reasoning.text", "text": "hmm"}])
    assert not payload.is_absent
    assert payload.value() == [{"type": "reasoning.text", "text": "hmm"}]


def test_message_round_trip_keeps_reply_reference_and_attachments():
    msg = Message(
        role=Role.USER,
        content="see this",
        timestamp=BASE_TIME,
        attachments=(Attachment(name="a.png", mime_type="image/png", size=12, path="/tmp/a.png"),),
        reply_to_id="earlier-id",
    )
    restored = Message.from_dict(msg.to_dict())
    assert restored == msg
    assert restored.reply_to_id == "earlier-id"


def test_chunk_index_orders_by_start():
    def chunk(cid, minutes, kind=ChunkKind.TEMPORARY):
        start = BASE_TIME.replace(minute=minutes)
        return ConversationChunk(cid, kind, start, start, 1500, 2, "s", f"{cid}.json")

    index = ChunkIndex(chunks=[chunk("b", 30), chunk("a", 10), chunk("c", 50, ChunkKind.CONSOLIDATED)])
    assert [c.id for c in index.ordered] == ["a", "b", "c"]
    assert index.get("c").kind == ChunkKind.CONSOLIDATED
    assert index.get("missing") is None
    assert index.get("a").size_label == "1k"
