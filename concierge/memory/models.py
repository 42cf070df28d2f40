# concierge/memory/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Tuple
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChunkKind(str, Enum):
    TEMPORARY = "temporary"        # one chunk_size slice of the live window
    CONSOLIDATED = "consolidated"  # a group of temporary chunks merged


@dataclass(frozen=True)
class OpaquePayload:
    """
    Any JSON value handed to us by the model that must be echoed back untouched
    (e.g. reasoning traces). `raw` holds the exact serialized text; None is the
    single absent/null variant.
    """
    raw: Optional[str] = None

    @property
    def is_absent(self) -> bool:
        return self.raw is None

    @classmethod
    def from_value(cls, value: Any) -> "OpaquePayload":
        if value is None:
            return ABSENT
        return cls(raw=json.dumps(value, ensure_ascii=False, separators=(",", ":")))

    def value(self) -> Any:
        if self.raw is None:
            return None
        return json.loads(self.raw)


ABSENT = OpaquePayload()


@dataclass(frozen=True)
class Attachment:
    name: str
    mime_type: str = "application/octet-stream"
    size: Optional[int] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "mime_type": self.mime_type, "size": self.size, "path": self.path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            name=data["name"],
            mime_type=data.get("mime_type") or "application/octet-stream",
            size=data.get("size"),
            path=data.get("path"),
        )


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"   # JSON text exactly as emitted by the model

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments") or "{}")


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)
    attachments: Tuple[Attachment, ...] = ()
    reply_to_id: Optional[str] = None       # id of the cited message, never a copy of it
    tool_calls: Tuple[ToolCall, ...] = ()   # set on assistant tool-call messages
    tool_call_id: Optional[str] = None      # set on tool results
    reasoning: OpaquePayload = ABSENT

    @property
    def is_tool_call(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "attachments": [a.to_dict() for a in self.attachments],
            "reply_to_id": self.reply_to_id,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "tool_call_id": self.tool_call_id,
            "reasoning": self.reasoning.raw,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=data.get("content") or "",
            timestamp=parse_ts(data["timestamp"]),
            attachments=tuple(Attachment.from_dict(a) for a in data.get("attachments") or []),
            reply_to_id=data.get("reply_to_id"),
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls") or []),
            tool_call_id=data.get("tool_call_id"),
            reasoning=OpaquePayload(raw=data.get("reasoning")),
        )


@dataclass(frozen=True)
class ConversationChunk:
    id: str
    kind: ChunkKind
    start: datetime
    end: datetime
    token_count: int
    message_count: int
    summary: str
    raw_content_file: str
    unavailable: bool = False   # raw content missing or unreadable; skipped by consolidation

    @property
    def size_label(self) -> str:
        if self.token_count >= 1000:
            return f"{self.token_count // 1000}k"
        return str(self.token_count)


@dataclass(frozen=True)
class PendingChunk:
    id: str
    start: datetime
    end: datetime
    token_count: int
    message_count: int
    raw_content_file: str
    created_at: datetime


@dataclass
class ChunkIndex:
    chunks: List[ConversationChunk] = field(default_factory=list)

    @property
    def ordered(self) -> List[ConversationChunk]:
        return sorted(self.chunks, key=lambda c: c.start)

    def get(self, chunk_id: str) -> Optional[ConversationChunk]:
        for chunk in self.chunks:
            if chunk.id == chunk_id:
                return chunk
        return None


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------

VIDEO_EXTS = {"mp4", "mov", "avi", "mkv", "webm", "m4v", "wmv", "flv", "3gp"}
AUDIO_EXTS = {"mp3", "m4a", "wav", "flac", "aac", "opus", "wma", "aiff"}
VOICE_EXTS = {"ogg", "oga"}   # transcribed locally before reaching the model
IMAGE_EXTS = {"jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "bmp", "tiff", "tif"}
TEXT_DOC_EXTS = {"pdf", "txt", "doc", "docx", "rtf", "md", "csv", "json", "xml", "html", "htm", "xls", "xlsx"}


def _ext(name: str) -> str:
    return PurePath(name).suffix.lstrip(".").lower()


def _attachment_tokens(att: Attachment) -> int:
    ext = _ext(att.name)
    if ext in VIDEO_EXTS:
        return 50
    if ext in VOICE_EXTS:
        return 0
    if ext in AUDIO_EXTS:
        return max(att.size // 512, 50) if att.size is not None else 200
    if ext in IMAGE_EXTS or att.mime_type.startswith("image/"):
        return max(att.size // 2048, 50) if att.size is not None else 250
    if ext in TEXT_DOC_EXTS:
        return min(att.size // 5, 3000) if att.size is not None else 500
    return 50


def estimate_tokens(message: Message) -> int:
    chars = len(message.content)
    for call in message.tool_calls:
        chars += len(call.name) + len(call.arguments)
    tokens = chars // 4
    for att in message.attachments:
        tokens += _attachment_tokens(att)
    return max(tokens, 1)


def estimate_total_tokens(messages: List[Message]) -> int:
    return sum(estimate_tokens(m) for m in messages)
