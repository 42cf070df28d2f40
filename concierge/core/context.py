# concierge/core/context.py

import base64
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from concierge.config.settings import SYSTEM_PROMPT_PATH, Settings
from concierge.memory.models import Attachment, ConversationChunk, Message, Role
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PERSONA = "You are a helpful AI assistant."
REPLY_SNIPPET_CHARS = 200
MAX_INLINE_IMAGE_BYTES = 5 * 1024 * 1024


@dataclass
class Prompt:
    system: str
    messages: List[Dict[str, Any]] = field(default_factory=list)


def load_instructions(path: Path = SYSTEM_PROMPT_PATH) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return ""


def format_chunk_table(chunks: Sequence[ConversationChunk]) -> str:
    if not chunks:
        return ""
    lines = [
        "## ARCHIVED CONVERSATION HISTORY",
        "",
        f"All {len(chunks)} archived chunk(s) shown below, oldest first.",
        '- To view a chunk\'s full messages: `view_conversation_chunk(chunk_id: "ID")`',
        "",
        "| # | ID | Kind | Size | Date Range | Summary |",
        "|---|----|------|------|------------|---------|",
    ]
    for i, chunk in enumerate(chunks, start=1):
        date_range = f"{chunk.start.strftime('%b %d')}-{chunk.end.strftime('%b %d')}"
        summary = chunk.summary.replace("\n", " ").replace("|", "/")
        kind = f"{chunk.kind.value} (content unavailable)" if chunk.unavailable else chunk.kind.value
        lines.append(f"| {i} | {chunk.id} | {kind} | {chunk.size_label} | {date_range} | {summary} |")
    return "\n".join(lines)


def _is_image(att: Attachment) -> bool:
    return att.mime_type.startswith("image/")


def _attachment_note(att: Attachment) -> str:
    kind = "Image" if _is_image(att) else "File"
    size = f", {att.size} bytes" if att.size is not None else ""
    return f"[{kind} attached: {att.name} ({att.mime_type}{size})]"


def _image_part(att: Attachment) -> Optional[Dict[str, Any]]:
    if not att.path:
        return None
    path = Path(att.path)
    try:
        if path.stat().st_size > MAX_INLINE_IMAGE_BYTES:
            return None
        data = path.read_bytes()
    except OSError as e:
        logger.warning("Image %s not readable, sending a text note only: %s", att.name, e)
        return None
    encoded = base64.b64encode(data).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:{att.mime_type};base64,{encoded}"}}


class ContextAssembler:
    """
    Builds the per-turn prompt. Read-only: it never touches the chunk store
    or the live window, it only formats what it is handed.
    """

    def __init__(
        self,
        settings: Settings,
        instructions: Optional[str] = None,
        calendar_context: Optional[Callable[[], Optional[str]]] = None,
        email_context: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.settings = settings
        self.instructions = instructions if instructions is not None else load_instructions()
        self.calendar_context = calendar_context
        self.email_context = email_context

    def build(
        self,
        live_messages: Sequence[Message],
        chunks: Sequence[ConversationChunk],
        now: Optional[datetime] = None,
    ) -> Prompt:
        now = (now or datetime.now().astimezone()).astimezone()
        return Prompt(
            system=self._system_prompt(chunks, now),
            messages=self._messages(live_messages),
        )

    # ---------- system prompt ----------

    def _persona(self) -> str:
        s = self.settings
        if s.user_context:
            return s.user_context.strip()
        if s.assistant_name and s.user_name:
            return f"You are {s.assistant_name}, a personal AI assistant for {s.user_name}."
        if s.assistant_name:
            return f"You are {s.assistant_name}, a personal AI assistant."
        if s.user_name:
            return f"You are a personal AI assistant for {s.user_name}."
        return DEFAULT_PERSONA

    def _system_prompt(self, chunks: Sequence[ConversationChunk], now: datetime) -> str:
        sections = [self._persona()]
        if self.instructions:
            sections.append(self.instructions)

        tz = now.tzname() or "local time"
        sections.append(f"Current date and time: {now.strftime('%A, %B %d, %Y at %H:%M:%S')} ({tz}).")

        for label, provider in (("CALENDAR", self.calendar_context), ("EMAIL", self.email_context)):
            if provider is None:
                continue
            try:
                snippet = provider()
            except Exception as e:
                logger.warning("%s context unavailable, leaving it out: %s", label, e)
                continue
            if snippet:
                sections.append(f"## {label}\n{snippet.strip()}")

        table = format_chunk_table(sorted(chunks, key=lambda c: c.start))
        if table:
            sections.append(table)
        return "\n\n".join(sections)

    # ---------- messages ----------

    def _messages(self, live: Sequence[Message]) -> List[Dict[str, Any]]:
        by_id = {m.id: m for m in live}
        out: List[Dict[str, Any]] = []
        pending_images: List[Dict[str, Any]] = []

        def flush_images() -> None:
            if pending_images:
                out.append({
                    "role": "user",
                    "content": [{"type": "text", "text": "[Images returned by the tools above]"}] + pending_images,
                })
                pending_images.clear()

        for msg in live:
            if msg.role == Role.TOOL:
                out.append({"role": "tool", "tool_call_id": msg.tool_call_id or "", "content": msg.content})
                for att in msg.attachments:
                    part = _image_part(att) if _is_image(att) else None
                    if part:
                        pending_images.append(part)
                continue

            # Tool results must directly follow their tool-call message
            flush_images()

            if msg.is_tool_call:
                entry: Dict[str, Any] = {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                        for c in msg.tool_calls
                    ],
                }
                if not msg.reasoning.is_absent:
                    entry["reasoning_details"] = msg.reasoning.value()
                out.append(entry)
                continue

            out.append({"role": msg.role.value, "content": self._content(msg, by_id)})

        flush_images()
        return out

    def _content(self, msg: Message, by_id: Dict[str, Message]) -> Any:
        text = msg.content
        if msg.reply_to_id:
            cited = by_id.get(msg.reply_to_id)
            if cited is not None:
                snippet = cited.content.replace("\n", " ")[:REPLY_SNIPPET_CHARS]
                text = f'[Replying to {cited.role.value}: "{snippet}"]\n{text}'
            else:
                text = f"[Replying to an earlier message]\n{text}"

        if not msg.attachments:
            return text

        notes = "\n".join(_attachment_note(a) for a in msg.attachments)
        text = f"{notes}\n{text}" if text else notes
        images = [p for p in (_image_part(a) for a in msg.attachments if _is_image(a)) if p]
        if msg.role != Role.USER or not images:
            return text
        return [{"type": "text", "text": text}] + images
