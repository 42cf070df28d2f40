# concierge/memory/summarizer.py

from dataclasses import dataclass, field
from datetime import datetime
import json
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from concierge.core.errors import UpstreamError
from concierge.memory.models import Message, Role
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

MAX_SEGMENT_CHARS = 100_000
MAX_FALLBACK_CHARS = 6000


class SummaryExtractionResult(BaseModel):
    summary: str = Field(..., min_length=1)
    key_topics: List[str] = Field(default_factory=list)


class ChunkMatch(BaseModel):
    chunkId: str
    relevance: str = ""


class ChunkIdentificationResult(BaseModel):
    relevant_chunks: List[ChunkMatch] = Field(default_factory=list)


class ExcerptResult(BaseModel):
    excerpts: List[str] = Field(default_factory=list)


@dataclass(frozen=True)
class Summary:
    text: str
    topics: List[str] = field(default_factory=list)

    def render(self) -> str:
        if not self.topics:
            return self.text
        return f"{self.text} [Topics: {', '.join(self.topics)}]"


@dataclass
class SummarizationContext:
    """What the summarizer may read to understand a segment; never summarized itself."""
    persona_context: Optional[str] = None
    assistant_name: Optional[str] = None
    user_name: Optional[str] = None
    previous_summaries: List[str] = field(default_factory=list)
    current_conversation: Optional[str] = None


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} block in `text`, or None."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _label(msg: Message) -> str:
    if msg.role == Role.USER:
        return "User"
    if msg.role == Role.TOOL:
        return "Tool result"
    return "Assistant"


def _render_content(msg: Message) -> str:
    content = msg.content
    if msg.tool_calls:
        calls = ", ".join(f"{c.name}({c.arguments})" for c in msg.tool_calls)
        content = f"[Called tools: {calls}] {content}".rstrip()
    for att in msg.attachments:
        kind = "Image" if att.mime_type.startswith("image/") else "Document"
        content = f"[{kind}: {att.name}] " + content
    return content


def format_messages_for_summary(messages: List[Message]) -> str:
    return "\n\n".join(f"[{_label(m)}]: {_render_content(m)}" for m in messages)


def format_messages_for_search(messages: List[Message]) -> str:
    return "\n\n".join(
        f"[{m.timestamp.strftime('%Y-%m-%d %H:%M')}] {_label(m)}: {_render_content(m)}"
        for m in messages
    )


class Summarizer:
    def __init__(self, llm, budget=None) -> None:
        self.llm = llm
        self.budget = budget

    def summarize(
        self,
        messages: List[Message],
        context: Optional[SummarizationContext] = None,
    ) -> Summary:
        """
        One LLM call: summary plus key topics for an archived segment.
        Raises UpstreamError / TransientUpstreamError if the call fails.
        """
        if not messages:
            raise ValueError("Cannot summarize an empty segment.")
        context = context or SummarizationContext()

        start: datetime = messages[0].timestamp
        end: datetime = messages[-1].timestamp
        system_prompt = self._system_prompt(context)
        user_prompt = (
            "CONVERSATION SEGMENT TO SUMMARIZE\n"
            f"Period: {start.strftime('%b %d, %Y %H:%M')} to {end.strftime('%b %d, %Y %H:%M')}\n\n"
            f"{format_messages_for_summary(messages)[:MAX_SEGMENT_CHARS]}"
        )

        text = self._complete(system_prompt, user_prompt, max_tokens=2000)
        if not text:
            raise UpstreamError("The summarizer returned an empty response.", code="empty_summary")

        raw_json = extract_first_json_object(text)
        if raw_json:
            try:
                result = SummaryExtractionResult.model_validate(json.loads(raw_json))
                return Summary(text=result.summary.strip(), topics=[t.strip() for t in result.key_topics if t.strip()])
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Summary JSON did not validate, using raw text: %s", e)

        # Fallback: use raw response
        return Summary(text=text[:MAX_FALLBACK_CHARS].strip())

    def identify_relevant_chunks(self, query: str, chunks) -> List[ChunkMatch]:
        """
        Skim phase of archive search: the model only sees summaries and
        names candidate chunk ids. Unparseable answers yield no matches.
        """
        if not chunks:
            return []
        listing = "\n".join(
            f"Chunk {c.id}:\n"
            f"- Date: {c.start.strftime('%Y-%m-%d %H:%M')} to {c.end.strftime('%Y-%m-%d %H:%M')}\n"
            f"- Summary: {c.summary}\n"
            for c in chunks
        )
        system_prompt = (
            "You are analyzing conversation history summaries to find which chunks "
            "might contain relevant information.\n\n"
            "OUTPUT STRICT JSON ONLY:\n"
            '{ "relevant_chunks": [{"chunkId": "uuid", "relevance": "brief reason"}] }\n\n'
            'If no chunks are relevant, return: { "relevant_chunks": [] }'
        )
        user_prompt = (
            f"QUERY: {query}\n\n"
            f"AVAILABLE CHUNKS:\n{listing}\n"
            "Which chunks might contain information relevant to the query?"
        )
        text = self._complete(system_prompt, user_prompt, max_tokens=2000)
        raw_json = extract_first_json_object(text)
        if not raw_json:
            logger.warning("Archive search answer had no JSON object")
            return []
        try:
            return ChunkIdentificationResult.model_validate(json.loads(raw_json)).relevant_chunks
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Archive search answer did not validate: %s", e)
            return []

    def extract_excerpts(self, query: str, conversation_text: str) -> List[str]:
        system_prompt = (
            "Extract the most relevant parts of the conversation that answer the query.\n"
            "Cite verbatim the relevant exchanges.\n\n"
            'OUTPUT STRICT JSON: { "excerpts": ["...", "..."] }'
        )
        user_prompt = f"QUERY: {query}\n\nCONVERSATION:\n{conversation_text[:MAX_SEGMENT_CHARS]}"
        text = self._complete(system_prompt, user_prompt, max_tokens=4000)
        raw_json = extract_first_json_object(text)
        if not raw_json:
            return []
        try:
            return ExcerptResult.model_validate(json.loads(raw_json)).excerpts
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Excerpt answer did not validate: %s", e)
            return []

    def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        completion = self.llm.complete(system_prompt, user_prompt, max_tokens=max_tokens)
        if self.budget is not None and completion.usage.cost_usd:
            self.budget.record_spend(completion.usage.cost_usd)
        return (completion.text or "").strip()

    def _system_prompt(self, context: SummarizationContext) -> str:
        sections: List[str] = []

        if context.persona_context:
            sections.append(f"USER PROFILE:\n{context.persona_context}")
        else:
            identity = []
            if context.assistant_name:
                identity.append(f"Assistant name: {context.assistant_name}")
            if context.user_name:
                identity.append(f"User name: {context.user_name}")
            if identity:
                sections.append("IDENTITY:\n" + "\n".join(identity))

        if context.previous_summaries:
            joined = "\n\n".join(f"[Chunk {i + 1}] {s}" for i, s in enumerate(context.previous_summaries))
            sections.append(f"PREVIOUS CONVERSATION SUMMARIES:\n{joined}")

        if context.current_conversation:
            sections.append(f"CURRENT CONVERSATION (most recent, for context only):\n{context.current_conversation}")

        context_block = ""
        if sections:
            context_block = (
                "\n\n=== CONTEXT (for understanding only, DO NOT include in summary) ===\n"
                + "\n\n".join(sections)
                + "\n=== END CONTEXT ===\n"
            )

        return (
            "You are summarizing a specific segment of an ongoing conversation."
            f"{context_block}\n"
            "YOUR TASK:\n"
            "Summarize ONLY the conversation segment below in a detailed summary of about 750 words.\n"
            "Use the context above to understand relationships, references, names and meaning,\n"
            "but the summary must only cover the messages in the segment being archived.\n\n"
            "Include:\n"
            "1. Key topics discussed in this segment\n"
            "2. Important decisions or information shared\n"
            "3. Any relevant action items or follow-ups mentioned\n\n"
            "OUTPUT STRICT JSON:\n"
            '{ "summary": "...", "key_topics": ["topic1", "topic2"] }'
        )
