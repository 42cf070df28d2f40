# concierge/memory/consolidator.py

from typing import List, Optional

from concierge.core.errors import ArchivalError, StorageCorruptionError
from concierge.memory.chunk_store import ChunkStore, LIVE_CONTEXT_CHARS, format_date_range
from concierge.memory.live_window import LiveWindow
from concierge.memory.models import (
    ChunkKind,
    ConversationChunk,
    Message,
    estimate_total_tokens,
    new_id,
)
from concierge.memory.summarizer import SummarizationContext, format_messages_for_summary
from concierge.utils.logging import get_logger

logger = get_logger(__name__)


class Consolidator:
    """
    Merges the oldest `group_size` adjacent temporary chunks into one consolidated
    chunk. All-or-nothing: until the index transaction commits, the sources
    are untouched and the new raw file is removed on any failure.
    """

    def __init__(self, store: ChunkStore, group_size: int = 4) -> None:
        self.store = store
        self.group_size = max(2, group_size)

    def run(self, live_window: Optional[LiveWindow] = None) -> List[ConversationChunk]:
        """
        Consolidate while a group of adjacent readable temporary chunks
        exists. A chunk whose content turns out unreadable is flagged by the
        store and left out of later groups. Returns new chunks.
        """
        created: List[ConversationChunk] = []
        with self.store.lock:
            while True:
                group = self.next_group()
                if group is None:
                    break
                try:
                    created.append(self.consolidate(group, live_window))
                except StorageCorruptionError as e:
                    logger.error("Skipping unreadable chunk %s in consolidation: %s", e.chunk_id, e)
        return created

    def next_group(self) -> Optional[List[ConversationChunk]]:
        """Oldest `group_size` temporary chunks with no consolidated or unavailable chunk between them."""
        run: List[ConversationChunk] = []
        for chunk in self.store.list_summaries():
            if chunk.kind != ChunkKind.TEMPORARY or chunk.unavailable:
                run = []
                continue
            run.append(chunk)
            if len(run) == self.group_size:
                return run
        return None

    def consolidate(
        self,
        sources: List[ConversationChunk],
        live_window: Optional[LiveWindow] = None,
    ) -> ConversationChunk:
        sources = sorted(sources, key=lambda c: c.start)
        with self.store.lock:
            # Raises StorageCorruptionError before anything is written
            messages: List[Message] = []
            for chunk in sources:
                messages.extend(self.store.read_chunk_content(chunk.id))

            chunk_id = new_id()
            file_name = f"{chunk_id}.json"
            self.store.write_raw(file_name, messages)
            try:
                summary = self.store.summarizer.summarize(messages, self._context(sources, live_window))
                chunk = ConversationChunk(
                    id=chunk_id,
                    kind=ChunkKind.CONSOLIDATED,
                    start=sources[0].start,
                    end=sources[-1].end,
                    token_count=estimate_total_tokens(messages),
                    message_count=len(messages),
                    summary=summary.render(),
                    raw_content_file=file_name,
                )
                self.store.commit_consolidation(chunk, sources)
            except Exception as e:
                self.store.remove_raw(file_name)
                logger.error("Consolidation of %d chunk(s) failed, originals kept: %s", len(sources), e)
                if isinstance(e, ArchivalError):
                    raise
                raise ArchivalError("Could not consolidate archived chunks.") from e

        logger.info("Consolidated %d chunks into %s (%d messages, %s)",
                    len(sources), chunk.id, chunk.message_count, format_date_range(chunk.start, chunk.end))
        return chunk

    def _context(
        self,
        sources: List[ConversationChunk],
        live_window: Optional[LiveWindow],
    ) -> SummarizationContext:
        start, end = sources[0].start, sources[-1].end
        ids = {c.id for c in sources}
        before: List[str] = []
        after: List[str] = []
        for chunk in self.store.list_summaries():
            if chunk.id in ids:
                continue
            line = f"[{chunk.size_label} chunk, {format_date_range(chunk.start, chunk.end)}]: {chunk.summary}"
            if chunk.end < start:
                before.append(line)
            elif chunk.start > end:
                after.append(line)

        if live_window is not None:
            live = live_window.messages()
            if live:
                text = format_messages_for_summary(live)[-LIVE_CONTEXT_CHARS:]
                after.append(f"[CURRENT LIVE CONVERSATION]:\n{text}")

        persona = self.store.persona
        return SummarizationContext(
            persona_context=persona.persona_context,
            assistant_name=persona.assistant_name,
            user_name=persona.user_name,
            previous_summaries=before,
            current_conversation="\n\n".join(after) if after else None,
        )
