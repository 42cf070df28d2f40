# concierge/memory/chunk_store.py
#
# Durable archive of conversation segments. Write ordering on the archival
# path: raw file (fsync) -> pending row -> summary -> one transaction that
# inserts the chunk, drops the pending row and truncates the live window.

from dataclasses import dataclass, field
import json
import os
from pathlib import Path
import threading
import time
from typing import Callable, List, Optional, Sequence

from concierge.clients.openai_client import backoff_delay
from concierge.core.errors import (
    ArchivalError,
    ChunkNotFoundError,
    StartupRecoveryFailure,
    StorageCorruptionError,
)
from concierge.memory.db import get_connection
from concierge.memory.live_window import LiveWindow, delete_messages
from concierge.memory.models import (
    ChunkIndex,
    ChunkKind,
    ConversationChunk,
    Message,
    PendingChunk,
    Role,
    estimate_tokens,
    estimate_total_tokens,
    new_id,
    parse_ts,
    utc_now,
)
from concierge.memory.summarizer import (
    ChunkMatch,
    SummarizationContext,
    Summarizer,
    format_messages_for_search,
    format_messages_for_summary,
)
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_SUMMARY = "summary unavailable"
LIVE_CONTEXT_CHARS = 20_000


@dataclass
class RecoveryReport:
    committed: List[str] = field(default_factory=list)
    placeholders: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)


def select_archive_prefix(messages: Sequence[Message], chunk_size: int) -> List[Message]:
    """
    Oldest messages whose estimated size fits in `chunk_size` (at least one),
    extended so tool results never get separated from their tool-call message.
    """
    selected: List[Message] = []
    tokens = 0
    for msg in messages:
        cost = estimate_tokens(msg)
        if selected and tokens + cost > chunk_size:
            break
        selected.append(msg)
        tokens += cost

    i = len(selected)
    while i < len(messages) and messages[i].role == Role.TOOL:
        selected.append(messages[i])
        i += 1
    return selected


def format_date_range(start, end) -> str:
    if start.date() == end.date():
        return f"{start.strftime('%b %d, %Y')} {start.strftime('%H:%M')}-{end.strftime('%H:%M')}"
    return f"{start.strftime('%b %d')} - {end.strftime('%b %d, %Y')}"


class ChunkStore:
    """
    Single writer for the chunk index, pending records and raw archive files.
    Mutations (archive, consolidate, recover, clear) hold one re-entrant lock.
    """

    def __init__(
        self,
        db_path: str,
        archive_dir: str,
        summarizer: Summarizer,
        chunk_size: int,
        archive_multiplier: int = 2,
        recovery_policy: str = "placeholder",
        recovery_attempts: int = 3,
        persona: Optional[SummarizationContext] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self.archive_dir = Path(archive_dir)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self.summarizer = summarizer
        self.chunk_size = chunk_size
        self.archive_multiplier = archive_multiplier
        self.recovery_policy = recovery_policy
        self.recovery_attempts = max(1, recovery_attempts)
        self.persona = persona or SummarizationContext()
        self._sleep = sleep
        self.lock = threading.RLock()

    @property
    def trigger_tokens(self) -> int:
        return self.chunk_size * self.archive_multiplier

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def index(self) -> ChunkIndex:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT id, kind, start_ts, end_ts, token_count, message_count, summary, raw_content_file,
                       unavailable
                FROM chunks
                """
            ).fetchall()
        finally:
            conn.close()
        return ChunkIndex(chunks=[
            ConversationChunk(
                id=row["id"],
                kind=ChunkKind(row["kind"]),
                start=parse_ts(row["start_ts"]),
                end=parse_ts(row["end_ts"]),
                token_count=row["token_count"],
                message_count=row["message_count"],
                summary=row["summary"],
                raw_content_file=row["raw_content_file"],
                unavailable=bool(row["unavailable"]),
            )
            for row in rows
        ])

    def list_summaries(self) -> List[ConversationChunk]:
        """All committed chunks, oldest first."""
        return self.index().ordered

    def get(self, chunk_id: str) -> Optional[ConversationChunk]:
        return self.index().get(chunk_id)

    def pending(self) -> List[PendingChunk]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT id, start_ts, end_ts, token_count, message_count, raw_content_file, created_at
                FROM pending_chunks
                ORDER BY start_ts ASC
                """
            ).fetchall()
        finally:
            conn.close()
        return [
            PendingChunk(
                id=row["id"],
                start=parse_ts(row["start_ts"]),
                end=parse_ts(row["end_ts"]),
                token_count=row["token_count"],
                message_count=row["message_count"],
                raw_content_file=row["raw_content_file"],
                created_at=parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    def read_chunk_content(self, chunk_id: str) -> List[Message]:
        """
        Exact archived messages of one committed chunk.
        Unknown and still-pending ids raise ChunkNotFoundError. An unreadable
        raw file flags the chunk unavailable and raises StorageCorruptionError.
        """
        chunk = self.get(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)
        try:
            messages = self.load_raw(chunk.raw_content_file, chunk_id=chunk.id)
        except StorageCorruptionError:
            if not chunk.unavailable:
                self.mark_unavailable(chunk.id)
            raise
        if chunk.unavailable:
            # File was restored by hand
            self.mark_unavailable(chunk.id, False)
        return messages

    def mark_unavailable(self, chunk_id: str, unavailable: bool = True) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE chunks SET unavailable = ? WHERE id = ?", (int(unavailable), chunk_id))
            conn.commit()
        finally:
            conn.close()
        if unavailable:
            logger.error("Chunk %s marked unavailable", chunk_id)
        else:
            logger.info("Chunk %s is readable again", chunk_id)

    def search(self, query: str) -> List[ChunkMatch]:
        """
        Name candidate chunks for `query` from their summaries only; callers
        fetch content for the chosen ids with read_chunk_content.
        """
        query = (query or "").strip()
        chunks = self.list_summaries()
        if not query or not chunks:
            return []
        known = {c.id for c in chunks}
        matches = self.summarizer.identify_relevant_chunks(query, chunks)
        kept = [m for m in matches if m.chunkId in known]
        if len(kept) != len(matches):
            logger.info("Archive search dropped %d unknown chunk id(s)", len(matches) - len(kept))
        return kept

    def search_chunk(self, chunk_id: str, query: str) -> List[str]:
        """Verbatim excerpts from one chunk that answer `query`."""
        messages = self.read_chunk_content(chunk_id)
        return self.summarizer.extract_excerpts(query, format_messages_for_search(messages))

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    def archive_if_needed(self, live_window: LiveWindow) -> List[ConversationChunk]:
        """
        Move oldest-first prefixes of the live window into temporary chunks
        until it is below the trigger. Returns the chunks created.
        Raises ArchivalError if a summary could not be produced; the live
        window is left untouched in that case.
        """
        created: List[ConversationChunk] = []
        with self.lock:
            while True:
                messages = live_window.messages()
                tokens = estimate_total_tokens(messages)
                if tokens < self.trigger_tokens:
                    break
                prefix = select_archive_prefix(messages, self.chunk_size)
                remaining = messages[len(prefix):]
                logger.info("Archiving %d message(s) (live window %d tokens, trigger %d)",
                            len(prefix), tokens, self.trigger_tokens)
                created.append(self._archive_prefix(prefix, remaining))
        return created

    def _archive_prefix(self, prefix: List[Message], remaining: List[Message]) -> ConversationChunk:
        chunk_id = new_id()
        file_name = f"{chunk_id}.json"
        pending = PendingChunk(
            id=chunk_id,
            start=prefix[0].timestamp,
            end=prefix[-1].timestamp,
            token_count=estimate_total_tokens(prefix),
            message_count=len(prefix),
            raw_content_file=file_name,
            created_at=utc_now(),
        )

        self.write_raw(file_name, prefix)
        self._insert_pending(pending)

        try:
            summary = self.summarizer.summarize(prefix, self._archive_context(remaining))
        except Exception as e:
            self._drop_pending(pending)
            logger.error("Archival of %d message(s) aborted, summary failed: %s", len(prefix), e)
            raise ArchivalError("Could not summarize the archived segment.") from e

        chunk = ConversationChunk(
            id=chunk_id,
            kind=ChunkKind.TEMPORARY,
            start=pending.start,
            end=pending.end,
            token_count=pending.token_count,
            message_count=pending.message_count,
            summary=summary.render(),
            raw_content_file=file_name,
        )
        self._commit_pending(chunk, [m.id for m in prefix])
        logger.info("Committed temporary chunk %s (%d messages, %d tokens)",
                    chunk.id, chunk.message_count, chunk.token_count)
        return chunk

    def _archive_context(self, live_after: List[Message]) -> SummarizationContext:
        previous = [c.summary for c in self.list_summaries()]
        live_text = format_messages_for_summary(live_after)[-LIVE_CONTEXT_CHARS:] if live_after else None
        return SummarizationContext(
            persona_context=self.persona.persona_context,
            assistant_name=self.persona.assistant_name,
            user_name=self.persona.user_name,
            previous_summaries=previous,
            current_conversation=live_text,
        )

    def _commit_pending(self, chunk: ConversationChunk, archived_ids: List[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            cur = conn.cursor()
            self._insert_chunk(cur, chunk)
            cur.execute("DELETE FROM pending_chunks WHERE id = ?", (chunk.id,))
            delete_messages(cur, archived_ids)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def recover_on_startup(self) -> RecoveryReport:
        """
        Reconcile every pending chunk left by a previous run, then sweep
        raw files referenced by nothing. Pending messages are still in the
        live window (truncation commits with the chunk), so a commit here
        also removes them from it.
        """
        report = RecoveryReport()
        with self.lock:
            for pending in self.pending():
                self._recover_one(pending, report)
            report.orphans_removed = self._sweep_orphans()
            for chunk in self.list_summaries():
                if not (self.archive_dir / chunk.raw_content_file).is_file():
                    logger.error("Chunk %s is unavailable: raw content %s is missing",
                                 chunk.id, chunk.raw_content_file)
                    if not chunk.unavailable:
                        self.mark_unavailable(chunk.id)
                    report.unavailable.append(chunk.id)

        if report.committed or report.placeholders or report.dropped or report.orphans_removed:
            logger.info("Recovery: committed=%d placeholders=%d dropped=%d orphans=%d",
                        len(report.committed), len(report.placeholders),
                        len(report.dropped), len(report.orphans_removed))
        return report

    def _recover_one(self, pending: PendingChunk, report: RecoveryReport) -> None:
        try:
            messages = self.load_raw(pending.raw_content_file, chunk_id=pending.id)
            if not messages:
                raise StorageCorruptionError("Pending chunk holds no messages.", chunk_id=pending.id)
        except StorageCorruptionError as e:
            logger.error("Dropping pending chunk %s: %s", pending.id, e)
            self._drop_pending(pending)
            report.dropped.append(pending.id)
            return

        summary_text: Optional[str] = None
        for attempt in range(1, self.recovery_attempts + 1):
            try:
                summary_text = self.summarizer.summarize(messages, self._archive_context([])).render()
                break
            except Exception as e:
                logger.warning("Recovery summary for %s failed attempt=%d/%d err=%s",
                               pending.id, attempt, self.recovery_attempts, e)
                if attempt < self.recovery_attempts:
                    self._sleep(backoff_delay(attempt))

        if summary_text is None:
            failure = StartupRecoveryFailure(pending.id, self.recovery_attempts)
            if self.recovery_policy == "discard":
                logger.error("%s; discarding it (messages stay in the live window)", failure)
                self._drop_pending(pending)
                report.dropped.append(pending.id)
                return
            logger.error("%s; committing with a placeholder summary", failure)
            summary_text = PLACEHOLDER_SUMMARY

        chunk = ConversationChunk(
            id=pending.id,
            kind=ChunkKind.TEMPORARY,
            start=messages[0].timestamp,
            end=messages[-1].timestamp,
            token_count=estimate_total_tokens(messages),
            message_count=len(messages),
            summary=summary_text,
            raw_content_file=pending.raw_content_file,
        )
        self._commit_pending(chunk, [m.id for m in messages])
        if summary_text == PLACEHOLDER_SUMMARY:
            report.placeholders.append(chunk.id)
        else:
            report.committed.append(chunk.id)

    def _sweep_orphans(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            referenced = {row["raw_content_file"] for row in conn.execute("SELECT raw_content_file FROM chunks")}
            referenced |= {row["raw_content_file"] for row in
                           conn.execute("SELECT raw_content_file FROM pending_chunks")}
        finally:
            conn.close()

        removed: List[str] = []
        for path in self.archive_dir.iterdir():
            if not path.is_file() or path.name in referenced:
                continue
            path.unlink()
            removed.append(path.name)
            logger.warning("Removed orphaned archive file %s", path.name)
        return removed

    # ------------------------------------------------------------------
    # Consolidation support (called by the consolidator under self.lock)
    # ------------------------------------------------------------------

    def commit_consolidation(self, chunk: ConversationChunk, sources: List[ConversationChunk]) -> None:
        """Insert `chunk` and delete `sources` in one transaction, then remove source files."""
        conn = get_connection(self.db_path)
        try:
            cur = conn.cursor()
            self._insert_chunk(cur, chunk)
            placeholders = ",".join("?" for _ in sources)
            cur.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", [c.id for c in sources])
            if cur.rowcount != len(sources):
                raise ArchivalError("Consolidation sources changed underneath the consolidator.")
            conn.commit()
        finally:
            conn.close()

        for source in sources:
            self.remove_raw(source.raw_content_file)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def clear_all(self, live_window: Optional[LiveWindow] = None) -> None:
        """Forget every chunk, pending record and archive file (and the live window if given)."""
        with self.lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("DELETE FROM chunks")
                conn.execute("DELETE FROM pending_chunks")
                if live_window is not None:
                    conn.execute("DELETE FROM live_messages")
                conn.commit()
            finally:
                conn.close()
            for path in self.archive_dir.iterdir():
                if path.is_file():
                    path.unlink()
        logger.info("Conversation archive cleared")

    # ------------------------------------------------------------------
    # Raw files
    # ------------------------------------------------------------------

    def write_raw(self, file_name: str, messages: List[Message]) -> None:
        """Atomically write `messages` to the archive (temp file, fsync, rename)."""
        path = self.archive_dir / file_name
        tmp = path.with_name(path.name + ".tmp")
        payload = json.dumps([m.to_dict() for m in messages], ensure_ascii=False)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def load_raw(self, file_name: str, chunk_id: Optional[str] = None) -> List[Message]:
        path = self.archive_dir / file_name
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("archive file is not a message list")
            return [Message.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            # json.JSONDecodeError is a ValueError
            raise StorageCorruptionError(f"Archived content {file_name} is unreadable: {e}",
                                         chunk_id=chunk_id) from e

    def remove_raw(self, file_name: str) -> None:
        path = self.archive_dir / file_name
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Archive file %s was already gone", file_name)

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_chunk(cur, chunk: ConversationChunk) -> None:
        cur.execute(
            """
            INSERT INTO chunks (id, kind, start_ts, end_ts, token_count, message_count, summary, raw_content_file)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (chunk.id, chunk.kind.value, chunk.start.isoformat(), chunk.end.isoformat(),
             chunk.token_count, chunk.message_count, chunk.summary, chunk.raw_content_file),
        )

    def _insert_pending(self, pending: PendingChunk) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO pending_chunks (id, start_ts, end_ts, token_count, message_count,
                                            raw_content_file, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (pending.id, pending.start.isoformat(), pending.end.isoformat(), pending.token_count,
                 pending.message_count, pending.raw_content_file, pending.created_at.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def _drop_pending(self, pending: PendingChunk) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM pending_chunks WHERE id = ?", (pending.id,))
            conn.commit()
        finally:
            conn.close()
        path = self.archive_dir / pending.raw_content_file
        if path.exists():
            path.unlink()
