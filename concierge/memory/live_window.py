# concierge/memory/live_window.py

import json
import sqlite3
from typing import Iterable, List

from concierge.memory.db import get_connection
from concierge.memory.models import Message, estimate_total_tokens


def delete_messages(cur: sqlite3.Cursor, message_ids: Iterable[str]) -> int:
    """
    Remove messages from the live window inside the caller's transaction.
    Used by the chunk store so truncation commits together with the chunk.
    """
    ids = list(message_ids)
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    cur.execute(f"DELETE FROM live_messages WHERE id IN ({placeholders})", ids)
    return cur.rowcount


class LiveWindow:
    """
    The verbatim slice of conversation sent to the model every turn.

    Append-only from the orchestrator's side; only the chunk store removes
    messages, and only as an oldest-first prefix.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def append(self, message: Message) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO live_messages (id, role, timestamp, payload)
                VALUES (?, ?, ?, ?)
                """,
                (message.id, message.role.value, message.timestamp.isoformat(),
                 json.dumps(message.to_dict(), ensure_ascii=False)),
            )
            conn.commit()
        finally:
            conn.close()

    def extend(self, messages: List[Message]) -> None:
        """Append several messages in one transaction (a tool round)."""
        if not messages:
            return
        conn = get_connection(self.db_path)
        try:
            conn.executemany(
                """
                INSERT INTO live_messages (id, role, timestamp, payload)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (m.id, m.role.value, m.timestamp.isoformat(),
                     json.dumps(m.to_dict(), ensure_ascii=False))
                    for m in messages
                ],
            )
            conn.commit()
        finally:
            conn.close()

    def messages(self) -> List[Message]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT payload FROM live_messages ORDER BY seq ASC").fetchall()
        finally:
            conn.close()
        return [Message.from_dict(json.loads(row["payload"])) for row in rows]

    def token_count(self) -> int:
        return estimate_total_tokens(self.messages())

    def __len__(self) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM live_messages").fetchone()
        finally:
            conn.close()
        return int(row["n"])
