"""SQLite persistence layer consumed by the relay.

The relay only needs a handful of durable operations: the chats a user
belongs to, public profiles, the online flag / last-seen timestamp, and
delivery / read receipts. REST-side CRUD lives elsewhere; the seeding
helpers here exist for the launcher and tests.

Design goals:
  - Zero extra dependencies (uses stdlib sqlite3)
  - Safe for use from executor threads (single process): guarded by a lock
  - Keep APIs small and explicit

The DB file location is controlled by Config.SQLITE_DB_FILE.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  display_name TEXT NOT NULL,
  profile_pic TEXT DEFAULT NULL,
  is_online INTEGER NOT NULL DEFAULT 0,
  last_seen TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS chats (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  type TEXT NOT NULL DEFAULT 'private' CHECK(type IN ('private', 'group')),
  name TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS chat_members (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  chat_id INTEGER NOT NULL,
  user_id INTEGER NOT NULL,
  role TEXT NOT NULL DEFAULT 'member' CHECK(role IN ('admin', 'member')),
  unread_count INTEGER NOT NULL DEFAULT 0,
  UNIQUE(chat_id, user_id),
  FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE,
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  chat_id INTEGER NOT NULL,
  sender_id INTEGER NOT NULL,
  content TEXT NOT NULL DEFAULT '',
  delivered_to TEXT NOT NULL DEFAULT '[]',
  read_by TEXT NOT NULL DEFAULT '[]',
  FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_members_user ON chat_members(user_id);
CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id);
"""


def _json_list(raw: Optional[str]) -> List[Any]:
    try:
        value = json.loads(raw or "[]")
    except ValueError:
        return []
    return value if isinstance(value, list) else []


class SQLiteStore:
    """A tiny SQLite-backed chat store."""

    def __init__(self, db_path: str):
        self.db_path = str(Path(db_path)) if db_path != ":memory:" else db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------- seeding -------------------
    def create_user(self, display_name: str, profile_pic: Optional[str] = None) -> int:
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO users(display_name, profile_pic) VALUES(?, ?)",
                (display_name, profile_pic),
            )
            self._conn.commit()
            return int(cur.lastrowid)

    def create_chat(self, member_ids: Iterable[int], chat_type: str = "private",
                    name: Optional[str] = None) -> int:
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO chats(type, name) VALUES(?, ?)",
                (chat_type, name),
            )
            chat_id = int(cur.lastrowid)
            for user_id in member_ids:
                self._conn.execute(
                    "INSERT OR IGNORE INTO chat_members(chat_id, user_id) VALUES(?, ?)",
                    (chat_id, int(user_id)),
                )
            self._conn.commit()
            return chat_id

    def add_member(self, chat_id: int, user_id: int) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO chat_members(chat_id, user_id) VALUES(?, ?)",
                (int(chat_id), int(user_id)),
            )
            self._conn.commit()

    def remove_member(self, chat_id: int, user_id: int) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM chat_members WHERE chat_id=? AND user_id=?",
                (int(chat_id), int(user_id)),
            )
            self._conn.commit()

    def add_message(self, chat_id: int, sender_id: int, content: str) -> int:
        """Insert a message and bump the unread counter of the other members."""
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO messages(chat_id, sender_id, content) VALUES(?, ?, ?)",
                (int(chat_id), int(sender_id), content),
            )
            self._conn.execute(
                "UPDATE chat_members SET unread_count = unread_count + 1 WHERE chat_id=? AND user_id != ?",
                (int(chat_id), int(sender_id)),
            )
            self._conn.commit()
            return int(cur.lastrowid)

    # ------------------- relay operations -------------------
    def chat_ids_for_user(self, user_id: Any) -> List[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT chat_id FROM chat_members WHERE user_id=? ORDER BY chat_id",
                (user_id,),
            ).fetchall()
        return [int(r["chat_id"]) for r in rows]

    def get_user_profile(self, user_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, display_name, profile_pic FROM users WHERE id=?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {"id": row["id"], "display_name": row["display_name"], "profile_pic": row["profile_pic"]}

    def set_presence(self, user_id: Any, is_online: bool, last_seen: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE users SET is_online=?, last_seen=? WHERE id=?",
                (1 if is_online else 0, last_seen, user_id),
            )
            self._conn.commit()

    def reset_presence(self) -> int:
        """Mark every user offline (presence does not survive a restart)."""
        with self._lock:
            cur = self._conn.execute("UPDATE users SET is_online=0 WHERE is_online != 0")
            self._conn.commit()
            return cur.rowcount

    def get_presence(self, user_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT is_online, last_seen FROM users WHERE id=?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {"is_online": bool(row["is_online"]), "last_seen": row["last_seen"]}

    def mark_delivered(self, message_id: Any, user_id: Any) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT delivered_to FROM messages WHERE id=?",
                (message_id,),
            ).fetchone()
            if row is None:
                return False
            delivered = _json_list(row["delivered_to"])
            if user_id not in delivered:
                delivered.append(user_id)
                self._conn.execute(
                    "UPDATE messages SET delivered_to=? WHERE id=?",
                    (json.dumps(delivered), message_id),
                )
                self._conn.commit()
            return True

    def mark_read(self, chat_id: Any, user_id: Any) -> int:
        """Add the reader to every message of the chat not sent by them; reset unread."""
        updated = 0
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, read_by FROM messages WHERE chat_id=? AND sender_id != ?",
                (chat_id, user_id),
            ).fetchall()
            for row in rows:
                read_by = _json_list(row["read_by"])
                if user_id in read_by:
                    continue
                read_by.append(user_id)
                self._conn.execute(
                    "UPDATE messages SET read_by=? WHERE id=?",
                    (json.dumps(read_by), row["id"]),
                )
                updated += 1
            self._conn.execute(
                "UPDATE chat_members SET unread_count = 0 WHERE chat_id=? AND user_id=?",
                (chat_id, user_id),
            )
            self._conn.commit()
        return updated

    # ------------------- receipts (read side) -------------------
    def delivered_to(self, message_id: Any) -> List[Any]:
        with self._lock:
            row = self._conn.execute("SELECT delivered_to FROM messages WHERE id=?", (message_id,)).fetchone()
        return [] if row is None else _json_list(row["delivered_to"])

    def read_by(self, message_id: Any) -> List[Any]:
        with self._lock:
            row = self._conn.execute("SELECT read_by FROM messages WHERE id=?", (message_id,)).fetchone()
        return [] if row is None else _json_list(row["read_by"])

    def unread_count(self, chat_id: Any, user_id: Any) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT unread_count FROM chat_members WHERE chat_id=? AND user_id=?",
                (chat_id, user_id),
            ).fetchone()
        return 0 if row is None else int(row["unread_count"])
