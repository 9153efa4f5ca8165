"""Persistence for items, characters and mention records.

:class:`EntityStore` is the interface the segment processor talks to.
:class:`SQLiteEntityStore` is the bundled implementation:

* Single-file SQLite database, schema auto-created on first use
* JSON columns for aliases and state history
* ``transaction()`` groups every write of one segment; any exception rolls
  the whole unit back
* One connection per thread (WAL), so one game's open transaction never
  holds up another game's reads or extraction
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import Character, Item, Mention

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class EntityStore(ABC):
    """Repository of per-game entity records."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager: commit on success, roll back on any exception."""

    @abstractmethod
    def list_items(self, game_id: int) -> List[Item]:
        ...

    @abstractmethod
    def list_characters(self, game_id: int) -> List[Character]:
        ...

    @abstractmethod
    def get_item(self, item_id: int) -> Optional[Item]:
        ...

    @abstractmethod
    def get_character(self, character_id: int) -> Optional[Character]:
        ...

    @abstractmethod
    def save_item(self, item: Item) -> Item:
        """Insert when ``item.id`` is None (assigning it), else update."""

    @abstractmethod
    def save_character(self, character: Character) -> Character:
        """Insert when ``character.id`` is None (assigning it), else update."""

    @abstractmethod
    def add_mention(self, mention: Mention) -> Mention:
        ...

    @abstractmethod
    def list_mentions(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        segment_id: Optional[int] = None,
    ) -> List[Mention]:
        ...

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id INTEGER NOT NULL,
    canonical_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    aliases TEXT DEFAULT '[]',
    description TEXT,
    current_state TEXT NOT NULL DEFAULT 'DEFAULT',
    state_history TEXT DEFAULT '[]',
    acquired_at INTEGER,
    last_mentioned_at INTEGER,
    lost_at INTEGER,
    created_at REAL NOT NULL,
    updated_at REAL
);

CREATE INDEX IF NOT EXISTS idx_items_game ON items(game_id);

CREATE TABLE IF NOT EXISTS characters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id INTEGER NOT NULL,
    canonical_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    aliases TEXT DEFAULT '[]',
    description TEXT,
    relationship TEXT DEFAULT 'NEUTRAL',
    importance INTEGER DEFAULT 5,
    state_history TEXT DEFAULT '[]',
    original_character_id INTEGER REFERENCES characters(id),
    first_appeared_at INTEGER,
    last_appeared_at INTEGER,
    last_mentioned_at INTEGER,
    created_at REAL NOT NULL,
    updated_at REAL
);

CREATE INDEX IF NOT EXISTS idx_characters_game ON characters(game_id);

CREATE TABLE IF NOT EXISTS entity_mentions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    segment_id INTEGER NOT NULL,
    state_change INTEGER NOT NULL DEFAULT 0,
    new_state TEXT,
    context TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_mentions_entity ON entity_mentions(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_mentions_segment ON entity_mentions(segment_id);
"""


class SQLiteEntityStore(EntityStore):
    """SQLite-backed entity store."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        from .config import load_config

        self.db_path = db_path or load_config().db_path
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """This thread's connection; games on different threads never share one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self.db_path == ":memory:":
                # Every thread must see the same in-memory database.
                target, uri = f"file:entity_tracker_{id(self)}?mode=memory&cache=shared", True
            else:
                target, uri = self.db_path, False
            # Autocommit mode; transactions are explicit (see transaction()).
            conn = sqlite3.connect(
                target, uri=uri, isolation_level=None, timeout=30.0, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            self._local.tx_depth = 0
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def close(self) -> None:
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                conn.execute(stmt)

    @contextmanager
    def transaction(self) -> Iterator["SQLiteEntityStore"]:
        """Group writes; nested calls on the same thread join the outer transaction.

        Each thread writes through its own connection. SQLite serializes
        writers with ``BEGIN IMMEDIATE`` and readers never wait (WAL).
        """
        conn = self._get_conn()
        local = self._local
        if local.tx_depth:
            local.tx_depth += 1
            try:
                yield self
            finally:
                local.tx_depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        local.tx_depth = 1
        try:
            yield self
        except BaseException:
            conn.execute("ROLLBACK")
            logger.debug("transaction rolled back on %s", self.db_path)
            raise
        else:
            conn.execute("COMMIT")
        finally:
            local.tx_depth = 0

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def list_items(self, game_id: int) -> List[Item]:
        rows = self._get_conn().execute(
            "SELECT * FROM items WHERE game_id = ? ORDER BY id", (game_id,)
        ).fetchall()
        return [_row_to_item(r) for r in rows]

    def get_item(self, item_id: int) -> Optional[Item]:
        row = self._get_conn().execute(
            "SELECT * FROM items WHERE id = ?", (item_id,)
        ).fetchone()
        return _row_to_item(row) if row else None

    def save_item(self, item: Item) -> Item:
        now = time.time()
        with self.transaction():
            conn = self._get_conn()
            if item.id is None:
                cur = conn.execute(
                    """INSERT INTO items
                       (game_id, canonical_id, name, aliases, description,
                        current_state, state_history, acquired_at,
                        last_mentioned_at, lost_at, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        item.game_id, item.canonical_id, item.name,
                        json.dumps(item.aliases), item.description,
                        item.current_state, json.dumps(item.state_history),
                        item.acquired_at, item.last_mentioned_at, item.lost_at,
                        now, now,
                    ),
                )
                item.id = cur.lastrowid
                return item

            row = conn.execute(
                "SELECT state_history FROM items WHERE id = ?", (item.id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"item {item.id} not found")
            _check_append_only(json.loads(row["state_history"] or "[]"), item.state_history, item.id)

            # lost_at is set once: COALESCE keeps the stored turn.
            conn.execute(
                """UPDATE items
                   SET name = ?, aliases = ?, description = ?, current_state = ?,
                       state_history = ?, last_mentioned_at = ?,
                       lost_at = COALESCE(lost_at, ?), updated_at = ?
                   WHERE id = ?""",
                (
                    item.name, json.dumps(item.aliases), item.description,
                    item.current_state, json.dumps(item.state_history),
                    item.last_mentioned_at, item.lost_at, now, item.id,
                ),
            )
        return item

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    def list_characters(self, game_id: int) -> List[Character]:
        rows = self._get_conn().execute(
            "SELECT * FROM characters WHERE game_id = ? ORDER BY id", (game_id,)
        ).fetchall()
        return [_row_to_character(r) for r in rows]

    def get_character(self, character_id: int) -> Optional[Character]:
        row = self._get_conn().execute(
            "SELECT * FROM characters WHERE id = ?", (character_id,)
        ).fetchone()
        return _row_to_character(row) if row else None

    def save_character(self, character: Character) -> Character:
        now = time.time()
        with self.transaction():
            conn = self._get_conn()
            if character.id is None:
                cur = conn.execute(
                    """INSERT INTO characters
                       (game_id, canonical_id, name, aliases, description,
                        relationship, importance, state_history,
                        original_character_id, first_appeared_at,
                        last_appeared_at, last_mentioned_at, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        character.game_id, character.canonical_id, character.name,
                        json.dumps(character.aliases), character.description,
                        character.relationship, character.importance,
                        json.dumps(character.state_history),
                        character.original_character_id,
                        character.first_appeared_at, character.last_appeared_at,
                        character.last_mentioned_at, now, now,
                    ),
                )
                character.id = cur.lastrowid
                return character

            row = conn.execute(
                "SELECT state_history FROM characters WHERE id = ?", (character.id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"character {character.id} not found")
            _check_append_only(
                json.loads(row["state_history"] or "[]"), character.state_history, character.id
            )

            conn.execute(
                """UPDATE characters
                   SET name = ?, aliases = ?, description = ?, relationship = ?,
                       importance = ?, state_history = ?, original_character_id = ?,
                       last_appeared_at = ?, last_mentioned_at = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    character.name, json.dumps(character.aliases),
                    character.description, character.relationship,
                    character.importance, json.dumps(character.state_history),
                    character.original_character_id, character.last_appeared_at,
                    character.last_mentioned_at, now, character.id,
                ),
            )
        return character

    # ------------------------------------------------------------------
    # Mentions
    # ------------------------------------------------------------------

    def add_mention(self, mention: Mention) -> Mention:
        with self.transaction():
            cur = self._get_conn().execute(
                """INSERT INTO entity_mentions
                   (entity_type, entity_id, segment_id, state_change,
                    new_state, context, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    mention.entity_type, mention.entity_id, mention.segment_id,
                    int(mention.state_change), mention.new_state, mention.context,
                    time.time(),
                ),
            )
        return Mention(
            entity_type=mention.entity_type,
            entity_id=mention.entity_id,
            segment_id=mention.segment_id,
            state_change=mention.state_change,
            new_state=mention.new_state,
            context=mention.context,
            id=cur.lastrowid,
        )

    def list_mentions(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        segment_id: Optional[int] = None,
    ) -> List[Mention]:
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if segment_id is not None:
            clauses.append("segment_id = ?")
            params.append(segment_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._get_conn().execute(
            f"SELECT * FROM entity_mentions {where} ORDER BY id", params
        ).fetchall()
        return [
            Mention(
                entity_type=r["entity_type"],
                entity_id=r["entity_id"],
                segment_id=r["segment_id"],
                state_change=bool(r["state_change"]),
                new_state=r["new_state"],
                context=r["context"],
                id=r["id"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self, game_id: Optional[int] = None) -> Dict[str, Any]:
        """Row counts, optionally restricted to one game."""
        conn = self._get_conn()
        if game_id is None:
            items = conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
            characters = conn.execute("SELECT COUNT(*) FROM characters").fetchone()[0]
            mentions = conn.execute("SELECT COUNT(*) FROM entity_mentions").fetchone()[0]
            lost = conn.execute(
                "SELECT COUNT(*) FROM items WHERE lost_at IS NOT NULL"
            ).fetchone()[0]
        else:
            items = conn.execute(
                "SELECT COUNT(*) FROM items WHERE game_id = ?", (game_id,)
            ).fetchone()[0]
            characters = conn.execute(
                "SELECT COUNT(*) FROM characters WHERE game_id = ?", (game_id,)
            ).fetchone()[0]
            mentions = conn.execute(
                """SELECT COUNT(*) FROM entity_mentions m
                   WHERE (m.entity_type = 'ITEM' AND m.entity_id IN
                          (SELECT id FROM items WHERE game_id = ?))
                      OR (m.entity_type = 'CHARACTER' AND m.entity_id IN
                          (SELECT id FROM characters WHERE game_id = ?))""",
                (game_id, game_id),
            ).fetchone()[0]
            lost = conn.execute(
                "SELECT COUNT(*) FROM items WHERE game_id = ? AND lost_at IS NOT NULL",
                (game_id,),
            ).fetchone()[0]
        return {
            "items": items,
            "characters": characters,
            "mentions": mentions,
            "lost_items": lost,
            "db_path": self.db_path,
        }


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _check_append_only(stored: List[Any], new: List[Any], entity_id: Optional[int]) -> None:
    if len(new) < len(stored) or new[: len(stored)] != stored:
        raise ValueError(f"state history of entity {entity_id} is append-only")


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        game_id=row["game_id"],
        canonical_id=row["canonical_id"],
        name=row["name"],
        aliases=json.loads(row["aliases"] or "[]"),
        description=row["description"],
        current_state=row["current_state"],
        state_history=json.loads(row["state_history"] or "[]"),
        acquired_at=row["acquired_at"],
        last_mentioned_at=row["last_mentioned_at"],
        lost_at=row["lost_at"],
    )


def _row_to_character(row: sqlite3.Row) -> Character:
    return Character(
        id=row["id"],
        game_id=row["game_id"],
        canonical_id=row["canonical_id"],
        name=row["name"],
        aliases=json.loads(row["aliases"] or "[]"),
        description=row["description"],
        relationship=row["relationship"] or "NEUTRAL",
        importance=row["importance"] if row["importance"] is not None else 5,
        state_history=json.loads(row["state_history"] or "[]"),
        original_character_id=row["original_character_id"],
        first_appeared_at=row["first_appeared_at"],
        last_appeared_at=row["last_appeared_at"],
        last_mentioned_at=row["last_mentioned_at"],
    )
