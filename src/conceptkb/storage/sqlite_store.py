"""SQLite storage for concepts, embeddings, cached responses and context sessions."""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Iterator

from conceptkb.exceptions import StorageError
from conceptkb.storage.codec import decode_vector, encode_vector
from conceptkb.types import (
    CachedResponse,
    Concept,
    ContextSession,
    EmbeddingRecord,
    Message,
)
from conceptkb.utils import iso_str, json_dumps, json_loads, new_id, parse_iso, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS concepts (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    content TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_concepts_status ON concepts(status);

CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    forward_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (source_id, target_id)
);

CREATE TABLE IF NOT EXISTS link_names (
    forward_name TEXT PRIMARY KEY,
    reverse_name TEXT NOT NULL DEFAULT '',
    is_deleted INTEGER NOT NULL DEFAULT 0
);

-- embedding holds packed float32 (BLOB) or a legacy JSON array (TEXT)
CREATE TABLE IF NOT EXISTS concept_embeddings (
    id TEXT PRIMARY KEY,
    concept_id TEXT NOT NULL UNIQUE,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS llm_cache (
    id TEXT PRIMARY KEY,
    query_embedding BLOB NOT NULL,
    query_text TEXT NOT NULL,
    response TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'json',
    created_at TEXT NOT NULL,
    last_used_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_llm_cache_partition ON llm_cache(provider, model, last_used_at);

CREATE TABLE IF NOT EXISTS context_sessions (
    id TEXT PRIMARY KEY,
    session_key TEXT NOT NULL UNIQUE,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    context_messages TEXT NOT NULL DEFAULT '[]',
    concept_ids TEXT,
    external_cache_id TEXT,
    cache_expires_at TEXT,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_context_sessions_expiry ON context_sessions(expires_at);
"""

# A concept has a current embedding when a row exists that is at least as
# new as the concept itself.
_MISSING_WHERE = """
    e.id IS NULL OR e.updated_at < c.updated_at
"""


class SQLiteStore:
    """Main SQLite storage backend."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=30000")
        self._init_schema()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._conn.cursor()
                cur.executescript(_SCHEMA)
                self._migrate(cur)
                cur.execute(
                    "INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                self._conn.commit()
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise StorageError(f"schema init failed: {e}") from e

    @staticmethod
    def _migrate(cur: sqlite3.Cursor) -> None:
        cols = {row[1] for row in cur.execute("PRAGMA table_info(llm_cache)")}
        if "kind" not in cols:
            cur.execute("ALTER TABLE llm_cache ADD COLUMN kind TEXT NOT NULL DEFAULT 'json'")

    def close(self) -> None:
        self._conn.close()

    # --- Concepts ---

    def insert_concept(self, concept: Concept) -> str:
        self._conn.execute(
            """INSERT INTO concepts(id, title, description, content, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                concept.id, concept.title, concept.description, concept.content,
                concept.status.value, iso_str(concept.created_at), iso_str(concept.updated_at),
            ),
        )
        self._conn.commit()
        return concept.id

    def update_concept(self, concept_id: str, **fields: Any) -> Concept | None:
        allowed = {"title", "description", "content", "status"}
        updates = {k: v for k, v in fields.items() if k in allowed}
        if "status" in updates and hasattr(updates["status"], "value"):
            updates["status"] = updates["status"].value
        updates["updated_at"] = iso_str(utcnow())
        assignments = ", ".join(f"{k}=?" for k in updates)
        self._conn.execute(
            f"UPDATE concepts SET {assignments} WHERE id=?",
            (*updates.values(), concept_id),
        )
        self._conn.commit()
        return self.get_concept(concept_id)

    def get_concept(self, concept_id: str) -> Concept | None:
        row = self._conn.execute("SELECT * FROM concepts WHERE id=?", (concept_id,)).fetchone()
        if not row:
            return None
        return self._row_to_concept(row)

    def get_concepts(self, concept_ids: list[str]) -> dict[str, Concept]:
        if not concept_ids:
            return {}
        marks = ",".join("?" for _ in concept_ids)
        rows = self._conn.execute(
            f"SELECT * FROM concepts WHERE id IN ({marks})", tuple(concept_ids)
        ).fetchall()
        return {r["id"]: self._row_to_concept(r) for r in rows}

    def list_concepts(self, status: str | None = "active", limit: int = 100,
                      exclude_ids: list[str] | None = None) -> list[Concept]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status=?")
            params.append(status)
        if exclude_ids:
            clauses.append(f"id NOT IN ({','.join('?' for _ in exclude_ids)})")
            params.extend(exclude_ids)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM concepts {where} ORDER BY created_at ASC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [self._row_to_concept(r) for r in rows]

    def count_concepts(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM concepts").fetchone()[0]

    def list_concepts_missing_embedding(self, limit: int,
                                        exclude_ids: Collection[str] = ()) -> list[Concept]:
        excluded = list(exclude_ids)
        skip = ""
        if excluded:
            skip = f"AND c.id NOT IN ({','.join('?' for _ in excluded)})"
        rows = self._conn.execute(
            f"""SELECT c.* FROM concepts c
                LEFT JOIN concept_embeddings e ON e.concept_id = c.id
                WHERE ({_MISSING_WHERE}) {skip}
                ORDER BY c.created_at ASC
                LIMIT ?""",
            (*excluded, limit),
        ).fetchall()
        return [self._row_to_concept(r) for r in rows]

    def count_missing_embeddings(self) -> int:
        row = self._conn.execute(
            f"""SELECT COUNT(*) FROM concepts c
                LEFT JOIN concept_embeddings e ON e.concept_id = c.id
                WHERE {_MISSING_WHERE}"""
        ).fetchone()
        return row[0]

    # --- Links ---

    def insert_link(self, source_id: str, target_id: str, forward_name: str) -> str:
        link_id = new_id()
        self._conn.execute(
            """INSERT INTO links(id, source_id, target_id, forward_name, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (link_id, source_id, target_id, forward_name, iso_str(utcnow())),
        )
        self._conn.commit()
        return link_id

    def linked_target_ids(self, source_id: str) -> set[str]:
        rows = self._conn.execute(
            "SELECT target_id FROM links WHERE source_id=?", (source_id,)
        ).fetchall()
        return {r["target_id"] for r in rows}

    def insert_link_name(self, forward_name: str, reverse_name: str = "") -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO link_names(forward_name, reverse_name, is_deleted) VALUES (?, ?, 0)",
            (forward_name, reverse_name),
        )
        self._conn.commit()

    def list_link_names(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT forward_name FROM link_names WHERE is_deleted=0 ORDER BY forward_name"
        ).fetchall()
        return [r["forward_name"] for r in rows]

    # --- Embeddings ---

    def upsert_embedding(self, concept_id: str, vector, model: str) -> EmbeddingRecord:
        """Write an embedding in packed binary form, replacing any existing row."""
        now = utcnow()
        self._conn.execute(
            """INSERT INTO concept_embeddings(id, concept_id, embedding, model, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(concept_id) DO UPDATE SET
                   embedding=excluded.embedding,
                   model=excluded.model,
                   updated_at=excluded.updated_at""",
            (new_id(), concept_id, encode_vector(vector), model, iso_str(now), iso_str(now)),
        )
        self._conn.commit()
        return EmbeddingRecord(
            entity_id=concept_id,
            vector=[float(x) for x in vector],
            model=model,
            updated_at=now,
        )

    def get_embedding(self, concept_id: str) -> EmbeddingRecord | None:
        row = self._conn.execute(
            "SELECT concept_id, embedding, model, updated_at FROM concept_embeddings WHERE concept_id=?",
            (concept_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_embedding(row)

    def iter_embeddings(self) -> Iterator[EmbeddingRecord]:
        """Yield every decodable embedding row; undecodable rows are skipped."""
        rows = self._conn.execute(
            "SELECT concept_id, embedding, model, updated_at FROM concept_embeddings ORDER BY rowid"
        ).fetchall()
        for row in rows:
            try:
                yield self._row_to_embedding(row)
            except StorageError as exc:
                logger.warning("skipping embedding for %s: %s", row["concept_id"], exc)

    def delete_embedding(self, concept_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM concept_embeddings WHERE concept_id=?", (concept_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def count_embeddings(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM concept_embeddings").fetchone()[0]

    # --- LLM response cache ---

    def insert_cache_entry(self, entry: CachedResponse) -> str:
        self._conn.execute(
            """INSERT INTO llm_cache(id, query_embedding, query_text, response, provider, model,
                                     kind, created_at, last_used_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id, encode_vector(entry.fingerprint), entry.prompt_text,
                json_dumps(entry.response), entry.provider, entry.model, entry.kind,
                iso_str(entry.created_at), iso_str(entry.last_used_at),
            ),
        )
        self._conn.commit()
        return entry.id

    def list_cache_entries(self, provider: str, model: str, limit: int = 100,
                           kind: str = "json") -> list[CachedResponse]:
        rows = self._conn.execute(
            """SELECT * FROM llm_cache WHERE provider=? AND model=? AND kind=?
               ORDER BY last_used_at DESC LIMIT ?""",
            (provider, model, kind, limit),
        ).fetchall()
        return [self._row_to_cache_entry(r) for r in rows]

    def touch_cache_entry(self, entry_id: str) -> None:
        self._conn.execute(
            "UPDATE llm_cache SET last_used_at=? WHERE id=?", (iso_str(utcnow()), entry_id)
        )
        self._conn.commit()

    def count_cache_entries(self, provider: str, model: str, kind: str = "json") -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM llm_cache WHERE provider=? AND model=? AND kind=?",
            (provider, model, kind),
        ).fetchone()
        return row[0]

    def evict_cache_entries(self, provider: str, model: str, count: int,
                            kind: str = "json") -> int:
        """Delete the ``count`` least recently used entries of a partition."""
        if count <= 0:
            return 0
        cur = self._conn.execute(
            """DELETE FROM llm_cache WHERE id IN (
                   SELECT id FROM llm_cache WHERE provider=? AND model=? AND kind=?
                   ORDER BY last_used_at ASC LIMIT ?)""",
            (provider, model, kind, count),
        )
        self._conn.commit()
        return cur.rowcount

    def clear_cache(self, provider: str | None = None, model: str | None = None) -> int:
        if provider and model:
            cur = self._conn.execute(
                "DELETE FROM llm_cache WHERE provider=? AND model=?", (provider, model)
            )
        elif provider:
            cur = self._conn.execute("DELETE FROM llm_cache WHERE provider=?", (provider,))
        else:
            cur = self._conn.execute("DELETE FROM llm_cache")
        self._conn.commit()
        return cur.rowcount

    # --- Context sessions ---

    def get_session(self, session_key: str) -> ContextSession | None:
        row = self._conn.execute(
            "SELECT * FROM context_sessions WHERE session_key=?", (session_key,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def list_sessions(self) -> list[ContextSession]:
        rows = self._conn.execute("SELECT * FROM context_sessions ORDER BY created_at").fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_expired_sessions(self, now: datetime) -> list[ContextSession]:
        rows = self._conn.execute(
            "SELECT * FROM context_sessions WHERE expires_at <= ?", (iso_str(now),)
        ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def save_session(self, session: ContextSession) -> ContextSession:
        """Insert or fully overwrite the row for ``session.session_key``."""
        session.updated_at = utcnow()
        self._conn.execute(
            """INSERT INTO context_sessions(id, session_key, provider, model, context_messages,
                   concept_ids, external_cache_id, cache_expires_at, expires_at,
                   created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(session_key) DO UPDATE SET
                   provider=excluded.provider,
                   model=excluded.model,
                   context_messages=excluded.context_messages,
                   concept_ids=excluded.concept_ids,
                   external_cache_id=excluded.external_cache_id,
                   cache_expires_at=excluded.cache_expires_at,
                   expires_at=excluded.expires_at,
                   updated_at=excluded.updated_at""",
            (
                session.id, session.session_key, session.provider, session.model,
                json_dumps([m.model_dump() for m in session.messages]),
                json_dumps(session.entity_ids) if session.entity_ids else None,
                session.external_cache_id,
                iso_str(session.cache_expires_at) if session.cache_expires_at else None,
                iso_str(session.expires_at),
                iso_str(session.created_at), iso_str(session.updated_at),
            ),
        )
        self._conn.commit()
        return session

    def delete_session(self, session_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM context_sessions WHERE id=?", (session_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # --- Row Converters ---

    @staticmethod
    def _row_to_concept(row: sqlite3.Row) -> Concept:
        return Concept(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            content=row["content"],
            status=row["status"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_embedding(row: sqlite3.Row) -> EmbeddingRecord:
        vector, legacy = decode_vector(row["embedding"])
        return EmbeddingRecord(
            entity_id=row["concept_id"],
            vector=vector.tolist(),
            model=row["model"],
            updated_at=parse_iso(row["updated_at"]),
            legacy=legacy,
        )

    @staticmethod
    def _row_to_cache_entry(row: sqlite3.Row) -> CachedResponse:
        fingerprint, _ = decode_vector(row["query_embedding"])
        return CachedResponse(
            id=row["id"],
            fingerprint=fingerprint.tolist(),
            prompt_text=row["query_text"],
            response=json_loads(row["response"]),
            provider=row["provider"],
            model=row["model"],
            kind=row["kind"],
            created_at=parse_iso(row["created_at"]),
            last_used_at=parse_iso(row["last_used_at"]),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ContextSession:
        return ContextSession(
            id=row["id"],
            session_key=row["session_key"],
            provider=row["provider"],
            model=row["model"],
            messages=[Message(**m) for m in json_loads(row["context_messages"])],
            entity_ids=json_loads(row["concept_ids"]) if row["concept_ids"] else [],
            external_cache_id=row["external_cache_id"],
            cache_expires_at=parse_iso(row["cache_expires_at"]) if row["cache_expires_at"] else None,
            expires_at=parse_iso(row["expires_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
