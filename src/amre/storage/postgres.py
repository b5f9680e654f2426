from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from amre.errors import ConstraintViolation
from amre.models import (
    ChunkType,
    CoverageStats,
    KnowledgeEntry,
    LedgerRecord,
    MemoryChunk,
    SourceType,
    Turn,
    TurnState,
    utcnow,
)
from amre.storage.base import ScoredChunk, ScoredEntry

logger = logging.getLogger(__name__)

# pgvector's HNSW index supports at most this many dimensions.
_HNSW_MAX_DIMS = 2000

_ENTRY_COLUMNS = """
    id, user_id, source_type, source_id, category, title, content,
    embedding::text AS embedding, importance, tags, metadata,
    created_at, updated_at, expires_at, is_active
"""

_CHUNK_COLUMNS = """
    id, user_id, conversation_id, turn_id, content, chunk_type,
    embedding::text AS embedding, importance, metadata, created_at
"""


def to_vector_literal(values: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in values) + "]"


def parse_vector(value: Optional[str]) -> Optional[List[float]]:
    if value is None:
        return None
    return [float(v) for v in json.loads(value)]


class PostgresKnowledgeStore:
    """pgvector-backed store.

    Similarity is ``1 - (embedding <=> query)`` over HNSW cosine indexes.
    The ledger primary key is the uniqueness constraint behind ``claim``,
    so concurrent workers in different processes race safely.
    """

    def __init__(self, dsn: str, dimensions: int) -> None:
        self._dsn = dsn
        self._dims = dimensions
        self._lock = threading.RLock()
        self._conn = psycopg.connect(dsn, row_factory=dict_row, connect_timeout=3, autocommit=True)
        self._ensure_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _ensure_schema(self) -> None:
        dims = int(self._dims)
        source_types = ", ".join(f"'{s.value}'" for s in SourceType)
        chunk_types = ", ".join(f"'{c.value}'" for c in ChunkType)
        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"""
            CREATE TABLE IF NOT EXISTS knowledge_entries (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source_type TEXT NOT NULL CHECK (source_type IN ({source_types})),
                source_id TEXT,
                category TEXT NOT NULL DEFAULT 'general',
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL,
                embedding vector({dims}),
                importance DOUBLE PRECISION NOT NULL DEFAULT 0.5
                    CHECK (importance >= 0 AND importance <= 1),
                tags TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                expires_at TIMESTAMPTZ,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,
            "CREATE INDEX IF NOT EXISTS knowledge_entries_user_category_idx ON knowledge_entries (user_id, category)",
            "CREATE INDEX IF NOT EXISTS knowledge_entries_user_source_idx ON knowledge_entries (user_id, source_type, source_id)",
            "CREATE INDEX IF NOT EXISTS knowledge_entries_tags_idx ON knowledge_entries USING GIN (tags)",
            "CREATE INDEX IF NOT EXISTS knowledge_entries_missing_idx ON knowledge_entries (created_at) WHERE embedding IS NULL",
            "CREATE INDEX IF NOT EXISTS knowledge_entries_expiry_idx ON knowledge_entries (expires_at) WHERE expires_at IS NOT NULL",
            f"""
            CREATE TABLE IF NOT EXISTS memory_chunks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                turn_id TEXT,
                content TEXT NOT NULL,
                chunk_type TEXT NOT NULL CHECK (chunk_type IN ({chunk_types})),
                embedding vector({dims}) NOT NULL,
                importance DOUBLE PRECISION NOT NULL
                    CHECK (importance >= 0 AND importance <= 1),
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS memory_chunks_conversation_idx ON memory_chunks (user_id, conversation_id, chunk_type)",
            """
            CREATE TABLE IF NOT EXISTS turns (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS turns_user_recent_idx ON turns (user_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS turns_conversation_idx ON turns (user_id, conversation_id, created_at)",
            """
            CREATE TABLE IF NOT EXISTS turn_ledger (
                key TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                state TEXT NOT NULL,
                reason TEXT,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
        ]
        if dims <= _HNSW_MAX_DIMS:
            statements += [
                "CREATE INDEX IF NOT EXISTS knowledge_entries_embedding_idx "
                "ON knowledge_entries USING hnsw (embedding vector_cosine_ops)",
                "CREATE INDEX IF NOT EXISTS memory_chunks_embedding_idx "
                "ON memory_chunks USING hnsw (embedding vector_cosine_ops)",
            ]
        else:
            logger.warning(
                "Embedding dimension %d exceeds the HNSW limit; similarity queries will scan.", dims,
            )
        with self._lock, self._conn.transaction(), self._conn.cursor() as cur:
            for sql in statements:
                cur.execute(sql)

    # -- Turns and the processing ledger -------------------------------

    def claim(self, key: str, user_id: str, turn: Optional[Turn] = None) -> bool:
        with self._lock, self._conn.transaction(), self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO turn_ledger (key, user_id, state)
                VALUES (%s, %s, %s)
                ON CONFLICT (key) DO NOTHING
                RETURNING key
                """,
                (key, user_id, TurnState.PENDING.value),
            )
            if cur.fetchone() is None:
                return False
            if turn is not None:
                cur.execute(
                    """
                    INSERT INTO turns (id, user_id, conversation_id, role, content, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (turn.id, turn.user_id, turn.conversation_id, turn.role, turn.content, turn.created_at),
                )
            return True

    def ledger_record(self, key: str) -> Optional[LedgerRecord]:
        row = self._fetchone(
            "SELECT key, user_id, state, reason, updated_at FROM turn_ledger WHERE key = %s", (key,),
        )
        if row is None:
            return None
        return LedgerRecord(
            key=row["key"],
            user_id=row["user_id"],
            state=TurnState(row["state"]),
            reason=row["reason"],
            updated_at=row["updated_at"],
        )

    def set_state(self, key: str, state: TurnState, reason: Optional[str] = None) -> None:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(
                "UPDATE turn_ledger SET state = %s, reason = %s, updated_at = NOW() WHERE key = %s",
                (TurnState(state).value, reason, key),
            )
            if cur.rowcount == 0:
                raise KeyError(key)

    def commit(self, key: str, chunks: Sequence[MemoryChunk], entries: Sequence[KnowledgeEntry]) -> None:
        with self._lock, self._conn.transaction(), self._conn.cursor() as cur:
            if chunks:
                cur.executemany(
                    """
                    INSERT INTO memory_chunks
                        (id, user_id, conversation_id, turn_id, content, chunk_type,
                         embedding, importance, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::vector, %s, %s::jsonb, %s)
                    """,
                    [
                        (
                            c.id, c.user_id, c.conversation_id, c.turn_id, c.content,
                            ChunkType(c.chunk_type).value, to_vector_literal(c.embedding),
                            c.importance, json.dumps(c.metadata), c.created_at,
                        )
                        for c in chunks
                    ],
                )
            for entry in entries:
                self._insert_entry(cur, entry)
            cur.execute(
                "UPDATE turn_ledger SET state = %s, reason = NULL, updated_at = NOW() WHERE key = %s",
                (TurnState.DONE.value, key),
            )
            if cur.rowcount == 0:
                raise KeyError(key)

    def recent_turns(self, user_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        rows = self._fetchall(
            """
            SELECT id, user_id, conversation_id, role, content, created_at
            FROM turns WHERE user_id = %s
            ORDER BY created_at DESC LIMIT %s
            """,
            (user_id, limit),
        )
        return [Turn(**row) for row in rows]

    def conversation_turns(self, user_id: str, conversation_id: str,
                           after: Optional[datetime] = None) -> List[Turn]:
        rows = self._fetchall(
            """
            SELECT id, user_id, conversation_id, role, content, created_at
            FROM turns
            WHERE user_id = %s AND conversation_id = %s
              AND (%s::timestamptz IS NULL OR created_at > %s::timestamptz)
            ORDER BY created_at, id
            """,
            (user_id, conversation_id, after, after),
        )
        return [Turn(**row) for row in rows]

    def last_summary_end(self, user_id: str, conversation_id: str) -> Optional[datetime]:
        row = self._fetchone(
            """
            SELECT MAX((metadata->>'window_end')::timestamptz) AS window_end
            FROM memory_chunks
            WHERE user_id = %s AND conversation_id = %s AND chunk_type = %s
            """,
            (user_id, conversation_id, ChunkType.SUMMARY.value),
        )
        return row["window_end"] if row else None

    def conversation_exists(self, user_id: str, conversation_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS found FROM turns WHERE user_id = %s AND conversation_id = %s LIMIT 1",
            (user_id, conversation_id),
        )
        return row is not None

    def forget_conversation(self, user_id: str, conversation_id: str) -> int:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(
                "DELETE FROM turns WHERE user_id = %s AND conversation_id = %s",
                (user_id, conversation_id),
            )
            return cur.rowcount

    # -- Similarity queries ----------------------------------------------

    def search_chunks(self, user_id: str, embedding: Sequence[float], limit: int,
                      threshold: float = 0.0, chunk_type: Optional[ChunkType] = None) -> List[ScoredChunk]:
        params = {
            "q": to_vector_literal(embedding),
            "user": user_id,
            "chunk_type": ChunkType(chunk_type).value if chunk_type else None,
            "threshold": threshold,
            "limit": limit,
        }
        rows = self._fetchall(
            f"""
            SELECT {_CHUNK_COLUMNS}, 1 - (embedding <=> %(q)s::vector) AS similarity
            FROM memory_chunks
            WHERE user_id = %(user)s
              AND (%(chunk_type)s::text IS NULL OR chunk_type = %(chunk_type)s::text)
              AND (%(threshold)s <= 0 OR 1 - (embedding <=> %(q)s::vector) > %(threshold)s)
            ORDER BY embedding <=> %(q)s::vector
            LIMIT %(limit)s
            """,
            params,
        )
        return [(self._row_to_chunk(r), float(r["similarity"])) for r in rows]

    def search_entries(self, user_id: str, embedding: Sequence[float], limit: int,
                       threshold: float = 0.0, category: Optional[str] = None,
                       source_type: Optional[SourceType] = None,
                       now: Optional[datetime] = None) -> List[ScoredEntry]:
        params = {
            "q": to_vector_literal(embedding),
            "user": user_id,
            "now": now or utcnow(),
            "category": category,
            "source": SourceType(source_type).value if source_type else None,
            "threshold": threshold,
            "limit": limit,
        }
        rows = self._fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS}, 1 - (embedding <=> %(q)s::vector) AS similarity
            FROM knowledge_entries
            WHERE user_id = %(user)s
              AND is_active
              AND embedding IS NOT NULL
              AND (expires_at IS NULL OR expires_at > %(now)s)
              AND (%(category)s::text IS NULL OR category = %(category)s::text)
              AND (%(source)s::text IS NULL OR source_type = %(source)s::text)
              AND (%(threshold)s <= 0 OR 1 - (embedding <=> %(q)s::vector) > %(threshold)s)
            ORDER BY embedding <=> %(q)s::vector
            LIMIT %(limit)s
            """,
            params,
        )
        return [(self._row_to_entry(r), float(r["similarity"])) for r in rows]

    def similar_entries(self, entry_id: str, threshold: float, limit: int = 10) -> List[ScoredEntry]:
        rows = self._fetchall(
            """
            WITH target AS (
                SELECT user_id, embedding FROM knowledge_entries
                WHERE id = %(id)s AND embedding IS NOT NULL
            )
            SELECT k.id, k.user_id, k.source_type, k.source_id, k.category, k.title, k.content,
                   k.embedding::text AS embedding, k.importance, k.tags, k.metadata,
                   k.created_at, k.updated_at, k.expires_at, k.is_active,
                   1 - (k.embedding <=> t.embedding) AS similarity
            FROM knowledge_entries k, target t
            WHERE k.user_id = t.user_id
              AND k.id <> %(id)s
              AND k.is_active
              AND k.embedding IS NOT NULL
              AND 1 - (k.embedding <=> t.embedding) > %(threshold)s
            ORDER BY k.embedding <=> t.embedding
            LIMIT %(limit)s
            """,
            {"id": entry_id, "threshold": threshold, "limit": limit},
        )
        return [(self._row_to_entry(r), float(r["similarity"])) for r in rows]

    # -- Entries -----------------------------------------------------------

    def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        try:
            with self._lock, self._conn.cursor() as cur:
                self._insert_entry(cur, entry)
        except psycopg.errors.UniqueViolation as exc:
            raise ConstraintViolation(entry.id) from exc
        return entry

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        row = self._fetchone(
            f"SELECT {_ENTRY_COLUMNS} FROM knowledge_entries WHERE id = %s", (entry_id,),
        )
        return self._row_to_entry(row) if row else None

    def list_entries(self, user_id: str, category: Optional[str] = None,
                     source_type: Optional[SourceType] = None, tag: Optional[str] = None,
                     include_inactive: bool = False, limit: int = 100) -> List[KnowledgeEntry]:
        rows = self._fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM knowledge_entries
            WHERE user_id = %(user)s
              AND (%(all)s OR (is_active AND (expires_at IS NULL OR expires_at > NOW())))
              AND (%(category)s::text IS NULL OR category = %(category)s::text)
              AND (%(source)s::text IS NULL OR source_type = %(source)s::text)
              AND (%(tag)s::text IS NULL OR %(tag)s::text = ANY(tags))
            ORDER BY importance DESC, created_at
            LIMIT %(limit)s
            """,
            {
                "user": user_id,
                "all": include_inactive,
                "category": category,
                "source": SourceType(source_type).value if source_type else None,
                "tag": tag.lower() if tag else None,
                "limit": limit,
            },
        )
        return [self._row_to_entry(r) for r in rows]

    def user_ids(self) -> List[str]:
        rows = self._fetchall("SELECT DISTINCT user_id FROM knowledge_entries ORDER BY user_id", ())
        return [r["user_id"] for r in rows]

    def embedded_entry_ids(self, user_id: Optional[str] = None) -> List[str]:
        rows = self._fetchall(
            """
            SELECT id FROM knowledge_entries
            WHERE is_active AND embedding IS NOT NULL
              AND (%(user)s::text IS NULL OR user_id = %(user)s::text)
            ORDER BY created_at, id
            """,
            {"user": user_id},
        )
        return [r["id"] for r in rows]

    def entries_missing_embedding(self, limit: int, user_id: Optional[str] = None,
                                  source_type: Optional[SourceType] = None,
                                  exclude_ids: Iterable[str] = ()) -> List[KnowledgeEntry]:
        rows = self._fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM knowledge_entries
            WHERE embedding IS NULL AND is_active
              AND (%(user)s::text IS NULL OR user_id = %(user)s::text)
              AND (%(source)s::text IS NULL OR source_type = %(source)s::text)
              AND NOT (id = ANY(%(exclude)s::text[]))
            ORDER BY created_at, id
            LIMIT %(limit)s
            """,
            {
                "user": user_id,
                "source": SourceType(source_type).value if source_type else None,
                "exclude": list(exclude_ids),
                "limit": limit,
            },
        )
        return [self._row_to_entry(r) for r in rows]

    def coverage(self, user_id: Optional[str] = None,
                 source_type: Optional[SourceType] = None) -> CoverageStats:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS total, COUNT(embedding) AS embedded
            FROM knowledge_entries
            WHERE is_active
              AND (%(user)s::text IS NULL OR user_id = %(user)s::text)
              AND (%(source)s::text IS NULL OR source_type = %(source)s::text)
            """,
            {"user": user_id, "source": SourceType(source_type).value if source_type else None},
        )
        return CoverageStats(total=int(row["total"]), embedded=int(row["embedded"]))

    def set_embedding(self, entry_id: str, embedding: Sequence[float]) -> None:
        self._update_entry(
            "UPDATE knowledge_entries SET embedding = %s::vector, updated_at = NOW() WHERE id = %s",
            (to_vector_literal(embedding), entry_id),
        )

    def set_importance(self, entry_id: str, importance: float) -> None:
        if not 0.0 <= importance <= 1.0:
            raise ValueError(f"importance must be within [0, 1], got {importance}")
        self._update_entry(
            "UPDATE knowledge_entries SET importance = %s, updated_at = NOW() WHERE id = %s",
            (importance, entry_id),
        )

    def set_active(self, entry_id: str, active: bool) -> None:
        self._update_entry(
            "UPDATE knowledge_entries SET is_active = %s, updated_at = NOW() WHERE id = %s",
            (active, entry_id),
        )

    def merge_entries(self, survivor_id: str, loser_id: str) -> bool:
        with self._lock, self._conn.transaction(), self._conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, is_active, tags, metadata FROM knowledge_entries
                WHERE id = ANY(%s) ORDER BY id FOR UPDATE
                """,
                ([survivor_id, loser_id],),
            )
            rows = {r["id"]: r for r in cur.fetchall()}
            survivor, loser = rows.get(survivor_id), rows.get(loser_id)
            if survivor is None or loser is None or not survivor["is_active"] or not loser["is_active"]:
                return False
            tags = sorted(set(survivor["tags"] or []) | set(loser["tags"] or []))
            merged_from = list((survivor["metadata"] or {}).get("merged_from", []))
            merged_from.append(loser_id)
            cur.execute(
                """
                UPDATE knowledge_entries
                SET is_active = FALSE,
                    metadata = metadata || %s::jsonb,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (json.dumps({"merged_into": survivor_id}), loser_id),
            )
            cur.execute(
                """
                UPDATE knowledge_entries
                SET tags = %s,
                    metadata = metadata || %s::jsonb,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (tags, json.dumps({"merged_from": merged_from}), survivor_id),
            )
            return True

    # -- Reaper ------------------------------------------------------------

    def expired_entry_ids(self, now: datetime, user_id: Optional[str] = None) -> List[str]:
        rows = self._fetchall(
            """
            SELECT id FROM knowledge_entries
            WHERE expires_at IS NOT NULL AND expires_at <= %(now)s
              AND (%(user)s::text IS NULL OR user_id = %(user)s::text)
            """,
            {"now": now, "user": user_id},
        )
        return [r["id"] for r in rows]

    def delete_entries(self, entry_ids: Sequence[str]) -> int:
        if not entry_ids:
            return 0
        with self._lock, self._conn.cursor() as cur:
            cur.execute("DELETE FROM knowledge_entries WHERE id = ANY(%s)", (list(entry_ids),))
            return cur.rowcount

    def flag_orphaned(self, entry_id: str, reason: str) -> None:
        self._update_entry(
            """
            UPDATE knowledge_entries
            SET metadata = metadata || %s::jsonb, updated_at = NOW()
            WHERE id = %s
            """,
            (json.dumps({"orphaned": True, "orphan_reason": reason}), entry_id),
        )

    # -- Internal helpers ---------------------------------------------------

    def _fetchone(self, sql: str, params: Any) -> Optional[Dict[str, Any]]:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: Any) -> List[Dict[str, Any]]:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _update_entry(self, sql: str, params: Any) -> None:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(sql, params)
            if cur.rowcount == 0:
                raise KeyError(params[-1])

    @staticmethod
    def _insert_entry(cur: psycopg.Cursor, entry: KnowledgeEntry) -> None:
        cur.execute(
            """
            INSERT INTO knowledge_entries
                (id, user_id, source_type, source_id, category, title, content, embedding,
                 importance, tags, metadata, created_at, updated_at, expires_at, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::vector, %s, %s, %s::jsonb, %s, %s, %s, %s)
            """,
            (
                entry.id, entry.user_id, entry.source_type.value, entry.source_id,
                entry.category, entry.title, entry.content,
                to_vector_literal(entry.embedding) if entry.embedding is not None else None,
                entry.importance, sorted(entry.tags), json.dumps(entry.metadata),
                entry.created_at, entry.updated_at, entry.expires_at, entry.is_active,
            ),
        )

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            user_id=row["user_id"],
            source_type=SourceType(row["source_type"]),
            source_id=row.get("source_id"),
            category=row["category"],
            title=row["title"],
            content=row["content"],
            embedding=parse_vector(row.get("embedding")),
            importance=float(row["importance"]),
            tags=set(row.get("tags") or []),
            metadata=row.get("metadata") or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row.get("expires_at"),
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_chunk(row: Dict[str, Any]) -> MemoryChunk:
        return MemoryChunk(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            turn_id=row.get("turn_id"),
            content=row["content"],
            chunk_type=ChunkType(row["chunk_type"]),
            embedding=tuple(parse_vector(row["embedding"]) or ()),
            importance=float(row["importance"]),
            metadata=row.get("metadata") or {},
            created_at=row["created_at"],
        )
