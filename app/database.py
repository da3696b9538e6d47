"""
Lorekeeper Database Module
Centralized SQLite operations for entities, lorebooks, summaries, archived
message vectors and n-gram frequencies.
"""

import sqlite3
import json
import time
import threading
import os
from typing import List, Dict, Any, Optional, Tuple
from contextlib import contextmanager
import numpy as np
import sqlite_vec

from app.config_loader import CONFIG

# Global database path
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DB_PATH = os.path.join(BASE_DIR, CONFIG["database"]["path"])

EXPECTED_EMBEDDING_DIMENSIONS = CONFIG["embeddings"]["dimensions"]

# Thread-local storage for connections
_thread_local = threading.local()
_thread_local.connection = None


def _open_connection(path: str) -> sqlite3.Connection:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")

    # sqlite-vec needs extension loading, which some SQLite builds disable
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        _thread_local.vec_loaded = True
    except (AttributeError, sqlite3.OperationalError) as e:
        print(f"[DB] sqlite-vec unavailable, falling back to numpy search: {e}")
        _thread_local.vec_loaded = False

    return conn


@contextmanager
def get_connection():
    """Get a thread-safe database connection with context manager."""
    connection = getattr(_thread_local, 'connection', None)
    if connection is None or getattr(_thread_local, 'path', None) != DB_PATH:
        if connection is not None:
            connection.close()
        _thread_local.connection = _open_connection(DB_PATH)
        _thread_local.path = DB_PATH

    try:
        yield _thread_local.connection
    except Exception:
        _thread_local.connection.rollback()
        raise


def close_connection():
    """Close this thread's connection (used on shutdown and by tests)."""
    connection = getattr(_thread_local, 'connection', None)
    if connection is not None:
        connection.close()
    _thread_local.connection = None
    _thread_local.path = None


def vec_available() -> bool:
    """True when sqlite-vec loaded on this thread's connection."""
    with get_connection():
        return bool(getattr(_thread_local, 'vec_loaded', False))


def init_db():
    """Initialize database tables if they don't exist."""
    with get_connection() as conn:
        cursor = conn.cursor()

        # Entities discovered in chat text, one row per chat and lowercase name
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                chat_id TEXT NOT NULL,
                key TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                confidence REAL NOT NULL,
                mentions INTEGER DEFAULT 1,
                contexts TEXT,
                lorebook_entry TEXT,
                source_message TEXT,
                created_at REAL,
                last_seen REAL,
                PRIMARY KEY (chat_id, key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lorebooks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                chat_id TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lorebook_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lorebook_id INTEGER NOT NULL,
                uid TEXT NOT NULL,
                title TEXT,
                keys TEXT,
                content TEXT,
                comment TEXT,
                constant BOOLEAN DEFAULT 0,
                selective BOOLEAN DEFAULT 1,
                sort_order INTEGER DEFAULT 100,
                metadata TEXT,
                created_at INTEGER,
                updated_at INTEGER,
                UNIQUE (lorebook_id, uid),
                FOREIGN KEY (lorebook_id) REFERENCES lorebooks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS summaries (
                chat_id TEXT NOT NULL,
                message_index INTEGER NOT NULL,
                message_hash TEXT,
                text TEXT NOT NULL,
                type TEXT,
                is_core_memory BOOLEAN DEFAULT 0,
                remembered BOOLEAN DEFAULT 0,
                detection_method TEXT,
                metadata TEXT,
                created_at INTEGER,
                PRIMARY KEY (chat_id, message_index)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vectors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT,
                collection_id TEXT NOT NULL,
                message_id TEXT,
                content TEXT NOT NULL,
                role TEXT,
                timestamp REAL,
                hash TEXT NOT NULL,
                metadata TEXT,
                embedding BLOB,
                UNIQUE (collection_id, hash)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ngram_frequencies (
                ngram TEXT PRIMARY KEY,
                count INTEGER DEFAULT 0,
                score REAL DEFAULT 0,
                updated_at INTEGER
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_vectors_chat ON vectors(chat_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_entries_lorebook ON lorebook_entries(lorebook_id)")

        conn.commit()


def verify_database_health() -> bool:
    """Check that the database opens, passes a quick check and has its tables."""
    required = {"entities", "lorebooks", "lorebook_entries", "summaries", "vectors", "ngram_frequencies"}
    try:
        with get_connection() as conn:
            row = conn.execute("PRAGMA quick_check").fetchone()
            if row is None or row[0] != "ok":
                print(f"[DB] Integrity check failed: {row[0] if row else 'no result'}")
                return False
            tables = {
                r['name'] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
            missing = required - tables
            if missing:
                print(f"[DB] Missing tables: {', '.join(sorted(missing))}")
                return False
            return True
    except sqlite3.Error as e:
        print(f"[DB] Health check failed: {e}")
        return False


# ============================================================================
# ENTITY OPERATIONS
# ============================================================================

def _row_to_entity(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "name": row["name"],
        "type": row["type"],
        "confidence": row["confidence"],
        "mentions": row["mentions"],
        "contexts": json.loads(row["contexts"]) if row["contexts"] else [],
        "lorebook_entry": row["lorebook_entry"],
        "source_message": row["source_message"],
        "created": row["created_at"],
        "last_seen": row["last_seen"],
        "chat_id": row["chat_id"],
    }


def db_get_entity(chat_id: str, name: str) -> Optional[Dict[str, Any]]:
    """Get an entity by name (case-insensitive)."""
    try:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE chat_id = ? AND key = ?",
                (chat_id, name.lower())
            ).fetchone()
            return _row_to_entity(row) if row else None
    except sqlite3.Error as e:
        print(f"[DB] Error getting entity {name}: {e}")
        return None


def db_save_entity(chat_id: str, entity: Dict[str, Any]) -> bool:
    """Insert or replace an entity record."""
    now = time.time()
    try:
        with get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO entities
                (chat_id, key, name, type, confidence, mentions, contexts,
                 lorebook_entry, source_message, created_at, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chat_id,
                entity["name"].lower(),
                entity["name"],
                entity["type"],
                entity["confidence"],
                entity.get("mentions", 1),
                json.dumps(entity.get("contexts", [])),
                entity.get("lorebook_entry"),
                entity.get("source_message"),
                entity.get("created", now),
                entity.get("last_seen", now),
            ))
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Error saving entity {entity.get('name')}: {e}")
        return False


def db_delete_entity(chat_id: str, name: str) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE chat_id = ? AND key = ?",
                (chat_id, name.lower())
            )
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        print(f"[DB] Error deleting entity {name}: {e}")
        return False


def db_get_entities(chat_id: str, entity_type: Optional[str] = None,
                    min_confidence: Optional[float] = None) -> List[Dict[str, Any]]:
    """List entities for a chat, optionally filtered by type and confidence."""
    conditions = ["chat_id = ?"]
    params: List[Any] = [chat_id]

    if entity_type:
        conditions.append("type = ?")
        params.append(entity_type)

    if min_confidence is not None:
        conditions.append("confidence >= ?")
        params.append(min_confidence)

    where_clause = " AND ".join(conditions)

    try:
        with get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM entities WHERE {where_clause} ORDER BY confidence DESC, name",
                params
            ).fetchall()
            return [_row_to_entity(row) for row in rows]
    except sqlite3.Error as e:
        print(f"[DB] Error listing entities: {e}")
        return []


def db_count_entities(chat_id: str) -> int:
    try:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as count FROM entities WHERE chat_id = ?", (chat_id,)
            ).fetchone()
            return row['count'] if row else 0
    except sqlite3.Error as e:
        print(f"[DB] Error counting entities: {e}")
        return 0


# ============================================================================
# LOREBOOK OPERATIONS
# ============================================================================

def _row_to_entry(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "uid": row["uid"],
        "title": row["title"],
        "key": json.loads(row["keys"]) if row["keys"] else [],
        "content": row["content"] or "",
        "comment": row["comment"] or "",
        "constant": bool(row["constant"]),
        "selective": bool(row["selective"]),
        "order": row["sort_order"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def db_get_or_create_lorebook(name: str, chat_id: Optional[str] = None) -> Optional[int]:
    """Return the lorebook id for name, creating the lorebook if needed."""
    try:
        with get_connection() as conn:
            row = conn.execute("SELECT id FROM lorebooks WHERE name = ?", (name,)).fetchone()
            if row:
                return row['id']
            cursor = conn.execute(
                "INSERT INTO lorebooks (name, chat_id, created_at) VALUES (?, ?, ?)",
                (name, chat_id, int(time.time()))
            )
            conn.commit()
            print(f"[DB] Created lorebook '{name}'")
            return cursor.lastrowid
    except sqlite3.Error as e:
        print(f"[DB] Error creating lorebook {name}: {e}")
        return None


def db_get_lorebook(name: str) -> Optional[Dict[str, Any]]:
    """Get a lorebook and all of its entries keyed by uid."""
    try:
        with get_connection() as conn:
            row = conn.execute("SELECT * FROM lorebooks WHERE name = ?", (name,)).fetchone()
            if not row:
                return None
            entries = conn.execute(
                "SELECT * FROM lorebook_entries WHERE lorebook_id = ? ORDER BY sort_order, id",
                (row['id'],)
            ).fetchall()
            return {
                "id": row['id'],
                "name": row['name'],
                "chat_id": row['chat_id'],
                "entries": {e['uid']: _row_to_entry(e) for e in entries},
            }
    except sqlite3.Error as e:
        print(f"[DB] Error loading lorebook {name}: {e}")
        return None


def db_save_lorebook_entry(lorebook_id: int, entry: Dict[str, Any]) -> bool:
    """Insert or update an entry by uid."""
    now = int(time.time())
    try:
        with get_connection() as conn:
            conn.execute("""
                INSERT INTO lorebook_entries
                (lorebook_id, uid, title, keys, content, comment, constant, selective,
                 sort_order, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(lorebook_id, uid) DO UPDATE SET
                    title = excluded.title,
                    keys = excluded.keys,
                    content = excluded.content,
                    comment = excluded.comment,
                    constant = excluded.constant,
                    selective = excluded.selective,
                    sort_order = excluded.sort_order,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
            """, (
                lorebook_id,
                str(entry["uid"]),
                entry.get("title", ""),
                json.dumps(entry.get("key", [])),
                entry.get("content", ""),
                entry.get("comment", ""),
                1 if entry.get("constant") else 0,
                1 if entry.get("selective", True) else 0,
                entry.get("order", 100),
                json.dumps(entry.get("metadata", {})),
                now,
                now,
            ))
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Error saving lorebook entry {entry.get('uid')}: {e}")
        return False


def db_find_lorebook_entry(lorebook_id: int, title: str) -> Optional[Dict[str, Any]]:
    """Find an entry by exact title."""
    try:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM lorebook_entries WHERE lorebook_id = ? AND title = ?",
                (lorebook_id, title)
            ).fetchone()
            return _row_to_entry(row) if row else None
    except sqlite3.Error as e:
        print(f"[DB] Error finding lorebook entry {title}: {e}")
        return None


def db_delete_lorebook_entry(lorebook_id: int, uid: str) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM lorebook_entries WHERE lorebook_id = ? AND uid = ?",
                (lorebook_id, str(uid))
            )
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        print(f"[DB] Error deleting lorebook entry {uid}: {e}")
        return False


# ============================================================================
# SUMMARY OPERATIONS
# ============================================================================

def _row_to_summary(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "chat_id": row["chat_id"],
        "message_index": row["message_index"],
        "message_hash": row["message_hash"],
        "text": row["text"],
        "type": row["type"],
        "is_core_memory": bool(row["is_core_memory"]),
        "remembered": bool(row["remembered"]),
        "detection_method": row["detection_method"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
        "created_at": row["created_at"],
    }


def db_save_summary(chat_id: str, message_index: int, summary: Dict[str, Any]) -> bool:
    try:
        with get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO summaries
                (chat_id, message_index, message_hash, text, type, is_core_memory,
                 remembered, detection_method, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chat_id,
                message_index,
                summary.get("message_hash"),
                summary["text"],
                summary.get("type", "conversation"),
                1 if summary.get("is_core_memory") else 0,
                1 if summary.get("remembered") else 0,
                summary.get("detection_method", "none"),
                json.dumps(summary.get("metadata", {})),
                int(time.time()),
            ))
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Error saving summary {chat_id}:{message_index}: {e}")
        return False


def db_get_summary(chat_id: str, message_index: int) -> Optional[Dict[str, Any]]:
    try:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM summaries WHERE chat_id = ? AND message_index = ?",
                (chat_id, message_index)
            ).fetchone()
            return _row_to_summary(row) if row else None
    except sqlite3.Error as e:
        print(f"[DB] Error loading summary {chat_id}:{message_index}: {e}")
        return None


def db_get_summaries(chat_id: str) -> List[Dict[str, Any]]:
    """All summaries for a chat in message order."""
    try:
        with get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM summaries WHERE chat_id = ? ORDER BY message_index",
                (chat_id,)
            ).fetchall()
            return [_row_to_summary(row) for row in rows]
    except sqlite3.Error as e:
        print(f"[DB] Error listing summaries for {chat_id}: {e}")
        return []


def db_set_summary_remembered(chat_id: str, message_index: int, remembered: bool) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE summaries SET remembered = ? WHERE chat_id = ? AND message_index = ?",
                (1 if remembered else 0, chat_id, message_index)
            )
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        print(f"[DB] Error updating summary {chat_id}:{message_index}: {e}")
        return False


def db_delete_summaries(chat_id: str) -> int:
    try:
        with get_connection() as conn:
            cursor = conn.execute("DELETE FROM summaries WHERE chat_id = ?", (chat_id,))
            conn.commit()
            return cursor.rowcount
    except sqlite3.Error as e:
        print(f"[DB] Error deleting summaries for {chat_id}: {e}")
        return 0


# ============================================================================
# VECTOR OPERATIONS (sqlite-vec)
# ============================================================================

def _serialize_float32(vector: np.ndarray) -> bytes:
    """Serialize a float32 numpy vector to bytes."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def _deserialize_float32(data: bytes) -> np.ndarray:
    """Deserialize bytes to a float32 numpy vector."""
    return np.frombuffer(data, dtype=np.float32)


def init_vec_table() -> bool:
    """Initialize vec0 virtual table for embeddings if sqlite-vec is available."""
    if not vec_available():
        return False
    try:
        with get_connection() as conn:
            conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_vectors USING vec0(
                    vector_id INTEGER PRIMARY KEY,
                    chat_id TEXT,
                    collection_id TEXT,
                    embedding FLOAT[{EXPECTED_EMBEDDING_DIMENSIONS}]
                )
            """)
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Failed to create vec0 table: {e}")
        return False


def _row_to_vector(row: sqlite3.Row, include_embedding: bool = False) -> Dict[str, Any]:
    vector = {
        "id": row["id"],
        "chat_id": row["chat_id"],
        "collection_id": row["collection_id"],
        "message_id": row["message_id"],
        "content": row["content"],
        "role": row["role"],
        "timestamp": row["timestamp"],
        "hash": row["hash"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
    }
    if include_embedding:
        vector["embedding"] = _deserialize_float32(row["embedding"]) if row["embedding"] else None
    return vector


def db_find_vector_by_hash(collection_id: str, content_hash: str) -> Optional[int]:
    """Return the id of an archived vector with this content hash, if any."""
    try:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT id FROM vectors WHERE collection_id = ? AND hash = ?",
                (collection_id, content_hash)
            ).fetchone()
            return row['id'] if row else None
    except sqlite3.Error as e:
        print(f"[DB] Error checking vector hash: {e}")
        return None


def db_insert_vector(vector: Dict[str, Any], embedding: Optional[np.ndarray]) -> Optional[int]:
    """Store a vector record and, when sqlite-vec is loaded, its vec0 row."""
    embedding_bytes = _serialize_float32(embedding) if embedding is not None else None
    try:
        with get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO vectors
                (chat_id, collection_id, message_id, content, role, timestamp, hash, metadata, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                vector.get("chat_id"),
                vector["collection_id"],
                str(vector.get("message_id")) if vector.get("message_id") is not None else None,
                vector["content"],
                vector.get("role", "user"),
                vector.get("timestamp", time.time()),
                vector["hash"],
                json.dumps(vector.get("metadata", {})),
                embedding_bytes,
            ))
            vector_id = cursor.lastrowid

            if (embedding is not None and getattr(_thread_local, 'vec_loaded', False)
                    and len(embedding) == EXPECTED_EMBEDDING_DIMENSIONS):
                conn.execute("""
                    INSERT INTO vec_vectors (vector_id, chat_id, collection_id, embedding)
                    VALUES (?, ?, ?, ?)
                """, (vector_id, vector.get("chat_id"), vector["collection_id"], embedding_bytes))

            conn.commit()
            return vector_id
    except sqlite3.Error as e:
        print(f"[DB] Error storing vector: {e}")
        return None


def db_get_vector(vector_id: int, include_embedding: bool = False) -> Optional[Dict[str, Any]]:
    try:
        with get_connection() as conn:
            row = conn.execute("SELECT * FROM vectors WHERE id = ?", (vector_id,)).fetchone()
            return _row_to_vector(row, include_embedding) if row else None
    except sqlite3.Error as e:
        print(f"[DB] Error loading vector {vector_id}: {e}")
        return None


def db_get_vectors(chat_id: Optional[str] = None, collection_id: Optional[str] = None,
                   limit: Optional[int] = None, include_embeddings: bool = False) -> List[Dict[str, Any]]:
    """List archived vectors, newest first."""
    conditions = []
    params: List[Any] = []

    if chat_id:
        conditions.append("chat_id = ?")
        params.append(chat_id)

    if collection_id:
        conditions.append("collection_id = ?")
        params.append(collection_id)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    limit_clause = ""
    if limit is not None:
        limit_clause = "LIMIT ?"
        params.append(limit)

    try:
        with get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM vectors {where_clause} ORDER BY timestamp DESC, id DESC {limit_clause}",
                params
            ).fetchall()
            return [_row_to_vector(row, include_embeddings) for row in rows]
    except sqlite3.Error as e:
        print(f"[DB] Error listing vectors: {e}")
        return []


def db_get_collection_stats(chat_id: str) -> List[Dict[str, Any]]:
    """Per-collection counts and timestamp range for a chat."""
    try:
        with get_connection() as conn:
            rows = conn.execute("""
                SELECT collection_id,
                       COUNT(*) as vector_count,
                       MIN(timestamp) as first_timestamp,
                       MAX(timestamp) as last_timestamp
                FROM vectors
                WHERE chat_id = ?
                GROUP BY collection_id
                ORDER BY collection_id
            """, (chat_id,)).fetchall()
            return [dict(row) for row in rows]
    except sqlite3.Error as e:
        print(f"[DB] Error loading collections for {chat_id}: {e}")
        return []


def db_delete_collection(collection_id: str) -> int:
    """Delete every vector in a collection. Returns the number deleted."""
    try:
        with get_connection() as conn:
            if getattr(_thread_local, 'vec_loaded', False):
                conn.execute("""
                    DELETE FROM vec_vectors WHERE vector_id IN
                    (SELECT id FROM vectors WHERE collection_id = ?)
                """, (collection_id,))
            cursor = conn.execute("DELETE FROM vectors WHERE collection_id = ?", (collection_id,))
            conn.commit()
            return cursor.rowcount
    except sqlite3.Error as e:
        print(f"[DB] Error deleting collection {collection_id}: {e}")
        return 0


def db_clear_vectors() -> bool:
    try:
        with get_connection() as conn:
            if getattr(_thread_local, 'vec_loaded', False):
                conn.execute("DELETE FROM vec_vectors")
            conn.execute("DELETE FROM vectors")
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Error clearing vectors: {e}")
        return False


def db_count_vectors(chat_id: Optional[str] = None) -> int:
    try:
        with get_connection() as conn:
            if chat_id:
                row = conn.execute(
                    "SELECT COUNT(*) as count FROM vectors WHERE chat_id = ?", (chat_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) as count FROM vectors").fetchone()
            return row['count'] if row else 0
    except sqlite3.Error as e:
        print(f"[DB] Error counting vectors: {e}")
        return 0


def db_prune_oldest_vectors(keep: int) -> List[int]:
    """Delete the oldest vectors so at most `keep` remain. Returns deleted ids."""
    try:
        with get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) as count FROM vectors").fetchone()['count']
            excess = total - keep
            if excess <= 0:
                return []
            rows = conn.execute(
                "SELECT id FROM vectors ORDER BY timestamp ASC, id ASC LIMIT ?", (excess,)
            ).fetchall()
            ids = [row['id'] for row in rows]
            placeholders = ",".join("?" for _ in ids)
            if getattr(_thread_local, 'vec_loaded', False):
                conn.execute(f"DELETE FROM vec_vectors WHERE vector_id IN ({placeholders})", ids)
            conn.execute(f"DELETE FROM vectors WHERE id IN ({placeholders})", ids)
            conn.commit()
            return ids
    except sqlite3.Error as e:
        print(f"[DB] Error pruning vectors: {e}")
        return []


def db_search_similar_vectors(query_embedding: np.ndarray,
                              chat_id: Optional[str] = None,
                              collection_id: Optional[str] = None,
                              k: int = 10, threshold: float = 0.1) -> Optional[List[Tuple[int, float]]]:
    """
    Search archived vectors with sqlite-vec cosine distance.

    Returns list of (vector_id, similarity) tuples, or None when sqlite-vec
    is not available so the caller can fall back to a numpy scan.
    """
    if len(query_embedding) != EXPECTED_EMBEDDING_DIMENSIONS:
        return None

    if not vec_available():
        return None

    conditions = []
    params: List[Any] = [_serialize_float32(query_embedding)]

    if chat_id:
        conditions.append("chat_id = ?")
        params.append(chat_id)

    if collection_id:
        conditions.append("collection_id = ?")
        params.append(collection_id)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    params.extend([threshold, k])

    try:
        with get_connection() as conn:
            # Column aliases are not visible in WHERE, hence the subquery
            rows = conn.execute(f"""
                SELECT vector_id, similarity
                FROM (
                    SELECT vector_id,
                           (1 - vec_distance_cosine(embedding, ?)) as similarity
                    FROM vec_vectors
                    {where_clause}
                ) AS subquery
                WHERE similarity >= ?
                ORDER BY similarity DESC
                LIMIT ?
            """, params).fetchall()
            return [(row['vector_id'], float(row['similarity'])) for row in rows]
    except sqlite3.Error as e:
        print(f"[DB] sqlite-vec search failed: {e}")
        return None


# ============================================================================
# N-GRAM FREQUENCY OPERATIONS
# ============================================================================

def db_record_ngrams(ngrams: List[str]) -> bool:
    """Increment occurrence counts for a batch of n-grams."""
    if not ngrams:
        return True
    now = int(time.time())
    try:
        with get_connection() as conn:
            conn.executemany("""
                INSERT INTO ngram_frequencies (ngram, count, score, updated_at)
                VALUES (?, 1, 1, ?)
                ON CONFLICT(ngram) DO UPDATE SET
                    count = count + 1,
                    score = count + 1,
                    updated_at = excluded.updated_at
            """, [(ngram, now) for ngram in ngrams])
            conn.commit()
            return True
    except sqlite3.Error as e:
        print(f"[DB] Error recording n-grams: {e}")
        return False


def db_get_ngram_frequencies(ngrams: List[str]) -> Dict[str, Dict[str, float]]:
    """Look up count and score for the given n-grams."""
    if not ngrams:
        return {}
    result = {}
    try:
        with get_connection() as conn:
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(ngrams), 500):
                chunk = ngrams[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT ngram, count, score FROM ngram_frequencies WHERE ngram IN ({placeholders})",
                    chunk
                ).fetchall()
                for row in rows:
                    result[row['ngram']] = {"count": row['count'], "score": row['score']}
            return result
    except sqlite3.Error as e:
        print(f"[DB] Error reading n-gram frequencies: {e}")
        return {}
