"""
Archive of chat messages as embedding vectors.

Vectors live in SQLite (metadata + embedding blob) and, when sqlite-vec is
loaded, in a vec0 table for cosine search. Recently stored or fetched vectors
are kept in an LRU cache.
"""

import hashlib
import time
from typing import Dict, List, Any, Optional

import numpy as np

from app.cache import LRUCache
from app.config_loader import CONFIG
from app.database import (
    db_find_vector_by_hash, db_insert_vector, db_get_vector, db_get_vectors,
    db_get_collection_stats, db_delete_collection, db_clear_vectors, db_count_vectors,
    db_prune_oldest_vectors, db_search_similar_vectors,
)


def cosine_similarity(vec1, vec2) -> float:
    """Cosine similarity; 0 for missing, mismatched or zero-magnitude vectors."""
    if vec1 is None or vec2 is None:
        return 0.0
    a = np.asarray(vec1, dtype=np.float32)
    b = np.asarray(vec2, dtype=np.float32)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def content_hash(content: str) -> str:
    return hashlib.md5(content.encode('utf-8')).hexdigest()


def get_collection_id(chat_id: str, task_id: str = "chat") -> str:
    return f"{chat_id}_{task_id}"


class VectorStore:
    def __init__(self, embedding_engine, rerank_service=None, config: Optional[Dict[str, Any]] = None):
        self.embedding_engine = embedding_engine
        self.rerank_service = rerank_service
        self.config = (config or CONFIG)["vectors"]
        self.vector_cache = LRUCache(max_size=self.config["cache_size"])

    def generate_vector(self, message: Dict[str, Any], chat_id: str, task_id: Optional[str] = None,
                        character: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Build the record for a message, or None for empty content."""
        content = message.get("content") or message.get("mes") or ""
        if not content.strip():
            return None

        task_id = task_id or self.config["task_id"]
        timestamp = message.get("timestamp")
        return {
            "chat_id": chat_id,
            "collection_id": get_collection_id(chat_id, task_id),
            "message_id": message.get("id"),
            "content": content,
            "role": message.get("role") or "user",
            "timestamp": float(timestamp) if timestamp is not None else time.time(),
            "hash": content_hash(content),
            "metadata": {
                "character": character or message.get("name"),
                "length": len(content),
                "word_count": len(content.split()),
                "task_id": task_id
            }
        }

    def process_message(self, message: Dict[str, Any], chat_id: str, task_id: Optional[str] = None,
                        character: Optional[str] = None) -> Optional[int]:
        """
        Archive one message.

        Returns:
            The vector id (the existing id for duplicate content), or None when
            the message is empty or could not be stored.
        """
        if not self.config["enabled"]:
            return None

        vector = self.generate_vector(message, chat_id, task_id, character)
        if vector is None:
            return None

        existing_id = db_find_vector_by_hash(vector["collection_id"], vector["hash"])
        if existing_id is not None:
            return existing_id

        embedding = self.embedding_engine.encode_one(vector["content"])
        if embedding is None:
            print(f"[VECTOR] No embedding for message {vector['message_id']}, storing text only")

        max_vectors = self.config["max_vectors"]
        if db_count_vectors() >= max_vectors:
            for pruned_id in db_prune_oldest_vectors(max_vectors - 1):
                self.vector_cache.delete(pruned_id)

        vector_id = db_insert_vector(vector, embedding)
        if vector_id is None:
            return None

        vector["id"] = vector_id
        vector["embedding"] = embedding
        self.vector_cache.put(vector_id, vector)
        return vector_id

    def process_messages(self, messages: List[Dict[str, Any]], chat_id: str,
                         task_id: Optional[str] = None, character: Optional[str] = None) -> List[int]:
        stored = []
        for message in messages:
            vector_id = self.process_message(message, chat_id, task_id, character)
            if vector_id is not None:
                stored.append(vector_id)
        if stored:
            print(f"[VECTOR] Archived {len(stored)} messages for {chat_id}")
        return stored

    def get_vector(self, vector_id: int) -> Optional[Dict[str, Any]]:
        cached = self.vector_cache.get(vector_id)
        if cached is not None:
            return cached
        vector = db_get_vector(vector_id, include_embedding=True)
        if vector is not None:
            self.vector_cache.put(vector_id, vector)
        return vector

    def _numpy_search(self, query_embedding: np.ndarray, chat_id: Optional[str],
                      collection_id: Optional[str], limit: int, threshold: float) -> List[Dict[str, Any]]:
        scored = []
        for vector in db_get_vectors(chat_id=chat_id, collection_id=collection_id, include_embeddings=True):
            score = cosine_similarity(query_embedding, vector.get("embedding"))
            if score >= threshold:
                scored.append({"vector": vector, "score": score})
        scored.sort(key=lambda r: r["score"], reverse=True)
        return scored[:limit]

    async def search_vectors(self, query: str, limit: int = 10, chat_id: Optional[str] = None,
                             task_id: Optional[str] = None, collection_id: Optional[str] = None,
                             threshold: Optional[float] = None, use_reranking: bool = True,
                             hybrid_alpha: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Similarity search over archived messages.

        Returns:
            [{'vector': record, 'score': similarity}] sorted by score.
        """
        if not query or not query.strip():
            return []

        threshold = self.config["threshold"] if threshold is None else threshold
        if not collection_id and chat_id and task_id:
            collection_id = get_collection_id(chat_id, task_id)

        query_embedding = self.embedding_engine.encode_one(query)
        if query_embedding is None:
            print("[VECTOR] Embedding model unavailable, search skipped")
            return []

        hits = db_search_similar_vectors(
            query_embedding, chat_id=chat_id, collection_id=collection_id, k=limit, threshold=threshold
        )
        if hits is None:
            results = self._numpy_search(query_embedding, chat_id, collection_id, limit, threshold)
        else:
            results = []
            for vector_id, score in hits:
                vector = self.get_vector(vector_id)
                if vector is not None:
                    results.append({"vector": vector, "score": score})

        print(f"[VECTOR] Found {len(results)} results for '{query[:50]}' "
              f"(collection: {collection_id or chat_id or 'all'})")

        if use_reranking and results and self.rerank_service is not None:
            results = await self.rerank_service.rerank(query, results, hybrid_alpha=hybrid_alpha)

        return results

    def get_vectors_for_chat(self, chat_id: str, limit: int = 100,
                             include_embeddings: bool = False) -> List[Dict[str, Any]]:
        return db_get_vectors(chat_id=chat_id, limit=limit, include_embeddings=include_embeddings)

    def get_all_vectors(self, include_embeddings: bool = False) -> List[Dict[str, Any]]:
        return db_get_vectors(include_embeddings=include_embeddings)

    def get_collections_for_chat(self, chat_id: str) -> List[Dict[str, Any]]:
        collections = []
        for row in db_get_collection_stats(chat_id):
            prefix = f"{chat_id}_"
            collection_id = row["collection_id"]
            task_id = collection_id[len(prefix):] if collection_id.startswith(prefix) else "unknown"
            collections.append({
                "collection_id": collection_id,
                "chat_id": chat_id,
                "vector_count": row["vector_count"],
                "first_timestamp": row["first_timestamp"],
                "last_timestamp": row["last_timestamp"],
                "task_id": task_id,
            })
        return collections

    def delete_collection(self, collection_id: str) -> int:
        deleted = db_delete_collection(collection_id)
        for vector in self.vector_cache.values():
            if vector.get("collection_id") == collection_id:
                self.vector_cache.delete(vector["id"])
        print(f"[VECTOR] Deleted {deleted} vectors from collection {collection_id}")
        return deleted

    def clear_all_vectors(self) -> bool:
        cleared = db_clear_vectors()
        if cleared:
            self.vector_cache.clear()
            print("[VECTOR] All vectors cleared")
        return cleared

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_vectors": db_count_vectors(),
            "cached_vectors": self.vector_cache.size(),
            "max_vectors": self.config["max_vectors"],
            "cache": self.vector_cache.get_stats(),
        }
