"""
Multi-algorithm search over archived messages.

Each algorithm scores the candidate vectors independently; the result lists
are fused (reciprocal rank fusion, weighted sum, or both) and cleaned up.
"""

import math
import re
import time
from collections import Counter
from typing import Dict, List, Any, Optional

from app.config_loader import CONFIG
from app.vector_store import cosine_similarity

SECONDS_PER_DAY = 24 * 60 * 60
# Fusion methods whose scores carry the algorithms' own scale
SCORE_WEIGHTED_FUSION = ("weighted_sum", "hybrid")

DEFAULT_ALGORITHMS = {
    "bm25": {"weight": 0.3, "enabled": True},
    "cosine": {"weight": 0.25, "enabled": True},
    "semantic": {"weight": 0.25, "enabled": True},
    "temporal": {"weight": 0.1, "enabled": True},
    "contextual": {"weight": 0.1, "enabled": True},
}


def _vector_key(vector: Dict[str, Any]):
    return vector.get("id") if vector.get("id") is not None else vector.get("hash")


def _tokenize(text: str) -> List[str]:
    cleaned = re.sub(r"[^\w\s]", " ", text.lower())
    return [word for word in cleaned.split() if len(word) > 2]


class QueryProcessor:
    def __init__(self, embedding_engine=None):
        self.embedding_engine = embedding_engine

    @staticmethod
    def detect_intent(text: str) -> str:
        lowered = text.lower()
        if "what" in lowered or "how" in lowered:
            return "question"
        if "find" in lowered or "search" in lowered:
            return "search"
        return "general"

    def process(self, query: str) -> Dict[str, Any]:
        embedding = None
        if self.embedding_engine is not None and query.strip():
            embedding = self.embedding_engine.encode_one(query)
        return {
            "text": query,
            "terms": _tokenize(query),
            "embedding": embedding,
            "intent": self.detect_intent(query),
        }


# ============================================================================
# SCORING ALGORITHMS
# ============================================================================

def _ranked(scored: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    positive = [r for r in scored if r["score"] > 0]
    positive.sort(key=lambda r: r["score"], reverse=True)
    return positive


def bm25_search(query: Dict[str, Any], vectors: List[Dict[str, Any]],
                k1: float = 1.2, b: float = 0.75) -> List[Dict[str, Any]]:
    """Okapi BM25 with corpus statistics taken from the candidates."""
    terms = query["terms"]
    if not terms or not vectors:
        return []

    documents = [_tokenize(v.get("content", "")) for v in vectors]
    total = len(documents)
    avg_length = sum(len(d) for d in documents) / total or 1.0

    doc_freq = Counter()
    for document in documents:
        doc_freq.update(set(document))

    scored = []
    for vector, document in zip(vectors, documents):
        counts = Counter(document)
        score = 0.0
        for term in terms:
            tf = counts.get(term, 0)
            if not tf:
                continue
            df = doc_freq[term]
            idf = math.log(1 + (total - df + 0.5) / (df + 0.5))
            norm = tf + k1 * (1 - b + b * len(document) / avg_length)
            score += idf * tf * (k1 + 1) / norm
        scored.append({"vector": vector, "score": score, "algorithm": "bm25"})
    return _ranked(scored)


def cosine_search(query: Dict[str, Any], vectors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if query["embedding"] is None:
        return []
    scored = [
        {"vector": v, "score": cosine_similarity(query["embedding"], v.get("embedding")), "algorithm": "cosine"}
        for v in vectors
    ]
    return _ranked(scored)


def semantic_search(query: Dict[str, Any], vectors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Jaccard overlap of lowercase whitespace tokens."""
    query_words = set(query["text"].lower().split())
    if not query_words:
        return []

    scored = []
    for vector in vectors:
        words = set(vector.get("content", "").lower().split())
        union = query_words | words
        score = len(query_words & words) / len(union) if union else 0.0
        scored.append({"vector": vector, "score": score, "algorithm": "semantic"})
    return _ranked(scored)


def temporal_search(vectors: List[Dict[str, Any]], half_life_days: float = 30.0,
                    now: Optional[float] = None) -> List[Dict[str, Any]]:
    now = time.time() if now is None else now
    scored = []
    for vector in vectors:
        age_days = max(0.0, (now - float(vector.get("timestamp") or 0)) / SECONDS_PER_DAY)
        scored.append({
            "vector": vector,
            "score": math.exp(-age_days / half_life_days),
            "algorithm": "temporal"
        })
    return _ranked(scored)


def contextual_search(vectors: List[Dict[str, Any]], chat_id: Optional[str] = None,
                      character: Optional[str] = None) -> List[Dict[str, Any]]:
    scored = []
    for vector in vectors:
        score = 0.0
        if chat_id and vector.get("chat_id") == chat_id:
            score += 0.5
        if character and (vector.get("metadata") or {}).get("character") == character:
            score += 0.3
        content = vector.get("content", "")
        if len(content) > 100:
            score += min(0.2, len(content) / 1000)
        scored.append({"vector": vector, "score": score, "algorithm": "contextual"})
    return _ranked(scored)


# ============================================================================
# FUSION
# ============================================================================

class FusionEngine:
    def __init__(self, rrf_k: int = 60):
        self.rrf_k = rrf_k

    def reciprocal_rank_fusion(self, results: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        scores = {}
        vectors = {}
        for ranked in results.values():
            for rank, result in enumerate(ranked):
                key = _vector_key(result["vector"])
                vectors[key] = result["vector"]
                scores[key] = scores.get(key, 0.0) + 1 / (self.rrf_k + rank + 1)
        fused = [{"vector": vectors[k], "score": s} for k, s in scores.items()]
        fused.sort(key=lambda r: r["score"], reverse=True)
        return fused

    def weighted_sum(self, results: Dict[str, List[Dict[str, Any]]],
                     weights: Dict[str, float]) -> List[Dict[str, Any]]:
        scores = {}
        vectors = {}
        for algorithm, ranked in results.items():
            weight = weights.get(algorithm, 0.0)
            for result in ranked:
                key = _vector_key(result["vector"])
                vectors[key] = result["vector"]
                scores[key] = scores.get(key, 0.0) + result["score"] * weight
        fused = [{"vector": vectors[k], "score": s} for k, s in scores.items()]
        fused.sort(key=lambda r: r["score"], reverse=True)
        return fused

    def hybrid(self, results: Dict[str, List[Dict[str, Any]]],
               weights: Dict[str, float]) -> List[Dict[str, Any]]:
        rrf = {_vector_key(r["vector"]): r for r in self.reciprocal_rank_fusion(results)}
        weighted = {_vector_key(r["vector"]): r for r in self.weighted_sum(results, weights)}

        fused = []
        for key in rrf.keys() | weighted.keys():
            vector = (rrf.get(key) or weighted[key])["vector"]
            rrf_score = rrf[key]["score"] if key in rrf else 0.0
            weighted_score = weighted[key]["score"] if key in weighted else 0.0
            fused.append({"vector": vector, "score": 0.5 * rrf_score + 0.5 * weighted_score})
        fused.sort(key=lambda r: r["score"], reverse=True)
        return fused

    def fuse(self, results: Dict[str, List[Dict[str, Any]]], method: str = "rrf",
             weights: Optional[Dict[str, float]] = None) -> List[Dict[str, Any]]:
        weights = weights or {}
        if method == "weighted_sum":
            return self.weighted_sum(results, weights)
        if method == "hybrid":
            return self.hybrid(results, weights)
        return self.reciprocal_rank_fusion(results)


def post_process_results(results: List[Dict[str, Any]], min_score: float = 0.1) -> List[Dict[str, Any]]:
    """Drop duplicates and weak scores, highest score first."""
    seen = set()
    kept = []
    for result in results:
        key = _vector_key(result["vector"])
        if key in seen or result["score"] <= min_score:
            continue
        seen.add(key)
        kept.append(result)
    kept.sort(key=lambda r: r["score"], reverse=True)
    return kept


# ============================================================================
# QUERY SYSTEM
# ============================================================================

class AdvancedQuerySystem:
    def __init__(self, vector_store, embedding_engine=None, config: Optional[Dict[str, Any]] = None):
        self.vector_store = vector_store
        self.config = (config or CONFIG)["search"]
        self.processor = QueryProcessor(embedding_engine)
        self.fusion = FusionEngine(rrf_k=self.config["rrf_k"])
        self.algorithms = {name: dict(settings) for name, settings in DEFAULT_ALGORITHMS.items()}

    def set_algorithm_weight(self, name: str, weight: float):
        if name not in self.algorithms:
            raise ValueError(f"Unknown search algorithm: {name}")
        self.algorithms[name]["weight"] = float(weight)

    def set_algorithm_enabled(self, name: str, enabled: bool):
        if name not in self.algorithms:
            raise ValueError(f"Unknown search algorithm: {name}")
        self.algorithms[name]["enabled"] = bool(enabled)

    def _run_algorithm(self, name: str, query: Dict[str, Any], vectors: List[Dict[str, Any]],
                       chat_id: Optional[str], character: Optional[str]) -> List[Dict[str, Any]]:
        if name == "bm25":
            return bm25_search(query, vectors, self.config["bm25_k1"], self.config["bm25_b"])
        if name == "cosine":
            return cosine_search(query, vectors)
        if name == "semantic":
            return semantic_search(query, vectors)
        if name == "temporal":
            return temporal_search(vectors, self.config["temporal_half_life_days"])
        if name == "contextual":
            return contextual_search(vectors, chat_id, character)
        raise ValueError(f"Unknown search algorithm: {name}")

    async def search(self, query: str, chat_id: Optional[str] = None, character: Optional[str] = None,
                     limit: int = 10, algorithms: Optional[List[str]] = None,
                     fusion_method: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Score the chat's vectors (or every vector) with each enabled algorithm
        and fuse the rankings.

        Returns:
            [{'vector': record, 'score': fused score}]
        """
        if not query or not query.strip():
            return []

        if chat_id:
            candidates = self.vector_store.get_vectors_for_chat(chat_id, limit=None, include_embeddings=True)
        else:
            candidates = self.vector_store.get_all_vectors(include_embeddings=True)
        if not candidates:
            return []

        processed = self.processor.process(query)
        selected = algorithms or [n for n, s in self.algorithms.items() if s["enabled"]]

        results = {}
        for name in selected:
            if name not in self.algorithms:
                raise ValueError(f"Unknown search algorithm: {name}")
            results[name] = self._run_algorithm(name, processed, candidates, chat_id, character)

        weights = {name: settings["weight"] for name, settings in self.algorithms.items()}
        method = fusion_method or self.config["fusion_method"]
        fused = self.fusion.fuse(results, method, weights)
        # Rank-only RRF scores top out near 1/rrf_k; min_score applies to score-weighted methods
        min_score = self.config["min_score"] if method in SCORE_WEIGHTED_FUSION else 0.0
        final = post_process_results(fused, min_score)[:limit]

        print(f"[SEARCH] '{query[:50]}' ({processed['intent']}, {method}): "
              f"{len(final)} of {len(candidates)} candidates")
        return final

    async def search_advanced(self, query: str, limit: int = 10, chat_id: Optional[str] = None,
                              threshold: float = 0.1, time_range: Optional[float] = None,
                              use_reranking: bool = True) -> List[Dict[str, Any]]:
        """Vector search through the store, optionally limited to the last time_range days."""
        try:
            results = await self.vector_store.search_vectors(
                query, limit=limit, chat_id=chat_id, threshold=threshold, use_reranking=use_reranking
            )
        except Exception as e:
            print(f"[SEARCH] Advanced search failed: {e}")
            return []

        if time_range:
            cutoff = time.time() - time_range * SECONDS_PER_DAY
            results = [r for r in results if float(r["vector"].get("timestamp") or 0) > cutoff]

        return results
