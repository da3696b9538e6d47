"""
Optional cross-encoder reranking of vector search results.

Results are sent to an external rerank endpoint and their scores are blended
with the original similarity: hybrid = alpha * rerank + (1 - alpha) * original.
Any failure returns the original results untouched.
"""

from typing import Dict, List, Any, Optional

import httpx

from app.config_loader import CONFIG


class RerankService:
    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        rerank_config = (config or CONFIG)["rerank"]
        self.endpoint = rerank_config["url"]
        self.model = rerank_config["model"]
        self.timeout = rerank_config["timeout"]
        self.enabled = bool(rerank_config["enabled"])
        self.hybrid_alpha = 0.5
        self.set_hybrid_alpha(rerank_config["hybrid_alpha"])
        self.http_client = http_client

    def set_hybrid_alpha(self, alpha: float):
        """Weight of the rerank score versus the original score."""
        if alpha is None or not 0 <= alpha <= 1:
            raise ValueError(f"hybrid alpha must be between 0 and 1, got {alpha}")
        self.hybrid_alpha = float(alpha)
        print(f"[RERANK] Hybrid alpha set to {self.hybrid_alpha}")

    def set_enabled(self, enabled: bool):
        self.enabled = bool(enabled)
        print(f"[RERANK] Reranking {'enabled' if self.enabled else 'disabled'}")

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(self.endpoint, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, json=payload)

    async def check_availability(self) -> bool:
        """The endpoint exists unless it answers 404 or cannot be reached."""
        if not self.endpoint:
            return False
        try:
            response = await self._post({"query": "test", "results": []})
            return response.status_code != 404
        except httpx.HTTPError as e:
            print(f"[RERANK] Could not reach rerank endpoint: {e}")
            return False

    async def call_rerank_api(self, query: str, results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        payload = {
            "query": query,
            "results": [
                {"text": _result_text(result), "index": index}
                for index, result in enumerate(results)
            ]
        }
        if self.model:
            payload["model"] = self.model

        try:
            response = await self._post(payload)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"[RERANK] API call failed: {e}")
            return None

    async def rerank(self, query: str, results: List[Dict[str, Any]],
                     hybrid_alpha: Optional[float] = None) -> List[Dict[str, Any]]:
        if not self.enabled or not self.endpoint or not results:
            return results

        alpha = self.hybrid_alpha if hybrid_alpha is None else hybrid_alpha
        if not 0 <= alpha <= 1:
            print(f"[RERANK] Ignoring invalid alpha {alpha}, using {self.hybrid_alpha}")
            alpha = self.hybrid_alpha

        data = await self.call_rerank_api(query, results)
        if not data or not isinstance(data.get("results"), list) or not data["results"]:
            print("[RERANK] No rerank data, using original scores")
            return results

        try:
            reranked = process_rerank_response(results, data["results"], alpha)
        except (TypeError, KeyError, ValueError) as e:
            print(f"[RERANK] Malformed rerank response, using original scores: {e}")
            return results

        print(f"[RERANK] Reranked {len(reranked)} results (alpha: {alpha})")
        return reranked


def _result_text(result: Dict[str, Any]) -> str:
    vector = result.get("vector") or {}
    return result.get("text") or result.get("content") or vector.get("content", "")


def process_rerank_response(results: List[Dict[str, Any]], rerank_results: List[Dict[str, Any]],
                            alpha: float) -> List[Dict[str, Any]]:
    """Blend rerank scores into results, matched by index then by position."""
    by_index = {
        item["index"]: item for item in rerank_results
        if isinstance(item, dict) and "index" in item
    }

    blended = []
    for position, result in enumerate(results):
        match = by_index.get(position)
        if match is None and position < len(rerank_results):
            match = rerank_results[position]

        relevance = 0.0
        if isinstance(match, dict) and isinstance(match.get("relevance_score"), (int, float)):
            relevance = float(match["relevance_score"])

        original = float(result.get("score") or 0.0)
        hybrid = alpha * relevance + (1 - alpha) * original

        blended.append(dict(
            result,
            score=hybrid,
            hybrid_score=hybrid,
            rerank_score=relevance,
            original_score=original,
        ))

    blended.sort(key=lambda r: r["hybrid_score"], reverse=True)
    return blended
