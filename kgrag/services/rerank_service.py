"""
Rerank adapter - optional external relevance reranking of kept chunks.

Any failure of the external service degrades to the pre-rerank order.
"""

import logging
from typing import List, Optional, Tuple

import httpx

from kgrag import config
from kgrag.exceptions import RerankError
from kgrag.models import ChunkCandidate, ProbeFailure
from kgrag.services.interfaces import IReranker

logger = logging.getLogger(__name__)

RERANK_PROBE = "rerank"


class HttpReranker(IReranker):
    """
    Client for Jina/Cohere style rerank endpoints.

    Request:  {"model", "query", "documents", "top_n"}
    Response: {"results": [{"index": int, "relevance_score": float}, ...]}
    """

    def __init__(
        self,
        base_url: str = config.RERANK_BASE_URL,
        api_key: Optional[str] = config.RERANK_API_KEY,
        model: str = config.RERANK_MODEL,
        timeout: float = config.RERANK_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ValueError("RERANK_BASE_URL is not configured")
        self.base_url = base_url
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def rerank(
        self, query: str, documents: List[str], top_n: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        payload = {
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": top_n or len(documents),
        }
        try:
            response = self._client.post(self.base_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RerankError(f"Rerank request failed: {e}") from e

        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise RerankError("Rerank response has no 'results' list")

        ranked: List[Tuple[int, float]] = []
        for item in results:
            try:
                index = int(item["index"])
                score = float(item.get("relevance_score", 0.0))
            except (KeyError, TypeError, ValueError) as e:
                raise RerankError(f"Malformed rerank result {item!r}") from e
            if not 0 <= index < len(documents):
                raise RerankError(f"Rerank index {index} out of range")
            ranked.append((index, score))
        return ranked

    def close(self):
        self._client.close()


class RerankService:
    """Reorders chunk candidates, never failing the request."""

    def __init__(self, reranker: Optional[IReranker] = None):
        self.reranker = reranker

    def rerank_chunks(
        self, query: str, chunks: List[ChunkCandidate]
    ) -> Tuple[List[ChunkCandidate], bool, Optional[ProbeFailure]]:
        """
        Returns:
            (chunks in new order, whether the reranker was applied, failure)
        """
        if not chunks:
            return chunks, False, None

        if self.reranker is None:
            logger.warning("Rerank requested but no reranker is configured; keeping order")
            return chunks, False, ProbeFailure(RERANK_PROBE, "no reranker configured")

        try:
            ranked = self.reranker.rerank(query, [c.chunk.content for c in chunks])
        except Exception as e:
            logger.warning("Rerank failed, keeping retrieval order: %s", e)
            return chunks, False, ProbeFailure(RERANK_PROBE, f"{type(e).__name__}: {e}")

        seen = set()
        reordered: List[ChunkCandidate] = []
        for index, _ in ranked:
            if 0 <= index < len(chunks) and index not in seen:
                seen.add(index)
                reordered.append(chunks[index])
        # Chunks the reranker did not score keep their relative order at the end
        reordered.extend(c for i, c in enumerate(chunks) if i not in seen)
        return reordered, True, None
