"""
Tests for the rerank adapter and its graceful degradation.
"""

import json

import httpx
import pytest
from unittest.mock import MagicMock

from kgrag.exceptions import RerankError
from kgrag.models import Chunk, ChunkCandidate
from kgrag.services.rerank_service import RERANK_PROBE, HttpReranker, RerankService

RERANK_URL = "http://rerank.test/v1/rerank"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _chunks(*ids):
    return [ChunkCandidate(Chunk(chunk_id, f"content of {chunk_id}")) for chunk_id in ids]


class TestHttpReranker:
    """Tests for the HTTP rerank client."""

    def test_posts_documents_and_reads_results(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"index": 1, "relevance_score": 0.9},
                        {"index": 0, "relevance_score": 0.2},
                    ]
                },
            )

        reranker = HttpReranker(base_url=RERANK_URL, model="test-model", client=_client(handler))
        ranked = reranker.rerank("query", ["first", "second"])

        assert ranked == [(1, 0.9), (0, 0.2)]
        assert captured["body"] == {
            "model": "test-model",
            "query": "query",
            "documents": ["first", "second"],
            "top_n": 2,
        }

    def test_http_error_raises_rerank_error(self):
        reranker = HttpReranker(
            base_url=RERANK_URL, client=_client(lambda request: httpx.Response(503))
        )

        with pytest.raises(RerankError):
            reranker.rerank("query", ["doc"])

    def test_malformed_payload_raises_rerank_error(self):
        reranker = HttpReranker(
            base_url=RERANK_URL,
            client=_client(lambda request: httpx.Response(200, json={"data": []})),
        )

        with pytest.raises(RerankError):
            reranker.rerank("query", ["doc"])

    def test_out_of_range_index_raises_rerank_error(self):
        reranker = HttpReranker(
            base_url=RERANK_URL,
            client=_client(
                lambda request: httpx.Response(200, json={"results": [{"index": 4}]})
            ),
        )

        with pytest.raises(RerankError):
            reranker.rerank("query", ["doc"])

    def test_missing_base_url(self):
        with pytest.raises(ValueError):
            HttpReranker(base_url=None)


class TestRerankService:
    """Tests for reordering kept chunks."""

    def test_reorders_by_reranker(self):
        reranker = MagicMock()
        reranker.rerank.return_value = [(2, 0.9), (0, 0.5)]
        chunks = _chunks("a", "b", "c")

        reordered, applied, failure = RerankService(reranker).rerank_chunks("q", chunks)

        # Unscored chunks keep their relative order at the end
        assert [c.key for c in reordered] == ["c", "a", "b"]
        assert applied is True
        assert failure is None

    def test_failure_keeps_original_order(self):
        reranker = MagicMock()
        reranker.rerank.side_effect = RerankError("service down")
        chunks = _chunks("a", "b")

        reordered, applied, failure = RerankService(reranker).rerank_chunks("q", chunks)

        assert reordered == chunks
        assert applied is False
        assert failure.probe == RERANK_PROBE

    def test_no_reranker_configured(self):
        chunks = _chunks("a")

        reordered, applied, failure = RerankService().rerank_chunks("q", chunks)

        assert reordered == chunks
        assert applied is False
        assert failure.reason == "no reranker configured"

    def test_empty_chunk_list(self):
        reranker = MagicMock()

        assert RerankService(reranker).rerank_chunks("q", []) == ([], False, None)
        reranker.rerank.assert_not_called()
