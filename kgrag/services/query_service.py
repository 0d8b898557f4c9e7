"""
QueryService - Mode routing and the end-to-end retrieval pipeline.

query -> validate -> resolve keywords -> strategy -> token budget
      -> optional rerank -> references + context text
"""

import logging
from typing import Optional

from kgrag.exceptions import InvalidArgumentError
from kgrag.models import QueryMetadata, QueryMode, QueryParam, QueryResult
from kgrag.services.context_builder import ContextBuilder
from kgrag.services.interfaces import (
    IGraphRepository,
    IKeywordExtractor,
    IReranker,
    ITokenEstimator,
)
from kgrag.services.keyword_service import KeywordService
from kgrag.services.probe_runner import ProbeRunner
from kgrag.services.rerank_service import RerankService
from kgrag.services.retrieval_strategies import build_strategies
from kgrag.services.token_budget import TokenBudgetAllocator

logger = logging.getLogger(__name__)


class QueryService:
    """Answers retrieval requests against one knowledge base."""

    def __init__(
        self,
        repo: IGraphRepository,
        keyword_extractor: Optional[IKeywordExtractor] = None,
        reranker: Optional[IReranker] = None,
        estimator: Optional[ITokenEstimator] = None,
        runner: Optional[ProbeRunner] = None,
    ):
        self.repo = repo
        self.runner = runner or ProbeRunner()
        self.strategies = build_strategies(repo, self.runner)
        self.keyword_service = KeywordService(keyword_extractor)
        self.allocator = TokenBudgetAllocator(estimator)
        self.rerank_service = RerankService(reranker)
        self.context_builder = ContextBuilder()

    def query(self, query: str, param: Optional[QueryParam] = None) -> QueryResult:
        """
        Retrieve budgeted context for ``query``.

        Args:
            query: Natural-language question. May be empty only in bypass mode.
            param: Validated request configuration, defaults when omitted.

        Returns:
            QueryResult with entity, relationship and chunk sections, references,
            diagnostics metadata and the rendered context text.

        Raises:
            InvalidArgumentError: malformed request, before any store call.
            StoreUnavailableError: every probe of the selected mode failed.
        """
        param = param or QueryParam()
        if not isinstance(param, QueryParam):
            raise InvalidArgumentError("param must be a QueryParam")
        if query is not None and not isinstance(query, str):
            raise InvalidArgumentError("query must be a string")

        query = (query or "").strip()
        if not query and param.mode is not QueryMode.BYPASS:
            raise InvalidArgumentError(
                f"query must be non-empty for mode '{param.mode.value}'"
            )

        strategy = self.strategies[param.mode]
        keywords = self.keyword_service.resolve(query, param)
        logger.debug("Query mode=%s hl=%s ll=%s", param.mode.value, keywords.hl_keywords, keywords.ll_keywords)

        bundle = strategy.retrieve(query, param, keywords)
        outcome = self.allocator.allocate(bundle, param)

        failures = list(keywords.failures) + list(bundle.failures)
        rerank_applied = False
        if param.enable_rerank and outcome.chunks:
            outcome.chunks, rerank_applied, failure = self.rerank_service.rerank_chunks(
                query, outcome.chunks
            )
            if failure is not None:
                failures.append(failure)

        entities, relationships, chunks, references = self.context_builder.build(
            outcome, include_references=param.include_references
        )
        metadata = QueryMetadata(
            mode=param.mode.value,
            hl_keywords=list(keywords.hl_keywords),
            ll_keywords=list(keywords.ll_keywords),
            truncation=outcome.truncation,
            failures=failures,
            rerank_applied=rerank_applied,
        )

        if failures:
            logger.warning(
                "Query completed with %d degraded probe(s): %s",
                len(failures),
                ", ".join(f.probe for f in failures),
            )

        return QueryResult(
            entities=entities,
            relationships=relationships,
            chunks=chunks,
            references=references,
            metadata=metadata,
            context_text=self.context_builder.render(outcome, chunks, references),
        )
