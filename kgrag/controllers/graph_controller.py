"""
GraphController - Collaborator-facing facade over retrieval, traversal and
entity curation. Wires dependencies and converts results and errors into
plain dictionaries for whatever transport shell sits on top.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from kgrag import config
from kgrag.exceptions import KnowledgeGraphError
from kgrag.logging_setup import configure_logging
from kgrag.models import QueryParam
from kgrag.repositories.memory_repository import InMemoryGraphRepository
from kgrag.repositories.neo4j_repository import Neo4jRepository
from kgrag.services.entity_service import EntityService
from kgrag.services.interfaces import (
    IGraphRepository,
    IKeywordExtractor,
    IReranker,
    ITokenEstimator,
)
from kgrag.services.keyword_service import LLMKeywordExtractor
from kgrag.services.query_service import QueryService
from kgrag.services.rerank_service import HttpReranker
from kgrag.services.traversal_service import TraversalService

logger = logging.getLogger(__name__)


def build_repository(backend: Optional[str] = None) -> IGraphRepository:
    """Store selected by name or config.STORE_BACKEND."""
    backend = (backend or config.STORE_BACKEND).strip().lower()
    if backend == "neo4j":
        return Neo4jRepository()
    if backend == "memory":
        return InMemoryGraphRepository()
    raise ValueError(f"Unknown STORE_BACKEND '{backend}'. Use 'memory' or 'neo4j'.")


class GraphController:
    """Entry point for query, traversal, discovery and curation calls."""

    def __init__(
        self,
        repo: Optional[IGraphRepository] = None,
        keyword_extractor: Optional[IKeywordExtractor] = None,
        reranker: Optional[IReranker] = None,
        estimator: Optional[ITokenEstimator] = None,
        setup_logging: bool = False,
    ):
        if setup_logging:
            configure_logging()

        # Wire up dependencies
        self.repo = repo or build_repository()
        if keyword_extractor is None and config.OPENAI_API_KEY:
            keyword_extractor = LLMKeywordExtractor()
        if reranker is None and config.RERANK_BASE_URL:
            reranker = HttpReranker()

        self.query_service = QueryService(
            self.repo,
            keyword_extractor=keyword_extractor,
            reranker=reranker,
            estimator=estimator,
        )
        self.traversal_service = TraversalService(self.repo)
        self.entity_service = EntityService(self.repo)

    # =========================================================================
    # RESPONSE HELPERS
    # =========================================================================

    @staticmethod
    def _error(error: Exception) -> Dict[str, Any]:
        if isinstance(error, KnowledgeGraphError):
            return {
                "status": "error",
                "error_type": error.error_type,
                "message": str(error),
            }
        return {"status": "error", "error_type": "InternalError", "message": str(error)}

    def _respond(self, action: str, call: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            payload = call()
        except KnowledgeGraphError as e:
            logger.info("%s rejected (%s): %s", action, e.error_type, e)
            return self._error(e)
        except Exception as e:
            logger.exception("Unexpected error during %s", action)
            return self._error(e)
        return {"status": "success", **payload}

    # =========================================================================
    # RETRIEVAL
    # =========================================================================

    def query(self, query: str, **params) -> Dict[str, Any]:
        """
        Retrieve budgeted context for a question.

        Args:
            query: The question (may be empty in bypass mode)
            **params: QueryParam fields (mode, top_k, chunk_top_k,
                max_entity_tokens, max_relation_tokens, max_total_tokens,
                hl_keywords, ll_keywords, include_references, enable_rerank)

        Returns:
            {"status": "success", "entities": [...], "relationships": [...],
             "chunks": [...], "references": [...], "metadata": {...},
             "context": str} or an error payload
        """

        def call():
            param = QueryParam.from_dict(params)
            return self.query_service.query(query, param).to_dict()

        return self._respond("query", call)

    def get_knowledge_graph(
        self,
        label: str,
        max_depth: int = config.DEFAULT_MAX_DEPTH,
        max_nodes: int = config.DEFAULT_MAX_NODES,
    ) -> Dict[str, Any]:
        return self._respond(
            "graph traversal",
            lambda: self.traversal_service.get_knowledge_graph(
                label, max_depth=max_depth, max_nodes=max_nodes
            ).to_dict(),
        )

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def list_labels(self) -> Dict[str, Any]:
        return self._respond("list labels", lambda: {"labels": self.entity_service.list_labels()})

    def search_labels(self, query: str, limit: int = config.LABEL_SEARCH_LIMIT) -> Dict[str, Any]:
        return self._respond(
            "search labels",
            lambda: {"labels": self.entity_service.search_labels(query, limit)},
        )

    def popular_labels(self, limit: int = config.POPULAR_LABELS_LIMIT) -> Dict[str, Any]:
        return self._respond(
            "popular labels",
            lambda: {"labels": self.entity_service.popular_labels(limit)},
        )

    def entity_exists(self, name: str) -> Dict[str, Any]:
        return self._respond(
            "entity exists", lambda: {"exists": self.entity_service.entity_exists(name)}
        )

    # =========================================================================
    # CURATION
    # =========================================================================

    def create_entity(self, name: str, **fields) -> Dict[str, Any]:
        return self._respond(
            "create entity",
            lambda: {"entity": self.entity_service.create_entity(name, **fields).to_dict()},
        )

    def edit_entity(self, name: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._respond(
            "edit entity",
            lambda: {"entity": self.entity_service.edit_entity(name, updates).to_dict()},
        )

    def create_relationship(self, source: str, target: str, **fields) -> Dict[str, Any]:
        return self._respond(
            "create relationship",
            lambda: {
                "relationship": self.entity_service.create_relationship(
                    source, target, **fields
                ).to_dict()
            },
        )

    def edit_relationship(self, relationship_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._respond(
            "edit relationship",
            lambda: {
                "relationship": self.entity_service.edit_relationship(
                    relationship_id, updates
                ).to_dict()
            },
        )

    def merge_entities(self, source_names: List[str], target_name: str) -> Dict[str, Any]:
        return self._respond(
            "merge entities",
            lambda: self.entity_service.merge_entities(source_names, target_name).to_dict(),
        )

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def prepare_database(self) -> Dict[str, Any]:
        """Create store indexes where the backend has any."""

        def call():
            if isinstance(self.repo, Neo4jRepository):
                self.repo.create_indexes()
            return {}

        return self._respond("prepare database", call)

    def get_database_stats(self) -> Dict[str, Any]:
        return self._respond("database stats", self.repo.get_statistics)
