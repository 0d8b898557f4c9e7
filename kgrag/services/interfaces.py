"""
Service Interfaces - Abstract base classes for dependency injection.
Stores, keyword extraction, reranking and token estimation are collaborators
of the retrieval core; these are the seams where backends plug in.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

from kgrag.models import Chunk, Entity, MergeResult, Relationship


class IGraphRepository(ABC):
    """
    Knowledge base store: entity, relationship and chunk vector indexes plus a
    property graph keyed by canonical entity name.

    Every method is a single at-most-once call; failures propagate to the
    caller as exceptions.
    """

    # ==========================================================================
    # SIMILARITY SEARCH
    # ==========================================================================

    @abstractmethod
    def search_entities(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        """
        Similarity search on the entity index.

        Returns:
            (canonical name, score) pairs ordered by score desc, ties broken
            by higher connectivity rank.
        """
        pass

    @abstractmethod
    def search_relationships(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        """(relationship id, score) ordered by score desc, then weight desc."""
        pass

    @abstractmethod
    def search_chunks(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        """(chunk id, score) ordered by score desc."""
        pass

    # ==========================================================================
    # GRAPH READS
    # ==========================================================================

    @abstractmethod
    def get_entity(self, name: str) -> Optional[Entity]:
        """Look up an entity by name (case-insensitive)."""
        pass

    @abstractmethod
    def get_entities(self, names: List[str]) -> Dict[str, Entity]:
        """Batch lookup keyed by canonical name; unknown names are omitted."""
        pass

    @abstractmethod
    def entity_degrees(self, names: List[str]) -> Dict[str, int]:
        """Connectivity rank (incident relationship count) per canonical name."""
        pass

    @abstractmethod
    def get_relationships(self, relationship_ids: List[str]) -> Dict[str, Relationship]:
        pass

    @abstractmethod
    def get_incident_relationships(self, names: List[str]) -> Dict[str, List[Relationship]]:
        """Single-hop edges per canonical name, in either direction."""
        pass

    @abstractmethod
    def get_chunks(self, chunk_ids: List[str]) -> Dict[str, Chunk]:
        pass

    @abstractmethod
    def get_neighborhood(
        self, name: str, max_depth: int
    ) -> Tuple[Dict[str, Entity], List[Relationship]]:
        """
        Everything within ``max_depth`` hops of ``name``, read from one
        consistent snapshot.

        Returns:
            (entities keyed by canonical name, relationships among them)
        """
        pass

    @abstractmethod
    def get_degree_ranked_subgraph(
        self, max_nodes: int
    ) -> Tuple[List[Entity], List[Relationship], bool]:
        """
        The ``max_nodes`` most connected entities and the edges among them.

        Returns:
            (entities ordered by degree desc, relationships, is_truncated)
        """
        pass

    # ==========================================================================
    # DISCOVERY
    # ==========================================================================

    @abstractmethod
    def list_labels(self) -> List[str]:
        """Display names of every entity."""
        pass

    @abstractmethod
    def popular_labels(self, limit: int) -> List[Tuple[str, int]]:
        """(display name, degree) ordered by degree desc, then name."""
        pass

    @abstractmethod
    def entity_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def get_statistics(self) -> Dict[str, Any]:
        """Record counts: {"entities", "relationships", "chunks"}."""
        pass

    # ==========================================================================
    # WRITES
    # ==========================================================================

    @abstractmethod
    def create_entity(self, entity: Entity) -> Entity:
        """Insert a new entity; raises EntityExistsError on identity clash."""
        pass

    @abstractmethod
    def update_entity(self, name: str, updates: Dict[str, Any]) -> Entity:
        """
        Apply field updates. A ``name`` update renames the entity and
        rewrites every incident relationship in the same commit.
        """
        pass

    @abstractmethod
    def upsert_entity(self, entity: Entity) -> Entity:
        """Extraction write path: insert or fold sources into the existing record."""
        pass

    @abstractmethod
    def create_relationship(self, relationship: Relationship) -> Relationship:
        pass

    @abstractmethod
    def update_relationship(
        self, relationship_id: str, updates: Dict[str, Any]
    ) -> Relationship:
        pass

    @abstractmethod
    def upsert_relationship(self, relationship: Relationship) -> Relationship:
        """Extraction write path: highest weight wins, sources are unioned."""
        pass

    @abstractmethod
    def upsert_chunks(self, chunks: List[Chunk]) -> int:
        pass

    @abstractmethod
    def merge_entities(self, source_names: List[str], target_name: str) -> MergeResult:
        """
        Fold sources into target atomically. Readers observe either the
        full pre-merge or the full post-merge state.
        """
        pass


class IKeywordExtractor(ABC):
    """Derives (high-level, low-level) keyword lists from a query."""

    @abstractmethod
    def extract(self, query: str) -> Tuple[List[str], List[str]]:
        pass


class IReranker(ABC):
    """External relevance reranker."""

    @abstractmethod
    def rerank(
        self, query: str, documents: List[str], top_n: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        """
        Returns:
            (document index, relevance score) pairs, most relevant first.
        """
        pass


class ITokenEstimator(ABC):
    """Token cost function the budget allocator is defined against."""

    @abstractmethod
    def count(self, text: str) -> int:
        pass

    @abstractmethod
    def clip(self, text: str, max_tokens: int) -> str:
        """Longest prefix of ``text`` whose estimate is <= ``max_tokens``."""
        pass
