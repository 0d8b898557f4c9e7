"""
In-memory knowledge base: entity, relationship and chunk vector indexes plus
a property graph keyed by canonical entity name.

The whole store is one immutable snapshot. Readers take the current snapshot
reference and never see a partial write; writers build a new snapshot and
swap it in under a short lock, retrying if another writer got there first.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from langchain_core.embeddings import Embeddings
from langchain_openai import OpenAIEmbeddings

from kgrag import config
from kgrag.exceptions import (
    ConcurrentWriteError,
    ConflictError,
    EntityExistsError,
    NotFoundError,
)
from kgrag.models import (
    Chunk,
    Entity,
    MergeResult,
    Relationship,
    canonical_name,
    unique_items,
)
from kgrag.repositories.merge_plan import MergePlan, plan_merge, plan_rename
from kgrag.services.interfaces import IGraphRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (norm_a * norm_b)


@dataclass(frozen=True)
class _GraphState:
    entities: Dict[str, Entity] = field(default_factory=dict)
    relationships: Dict[str, Relationship] = field(default_factory=dict)
    adjacency: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    chunks: Dict[str, Chunk] = field(default_factory=dict)
    entity_vectors: Dict[str, List[float]] = field(default_factory=dict)
    relationship_vectors: Dict[str, List[float]] = field(default_factory=dict)
    chunk_vectors: Dict[str, List[float]] = field(default_factory=dict)
    version: int = 0

    def degree(self, key: str) -> int:
        return len(self.adjacency.get(key, ()))

    def incident(self, key: str) -> List[Relationship]:
        return [self.relationships[rel_id] for rel_id in self.adjacency.get(key, ())]


class _Draft:
    """Mutable shallow copy of a snapshot; records stay shared and immutable."""

    def __init__(self, base: _GraphState):
        self.base = base
        self.entities = dict(base.entities)
        self.relationships = dict(base.relationships)
        self.adjacency = dict(base.adjacency)
        self.chunks = dict(base.chunks)
        self.entity_vectors = dict(base.entity_vectors)
        self.relationship_vectors = dict(base.relationship_vectors)
        self.chunk_vectors = dict(base.chunk_vectors)

    def put_entity(self, entity: Entity, vector: List[float]):
        self.entities[entity.key] = entity
        self.entity_vectors[entity.key] = vector

    def remove_entity(self, key: str):
        self.entities.pop(key, None)
        self.entity_vectors.pop(key, None)
        self.adjacency.pop(key, None)

    def _link(self, key: str, rel_id: str):
        ids = self.adjacency.get(key, ())
        if rel_id not in ids:
            self.adjacency[key] = ids + (rel_id,)

    def _unlink(self, key: str, rel_id: str):
        ids = self.adjacency.get(key)
        if ids is None:
            return
        remaining = tuple(i for i in ids if i != rel_id)
        if remaining:
            self.adjacency[key] = remaining
        else:
            self.adjacency.pop(key)

    def put_relationship(self, rel: Relationship, vector: List[float]):
        previous = self.relationships.get(rel.id)
        if previous is not None:
            self._unlink(previous.source_key, rel.id)
            self._unlink(previous.target_key, rel.id)
        self.relationships[rel.id] = rel
        self.relationship_vectors[rel.id] = vector
        self._link(rel.source_key, rel.id)
        self._link(rel.target_key, rel.id)

    def remove_relationship(self, rel_id: str):
        rel = self.relationships.pop(rel_id, None)
        self.relationship_vectors.pop(rel_id, None)
        if rel is not None:
            self._unlink(rel.source_key, rel_id)
            self._unlink(rel.target_key, rel_id)

    def put_chunk(self, chunk: Chunk, vector: List[float]):
        self.chunks[chunk.id] = chunk
        self.chunk_vectors[chunk.id] = vector

    def freeze(self) -> _GraphState:
        return _GraphState(
            entities=self.entities,
            relationships=self.relationships,
            adjacency=self.adjacency,
            chunks=self.chunks,
            entity_vectors=self.entity_vectors,
            relationship_vectors=self.relationship_vectors,
            chunk_vectors=self.chunk_vectors,
            version=self.base.version + 1,
        )


class InMemoryGraphRepository(IGraphRepository):
    """Copy-on-write store for tests, notebooks and single-process services."""

    def __init__(
        self,
        embeddings: Optional[Embeddings] = None,
        cosine_threshold: float = config.COSINE_THRESHOLD,
    ):
        self._embeddings = embeddings
        self.cosine_threshold = cosine_threshold
        self._state = _GraphState()
        self._write_lock = threading.Lock()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @property
    def embeddings(self) -> Embeddings:
        """Lazy initialization of embeddings model."""
        if self._embeddings is None:
            self._embeddings = OpenAIEmbeddings(
                model=config.EMBEDDING_MODEL, openai_api_key=config.OPENAI_API_KEY
            )
        return self._embeddings

    @property
    def version(self) -> int:
        return self._state.version

    def _embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        return self.embeddings.embed_documents(texts)

    def _apply(self, build: Callable[[_GraphState], Tuple[Optional[_GraphState], T]]) -> T:
        """
        Optimistic commit: ``build`` derives a new snapshot from the current one
        (embedding calls happen here, outside the lock); the swap only succeeds
        if no other write landed in the meantime.
        """
        for attempt in range(1, config.WRITE_CONFLICT_RETRIES + 1):
            base = self._state
            new_state, result = build(base)
            if new_state is None:
                return result
            with self._write_lock:
                if self._state is base:
                    self._state = new_state
                    return result
            logger.debug("Write conflict on attempt %d, rebuilding", attempt)
        raise ConcurrentWriteError(
            f"Store changed during {config.WRITE_CONFLICT_RETRIES} commit attempts"
        )

    def _search(
        self,
        vectors: Dict[str, List[float]],
        query: str,
        top_k: int,
        tie_break: Callable[[str], float],
    ) -> List[Tuple[str, float]]:
        if not vectors or top_k < 1:
            return []
        query_vector = self.embeddings.embed_query(query)
        scored = [
            (key, cosine_similarity(query_vector, vector)) for key, vector in vectors.items()
        ]
        scored = [item for item in scored if item[1] >= self.cosine_threshold]
        scored.sort(key=lambda item: (-item[1], -tie_break(item[0])))
        return scored[:top_k]

    # =========================================================================
    # SIMILARITY SEARCH
    # =========================================================================

    def search_entities(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        state = self._state
        return self._search(state.entity_vectors, query, top_k, state.degree)

    def search_relationships(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        state = self._state
        return self._search(
            state.relationship_vectors,
            query,
            top_k,
            lambda rel_id: state.relationships[rel_id].weight,
        )

    def search_chunks(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        state = self._state
        return self._search(state.chunk_vectors, query, top_k, lambda _: 0)

    # =========================================================================
    # GRAPH READS
    # =========================================================================

    def get_entity(self, name: str) -> Optional[Entity]:
        return self._state.entities.get(canonical_name(name))

    def get_entities(self, names: List[str]) -> Dict[str, Entity]:
        state = self._state
        found: Dict[str, Entity] = {}
        for name in names:
            key = canonical_name(name)
            if key in state.entities:
                found[key] = state.entities[key]
        return found

    def entity_degrees(self, names: List[str]) -> Dict[str, int]:
        state = self._state
        keys = (canonical_name(name) for name in names)
        return {key: state.degree(key) for key in keys if key in state.entities}

    def get_relationships(self, relationship_ids: List[str]) -> Dict[str, Relationship]:
        state = self._state
        return {
            rel_id: state.relationships[rel_id]
            for rel_id in relationship_ids
            if rel_id in state.relationships
        }

    def get_incident_relationships(self, names: List[str]) -> Dict[str, List[Relationship]]:
        state = self._state
        keys = (canonical_name(name) for name in names)
        return {key: state.incident(key) for key in keys if key in state.entities}

    def get_chunks(self, chunk_ids: List[str]) -> Dict[str, Chunk]:
        state = self._state
        return {cid: state.chunks[cid] for cid in chunk_ids if cid in state.chunks}

    def get_neighborhood(
        self, name: str, max_depth: int
    ) -> Tuple[Dict[str, Entity], List[Relationship]]:
        state = self._state
        start = canonical_name(name)
        if start not in state.entities:
            return {}, []

        depth_of = {start: 0}
        frontier = [start]
        for depth in range(1, max_depth + 1):
            next_frontier = []
            for key in frontier:
                for rel in state.incident(key):
                    other = rel.other_endpoint(key)
                    if other not in depth_of and other in state.entities:
                        depth_of[other] = depth
                        next_frontier.append(other)
            frontier = next_frontier
            if not frontier:
                break

        entities = {key: state.entities[key] for key in depth_of}
        relationships = [
            rel
            for rel in state.relationships.values()
            if rel.source_key in depth_of and rel.target_key in depth_of
        ]
        return entities, relationships

    def get_degree_ranked_subgraph(
        self, max_nodes: int
    ) -> Tuple[List[Entity], List[Relationship], bool]:
        state = self._state
        ranked = sorted(
            state.entities.values(),
            key=lambda e: (-state.degree(e.key), e.name.casefold(), e.key),
        )
        selected = ranked[:max_nodes]
        keys = {entity.key for entity in selected}
        relationships = [
            rel
            for rel in state.relationships.values()
            if rel.source_key in keys and rel.target_key in keys
        ]
        return selected, relationships, len(ranked) > max_nodes

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def list_labels(self) -> List[str]:
        return [entity.name for entity in self._state.entities.values()]

    def popular_labels(self, limit: int) -> List[Tuple[str, int]]:
        state = self._state
        ranked = sorted(
            state.entities.values(),
            key=lambda e: (-state.degree(e.key), e.name.casefold()),
        )
        return [(entity.name, state.degree(entity.key)) for entity in ranked[:limit]]

    def entity_exists(self, name: str) -> bool:
        return canonical_name(name) in self._state.entities

    def get_statistics(self) -> Dict[str, Any]:
        state = self._state
        return {
            "entities": len(state.entities),
            "relationships": len(state.relationships),
            "chunks": len(state.chunks),
        }

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_entity(self, entity: Entity) -> Entity:
        [vector] = self._embed([entity.embedding_text()])

        def build(base: _GraphState):
            if entity.key in base.entities:
                raise EntityExistsError(f"Entity '{entity.name}' already exists")
            draft = _Draft(base)
            draft.put_entity(entity, vector)
            return draft.freeze(), entity

        return self._apply(build)

    def update_entity(self, name: str, updates: Dict[str, Any]) -> Entity:
        def build(base: _GraphState):
            key = canonical_name(name)
            entity = base.entities.get(key)
            if entity is None:
                raise NotFoundError(f"Entity '{name}' not found")

            fields = dict(updates)
            new_name = fields.pop("name", None)
            plan: Optional[MergePlan] = None
            if new_name is not None and new_name != entity.name:
                new_key = canonical_name(new_name)
                if new_key != key and new_key in base.entities:
                    raise EntityExistsError(f"Entity '{new_name}' already exists")
                plan = plan_rename(entity, new_name, {key: base.incident(key)})
                entity = plan.target

            updated = replace(entity, **fields)
            draft = _Draft(base)
            if plan is not None:
                self._commit_plan(draft, replace(plan, target=updated))
            else:
                [vector] = self._embed([updated.embedding_text()])
                draft.put_entity(updated, vector)
            return draft.freeze(), updated

        return self._apply(build)

    def upsert_entity(self, entity: Entity) -> Entity:
        def build(base: _GraphState):
            existing = base.entities.get(entity.key)
            merged = entity
            if existing is not None:
                entity_type = existing.entity_type
                if entity_type == "UNKNOWN":
                    entity_type = entity.entity_type
                merged = replace(
                    existing,
                    entity_type=entity_type,
                    description="\n".join(
                        unique_items([existing.description, entity.description])
                    ),
                    source_chunk_ids=unique_items(
                        existing.source_chunk_ids, entity.source_chunk_ids
                    ),
                    file_paths=unique_items(existing.file_paths, entity.file_paths),
                )
            [vector] = self._embed([merged.embedding_text()])
            draft = _Draft(base)
            draft.put_entity(merged, vector)
            return draft.freeze(), merged

        return self._apply(build)

    def _with_endpoint_names(self, base: _GraphState, rel: Relationship) -> Relationship:
        source = base.entities.get(rel.source_key)
        target = base.entities.get(rel.target_key)
        missing = [n for n, e in ((rel.source, source), (rel.target, target)) if e is None]
        if missing:
            raise NotFoundError(f"Relationship endpoint(s) not found: {', '.join(missing)}")
        return replace(rel, source=source.name, target=target.name)

    def create_relationship(self, relationship: Relationship) -> Relationship:
        def build(base: _GraphState):
            rel = self._with_endpoint_names(base, relationship)
            if rel.id in base.relationships:
                raise ConflictError(
                    f"Relationship {rel.source} -> {rel.target} with this description already exists"
                )
            [vector] = self._embed([rel.embedding_text()])
            draft = _Draft(base)
            draft.put_relationship(rel, vector)
            return draft.freeze(), rel

        return self._apply(build)

    def update_relationship(self, relationship_id: str, updates: Dict[str, Any]) -> Relationship:
        def build(base: _GraphState):
            rel = base.relationships.get(relationship_id)
            if rel is None:
                raise NotFoundError(f"Relationship '{relationship_id}' not found")
            updated = replace(rel, **updates)
            [vector] = self._embed([updated.embedding_text()])
            draft = _Draft(base)
            draft.put_relationship(updated, vector)
            return draft.freeze(), updated

        return self._apply(build)

    def upsert_relationship(self, relationship: Relationship) -> Relationship:
        def build(base: _GraphState):
            draft = _Draft(base)
            # Extraction may reference entities it has not emitted yet
            for name in (relationship.source, relationship.target):
                if canonical_name(name) not in draft.entities:
                    placeholder = Entity(
                        name=" ".join(name.split()),
                        source_chunk_ids=relationship.source_chunk_ids,
                        file_paths=relationship.file_paths,
                    )
                    [vector] = self._embed([placeholder.embedding_text()])
                    draft.put_entity(placeholder, vector)

            source = draft.entities[relationship.source_key]
            target = draft.entities[relationship.target_key]
            rel = replace(relationship, source=source.name, target=target.name)
            existing = base.relationships.get(rel.id)
            if existing is not None:
                rel = replace(
                    existing,
                    keywords=unique_items(existing.keywords, rel.keywords),
                    weight=max(existing.weight, rel.weight),
                    source_chunk_ids=unique_items(
                        existing.source_chunk_ids, rel.source_chunk_ids
                    ),
                    file_paths=unique_items(existing.file_paths, rel.file_paths),
                )
            [vector] = self._embed([rel.embedding_text()])
            draft.put_relationship(rel, vector)
            return draft.freeze(), rel

        return self._apply(build)

    def upsert_chunks(self, chunks: List[Chunk]) -> int:
        if not chunks:
            return 0
        vectors = self._embed([chunk.content for chunk in chunks])

        def build(base: _GraphState):
            draft = _Draft(base)
            for chunk, vector in zip(chunks, vectors):
                draft.put_chunk(chunk, vector)
            return draft.freeze(), len(chunks)

        return self._apply(build)

    # =========================================================================
    # MERGE
    # =========================================================================

    def _commit_plan(self, draft: _Draft, plan: MergePlan):
        """Apply a merge/rename plan to a draft, re-embedding rewritten records."""
        vectors = self._embed(
            [plan.target.embedding_text()]
            + [rel.embedding_text() for rel in plan.new_relationships]
        )
        for rel_id in plan.removed_relationship_ids:
            draft.remove_relationship(rel_id)
        for key in plan.removed_keys:
            draft.remove_entity(key)
        draft.put_entity(plan.target, vectors[0])
        for rel, vector in zip(plan.new_relationships, vectors[1:]):
            draft.put_relationship(rel, vector)

    def merge_entities(self, source_names: List[str], target_name: str) -> MergeResult:
        def build(base: _GraphState):
            keys = [canonical_name(target_name)] + [canonical_name(n) for n in source_names]
            entities = {key: base.entities[key] for key in keys if key in base.entities}
            incident = {key: base.incident(key) for key in entities}
            plan = plan_merge(source_names, target_name, entities, incident)

            result = MergeResult(
                target=plan.target,
                merged_sources=plan.merged_sources,
                skipped_sources=plan.skipped_sources,
                relationships_rewritten=plan.relationships_rewritten,
                self_loops_collapsed=plan.self_loops_collapsed,
            )
            if plan.is_noop:
                return None, result

            draft = _Draft(base)
            self._commit_plan(draft, plan)
            return draft.freeze(), result

        return self._apply(build)
