"""
Domain models for the knowledge graph plus the request-scoped query objects.

Persistent records (Entity, Relationship, Chunk) are frozen; stores replace
them instead of mutating. Candidate and result types live for one request.
"""

import hashlib
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple, Iterable

from kgrag import config
from kgrag.exceptions import InvalidArgumentError

GRAPH_WILDCARD = "*"


def canonical_name(name: str) -> str:
    """Case-insensitive identity key for an entity name."""
    return re.sub(r"\s+", " ", str(name or "")).strip().casefold()


def unique_items(*groups: Iterable[str]) -> Tuple[str, ...]:
    """Ordered union of string groups, first occurrence wins, blanks dropped."""
    merged: Dict[str, None] = {}
    for group in groups:
        for item in group or ():
            text = str(item).strip()
            if text:
                merged.setdefault(text, None)
    return tuple(merged)


def relationship_id(source: str, target: str, description: str) -> str:
    """Id of a (source, target, description) triple; casing of names is ignored."""
    key = f"{canonical_name(source)}|{canonical_name(target)}|{(description or '').strip()}"
    return "rel-" + hashlib.md5(key.encode("utf-8")).hexdigest()[:16]


class QueryMode(str, Enum):
    """Retrieval strategy selector."""

    LOCAL = "local"
    GLOBAL = "global"
    HYBRID = "hybrid"
    NAIVE = "naive"
    MIX = "mix"
    BYPASS = "bypass"

    @classmethod
    def parse(cls, value: Any) -> "QueryMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(mode.value for mode in cls)
            raise InvalidArgumentError(
                f"Unknown query mode '{value}'. Expected one of: {allowed}"
            )


# =============================================================================
# KNOWLEDGE GRAPH RECORDS
# =============================================================================


@dataclass(frozen=True)
class Entity:
    """A named concept node. Its rank is derived by the store, never stored."""

    name: str
    entity_type: str = "UNKNOWN"
    description: str = ""
    source_chunk_ids: Tuple[str, ...] = ()
    file_paths: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return canonical_name(self.name)

    def embedding_text(self) -> str:
        return f"{self.name}\n{self.description}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entity_type": self.entity_type,
            "description": self.description,
            "source_chunk_ids": list(self.source_chunk_ids),
            "file_paths": list(self.file_paths),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Relationship:
    """A described, weighted connection between two entities."""

    source: str
    target: str
    description: str = ""
    keywords: Tuple[str, ...] = ()
    weight: float = 1.0
    source_chunk_ids: Tuple[str, ...] = ()
    file_paths: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)
    id: str = ""

    def __post_init__(self):
        if not self.id:
            object.__setattr__(
                self, "id", relationship_id(self.source, self.target, self.description)
            )

    @property
    def source_key(self) -> str:
        return canonical_name(self.source)

    @property
    def target_key(self) -> str:
        return canonical_name(self.target)

    def touches(self, key: str) -> bool:
        return key in (self.source_key, self.target_key)

    def other_endpoint(self, key: str) -> str:
        """Canonical key of the endpoint opposite to ``key``."""
        return self.target_key if self.source_key == key else self.source_key

    def embedding_text(self) -> str:
        return f"{', '.join(self.keywords)}\t{self.source}\n{self.target}\n{self.description}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "description": self.description,
            "keywords": list(self.keywords),
            "weight": self.weight,
            "source_chunk_ids": list(self.source_chunk_ids),
            "file_paths": list(self.file_paths),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Chunk:
    """Immutable span of source text."""

    id: str
    content: str
    document_id: str = ""
    order_index: int = 0
    file_path: str = ""


@dataclass(frozen=True)
class Reference:
    reference_id: str
    file_path: str

    def to_dict(self) -> Dict[str, str]:
        return {"reference_id": self.reference_id, "file_path": self.file_path}


# =============================================================================
# QUERY CONFIGURATION
# =============================================================================


def _normalize_keywords(name: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise InvalidArgumentError(f"{name} must be a list of strings")
    if not all(isinstance(item, str) for item in value):
        raise InvalidArgumentError(f"{name} must only contain strings")
    return unique_items(value)


@dataclass(frozen=True)
class QueryParam:
    """Validated, immutable per-request retrieval configuration."""

    mode: QueryMode = QueryMode(config.DEFAULT_QUERY_MODE)
    top_k: int = config.DEFAULT_TOP_K
    chunk_top_k: int = config.DEFAULT_CHUNK_TOP_K
    max_entity_tokens: int = config.DEFAULT_MAX_ENTITY_TOKENS
    max_relation_tokens: int = config.DEFAULT_MAX_RELATION_TOKENS
    max_total_tokens: int = config.DEFAULT_MAX_TOTAL_TOKENS
    hl_keywords: Tuple[str, ...] = ()
    ll_keywords: Tuple[str, ...] = ()
    include_references: bool = True
    enable_rerank: bool = config.ENABLE_RERANK_DEFAULT
    probe_timeout: float = config.PROBE_TIMEOUT_SECONDS

    def __post_init__(self):
        object.__setattr__(self, "mode", QueryMode.parse(self.mode))

        for name in (
            "top_k",
            "chunk_top_k",
            "max_entity_tokens",
            "max_relation_tokens",
            "max_total_tokens",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidArgumentError(f"{name} must be a positive integer, got {value!r}")

        if isinstance(self.probe_timeout, bool) or not isinstance(
            self.probe_timeout, (int, float)
        ) or self.probe_timeout <= 0:
            raise InvalidArgumentError("probe_timeout must be a positive number")

        for name in ("include_references", "enable_rerank"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise InvalidArgumentError(f"{name} must be a boolean, got {value!r}")

        object.__setattr__(
            self, "hl_keywords", _normalize_keywords("hl_keywords", self.hl_keywords)
        )
        object.__setattr__(
            self, "ll_keywords", _normalize_keywords("ll_keywords", self.ll_keywords)
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueryParam":
        """Build from loosely-typed request fields, rejecting unknown keys."""
        data = dict(data or {})
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidArgumentError(
                f"Unknown query parameter(s): {', '.join(sorted(unknown))}"
            )
        cleaned = {key: value for key, value in data.items() if value is not None}
        return cls(**cleaned)


# =============================================================================
# REQUEST-SCOPED CANDIDATES
# =============================================================================


@dataclass
class EntityCandidate:
    entity: Entity
    score: float = 0.0
    rank: int = 0
    frequency: int = 1

    @property
    def key(self) -> str:
        return self.entity.key

    def absorb(self, other: "EntityCandidate") -> None:
        """Fold a duplicate occurrence in: keep own metadata, union sources."""
        self.entity = replace(
            self.entity,
            source_chunk_ids=unique_items(
                self.entity.source_chunk_ids, other.entity.source_chunk_ids
            ),
            file_paths=unique_items(self.entity.file_paths, other.entity.file_paths),
        )
        self.score = max(self.score, other.score)
        self.frequency += other.frequency


@dataclass
class RelationshipCandidate:
    relationship: Relationship
    score: float = 0.0
    rank: int = 0
    frequency: int = 1

    @property
    def key(self) -> str:
        return self.relationship.id

    def absorb(self, other: "RelationshipCandidate") -> None:
        self.relationship = replace(
            self.relationship,
            source_chunk_ids=unique_items(
                self.relationship.source_chunk_ids,
                other.relationship.source_chunk_ids,
            ),
            file_paths=unique_items(
                self.relationship.file_paths, other.relationship.file_paths
            ),
        )
        self.score = max(self.score, other.score)
        self.frequency += other.frequency


@dataclass
class ChunkCandidate:
    chunk: Chunk
    score: float = 0.0
    frequency: int = 1
    origin: str = "vector"  # vector | entity | relation
    truncated: bool = False

    @property
    def key(self) -> str:
        return self.chunk.id

    def absorb(self, other: "ChunkCandidate") -> None:
        self.score = max(self.score, other.score)
        self.frequency += other.frequency


@dataclass
class ProbeFailure:
    probe: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"probe": self.probe, "reason": self.reason}


@dataclass
class RetrievalBundle:
    """What a strategy hands to the budget allocator."""

    entities: List[EntityCandidate] = field(default_factory=list)
    relationships: List[RelationshipCandidate] = field(default_factory=list)
    chunks: List[ChunkCandidate] = field(default_factory=list)
    failures: List[ProbeFailure] = field(default_factory=list)


@dataclass
class TruncationStats:
    found: int = 0
    kept: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"found": self.found, "kept": self.kept}


# =============================================================================
# QUERY RESPONSE
# =============================================================================


@dataclass
class EntityContext:
    name: str
    entity_type: str
    description: str
    rank: int
    file_paths: List[str]
    reference_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entity_type": self.entity_type,
            "description": self.description,
            "rank": self.rank,
            "file_paths": list(self.file_paths),
            "reference_id": self.reference_id,
        }


@dataclass
class RelationshipContext:
    id: str
    source: str
    target: str
    description: str
    keywords: List[str]
    weight: float
    file_paths: List[str]
    reference_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "description": self.description,
            "keywords": list(self.keywords),
            "weight": self.weight,
            "reference_id": self.reference_id,
        }


@dataclass
class ChunkContext:
    chunk_id: str
    content: str
    file_path: str
    reference_id: Optional[str] = None
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "content": self.content,
            "file_path": self.file_path,
            "reference_id": self.reference_id,
            "truncated": self.truncated,
        }


@dataclass
class QueryMetadata:
    mode: str
    hl_keywords: List[str] = field(default_factory=list)
    ll_keywords: List[str] = field(default_factory=list)
    truncation: Dict[str, TruncationStats] = field(default_factory=dict)
    failures: List[ProbeFailure] = field(default_factory=list)
    rerank_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "keywords": {"high_level": self.hl_keywords, "low_level": self.ll_keywords},
            "truncation": {name: stats.to_dict() for name, stats in self.truncation.items()},
            "failures": [failure.to_dict() for failure in self.failures],
            "rerank_applied": self.rerank_applied,
        }


@dataclass
class QueryResult:
    entities: List[EntityContext]
    relationships: List[RelationshipContext]
    chunks: List[ChunkContext]
    references: List[Reference]
    metadata: QueryMetadata
    context_text: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.relationships or self.chunks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [entity.to_dict() for entity in self.entities],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "references": [ref.to_dict() for ref in self.references],
            "metadata": self.metadata.to_dict(),
            "context": self.context_text,
        }


# =============================================================================
# TRAVERSAL AND RECONCILIATION RESULTS
# =============================================================================


@dataclass
class GraphNode:
    id: str
    entity_type: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.entity_type, "description": self.description}


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    description: str
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "description": self.description,
            "weight": self.weight,
        }


@dataclass
class KnowledgeGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    is_truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "is_truncated": self.is_truncated,
        }


@dataclass
class MergeResult:
    target: Entity
    merged_sources: List[str] = field(default_factory=list)
    skipped_sources: List[str] = field(default_factory=list)
    relationships_rewritten: int = 0
    self_loops_collapsed: int = 0

    @property
    def is_noop(self) -> bool:
        return not self.merged_sources

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "merged_sources": list(self.merged_sources),
            "skipped_sources": list(self.skipped_sources),
            "relationships_rewritten": self.relationships_rewritten,
            "self_loops_collapsed": self.self_loops_collapsed,
        }
