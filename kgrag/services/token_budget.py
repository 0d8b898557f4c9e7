"""
Token estimation and the budget allocator that fits retrieved context into
caller-supplied limits.

Costs are measured on the JSON record each item is rendered as, so what the
allocator counts is what the generator receives.
"""

import json
import logging
import math
from dataclasses import dataclass, field, replace
from typing import List, Dict, Any, Callable, Optional

import tiktoken

from kgrag import config
from kgrag.exceptions import InvalidArgumentError
from kgrag.models import (
    ChunkCandidate,
    EntityCandidate,
    QueryParam,
    RelationshipCandidate,
    RetrievalBundle,
    TruncationStats,
)
from kgrag.services.interfaces import ITokenEstimator

logger = logging.getLogger(__name__)


# =============================================================================
# TOKEN ESTIMATORS
# =============================================================================


class CharTokenEstimator(ITokenEstimator):
    """Characters divided by a fixed ratio, rounded up. Model independent."""

    def __init__(self, chars_per_token: int = config.CHARS_PER_TOKEN):
        if chars_per_token < 1:
            raise InvalidArgumentError("chars_per_token must be >= 1")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def clip(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        return text[: max_tokens * self.chars_per_token]


class TiktokenEstimator(ITokenEstimator):
    """Exact token counts for OpenAI-family tokenizers."""

    def __init__(self, encoding_name: str = config.TIKTOKEN_ENCODING):
        self.encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text))

    def clip(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        tokens = self.encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        clipped = self.encoding.decode(tokens[:max_tokens])
        # Decoding a cut multi-byte sequence can add a replacement character
        while clipped and self.count(clipped) > max_tokens:
            clipped = clipped[:-1]
        return clipped


def get_token_estimator(name: Optional[str] = None) -> ITokenEstimator:
    """Build the estimator selected by name or config.TOKEN_ESTIMATOR."""
    name = (name or config.TOKEN_ESTIMATOR).strip().lower()
    if name == "chars":
        return CharTokenEstimator()
    if name == "tiktoken":
        return TiktokenEstimator()
    raise InvalidArgumentError(f"Unknown token estimator '{name}'. Use 'chars' or 'tiktoken'.")


# =============================================================================
# CONTEXT RECORDS
# =============================================================================


def entity_record(candidate: EntityCandidate) -> Dict[str, Any]:
    entity = candidate.entity
    return {
        "entity": entity.name,
        "type": entity.entity_type,
        "description": entity.description,
        "rank": candidate.rank,
    }


def relationship_record(candidate: RelationshipCandidate) -> Dict[str, Any]:
    rel = candidate.relationship
    return {
        "entity1": rel.source,
        "entity2": rel.target,
        "keywords": ", ".join(rel.keywords),
        "description": rel.description,
        "weight": rel.weight,
    }


def chunk_record(candidate: ChunkCandidate) -> Dict[str, Any]:
    return {"content": candidate.chunk.content}


def record_line(record: Dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False)


# =============================================================================
# ALLOCATOR
# =============================================================================


@dataclass
class BudgetOutcome:
    entities: List[EntityCandidate] = field(default_factory=list)
    relationships: List[RelationshipCandidate] = field(default_factory=list)
    chunks: List[ChunkCandidate] = field(default_factory=list)
    truncation: Dict[str, TruncationStats] = field(default_factory=dict)
    token_usage: Dict[str, int] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return sum(self.token_usage.values())


def _fit_prefix(costs: List[int], budget: int) -> int:
    """Length of the longest prefix whose summed cost stays within budget."""
    used = 0
    for index, cost in enumerate(costs):
        if used + cost > budget:
            return index
        used += cost
    return len(costs)


class TokenBudgetAllocator:
    """
    Trims ranked entities, relationships and chunks so their combined cost
    fits ``max_total_tokens``.

    Items are only ever dropped from the tail of each list; survivors keep
    their order. A floor of the total budget is reserved for chunk text so a
    large knowledge-graph section cannot starve it.
    """

    def __init__(
        self,
        estimator: Optional[ITokenEstimator] = None,
        min_chunk_ratio: float = config.MIN_CHUNK_BUDGET_RATIO,
    ):
        self.estimator = estimator or get_token_estimator()
        self.min_chunk_ratio = min_chunk_ratio

    def cost(self, record: Dict[str, Any]) -> int:
        return self.estimator.count(record_line(record))

    def _costs(self, items: List[Any], to_record: Callable) -> List[int]:
        return [self.cost(to_record(item)) for item in items]

    def allocate(self, bundle: RetrievalBundle, param: QueryParam) -> BudgetOutcome:
        entity_costs = self._costs(bundle.entities, entity_record)
        relation_costs = self._costs(bundle.relationships, relationship_record)

        ranked_chunks = bundle.chunks[: param.chunk_top_k]
        chunk_costs = self._costs(ranked_chunks, chunk_record)

        n_entities = _fit_prefix(entity_costs, param.max_entity_tokens)
        n_relations = _fit_prefix(relation_costs, param.max_relation_tokens)
        entity_cost = sum(entity_costs[:n_entities])
        relation_cost = sum(relation_costs[:n_relations])

        max_total = param.max_total_tokens
        chunk_floor = 0
        if ranked_chunks:
            # an empty record already costs tokens, so one clipped chunk needs more
            overhead = self.cost({"content": ""})
            chunk_floor = min(
                sum(chunk_costs),
                max_total,
                max(overhead + 1, int(max_total * self.min_chunk_ratio)),
            )

        if max_total - entity_cost - relation_cost < chunk_floor:
            available = max_total - chunk_floor
            graph_cost = entity_cost + relation_cost
            entity_cap = int(available * entity_cost / graph_cost)
            relation_cap = available - entity_cap
            n_entities = _fit_prefix(entity_costs[:n_entities], entity_cap)
            n_relations = _fit_prefix(relation_costs[:n_relations], relation_cap)
            entity_cost = sum(entity_costs[:n_entities])
            relation_cost = sum(relation_costs[:n_relations])

        chunk_budget = max_total - entity_cost - relation_cost
        n_chunks = _fit_prefix(chunk_costs, chunk_budget)
        kept_chunks = list(ranked_chunks[:n_chunks])
        chunk_cost = sum(chunk_costs[:n_chunks])

        if not kept_chunks and ranked_chunks and chunk_budget > 0:
            clipped = self._clip_chunk(ranked_chunks[0], chunk_budget)
            if clipped is not None:
                kept_chunks = [clipped]
                chunk_cost = self.cost(chunk_record(clipped))

        outcome = BudgetOutcome(
            entities=list(bundle.entities[:n_entities]),
            relationships=list(bundle.relationships[:n_relations]),
            chunks=kept_chunks,
            truncation={
                "entities": TruncationStats(len(bundle.entities), n_entities),
                "relationships": TruncationStats(len(bundle.relationships), n_relations),
                "chunks": TruncationStats(len(bundle.chunks), len(kept_chunks)),
            },
            token_usage={
                "entities": entity_cost,
                "relationships": relation_cost,
                "chunks": chunk_cost,
            },
        )

        logger.info(
            "Token budget: entities %d/%d, relationships %d/%d, chunks %d/%d (%d/%d tokens)",
            n_entities,
            len(bundle.entities),
            n_relations,
            len(bundle.relationships),
            len(kept_chunks),
            len(bundle.chunks),
            outcome.total_tokens,
            max_total,
        )
        return outcome

    def _clip_chunk(self, candidate: ChunkCandidate, budget: int) -> Optional[ChunkCandidate]:
        """Keep a prefix of the chunk's content that fits ``budget``."""
        overhead = self.cost(chunk_record(replace(candidate, chunk=replace(candidate.chunk, content=""))))
        text_budget = budget - overhead

        while text_budget > 0:
            content = self.estimator.clip(candidate.chunk.content, text_budget)
            if not content:
                return None
            clipped = replace(
                candidate,
                chunk=replace(candidate.chunk, content=content),
                truncated=True,
            )
            if self.cost(chunk_record(clipped)) <= budget:
                return clipped
            text_budget -= 1
        return None
