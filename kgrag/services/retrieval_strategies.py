"""
Retrieval strategies - one implementation per query mode, all producing the
same RetrievalBundle shape for the budget allocator.

Strategies are composed from three store probes:
- entity probe: entity similarity search + incident relationships + cited chunks
- relationship probe: relationship similarity search + endpoint entities + cited chunks
- chunk probe: chunk similarity search
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Callable, Dict, List, Sequence, Tuple

from kgrag import config
from kgrag.exceptions import StoreUnavailableError
from kgrag.models import (
    ChunkCandidate,
    EntityCandidate,
    ProbeFailure,
    QueryMode,
    QueryParam,
    RelationshipCandidate,
    RetrievalBundle,
)
from kgrag.services.interfaces import IGraphRepository
from kgrag.services.keyword_service import ResolvedKeywords
from kgrag.services.probe_runner import ProbeRunner

logger = logging.getLogger(__name__)

ENTITY_PROBE = "entity"
RELATIONSHIP_PROBE = "relationship"
CHUNK_PROBE = "chunk"


# =============================================================================
# STORE PROBES
# =============================================================================


class GraphProbes:
    """Store reads shared by the strategies. Each method is one probe."""

    def __init__(self, repo: IGraphRepository):
        self.repo = repo

    def entity_probe(self, text: str, top_k: int) -> RetrievalBundle:
        hits = self.repo.search_entities(text, top_k)
        keys = [key for key, _ in hits]
        entities = self.repo.get_entities(keys)
        degrees = self.repo.entity_degrees(keys)

        candidates = [
            EntityCandidate(entities[key], score=score, rank=degrees.get(key, 0))
            for key, score in hits
            if key in entities
        ]
        # Stable sort keeps vector order for exact ties
        candidates.sort(key=lambda c: (-c.score, -c.rank))

        incident = self.repo.get_incident_relationships([c.key for c in candidates])
        relationship_scores: Dict[str, Tuple[object, float]] = {}
        for candidate in candidates:
            for rel in incident.get(candidate.key, []):
                if rel.id not in relationship_scores:
                    relationship_scores[rel.id] = (rel, candidate.score)

        endpoint_keys: List[str] = []
        for rel, _ in relationship_scores.values():
            endpoint_keys.extend([rel.source_key, rel.target_key])
        endpoint_degrees = self.repo.entity_degrees(list(dict.fromkeys(endpoint_keys)))

        relationships = [
            RelationshipCandidate(
                rel,
                score=score,
                rank=endpoint_degrees.get(rel.source_key, 0)
                + endpoint_degrees.get(rel.target_key, 0),
            )
            for rel, score in relationship_scores.values()
        ]
        relationships.sort(key=lambda c: (-c.rank, -c.relationship.weight))

        chunks = self._cited_chunks(
            [(c.entity.source_chunk_ids, c.score) for c in candidates], origin="entity"
        )
        return RetrievalBundle(candidates, relationships, chunks)

    def relationship_probe(self, text: str, top_k: int) -> RetrievalBundle:
        hits = self.repo.search_relationships(text, top_k)
        records = self.repo.get_relationships([rel_id for rel_id, _ in hits])
        found = [(records[rel_id], score) for rel_id, score in hits if rel_id in records]

        entity_scores: Dict[str, float] = {}
        for rel, score in found:
            entity_scores.setdefault(rel.source_key, score)
            entity_scores.setdefault(rel.target_key, score)

        keys = list(entity_scores)
        entities = self.repo.get_entities(keys)
        degrees = self.repo.entity_degrees(keys)

        relationships = [
            RelationshipCandidate(
                rel,
                score=score,
                rank=degrees.get(rel.source_key, 0) + degrees.get(rel.target_key, 0),
            )
            for rel, score in found
        ]
        relationships.sort(key=lambda c: (-c.score, -c.relationship.weight))

        candidates = [
            EntityCandidate(entities[key], score=entity_scores[key], rank=degrees.get(key, 0))
            for key in keys
            if key in entities
        ]
        chunks = self._cited_chunks(
            [(c.relationship.source_chunk_ids, c.score) for c in relationships],
            origin="relation",
        )
        return RetrievalBundle(candidates, relationships, chunks)

    def chunk_probe(self, text: str, top_k: int) -> RetrievalBundle:
        hits = self.repo.search_chunks(text, top_k)
        chunks = self.repo.get_chunks([chunk_id for chunk_id, _ in hits])
        return RetrievalBundle(
            chunks=[
                ChunkCandidate(chunks[chunk_id], score=score, origin="vector")
                for chunk_id, score in hits
                if chunk_id in chunks
            ]
        )

    def _cited_chunks(
        self, citations: Sequence[Tuple[Sequence[str], float]], origin: str
    ) -> List[ChunkCandidate]:
        """
        Chunks cited by the selected items, most-cited first, then by first
        citation. Each chunk inherits the score of the first item citing it.
        """
        occurrences: Counter = Counter()
        first_score: Dict[str, float] = {}
        for chunk_ids, score in citations:
            for chunk_id in chunk_ids:
                occurrences[chunk_id] += 1
                first_score.setdefault(chunk_id, score)

        ordered = sorted(first_score, key=lambda cid: -occurrences[cid])
        chunks = self.repo.get_chunks(ordered)
        return [
            ChunkCandidate(chunks[cid], score=first_score[cid], origin=origin)
            for cid in ordered
            if cid in chunks
        ]


# =============================================================================
# MERGING
# =============================================================================


def round_robin_merge(*pools: Sequence) -> List:
    """
    Interleave candidate pools, dropping later duplicates.

    The first occurrence keeps its metadata and absorbs the sources and
    frequency of every later one.
    """
    merged: Dict[str, object] = {}
    longest = max((len(pool) for pool in pools), default=0)
    for index in range(longest):
        for pool in pools:
            if index >= len(pool):
                continue
            candidate = pool[index]
            existing = merged.get(candidate.key)
            if existing is None:
                merged[candidate.key] = candidate
            else:
                existing.absorb(candidate)
    return list(merged.values())


def boost_by_frequency(
    candidates: List, secondary: Callable[[object], float], boost: float
) -> List:
    """
    Promote items found by several probes.

    Sort key: boosted score desc, frequency desc, secondary (rank or weight)
    desc, first-seen position asc.
    """
    indexed = list(enumerate(candidates))
    indexed.sort(
        key=lambda pair: (
            -(pair[1].score + boost * (pair[1].frequency - 1)),
            -pair[1].frequency,
            -secondary(pair[1]),
            pair[0],
        )
    )
    return [candidate for _, candidate in indexed]


# =============================================================================
# STRATEGIES
# =============================================================================


class RetrievalStrategy(ABC):
    """Common contract: (query, param, keywords) -> RetrievalBundle."""

    mode: QueryMode

    def __init__(self, probes: GraphProbes, runner: ProbeRunner):
        self.probes = probes
        self.runner = runner

    @abstractmethod
    def retrieve(
        self, query: str, param: QueryParam, keywords: ResolvedKeywords
    ) -> RetrievalBundle:
        pass

    def _run(
        self, probes: Dict[str, Callable[[], RetrievalBundle]], param: QueryParam
    ) -> Tuple[Dict[str, RetrievalBundle], List[ProbeFailure]]:
        """Run probes concurrently; fail only when none of them succeeded."""
        results, failures = self.runner.run(probes, timeout=param.probe_timeout)
        if not results:
            reasons = "; ".join(f"{f.probe}: {f.reason}" for f in failures)
            raise StoreUnavailableError(
                f"All retrieval probes failed for mode '{self.mode.value}': {reasons}"
            )
        return results, failures


class LocalStrategy(RetrievalStrategy):
    mode = QueryMode.LOCAL

    def retrieve(self, query, param, keywords):
        text = keywords.low_level_probe(query)
        results, failures = self._run(
            {ENTITY_PROBE: lambda: self.probes.entity_probe(text, param.top_k)}, param
        )
        bundle = results[ENTITY_PROBE]
        bundle.failures = failures
        return bundle


class GlobalStrategy(RetrievalStrategy):
    mode = QueryMode.GLOBAL

    def retrieve(self, query, param, keywords):
        text = keywords.high_level_probe(query)
        results, failures = self._run(
            {RELATIONSHIP_PROBE: lambda: self.probes.relationship_probe(text, param.top_k)},
            param,
        )
        bundle = results[RELATIONSHIP_PROBE]
        bundle.failures = failures
        return bundle


class HybridStrategy(RetrievalStrategy):
    mode = QueryMode.HYBRID

    def retrieve(self, query, param, keywords):
        ll_text = keywords.low_level_probe(query)
        hl_text = keywords.high_level_probe(query)
        results, failures = self._run(
            {
                ENTITY_PROBE: lambda: self.probes.entity_probe(ll_text, param.top_k),
                RELATIONSHIP_PROBE: lambda: self.probes.relationship_probe(
                    hl_text, param.top_k
                ),
            },
            param,
        )
        local = results.get(ENTITY_PROBE, RetrievalBundle())
        global_ = results.get(RELATIONSHIP_PROBE, RetrievalBundle())

        return RetrievalBundle(
            entities=round_robin_merge(local.entities, global_.entities),
            relationships=round_robin_merge(local.relationships, global_.relationships),
            chunks=round_robin_merge(local.chunks, global_.chunks),
            failures=failures,
        )


class NaiveStrategy(RetrievalStrategy):
    mode = QueryMode.NAIVE

    def retrieve(self, query, param, keywords):
        results, failures = self._run(
            {CHUNK_PROBE: lambda: self.probes.chunk_probe(query, param.chunk_top_k)}, param
        )
        bundle = results[CHUNK_PROBE]
        bundle.failures = failures
        return bundle


class MixStrategy(RetrievalStrategy):
    mode = QueryMode.MIX

    def __init__(self, probes, runner, frequency_boost: float = config.MIX_FREQUENCY_BOOST):
        super().__init__(probes, runner)
        self.frequency_boost = frequency_boost

    def retrieve(self, query, param, keywords):
        ll_text = keywords.low_level_probe(query)
        hl_text = keywords.high_level_probe(query)
        results, failures = self._run(
            {
                ENTITY_PROBE: lambda: self.probes.entity_probe(ll_text, param.top_k),
                RELATIONSHIP_PROBE: lambda: self.probes.relationship_probe(
                    hl_text, param.top_k
                ),
                CHUNK_PROBE: lambda: self.probes.chunk_probe(query, param.chunk_top_k),
            },
            param,
        )
        local = results.get(ENTITY_PROBE, RetrievalBundle())
        global_ = results.get(RELATIONSHIP_PROBE, RetrievalBundle())
        vector = results.get(CHUNK_PROBE, RetrievalBundle())

        entities = boost_by_frequency(
            round_robin_merge(local.entities, global_.entities),
            secondary=lambda c: c.rank,
            boost=self.frequency_boost,
        )
        relationships = boost_by_frequency(
            round_robin_merge(local.relationships, global_.relationships),
            secondary=lambda c: c.relationship.weight,
            boost=self.frequency_boost,
        )
        chunks = boost_by_frequency(
            round_robin_merge(vector.chunks, local.chunks, global_.chunks),
            secondary=lambda c: 0,
            boost=self.frequency_boost,
        )
        return RetrievalBundle(entities, relationships, chunks, failures)


class BypassStrategy(RetrievalStrategy):
    mode = QueryMode.BYPASS

    def retrieve(self, query, param, keywords):
        return RetrievalBundle()


STRATEGY_TYPES = {
    QueryMode.LOCAL: LocalStrategy,
    QueryMode.GLOBAL: GlobalStrategy,
    QueryMode.HYBRID: HybridStrategy,
    QueryMode.NAIVE: NaiveStrategy,
    QueryMode.MIX: MixStrategy,
    QueryMode.BYPASS: BypassStrategy,
}


def build_strategies(
    repo: IGraphRepository, runner: ProbeRunner
) -> Dict[QueryMode, RetrievalStrategy]:
    """Instantiate the mode -> strategy lookup table."""
    probes = GraphProbes(repo)
    return {mode: strategy(probes, runner) for mode, strategy in STRATEGY_TYPES.items()}
