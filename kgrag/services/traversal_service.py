"""
TraversalService - Bounded neighborhood exploration of the knowledge graph.
"""

import logging
from typing import Dict, List

from kgrag import config
from kgrag.exceptions import InvalidArgumentError, NotFoundError
from kgrag.models import (
    GRAPH_WILDCARD,
    Entity,
    GraphEdge,
    GraphNode,
    KnowledgeGraph,
    Relationship,
)
from kgrag.services.interfaces import IGraphRepository

logger = logging.getLogger(__name__)


def _positive_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidArgumentError(f"{name} must be a positive integer, got {value!r}")
    return value


class TraversalService:
    """
    Breadth-first expansion from a named entity, bounded by hop count and
    node count. The graph may contain cycles; every entity is visited once.
    """

    def __init__(self, repo: IGraphRepository):
        self.repo = repo

    def get_knowledge_graph(
        self,
        label: str,
        max_depth: int = config.DEFAULT_MAX_DEPTH,
        max_nodes: int = config.DEFAULT_MAX_NODES,
    ) -> KnowledgeGraph:
        """
        Args:
            label: Starting entity name, or "*" for the most connected entities
            max_depth: Maximum hops from the starting entity
            max_nodes: Maximum nodes returned (clamped to MAX_GRAPH_NODES)

        Returns:
            KnowledgeGraph with nodes in visit order and the edges among them

        Raises:
            InvalidArgumentError: blank label or non-positive bounds
            NotFoundError: the starting entity does not exist
        """
        if not isinstance(label, str) or not label.strip():
            raise InvalidArgumentError("label must be a non-empty string")
        max_depth = _positive_int("max_depth", max_depth)
        max_nodes = min(_positive_int("max_nodes", max_nodes), config.MAX_GRAPH_NODES)

        if label.strip() == GRAPH_WILDCARD:
            entities, relationships, truncated = self.repo.get_degree_ranked_subgraph(max_nodes)
            return self._to_graph(entities, relationships, truncated)

        start = self.repo.get_entity(label)
        if start is None:
            raise NotFoundError(f"Entity '{label}' not found")

        entities, relationships = self.repo.get_neighborhood(start.name, max_depth)
        entities.setdefault(start.key, start)

        visited, truncated = self._bounded_bfs(start.key, entities, relationships, max_depth, max_nodes)
        logger.debug(
            "Traversal from '%s': %d nodes (depth=%d, truncated=%s)",
            start.name,
            len(visited),
            max_depth,
            truncated,
        )
        return self._to_graph([entities[key] for key in visited], relationships, truncated)

    def _bounded_bfs(
        self,
        start_key: str,
        entities: Dict[str, Entity],
        relationships: List[Relationship],
        max_depth: int,
        max_nodes: int,
    ):
        """
        Level-by-level BFS. Within a level, nodes reached through stronger
        edges are admitted first (then by name), so the node cap cuts the
        weakest connections.
        """
        adjacency: Dict[str, List[Relationship]] = {}
        for rel in relationships:
            adjacency.setdefault(rel.source_key, []).append(rel)
            if rel.target_key != rel.source_key:
                adjacency.setdefault(rel.target_key, []).append(rel)

        visited = [start_key]
        seen = {start_key}
        frontier = [start_key]
        truncated = False
        depth = 0

        while frontier and depth < max_depth:
            best_weight: Dict[str, float] = {}
            for key in frontier:
                for rel in adjacency.get(key, []):
                    other = rel.other_endpoint(key)
                    if other in seen or other not in entities:
                        continue
                    if other not in best_weight or rel.weight > best_weight[other]:
                        best_weight[other] = rel.weight

            level = sorted(
                best_weight, key=lambda k: (-best_weight[k], entities[k].name.casefold(), k)
            )
            room = max_nodes - len(visited)
            if len(level) > room:
                level = level[:room]
                truncated = True

            visited.extend(level)
            seen.update(level)
            frontier = level
            depth += 1
            if truncated:
                break

        return visited, truncated

    def _to_graph(
        self, entities: List[Entity], relationships: List[Relationship], truncated: bool
    ) -> KnowledgeGraph:
        position = {entity.key: index for index, entity in enumerate(entities)}
        names = {entity.key: entity.name for entity in entities}

        edges = [
            rel
            for rel in relationships
            if rel.source_key in position and rel.target_key in position
        ]
        edges.sort(key=lambda rel: (position[rel.source_key], position[rel.target_key], rel.id))

        return KnowledgeGraph(
            nodes=[
                GraphNode(entity.name, entity.entity_type, entity.description)
                for entity in entities
            ],
            edges=[
                GraphEdge(
                    id=rel.id,
                    source=names[rel.source_key],
                    target=names[rel.target_key],
                    description=rel.description,
                    weight=rel.weight,
                )
                for rel in edges
            ],
            is_truncated=truncated,
        )
