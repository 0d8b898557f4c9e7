"""
ContextBuilder - Turns budgeted candidates into the response sections, the
deduplicated reference list, and the context text handed to the generator.
"""

from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from kgrag.models import (
    ChunkContext,
    EntityContext,
    Reference,
    RelationshipContext,
)
from kgrag.services.token_budget import (
    BudgetOutcome,
    entity_record,
    record_line,
    relationship_record,
)

ENTITY_SECTION_TITLE = "Knowledge Graph Data (Entity)"
RELATIONSHIP_SECTION_TITLE = "Knowledge Graph Data (Relationship)"
CHUNK_SECTION_TITLE = (
    "Document Chunks (Each entry has a reference_id refer to the `Reference Document List`)"
)
REFERENCE_SECTION_TITLE = "Reference Document List"


def build_references(path_groups: Sequence[Sequence[str]]) -> List[Reference]:
    """
    One reference per distinct file path, most frequently cited first, ties
    in order of first appearance. Ids are "1", "2", ...
    """
    counts: Counter = Counter()
    first_seen: Dict[str, int] = {}
    for paths in path_groups:
        for path in dict.fromkeys(p for p in paths if p):
            counts[path] += 1
            first_seen.setdefault(path, len(first_seen))

    ordered = sorted(first_seen, key=lambda path: (-counts[path], first_seen[path]))
    return [Reference(str(index), path) for index, path in enumerate(ordered, start=1)]


class ContextBuilder:
    """Assembles response sections from a BudgetOutcome."""

    def build(
        self, outcome: BudgetOutcome, include_references: bool = True
    ) -> Tuple[
        List[EntityContext], List[RelationshipContext], List[ChunkContext], List[Reference]
    ]:
        entity_paths = [list(c.entity.file_paths) for c in outcome.entities]
        relation_paths = [list(c.relationship.file_paths) for c in outcome.relationships]
        chunk_paths = [[c.chunk.file_path] for c in outcome.chunks]

        references: List[Reference] = []
        if include_references:
            references = build_references(entity_paths + relation_paths + chunk_paths)
        ids_by_path = {ref.file_path: ref.reference_id for ref in references}

        def _reference_id(paths: List[str]) -> Optional[str]:
            for path in paths:
                if path in ids_by_path:
                    return ids_by_path[path]
            return None

        entities = [
            EntityContext(
                name=c.entity.name,
                entity_type=c.entity.entity_type,
                description=c.entity.description,
                rank=c.rank,
                file_paths=list(c.entity.file_paths),
                reference_id=_reference_id(paths),
            )
            for c, paths in zip(outcome.entities, entity_paths)
        ]
        relationships = [
            RelationshipContext(
                id=c.relationship.id,
                source=c.relationship.source,
                target=c.relationship.target,
                description=c.relationship.description,
                keywords=list(c.relationship.keywords),
                weight=c.relationship.weight,
                file_paths=list(c.relationship.file_paths),
                reference_id=_reference_id(paths),
            )
            for c, paths in zip(outcome.relationships, relation_paths)
        ]
        chunks = [
            ChunkContext(
                chunk_id=c.chunk.id,
                content=c.chunk.content,
                file_path=c.chunk.file_path,
                reference_id=_reference_id(paths),
                truncated=c.truncated,
            )
            for c, paths in zip(outcome.chunks, chunk_paths)
        ]
        return entities, relationships, chunks, references

    def render(self, outcome: BudgetOutcome, chunks: List[ChunkContext], references: List[Reference]) -> str:
        """Context text for the generator: JSON-lines sections plus references."""
        sections: List[str] = []

        if outcome.entities:
            lines = [record_line(entity_record(c)) for c in outcome.entities]
            sections.append(self._section(ENTITY_SECTION_TITLE, lines))

        if outcome.relationships:
            lines = [record_line(relationship_record(c)) for c in outcome.relationships]
            sections.append(self._section(RELATIONSHIP_SECTION_TITLE, lines))

        if chunks:
            lines = []
            for chunk in chunks:
                record = {"content": chunk.content}
                if chunk.reference_id is not None:
                    record = {"reference_id": chunk.reference_id, **record}
                lines.append(record_line(record))
            sections.append(self._section(CHUNK_SECTION_TITLE, lines))

        if references:
            lines = [f"[{ref.reference_id}] {ref.file_path}" for ref in references]
            sections.append(f"{REFERENCE_SECTION_TITLE}:\n\n" + "\n".join(lines))

        return "\n\n".join(sections)

    @staticmethod
    def _section(title: str, lines: List[str]) -> str:
        return f"{title}:\n\n```json\n" + "\n".join(lines) + "\n```"
