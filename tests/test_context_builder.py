"""
Tests for reference assembly and context rendering.
"""

import json

from kgrag.models import (
    Chunk,
    ChunkCandidate,
    Entity,
    EntityCandidate,
    Relationship,
    RelationshipCandidate,
)
from kgrag.services.context_builder import (
    CHUNK_SECTION_TITLE,
    ENTITY_SECTION_TITLE,
    REFERENCE_SECTION_TITLE,
    RELATIONSHIP_SECTION_TITLE,
    ContextBuilder,
    build_references,
)
from kgrag.services.token_budget import BudgetOutcome


def _outcome():
    return BudgetOutcome(
        entities=[
            EntityCandidate(Entity("Alpha", "CONCEPT", "first", file_paths=("b.txt",)), rank=2),
            EntityCandidate(Entity("Beta", "CONCEPT", "second", file_paths=("a.txt", "b.txt"))),
        ],
        relationships=[
            RelationshipCandidate(
                Relationship("Alpha", "Beta", "related", ("link",), 0.5, file_paths=("a.txt",))
            )
        ],
        chunks=[ChunkCandidate(Chunk("c1", "Alpha meets Beta.", file_path="a.txt"))],
    )


class TestBuildReferences:
    """Tests for the deduplicated reference list."""

    def test_most_cited_first_then_first_seen(self):
        references = build_references([["x.txt"], ["y.txt", "x.txt"], ["y.txt"], ["z.txt"]])

        assert [(r.reference_id, r.file_path) for r in references] == [
            ("1", "x.txt"),
            ("2", "y.txt"),
            ("3", "z.txt"),
        ]

    def test_repeated_path_within_item_counts_once(self):
        references = build_references([["a.txt", "a.txt"], ["b.txt"], ["b.txt"]])

        assert [r.file_path for r in references] == ["b.txt", "a.txt"]

    def test_blank_paths_ignored(self):
        assert build_references([[""], []]) == []


class TestContextBuilder:
    """Tests for response sections and the rendered context."""

    def test_items_point_at_their_first_path(self):
        entities, relationships, chunks, references = ContextBuilder().build(_outcome())

        ids = {r.file_path: r.reference_id for r in references}
        assert ids == {"a.txt": "1", "b.txt": "2"}
        assert entities[0].reference_id == "2"
        assert entities[1].reference_id == "1"
        assert relationships[0].reference_id == "1"
        assert chunks[0].reference_id == "1"

    def test_references_disabled(self):
        entities, relationships, chunks, references = ContextBuilder().build(
            _outcome(), include_references=False
        )

        assert references == []
        assert all(item.reference_id is None for item in entities + relationships + chunks)

    def test_render_sections(self):
        builder = ContextBuilder()
        outcome = _outcome()
        _, _, chunks, references = builder.build(outcome)

        text = builder.render(outcome, chunks, references)

        for title in (
            ENTITY_SECTION_TITLE,
            RELATIONSHIP_SECTION_TITLE,
            CHUNK_SECTION_TITLE,
            REFERENCE_SECTION_TITLE,
        ):
            assert title in text
        assert text.index(ENTITY_SECTION_TITLE) < text.index(RELATIONSHIP_SECTION_TITLE)
        assert "[1] a.txt" in text
        assert json.dumps({"reference_id": "1", "content": "Alpha meets Beta."}) in text

    def test_render_empty_outcome(self):
        assert ContextBuilder().render(BudgetOutcome(), [], []) == ""
