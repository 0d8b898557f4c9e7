"""
Tests for domain records, identity rules and request validation.
"""

import pytest

from kgrag.exceptions import InvalidArgumentError
from kgrag.models import (
    Entity,
    EntityCandidate,
    QueryMode,
    QueryParam,
    Relationship,
    canonical_name,
    relationship_id,
    unique_items,
)


class TestIdentity:
    """Tests for entity and relationship identity."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Machine Learning", "machine learning"),
            ("  MACHINE   learning ", "machine learning"),
            ("Straße", "strasse"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_canonical_name(self, raw, expected):
        assert canonical_name(raw) == expected

    def test_relationship_id_ignores_name_casing(self):
        assert relationship_id("Deep Learning", "ML", "part of") == relationship_id(
            "deep  learning", "ml", " part of "
        )

    def test_relationship_id_is_directional(self):
        assert relationship_id("A", "B", "x") != relationship_id("B", "A", "x")

    def test_relationship_keeps_explicit_id(self):
        rel = Relationship("A", "B", "x", id="rel-fixed")
        assert rel.id == "rel-fixed"
        assert Relationship("A", "B", "x").id.startswith("rel-")

    def test_other_endpoint(self):
        rel = Relationship("Alpha", "Beta")
        assert rel.other_endpoint("alpha") == "beta"
        assert rel.other_endpoint("beta") == "alpha"
        assert rel.touches("beta")

    def test_unique_items(self):
        assert unique_items(["a", " b", ""], None, ["b", "c"]) == ("a", "b", "c")


class TestCandidates:
    def test_absorb_unions_sources_and_counts(self):
        first = EntityCandidate(Entity("X", file_paths=("a.txt",)), score=0.4)
        second = EntityCandidate(
            Entity("x", description="other", file_paths=("b.txt", "a.txt")), score=0.7
        )

        first.absorb(second)

        assert first.entity.name == "X"
        assert first.entity.description == ""
        assert first.entity.file_paths == ("a.txt", "b.txt")
        assert first.score == 0.7
        assert first.frequency == 2


class TestQueryParam:
    """Tests for request validation."""

    def test_defaults_are_valid(self):
        param = QueryParam()
        assert isinstance(param.mode, QueryMode)
        assert param.include_references is True

    def test_from_dict_normalizes(self):
        param = QueryParam.from_dict(
            {"mode": " Hybrid ", "top_k": 5, "hl_keywords": ["a", "a", "b"], "ll_keywords": None}
        )

        assert param.mode is QueryMode.HYBRID
        assert param.hl_keywords == ("a", "b")
        assert param.ll_keywords == ()

    def test_from_none(self):
        assert QueryParam.from_dict(None) == QueryParam()

    @pytest.mark.parametrize(
        "fields",
        [{"top_k": True}, {"max_entity_tokens": 1.5}, {"ll_keywords": ["ok", 3]}],
    )
    def test_rejected(self, fields):
        with pytest.raises(InvalidArgumentError):
            QueryParam(**fields)

    def test_error_lists_allowed_modes(self):
        with pytest.raises(InvalidArgumentError, match="mix"):
            QueryParam(mode="vector")

    @pytest.mark.parametrize(
        "fields",
        [
            {"include_references": "false"},
            {"include_references": 0},
            {"enable_rerank": 1},
            {"enable_rerank": "yes"},
        ],
    )
    def test_flags_must_be_booleans(self, fields):
        name = next(iter(fields))
        with pytest.raises(InvalidArgumentError, match=name):
            QueryParam.from_dict(fields)

    def test_boolean_flags_accepted(self):
        param = QueryParam.from_dict({"include_references": False, "enable_rerank": True})

        assert param.include_references is False
        assert param.enable_rerank is True
