"""
Tests for TraversalService - bounded neighborhood exploration.
"""

import pytest
from unittest.mock import MagicMock, patch

from kgrag import config
from kgrag.exceptions import InvalidArgumentError, NotFoundError
from kgrag.models import Entity, Relationship
from kgrag.services.traversal_service import TraversalService


def _chain_repo(make_repo):
    """X -0.1- Y -0.1- Z -1.0- W: W is three hops from X."""
    return make_repo(
        entities=[Entity(name) for name in ("X", "Y", "Z", "W")],
        relationships=[
            Relationship("X", "Y", "x to y", weight=0.1),
            Relationship("Y", "Z", "y to z", weight=0.1),
            Relationship("Z", "W", "z to w", weight=1.0),
        ],
    )


class TestDepthBound:
    """Tests for the hop limit."""

    def test_three_hop_node_excluded_at_depth_two(self, make_repo):
        """A heavy edge does not pull a node closer than its hop distance."""
        service = TraversalService(_chain_repo(make_repo))

        graph = service.get_knowledge_graph("X", max_depth=2)

        assert [node.id for node in graph.nodes] == ["X", "Y", "Z"]
        assert {(e.source, e.target) for e in graph.edges} == {("X", "Y"), ("Y", "Z")}
        assert graph.is_truncated is False

    def test_depth_three_reaches_everything(self, make_repo):
        graph = TraversalService(_chain_repo(make_repo)).get_knowledge_graph("x", max_depth=3)

        assert [node.id for node in graph.nodes] == ["X", "Y", "Z", "W"]

    def test_depth_one(self, make_repo):
        graph = TraversalService(_chain_repo(make_repo)).get_knowledge_graph("Y", max_depth=1)

        assert [node.id for node in graph.nodes] == ["Y", "X", "Z"]


class TestCyclesAndCaps:
    """Tests for cyclic graphs and the node cap."""

    def test_cycle_visits_each_entity_once(self, make_repo):
        repo = make_repo(
            entities=[Entity(name) for name in ("A", "B", "C")],
            relationships=[
                Relationship("A", "B", "ab"),
                Relationship("B", "C", "bc"),
                Relationship("C", "A", "ca"),
            ],
        )

        graph = TraversalService(repo).get_knowledge_graph("A", max_depth=10)

        assert sorted(node.id for node in graph.nodes) == ["A", "B", "C"]
        assert len(graph.edges) == 3

    def test_node_cap_keeps_strongest_neighbors(self, make_repo):
        """Within a level, stronger edges are admitted before the cap cuts."""
        leaves = {"Weak": 0.1, "Strong": 0.9, "Medium": 0.5, "Faint": 0.05}
        repo = make_repo(
            entities=[Entity("Hub")] + [Entity(name) for name in leaves],
            relationships=[
                Relationship("Hub", name, f"hub to {name}", weight=weight)
                for name, weight in leaves.items()
            ],
        )

        graph = TraversalService(repo).get_knowledge_graph("Hub", max_depth=2, max_nodes=3)

        assert [node.id for node in graph.nodes] == ["Hub", "Strong", "Medium"]
        assert graph.is_truncated is True
        assert all(edge.source == "Hub" for edge in graph.edges)
        assert len(graph.edges) == 2

    def test_equal_weights_break_ties_by_name(self, make_repo):
        repo = make_repo(
            entities=[Entity(name) for name in ("Root", "beta", "Alpha", "gamma")],
            relationships=[
                Relationship("Root", name, f"root {name}", weight=0.5)
                for name in ("gamma", "beta", "Alpha")
            ],
        )

        graph = TraversalService(repo).get_knowledge_graph("Root", max_depth=1)

        assert [node.id for node in graph.nodes] == ["Root", "Alpha", "beta", "gamma"]

    def test_max_nodes_clamped_to_ceiling(self):
        mock_repo = MagicMock()
        mock_repo.get_degree_ranked_subgraph.return_value = ([], [], False)

        with patch.object(config, "MAX_GRAPH_NODES", 25):
            TraversalService(mock_repo).get_knowledge_graph("*", max_depth=1, max_nodes=5000)

        mock_repo.get_degree_ranked_subgraph.assert_called_once_with(25)


class TestWildcard:
    """Tests for the whole-graph overview."""

    def test_star_returns_most_connected(self, make_repo):
        repo = make_repo(
            entities=[Entity(name) for name in ("Hub", "A", "B", "Loner")],
            relationships=[Relationship("Hub", "A", "ha"), Relationship("Hub", "B", "hb")],
        )

        graph = TraversalService(repo).get_knowledge_graph("*", max_nodes=2)

        assert graph.nodes[0].id == "Hub"
        assert len(graph.nodes) == 2
        assert graph.is_truncated is True
        assert len(graph.edges) == 1


class TestValidation:
    """Tests for rejected traversal requests."""

    def test_unknown_label_raises_not_found(self, sample_repo):
        with pytest.raises(NotFoundError):
            TraversalService(sample_repo).get_knowledge_graph("Quantum Computing")

    @pytest.mark.parametrize(
        "label,max_depth,max_nodes",
        [("", 2, 10), ("   ", 2, 10), ("X", 0, 10), ("X", 2, 0), ("X", True, 10)],
    )
    def test_invalid_arguments(self, label, max_depth, max_nodes):
        mock_repo = MagicMock()

        with pytest.raises(InvalidArgumentError):
            TraversalService(mock_repo).get_knowledge_graph(label, max_depth, max_nodes)

        mock_repo.get_entity.assert_not_called()

    def test_to_dict_shape(self, sample_repo):
        graph = TraversalService(sample_repo).get_knowledge_graph("Deep Learning", max_depth=1)
        data = graph.to_dict()

        assert data["nodes"][0] == {
            "id": "Deep Learning",
            "type": "CONCEPT",
            "description": "Machine learning with deep neural networks",
        }
        assert {"id", "source", "target", "description", "weight"} <= set(data["edges"][0])
        assert data["is_truncated"] is False
