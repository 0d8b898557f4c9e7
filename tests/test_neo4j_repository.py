"""
Tests for Neo4jRepository - connection handling, record conversion and transactions.
"""

import pytest
from unittest.mock import MagicMock, patch

from kgrag.exceptions import (
    ConflictError,
    EntityExistsError,
    NotFoundError,
    StoreUnavailableError,
)
from kgrag.models import Entity, Relationship, relationship_id
from kgrag.repositories.neo4j_repository import Neo4jRepository


def _entity_row(name, **extra):
    data = {"key": name.casefold(), "name": name, "entity_type": "CONCEPT", "description": ""}
    data.update(extra)
    return {"entity": data}


def _queries(graph):
    return [c.args[0] for c in graph.query.call_args_list]


class TestNeo4jRepositoryConnection:
    """Tests for database connection handling."""

    def test_connection_error_handling(self):
        """Test that routing errors are wrapped with a readable message."""
        with patch("kgrag.repositories.neo4j_repository.Neo4jGraph") as mock:
            mock.side_effect = Exception("Unable to retrieve routing information")

            repo = Neo4jRepository()

            with pytest.raises(StoreUnavailableError) as exc_info:
                repo._get_graph()

            assert "Could not connect to Neo4j" in str(exc_info.value)
            assert exc_info.value.error_type == "StoreUnavailable"

    def test_other_connection_errors(self):
        with patch("kgrag.repositories.neo4j_repository.Neo4jGraph") as mock:
            mock.side_effect = Exception("authentication failure")

            with pytest.raises(StoreUnavailableError, match="connection failed"):
                Neo4jRepository()._get_graph()

    def test_lazy_connection_initialization(self):
        """Test that connection is not created until needed."""
        repo = Neo4jRepository()
        assert repo._graph is None
        assert repo._driver is None

    def test_failed_query_becomes_store_unavailable(self, mock_neo4j_graph):
        mock_neo4j_graph.query.side_effect = Exception("ServiceUnavailable")

        with pytest.raises(StoreUnavailableError):
            Neo4jRepository().list_labels()

    def test_verify_connectivity_reconnects(self, mock_neo4j_graph):
        repo = Neo4jRepository()
        repo._graph = MagicMock()
        repo._graph.query.side_effect = Exception("stale connection")

        assert repo.verify_connectivity() is True
        assert repo._graph is mock_neo4j_graph

    def test_close_releases_driver(self, mock_driver):
        repo = Neo4jRepository()
        repo._get_driver()

        repo.close()

        mock_driver.close.assert_called_once()
        assert repo._driver is None


class TestVectorSearch:
    """Tests for vector index queries."""

    def test_search_entities_returns_keys_and_scores(self, mock_neo4j_graph, mock_embeddings):
        mock_neo4j_graph.query.return_value = [
            {"key": "machine learning", "score": 0.92, "degree": 3},
            {"key": "deep learning", "score": 0.81, "degree": 1},
        ]

        hits = Neo4jRepository().search_entities("machine learning", top_k=2)

        assert hits == [("machine learning", 0.92), ("deep learning", 0.81)]
        mock_embeddings.embed_query.assert_called_once_with("machine learning")
        params = mock_neo4j_graph.query.call_args.kwargs["params"]
        assert params["top_k"] == 2
        assert params["fetch_k"] > 2

    def test_search_handles_empty_results(self, mock_neo4j_graph, mock_embeddings):
        assert Neo4jRepository().search_chunks("anything", top_k=5) == []

    def test_search_relationships_orders_ties_by_weight(self, mock_neo4j_graph, mock_embeddings):
        mock_neo4j_graph.query.return_value = [{"id": "rel-1", "score": 0.5}]

        hits = Neo4jRepository().search_relationships("link", top_k=1)

        assert hits == [("rel-1", 0.5)]
        assert "relationship.weight DESC" in mock_neo4j_graph.query.call_args.args[0]


class TestGraphReads:
    """Tests for record conversion on reads."""

    def test_get_entities_converts_records(self, mock_neo4j_graph):
        mock_neo4j_graph.query.return_value = [
            _entity_row("Machine Learning", source_chunk_ids=["c1"], file_paths=None)
        ]

        found = Neo4jRepository().get_entities(["machine  LEARNING"])

        entity = found["machine learning"]
        assert entity.name == "Machine Learning"
        assert entity.source_chunk_ids == ("c1",)
        assert entity.file_paths == ()
        params = mock_neo4j_graph.query.call_args.kwargs["params"]
        assert params == {"keys": ["machine learning"]}

    def test_empty_lookups_skip_the_database(self, mock_neo4j_graph):
        repo = Neo4jRepository()

        assert repo.get_entities([]) == {}
        assert repo.get_chunks([]) == {}
        assert repo.get_relationships([]) == {}
        mock_neo4j_graph.query.assert_not_called()

    def test_incident_relationships_keep_isolated_entities(self, mock_neo4j_graph):
        mock_neo4j_graph.query.return_value = [
            {
                "key": "deep learning",
                "rel": {"id": "rel-a", "description": "subfield", "weight": 0.9},
                "source": "Deep Learning",
                "target": "Machine Learning",
            },
            {"key": "loner", "rel": None, "source": None, "target": None},
        ]

        incident = Neo4jRepository().get_incident_relationships(["Deep Learning", "Loner"])

        assert [r.id for r in incident["deep learning"]] == ["rel-a"]
        assert incident["deep learning"][0].weight == 0.9
        assert incident["loner"] == []

    def test_get_neighborhood(self, mock_neo4j_graph):
        mock_neo4j_graph.query.return_value = [
            {
                "entities": [
                    {"key": "x", "name": "X"},
                    {"key": "y", "name": "Y"},
                ],
                "relationships": [
                    {"rel": {"id": "rel-xy", "description": "x to y"}, "source": "X", "target": "Y"}
                ],
            }
        ]

        entities, relationships = Neo4jRepository().get_neighborhood("X", 2)

        assert list(entities) == ["x", "y"]
        assert relationships[0].id == "rel-xy"
        assert relationships[0].weight == 1.0
        assert "[:RELATED*1..2]" in mock_neo4j_graph.query.call_args.args[0]

    def test_get_neighborhood_missing_start(self, mock_neo4j_graph):
        assert Neo4jRepository().get_neighborhood("Ghost", 2) == ({}, [])

    def test_degree_ranked_subgraph(self, mock_neo4j_graph):
        mock_neo4j_graph.query.return_value = [
            {"entities": [{"key": "hub", "name": "Hub"}], "relationships": [], "truncated": True}
        ]

        entities, relationships, truncated = Neo4jRepository().get_degree_ranked_subgraph(1)

        assert [e.name for e in entities] == ["Hub"]
        assert relationships == []
        assert truncated is True

    def test_popular_labels_and_exists(self, mock_neo4j_graph):
        repo = Neo4jRepository()
        mock_neo4j_graph.query.return_value = [{"name": "Hub", "degree": 4}]
        assert repo.popular_labels(1) == [("Hub", 4)]

        mock_neo4j_graph.query.return_value = [{"found": False}]
        assert repo.entity_exists("Hub") is False


class TestTransactions:
    """Tests for writes running in one driver transaction."""

    def test_create_entity_conflict(self, mock_driver, mock_neo4j_graph, mock_embeddings):
        mock_driver.tx.run.return_value.data.return_value = [_entity_row("Machine Learning")]

        with pytest.raises(EntityExistsError):
            Neo4jRepository().create_entity(Entity("machine learning"))

        mock_embeddings.embed_documents.assert_not_called()

    def test_create_entity_writes_and_embeds(self, mock_driver, mock_neo4j_graph, mock_embeddings):
        mock_driver.tx.run.return_value.data.return_value = []

        created = Neo4jRepository().create_entity(Entity("Quantum", "CONCEPT", "Physics"))

        assert created.name == "Quantum"
        write_call = mock_driver.tx.run.call_args_list[-1]
        assert write_call.kwargs["key"] == "quantum"
        mock_embeddings.embed_documents.assert_called_once_with(["Quantum\nPhysics"])
        assert "SET n.embedding" in _queries(mock_neo4j_graph)[-1]

    def test_update_missing_entity(self, mock_driver, mock_neo4j_graph, mock_embeddings):
        mock_driver.tx.run.return_value.data.return_value = []

        with pytest.raises(NotFoundError):
            Neo4jRepository().update_entity("Ghost", {"description": "boo"})

    def test_create_relationship_duplicate(self, mock_driver, mock_neo4j_graph, mock_embeddings):
        tx = mock_driver.tx
        tx.run.return_value.data.return_value = [_entity_row("A"), _entity_row("B")]
        tx.run.return_value.single.return_value = {"n": 1}

        with pytest.raises(ConflictError):
            Neo4jRepository().create_relationship(Relationship("a", "b", "linked"))

    def test_create_relationship_missing_endpoint(
        self, mock_driver, mock_neo4j_graph, mock_embeddings
    ):
        mock_driver.tx.run.return_value.data.return_value = [_entity_row("A")]

        with pytest.raises(NotFoundError, match="b"):
            Neo4jRepository().create_relationship(Relationship("A", "b", "linked"))

    def test_merge_entities_in_one_transaction(
        self, mock_driver, mock_neo4j_graph, mock_embeddings
    ):
        tx = mock_driver.tx
        tx.run.return_value.data.side_effect = [
            [
                _entity_row("ml", source_chunk_ids=["c1"]),
                _entity_row("Machine Learning", source_chunk_ids=["c2"]),
            ],
            [
                {
                    "key": "ml",
                    "rel": {"id": "rel-ml-nn", "description": "ml uses neural networks"},
                    "source": "ml",
                    "target": "Neural Network",
                }
            ],
        ]

        result = Neo4jRepository().merge_entities(["ml"], "Machine Learning")

        mock_driver.session.return_value.__enter__.return_value.execute_write.assert_called_once()
        assert result.merged_sources == ["ml"]
        assert result.relationships_rewritten == 1
        assert result.target.source_chunk_ids == ("c2", "c1")

        statements = [c.args[0] for c in tx.run.call_args_list]
        assert any("DELETE r" in s for s in statements)
        assert any("DETACH DELETE n" in s for s in statements)
        write_rows = tx.run.call_args_list[-1].kwargs["rows"]
        assert write_rows[0]["source_key"] == "machine learning"
        assert write_rows[0]["props"]["id"] == relationship_id(
            "Machine Learning", "Neural Network", "ml uses neural networks"
        )
        delete_call = next(c for c in tx.run.call_args_list if "DELETE r" in c.args[0])
        assert delete_call.kwargs["ids"] == ["rel-ml-nn"]

    def test_merge_folds_edge_the_target_already_has(
        self, mock_driver, mock_neo4j_graph, mock_embeddings
    ):
        existing_id = relationship_id("Machine Learning", "Neural Network", "uses")
        tx = mock_driver.tx
        tx.run.return_value.data.side_effect = [
            [_entity_row("ml"), _entity_row("Machine Learning")],
            [
                {
                    "key": "ml",
                    "rel": {
                        "id": "rel-ml-nn",
                        "description": "uses",
                        "keywords": ["training"],
                        "weight": 0.9,
                    },
                    "source": "ml",
                    "target": "Neural Network",
                },
                {
                    "key": "machine learning",
                    "rel": {
                        "id": existing_id,
                        "description": "uses",
                        "keywords": ["models"],
                        "weight": 0.4,
                    },
                    "source": "Machine Learning",
                    "target": "Neural Network",
                },
            ],
        ]

        Neo4jRepository().merge_entities(["ml"], "Machine Learning")

        write_rows = tx.run.call_args_list[-1].kwargs["rows"]
        assert len(write_rows) == 1
        assert write_rows[0]["props"]["id"] == existing_id
        assert write_rows[0]["props"]["weight"] == 0.9
        assert write_rows[0]["props"]["keywords"] == ["models", "training"]

    def test_noop_merge_writes_nothing(self, mock_driver, mock_neo4j_graph, mock_embeddings):
        tx = mock_driver.tx
        tx.run.return_value.data.side_effect = [[_entity_row("Machine Learning")], []]

        result = Neo4jRepository().merge_entities(["ml"], "Machine Learning")

        assert result.is_noop
        assert result.skipped_sources == ["ml"]
        assert tx.run.call_count == 2
        mock_embeddings.embed_documents.assert_not_called()

    def test_domain_errors_pass_through_transaction(self, mock_driver):
        mock_driver.session.return_value.__enter__.return_value.execute_write.side_effect = (
            NotFoundError("gone")
        )

        with pytest.raises(NotFoundError):
            Neo4jRepository()._write(lambda tx: None)

    def test_driver_errors_become_store_unavailable(self, mock_driver):
        mock_driver.session.side_effect = Exception("connection refused")

        with pytest.raises(StoreUnavailableError):
            Neo4jRepository()._write(lambda tx: None)


class TestAdministration:
    """Tests for index setup and statistics."""

    def test_create_indexes(self, mock_neo4j_graph):
        Neo4jRepository().create_indexes()

        statements = _queries(mock_neo4j_graph)
        assert len(statements) == 6
        assert sum("VECTOR INDEX" in s for s in statements) == 3

    def test_create_indexes_tolerates_existing(self, mock_neo4j_graph):
        mock_neo4j_graph.query.side_effect = Exception("Index already exists")

        Neo4jRepository().create_indexes()

    def test_get_statistics(self, mock_neo4j_graph):
        mock_neo4j_graph.query.side_effect = [[{"count": 4}], [{"count": 3}], []]

        assert Neo4jRepository().get_statistics() == {
            "entities": 4,
            "relationships": 3,
            "chunks": 0,
        }
