"""
Pytest configuration and shared fixtures for the kgrag test suite.
"""

import pytest
import os
import re
import sys
import threading
from unittest.mock import MagicMock, patch
from typing import Callable, Dict, List

from langchain_core.embeddings import Embeddings

# Ensure the kgrag package is importable from the repository root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kgrag.models import Chunk, Entity, Relationship  # noqa: E402
from kgrag.repositories.memory_repository import InMemoryGraphRepository  # noqa: E402
from kgrag.services.token_budget import CharTokenEstimator  # noqa: E402

STOPWORDS = {"a", "an", "and", "are", "from", "how", "is", "of", "the", "to", "what", "with"}


# =============================================================================
# DETERMINISTIC EMBEDDINGS
# =============================================================================


class KeywordEmbeddings(Embeddings):
    """
    Bag-of-words embeddings over a vocabulary that grows as words are seen.

    Earlier vectors are shorter than later ones; the missing tail is
    implicitly zero, which is what cosine similarity over ``zip`` expects.
    """

    def __init__(self):
        self.vocabulary: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _tokens(self, text: str) -> List[str]:
        words = re.findall(r"[a-z0-9]+", text.lower())
        return [word for word in words if word not in STOPWORDS]

    def _vector(self, text: str) -> List[float]:
        tokens = self._tokens(text)
        with self._lock:
            for token in tokens:
                self.vocabulary.setdefault(token, len(self.vocabulary))
            vector = [0.0] * len(self.vocabulary)
        for token in tokens:
            vector[self.vocabulary[token]] += 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)


@pytest.fixture
def keyword_embeddings() -> KeywordEmbeddings:
    return KeywordEmbeddings()


@pytest.fixture
def estimator() -> CharTokenEstimator:
    """Four characters per token, independent of the environment."""
    return CharTokenEstimator(4)


# =============================================================================
# IN-MEMORY KNOWLEDGE BASES
# =============================================================================


@pytest.fixture
def make_repo(keyword_embeddings) -> Callable[..., InMemoryGraphRepository]:
    """
    Factory for populated in-memory stores.

    Usage:
        repo = make_repo(entities=[...], relationships=[...], chunks=[...])
    """

    def _make(
        entities: List[Entity] = (),
        relationships: List[Relationship] = (),
        chunks: List[Chunk] = (),
        cosine_threshold: float = 0.1,
    ) -> InMemoryGraphRepository:
        repo = InMemoryGraphRepository(
            embeddings=keyword_embeddings, cosine_threshold=cosine_threshold
        )
        repo.upsert_chunks(list(chunks))
        for entity in entities:
            repo.upsert_entity(entity)
        for relationship in relationships:
            repo.upsert_relationship(relationship)
        return repo

    return _make


@pytest.fixture
def sample_chunks() -> List[Chunk]:
    return [
        Chunk("c1", "Machine learning builds models from data.", "doc-ml", 0, "ml.pdf"),
        Chunk("c2", "Neural networks are machine learning models.", "doc-nn", 0, "nn.pdf"),
        Chunk("c3", "Deep learning stacks neural network layers.", "doc-dl", 0, "dl.pdf"),
        Chunk("c4", "Gradient descent optimizes model weights.", "doc-opt", 0, "opt.pdf"),
    ]


@pytest.fixture
def sample_entities() -> List[Entity]:
    return [
        Entity(
            "Machine Learning",
            "CONCEPT",
            "Field of study that learns from data",
            ("c1",),
            ("ml.pdf",),
        ),
        Entity(
            "Neural Network",
            "MODEL",
            "Layered model of artificial neurons",
            ("c2", "c3"),
            ("nn.pdf", "dl.pdf"),
        ),
        Entity(
            "Deep Learning",
            "CONCEPT",
            "Machine learning with deep neural networks",
            ("c3",),
            ("dl.pdf",),
        ),
        Entity(
            "Gradient Descent",
            "ALGORITHM",
            "Optimization algorithm for model weights",
            ("c4",),
            ("opt.pdf",),
        ),
    ]


@pytest.fixture
def sample_relationships() -> List[Relationship]:
    return [
        Relationship(
            "Deep Learning",
            "Machine Learning",
            "Deep learning is a subfield of machine learning",
            ("subfield",),
            0.9,
            ("c3",),
            ("dl.pdf",),
        ),
        Relationship(
            "Neural Network",
            "Deep Learning",
            "Neural networks are the foundation of deep learning",
            ("foundation",),
            0.8,
            ("c2", "c3"),
            ("nn.pdf", "dl.pdf"),
        ),
        Relationship(
            "Gradient Descent",
            "Neural Network",
            "Gradient descent trains neural networks",
            ("training",),
            0.6,
            ("c4",),
            ("opt.pdf",),
        ),
    ]


@pytest.fixture
def sample_repo(make_repo, sample_entities, sample_relationships, sample_chunks):
    """Small machine-learning knowledge base."""
    return make_repo(sample_entities, sample_relationships, sample_chunks)


# =============================================================================
# MOCK FIXTURES
# =============================================================================


@pytest.fixture
def mock_neo4j_graph():
    """Mock Neo4jGraph for testing without database connection."""
    with patch("kgrag.repositories.neo4j_repository.Neo4jGraph") as mock:
        mock_instance = MagicMock()
        mock.return_value = mock_instance

        # Set up default return values
        mock_instance.query.return_value = []

        yield mock_instance


@pytest.fixture
def mock_embeddings():
    """Mock OpenAI embeddings for testing without API calls."""
    with patch("kgrag.repositories.neo4j_repository.OpenAIEmbeddings") as mock:
        mock_instance = MagicMock()
        mock.return_value = mock_instance

        fake_embedding = [0.1] * 1536
        mock_instance.embed_query.return_value = fake_embedding
        mock_instance.embed_documents.side_effect = lambda texts: [fake_embedding for _ in texts]

        yield mock_instance


@pytest.fixture
def mock_driver():
    """Mock neo4j driver whose write transactions run against ``mock_driver.tx``."""
    with patch("kgrag.repositories.neo4j_repository.GraphDatabase") as mock:
        driver = MagicMock()
        mock.driver.return_value = driver

        tx = MagicMock()
        session = driver.session.return_value.__enter__.return_value
        session.execute_write.side_effect = lambda work: work(tx)
        driver.tx = tx

        yield driver


# =============================================================================
# INTEGRATION TEST MARKERS
# =============================================================================


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring real services"
    )
    config.addinivalue_line("markers", "slow: mark test as slow running")


# =============================================================================
# ENVIRONMENT SETUP
# =============================================================================


@pytest.fixture(autouse=True)
def set_test_environment():
    """Set environment variables for testing."""
    os.environ.setdefault("OPENAI_API_KEY", "test-key")
    os.environ.setdefault("NEO4J_URI", "bolt://localhost:7687")
    os.environ.setdefault("NEO4J_USERNAME", "neo4j")
    os.environ.setdefault("NEO4J_PASSWORD", "test-password")
