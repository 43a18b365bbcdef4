"""Pytest configuration and shared fixtures."""

import hashlib
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add src to path so we can import lovsok
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from lovsok.config import Settings
from lovsok.embeddings import EmbeddingService


class FakeEncoder:
    """Deterministic stand-in for a SentenceTransformer (4-dimensional)."""

    def __init__(self):
        self.calls = []

    def encode(self, texts, batch_size=32, show_progress_bar=False, normalize_embeddings=True):
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vectors.append([digest[i] / 255.0 + 0.01 for i in range(4)])
        return vectors


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    settings = Mock(spec=Settings)
    settings.openai_api_key = "test_key"
    settings.openai_base_url = "https://api.openai.com/v1"
    settings.llm_model = "test-model"
    settings.llm_temperature = 0.1
    settings.agent_enabled = True
    settings.qdrant_url = "http://localhost:6333"
    settings.qdrant_api_key = None
    settings.qdrant_collection_prefix = "test"
    settings.qdrant_in_memory = True
    settings.qdrant_persist_path = None
    settings.embedding_model_name = "BAAI/bge-m3"
    settings.embedding_dimension = 4
    settings.embedding_batch_size = 32
    settings.embedding_max_chars = 20000
    settings.chunk_size = 12800
    settings.chunk_overlap_ratio = 0.2
    settings.chunk_overlap = 2560
    settings.chunk_preserve_paragraphs = True
    settings.chunk_extract_metadata = True
    settings.index_batch_size = 100
    settings.document_fetch_timeout_seconds = 5.0
    settings.rrf_k = 40
    settings.search_candidate_limit = 50
    settings.search_timeout_seconds = 20.0
    settings.search_default_page_size = 10
    settings.search_max_page_size = 50
    settings.base_law_ordering_enabled = False
    settings.public_api_base_url = "http://localhost:4000"
    settings.reranker_enabled = False
    settings.reranker_model = "BAAI/bge-reranker-v2-m3"
    settings.reranker_max_candidates = 100
    settings.reranker_timeout_seconds = 10.0
    settings.serper_api_key = "serper_key"
    settings.serper_base_url = "https://google.serper.dev/search"
    settings.serper_site_filter = "lovdata.no"
    settings.serper_timeout_seconds = 5.0
    settings.agent_max_iterations = 5
    settings.agent_base_timeout_seconds = 30.0
    settings.agent_max_timeout_seconds = 55.0
    settings.agent_min_iteration_seconds = 8.0
    settings.agent_fallback_min_hits = 5
    settings.agent_default_page_size = 5
    settings.agent_max_page_size = 20
    settings.agent_max_evidence_items = 6
    settings.agent_max_content_chars = 20000
    settings.agent_min_evidence_for_answer = 1
    settings.agent_recent_years = 5
    settings.hydration_timeout_seconds = 10.0
    return settings


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def embeddings(mock_settings, fake_encoder):
    """EmbeddingService backed by the fake encoder."""
    return EmbeddingService(mock_settings, model=fake_encoder)
