"""Pytest configuration and shared fixtures."""
import re
from typing import Dict, List
from unittest.mock import AsyncMock

import numpy as np
import pytest
import pytest_asyncio

from contextqa.db import Database
from contextqa.rag.chunker import TextChunker
from contextqa.rag.embedder import Embedder, EmbeddingTier, HashEmbeddingTier, TierUnavailable
from contextqa.rag.store_faiss import FAISSVectorStore
from contextqa.service import RAGService

DIMENSION = 64

WORD_PATTERN = re.compile(r"[a-z]+")


class VocabularyTier(EmbeddingTier):
    """Bag-of-words vectors with one slot per distinct word.

    Gives shared words a positive inner product, so search results can be
    checked for relevance in tests.
    """

    name = "vocabulary"

    def __init__(self, dimension: int = DIMENSION):
        super().__init__(dimension)
        self.vocabulary: Dict[str, int] = {}

    async def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension)
        for word in WORD_PATTERN.findall(text.lower()):
            slot = self.vocabulary.setdefault(word, len(self.vocabulary) % self.dimension)
            vector[slot] += 1.0
        norm = np.linalg.norm(vector)
        return (vector / norm if norm else vector).tolist()


class FailingTier(EmbeddingTier):
    """Always raises TierUnavailable; counts calls."""

    def __init__(self, transient: bool, dimension: int = DIMENSION, name: str = "failing"):
        super().__init__(dimension)
        self.transient = transient
        self.name = name
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        raise TierUnavailable(self.name, "unavailable", transient=self.transient)


@pytest.fixture
def database(tmp_path) -> Database:
    """SQLite database in a temporary directory."""
    return Database(tmp_path / "test.sqlite")


@pytest_asyncio.fixture
async def store(database):
    """Opened vector store with a loaded collection of DIMENSION."""
    vector_store = FAISSVectorStore(database=database, collection_name="test_chunks", nlist=4)
    await vector_store.open()
    await vector_store.ensure_collection("test_chunks", DIMENSION)
    yield vector_store
    await vector_store.close()


@pytest.fixture
def hash_embedder() -> Embedder:
    """Embedder backed only by the deterministic local tier."""
    return Embedder(
        [HashEmbeddingTier(dimension=DIMENSION)],
        dimension=DIMENSION,
        retry_backoff=0,
        batch_delay=0,
    )


@pytest.fixture
def vocabulary_embedder() -> Embedder:
    """Embedder whose vectors reflect shared words."""
    return Embedder(
        [VocabularyTier(dimension=DIMENSION)],
        dimension=DIMENSION,
        retry_backoff=0,
        batch_delay=0,
    )


@pytest.fixture
def mock_llm_client() -> AsyncMock:
    """Generation client returning a fixed answer."""
    client = AsyncMock()
    client.generate = AsyncMock(return_value="Alice is an engineer.")
    client.is_healthy = AsyncMock(return_value=True)
    return client


@pytest_asyncio.fixture
async def rag_service(tmp_path, database, vocabulary_embedder, mock_llm_client):
    """Opened service wired to temporary storage and a mocked generator."""
    service = RAGService(
        llm_client=mock_llm_client,
        database=database,
        vector_store=FAISSVectorStore(database=database, collection_name="test_chunks", nlist=4),
        embedder=vocabulary_embedder,
        chunker=TextChunker(max_chunk_chars=40, overlap_chars=5),
        dimension=DIMENSION,
        context_file=tmp_path / "about_me.txt",
    )
    await service.open()
    yield service
    await service.close()
