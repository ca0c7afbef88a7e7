"""Ingest pipeline for indexing documents.

Orchestrates:
- Text extraction
- Text chunking
- Embedding generation (one batched call per document)
- Vector storage (one insert per document)
"""
from typing import List, Optional, Union

import structlog

from contextqa.rag.chunker import TextChunker
from contextqa.rag.embedder import Embedder
from contextqa.rag.extract import TextExtractor
from contextqa.rag.store_faiss import FAISSVectorStore, IndexedRecord

logger = structlog.get_logger()


class IngestPipeline:
    """Chunk, embed and store a single document."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: FAISSVectorStore,
        chunker: Optional[TextChunker] = None,
        extractor: Optional[TextExtractor] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedder: Embedding cascade
            vector_store: Opened vector store with a loaded collection
            chunker: Text chunker (default sizes from config)
            extractor: Document text extractor
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.chunker = chunker or TextChunker()
        self.extractor = extractor or TextExtractor()

        self.stats = {
            "documents_processed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

        logger.info(
            "ingest_pipeline_initialized",
            chunk_size=self.chunker.max_chunk_chars,
            chunk_overlap=self.chunker.overlap_chars,
        )

    async def prepare_records(
        self, text: str, source_id: Optional[str] = None
    ) -> List[IndexedRecord]:
        """Chunk and embed text without touching the store.

        Raises:
            EmbeddingUnavailable: If embeddings cannot be generated
        """
        chunks = self.chunker.chunk(text)

        if not chunks:
            logger.warning("no_chunks_created", source_id=source_id)
            return []

        embeddings = await self.embedder.embed_batch([chunk.text for chunk in chunks])
        self.stats["embeddings_generated"] += len(embeddings)

        logger.debug(
            "chunks_embedded",
            source_id=source_id,
            **self.chunker.get_chunk_stats(chunks),
        )

        return [
            IndexedRecord(
                id=chunk.id,
                text=chunk.text,
                embedding=embedding,
                source_id=source_id,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

    async def store_records(self, records: List[IndexedRecord]) -> int:
        """Insert prepared records in a single call."""
        if not records:
            return 0

        await self.vector_store.insert(records)

        self.stats["documents_processed"] += 1
        self.stats["chunks_created"] += len(records)

        logger.info(
            "document_ingested",
            source_id=records[0].source_id,
            chunk_count=len(records),
        )

        return len(records)

    async def ingest_text(self, text: str, source_id: Optional[str] = None) -> int:
        """Chunk, embed and store plain text.

        Embedding happens before any insert, so an embedding failure leaves
        the store untouched. Re-running creates fresh chunk ids.

        Args:
            text: Document text
            source_id: Document the chunks belong to

        Returns:
            Number of chunks stored

        Raises:
            EmbeddingUnavailable: If embeddings cannot be generated
            IndexUnavailable: If the store rejects the insert
        """
        records = await self.prepare_records(text, source_id=source_id)
        return await self.store_records(records)

    async def ingest(
        self,
        document: Union[str, bytes],
        source_id: Optional[str] = None,
        filename: str = "document.txt",
        content_type: Optional[str] = None,
    ) -> int:
        """Ingest raw text or raw document bytes.

        Raises:
            ValidationError: If the document type is not supported
            NoExtractableText: If the document has no readable text
        """
        if isinstance(document, bytes):
            text = self.extractor.extract(document, filename, content_type).text
        else:
            text = document

        return await self.ingest_text(text, source_id=source_id)
