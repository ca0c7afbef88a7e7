"""Process-level wiring for the retrieval pipeline.

RAGService builds every component once and owns the open/close lifecycle.
The HTTP layer and the CLI both talk to it rather than to the pipeline
pieces directly.
"""
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from contextqa import config
from contextqa.db import Database
from contextqa.errors import DocumentNotFound, ValidationError
from contextqa.llm_client import OllamaClient
from contextqa.rag.chunker import TextChunker
from contextqa.rag.embedder import Embedder, build_default_tiers
from contextqa.rag.extract import PLAIN_TEXT, TextExtractor
from contextqa.rag.ingest import IngestPipeline
from contextqa.rag.retriever import Answer, RetrievalResult, Retriever
from contextqa.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()

CONTEXT_SOURCE_ID = "context-file"
PREVIEW_CHARS = 200
DOCUMENT_SEPARATOR = "\n\n---\n\n"
NO_DOCUMENTS_ANSWER = "No documents have been uploaded yet."


def new_document_id() -> str:
    return f"doc_{secrets.token_hex(8)}"


def _preview(document: Dict[str, Any]) -> Dict[str, Any]:
    text = document["text_content"]
    if len(text) > PREVIEW_CHARS:
        text = text[:PREVIEW_CHARS] + "..."
    return {**document, "text_content": text}


class RAGService:
    """Entry point for ingestion, retrieval and document bookkeeping."""

    def __init__(
        self,
        llm_client: Optional[OllamaClient] = None,
        database: Optional[Database] = None,
        vector_store: Optional[FAISSVectorStore] = None,
        embedder: Optional[Embedder] = None,
        chunker: Optional[TextChunker] = None,
        dimension: int = None,
        context_file: Optional[Path] = None,
    ):
        self.dimension = dimension or config.VECTOR_DIMENSION
        self.llm_client = llm_client or OllamaClient()
        self.database = database or Database()
        self.vector_store = vector_store or FAISSVectorStore(database=self.database)
        self.embedder = embedder or Embedder(
            build_default_tiers(self.llm_client, dimension=self.dimension),
            dimension=self.dimension,
        )
        self.context_file = Path(context_file or config.CONTEXT_FILE)

        self.extractor = TextExtractor()
        self.ingest_pipeline = IngestPipeline(
            self.embedder,
            self.vector_store,
            chunker=chunker,
            extractor=self.extractor,
        )
        self.retriever = Retriever(self.embedder, self.vector_store, llm_client=self.llm_client)

    async def open(self) -> None:
        """Open the store and load the collection. Safe on every start."""
        await self.vector_store.open()
        await self.vector_store.ensure_collection(
            self.vector_store.collection_name, self.dimension
        )
        logger.info("rag_service_opened", dimension=self.dimension)

    async def close(self) -> None:
        await self.vector_store.close()
        logger.info("rag_service_closed")

    async def ingest_document(
        self, data: bytes, filename: str, content_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Extract, chunk, embed and store an uploaded document.

        Returns:
            Dict with the new document id, filename and chunk count

        Raises:
            ValidationError: If the document type is not supported
            NoExtractableText: If the document has no readable text
            EmbeddingUnavailable: If the chunks cannot be embedded
        """
        logger.info("processing_document", filename=filename, size=len(data))

        extracted = self.extractor.extract(data, filename, content_type)
        return await self._ingest_new_document(
            extracted.text, filename, extracted.content_type
        )

    async def ingest_text(self, text: str, filename: str = "inline.txt") -> Dict[str, Any]:
        """Store raw text as a new document."""
        return await self._ingest_new_document(text, filename, PLAIN_TEXT)

    async def _ingest_new_document(
        self, text: str, filename: str, content_type: str
    ) -> Dict[str, Any]:
        document_id = new_document_id()
        chunk_count = await self.ingest_pipeline.ingest_text(text, source_id=document_id)
        self.database.insert_document(document_id, filename, content_type, text, chunk_count)

        logger.info(
            "document_processed",
            document_id=document_id,
            filename=filename,
            chunk_count=chunk_count,
        )

        return {"id": document_id, "filename": filename, "chunk_count": chunk_count}

    async def retrieve(self, question: str, top_k: Optional[int] = None) -> RetrievalResult:
        return await self.retriever.retrieve(question, top_k=top_k)

    async def answer(self, question: str, top_k: Optional[int] = None) -> Answer:
        return await self.retriever.answer(question, top_k=top_k)

    async def answer_from_documents(self, question: str) -> Answer:
        """Answer from the full text of every uploaded document, without search.

        The context file is not an uploaded document and is left out. Sources
        are file names; confidence is 0.0 because nothing is scored.

        Raises:
            ValidationError: If the question is empty
        """
        if not question or not question.strip():
            raise ValidationError("Question is required", field="question")

        documents = [
            doc for doc in self.database.list_documents() if doc["id"] != CONTEXT_SOURCE_ID
        ]
        if not documents:
            logger.info("no_documents_skipping_generation")
            return Answer(
                question=question,
                answer=NO_DOCUMENTS_ANSWER,
                sources=[],
                confidence=0.0,
                generated=False,
            )

        context = DOCUMENT_SEPARATOR.join(
            f"Document: {doc['filename']}\n{doc['text_content']}" for doc in documents
        )
        logger.info(
            "documents_only_query",
            document_count=len(documents),
            context_length=len(context),
        )

        return await self.retriever.generate_answer(
            question, context, [doc["filename"] for doc in documents], confidence=0.0
        )

    async def _replace_source(self, source_id: str, text: str) -> int:
        # Embed first so a failed embedding keeps the old chunks in place
        records = await self.ingest_pipeline.prepare_records(text, source_id=source_id)
        removed = await self.vector_store.delete_source(source_id)
        stored = await self.ingest_pipeline.store_records(records)

        logger.info(
            "source_reprocessed",
            source_id=source_id,
            chunks_removed=removed,
            chunks_stored=stored,
        )
        return stored

    async def reprocess(self, source_id: str) -> int:
        """Re-chunk and re-embed a stored document, replacing its records.

        Returns:
            Number of chunks stored

        Raises:
            DocumentNotFound: If the document id is unknown
        """
        document = self.database.get_document(source_id)
        if document is None:
            raise DocumentNotFound(f"Document with ID {source_id} not found")

        chunk_count = await self._replace_source(source_id, document["text_content"])
        self.database.update_document_chunk_count(source_id, chunk_count)
        return chunk_count

    async def load_context_file(self) -> int:
        """Index the configured context file, replacing any previous copy.

        Returns:
            Number of chunks stored (0 when the file is missing)
        """
        if not self.context_file.exists():
            logger.warning("context_file_missing", path=str(self.context_file))
            return 0

        text = self.context_file.read_text(encoding="utf-8")
        logger.info("context_file_loaded", path=str(self.context_file), text_length=len(text))

        chunk_count = await self._replace_source(CONTEXT_SOURCE_ID, text)
        self.database.insert_document(
            CONTEXT_SOURCE_ID, self.context_file.name, PLAIN_TEXT, text, chunk_count
        )
        return chunk_count

    async def delete_document(self, document_id: str) -> bool:
        """Remove a document and its chunks. Returns False if unknown."""
        if self.database.get_document(document_id) is None:
            return False

        await self.vector_store.delete_source(document_id)
        self.database.delete_document(document_id)
        logger.info("document_deleted", document_id=document_id)
        return True

    def list_documents(self) -> List[Dict[str, Any]]:
        return [_preview(doc) for doc in self.database.list_documents()]

    def get_document(self, document_id: str) -> Dict[str, Any]:
        document = self.database.get_document(document_id)
        if document is None:
            raise DocumentNotFound(f"Document with ID {document_id} not found")
        return document

    def document_stats(self) -> Dict[str, Any]:
        return {
            **self.database.document_stats(),
            "vector_store": self.vector_store.get_stats(),
        }

    async def generation_healthy(self) -> bool:
        return await self.llm_client.is_healthy()
