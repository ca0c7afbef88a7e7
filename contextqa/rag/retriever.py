"""Retriever for semantic search and grounded answers.

Handles:
- Query validation and embedding
- FAISS vector search, with a best-effort full scan when nothing matches
- Context assembly and confidence scoring
- Answer generation restricted to the retrieved context
"""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from contextqa import config
from contextqa.errors import GenerationUnavailable, ValidationError
from contextqa.llm_client import OllamaClient
from contextqa.rag.embedder import Embedder
from contextqa.rag.store_faiss import FAISSVectorStore, SearchHit

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n"

INSUFFICIENT_CONTEXT_ANSWER = (
    "I don't have enough information in the indexed documents to answer that question."
)

PROMPT_TEMPLATE = """Based on the following context, please answer the user's question accurately and concisely.

Context:
{context}

Question: {question}

Please provide a helpful and accurate answer based only on the information provided in the context. If the context doesn't contain enough information to answer the question, please say so.

Answer:"""


@dataclass
class RetrievalResult:
    """Assembled context for a question.

    ``confidence`` is the mean hit score clamped to [0, 1].
    """

    answer_context: str
    sources: List[str]
    confidence: float
    hits: List[SearchHit] = field(default_factory=list)
    degraded: bool = False
    embedding_tier: Optional[str] = None


@dataclass
class Answer:
    """A generated answer plus the retrieval output it was grounded on."""

    question: str
    answer: str
    sources: List[str]
    confidence: float
    generated: bool
    error: Optional[str] = None


def confidence_from_hits(hits: List[SearchHit]) -> float:
    """Mean similarity score clamped to [0, 1]; no hits means 0."""
    if not hits:
        return 0.0
    mean = sum(hit.score for hit in hits) / len(hits)
    return min(max(mean, 0.0), 1.0)


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: FAISSVectorStore,
        llm_client: Optional[OllamaClient] = None,
        top_k: int = None,
        fallback_limit: int = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedding cascade used for queries
            vector_store: Opened vector store
            llm_client: Generation capability used by answer()
            top_k: Number of results to retrieve (default from config)
            fallback_limit: Records read by the full-scan fallback (default from config)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.llm_client = llm_client
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.fallback_limit = fallback_limit or config.FALLBACK_SCAN_LIMIT

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            fallback_limit=self.fallback_limit,
        )

    async def retrieve(self, question: str, top_k: Optional[int] = None) -> RetrievalResult:
        """Retrieve context for a question.

        Args:
            question: User question
            top_k: Number of hits to search for (overrides default)

        Returns:
            RetrievalResult with context, sources and confidence

        Raises:
            ValidationError: If the question is empty
            EmbeddingUnavailable: If the question cannot be embedded
            IndexUnavailable: If the store cannot be searched
        """
        if not question or not question.strip():
            raise ValidationError("Question is required", field="question")

        top_k = self.top_k if top_k is None else top_k

        logger.info("retrieval_started", query_length=len(question), top_k=top_k)

        embedding = await self.embedder.embed_with_tier(question)
        hits = await self.vector_store.search(embedding.vector, top_k=top_k)

        if hits:
            sources = [hit.text for hit in hits]
            degraded = False
        else:
            records = await self.vector_store.scan_all(limit=self.fallback_limit)
            sources = [record.text for record in records]
            degraded = True
            logger.warning("search_empty_using_scan_fallback", records_found=len(sources))

        result = RetrievalResult(
            answer_context=CONTEXT_SEPARATOR.join(sources),
            sources=sources,
            confidence=confidence_from_hits(hits),
            hits=hits,
            degraded=degraded,
            embedding_tier=embedding.tier,
        )

        logger.info(
            "retrieval_completed",
            results_returned=len(sources),
            confidence=round(result.confidence, 4),
            degraded=degraded,
            embedding_tier=embedding.tier,
        )

        return result

    def build_prompt(self, question: str, context: str) -> str:
        return PROMPT_TEMPLATE.format(context=context, question=question)

    async def generate_answer(
        self, question: str, context: str, sources: List[str], confidence: float
    ) -> Answer:
        """Generate an answer restricted to ``context``.

        A generation failure keeps ``sources`` and ``confidence`` and sets
        ``error`` instead of raising.
        """
        if self.llm_client is None:
            raise RuntimeError("Retriever has no generation client configured")

        try:
            text = await self.llm_client.generate(self.build_prompt(question, context))
        except GenerationUnavailable as e:
            logger.error("answer_generation_failed", error=str(e))
            return Answer(
                question=question,
                answer="",
                sources=sources,
                confidence=confidence,
                generated=False,
                error=e.message,
            )

        return Answer(
            question=question,
            answer=text.strip(),
            sources=sources,
            confidence=confidence,
            generated=True,
        )

    async def answer(self, question: str, top_k: Optional[int] = None) -> Answer:
        """Retrieve context and generate an answer grounded in it.

        With no context the canned insufficient-information answer is
        returned without calling the generator.
        """
        result = await self.retrieve(question, top_k=top_k)

        if not result.answer_context.strip():
            logger.info("no_context_skipping_generation")
            return Answer(
                question=question,
                answer=INSUFFICIENT_CONTEXT_ANSWER,
                sources=[],
                confidence=0.0,
                generated=False,
            )

        return await self.generate_answer(
            question, result.answer_context, result.sources, result.confidence
        )
