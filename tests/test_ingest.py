"""Tests for text extraction and the ingest pipeline."""
import io

import pytest
from pypdf import PdfWriter

from conftest import DIMENSION, FailingTier
from contextqa.errors import EmbeddingUnavailable, NoExtractableText, ValidationError
from contextqa.rag.chunker import TextChunker
from contextqa.rag.embedder import Embedder
from contextqa.rag.extract import MARKDOWN, PDF, PLAIN_TEXT, TextExtractor
from contextqa.rag.ingest import IngestPipeline

ALICE = "Alice is an engineer. She builds systems. She enjoys hiking."


def blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestTextExtractor:
    """Document bytes to plain text."""

    def test_plain_text(self):
        extracted = TextExtractor().extract(ALICE.encode(), "alice.txt")

        assert extracted.text == ALICE
        assert extracted.content_type == PLAIN_TEXT

    def test_markdown_frontmatter_is_stripped(self):
        content = "---\ntitle: Alice\ntags: [people]\n---\n# Alice\n\nAlice is an engineer.\n"

        extracted = TextExtractor().extract(content.encode(), "alice.md")

        assert extracted.content_type == MARKDOWN
        assert extracted.frontmatter == {"title": "Alice", "tags": ["people"]}
        assert extracted.text.startswith("# Alice")

    def test_declared_type_wins_over_suffix(self):
        extractor = TextExtractor()

        assert extractor.resolve_content_type("notes.bin", "text/plain; charset=utf-8") == PLAIN_TEXT
        assert extractor.resolve_content_type("paper.pdf", None) == PDF

    def test_unsupported_type(self):
        with pytest.raises(ValidationError) as exc_info:
            TextExtractor().extract(b"\x89PNG", "image.png", "image/png")

        assert exc_info.value.details["field"] == "content_type"

    def test_blank_document(self):
        with pytest.raises(NoExtractableText):
            TextExtractor().extract(b"  \n\n ", "empty.txt")

    def test_pdf_without_text(self):
        with pytest.raises(NoExtractableText):
            TextExtractor().extract(blank_pdf(), "scan.pdf", PDF)


class TestIngestPipeline:
    """Chunk, embed, store."""

    @pytest.mark.asyncio
    async def test_ingest_text_stores_every_chunk(self, vocabulary_embedder, store):
        pipeline = IngestPipeline(
            vocabulary_embedder, store, chunker=TextChunker(max_chunk_chars=40, overlap_chars=5)
        )

        stored = await pipeline.ingest_text(ALICE, source_id="doc_alice")

        assert stored == 2
        assert store.count() == 2
        records = await store.scan_all()
        assert [r.text for r in records] == [
            "Alice is an engineer. She builds systems.",
            "tems. She enjoys hiking.",
        ]
        assert {r.source_id for r in records} == {"doc_alice"}
        assert pipeline.stats["chunks_created"] == 2

    @pytest.mark.asyncio
    async def test_reingest_creates_fresh_ids(self, hash_embedder, store):
        pipeline = IngestPipeline(hash_embedder, store)

        await pipeline.ingest_text(ALICE)
        await pipeline.ingest_text(ALICE)

        records = await store.scan_all()
        assert len(records) == 2
        assert records[0].id != records[1].id

    @pytest.mark.asyncio
    async def test_blank_text_stores_nothing(self, hash_embedder, store):
        pipeline = IngestPipeline(hash_embedder, store)

        assert await pipeline.ingest_text("   ") == 0
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_embedding_failure_leaves_store_untouched(self, store):
        embedder = Embedder(
            [FailingTier(transient=False)], dimension=DIMENSION, retry_backoff=0, batch_delay=0
        )
        pipeline = IngestPipeline(embedder, store)

        with pytest.raises(EmbeddingUnavailable):
            await pipeline.ingest_text(ALICE)

        assert store.count() == 0
        assert await store.scan_all() == []

    @pytest.mark.asyncio
    async def test_ingest_document_bytes(self, hash_embedder, store):
        pipeline = IngestPipeline(hash_embedder, store)

        stored = await pipeline.ingest(
            b"---\ntitle: Alice\n---\nAlice is an engineer.",
            source_id="doc_alice",
            filename="alice.md",
        )

        assert stored == 1
        records = await store.scan_all()
        assert records[0].text == "Alice is an engineer."
