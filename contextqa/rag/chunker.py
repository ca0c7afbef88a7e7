"""Sentence-based text chunking with overlap for the RAG pipeline.

Chunks are built from whole sentences so every piece handed to the embedder
reads as natural text. Sizes are measured in characters to avoid tokenizer
dependencies.
"""
import re
import secrets
import textwrap
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import structlog

from contextqa import config

logger = structlog.get_logger()

SENTENCE_PATTERN = re.compile(r"[^.!?]+")
SENTENCE_SEPARATOR = ". "


def new_chunk_id() -> str:
    """Return a collision-resistant chunk id (16 random bytes, hex)."""
    return secrets.token_hex(16)


@dataclass(frozen=True)
class Chunk:
    """A bounded span of source text prepared for embedding."""

    id: str
    text: str
    source_offset_hint: Optional[int] = None


class TextChunker:
    """Greedy sentence packer with character overlap between chunks."""

    def __init__(
        self,
        max_chunk_chars: int = None,
        overlap_chars: int = None,
    ):
        """Initialize the text chunker.

        Args:
            max_chunk_chars: Target chunk size in characters (default from config)
            overlap_chars: Characters carried over from the previous chunk (default from config)
        """
        self.max_chunk_chars = (
            config.CHUNK_SIZE if max_chunk_chars is None else max_chunk_chars
        )
        self.overlap_chars = config.CHUNK_OVERLAP if overlap_chars is None else overlap_chars

        if self.max_chunk_chars < 2:
            raise ValueError(f"Chunk size must be at least 2, got {self.max_chunk_chars}")
        if self.overlap_chars < 0:
            raise ValueError(f"Overlap must not be negative, got {self.overlap_chars}")
        if self.overlap_chars >= self.max_chunk_chars:
            raise ValueError(
                f"Overlap ({self.overlap_chars}) must be less than "
                f"chunk size ({self.max_chunk_chars})"
            )

    def _sentences(self, text: str) -> Iterator[Tuple[int, str]]:
        """Yield (offset, sentence) pairs, splitting over-long sentences.

        Sentences longer than ``max_chunk_chars - 1`` are wrapped on word
        boundaries so a chunk plus its trailing period stays within budget.
        """
        piece_limit = self.max_chunk_chars - 1
        for match in SENTENCE_PATTERN.finditer(text):
            raw = match.group()
            sentence = raw.strip()
            if not sentence:
                continue
            offset = match.start() + (len(raw) - len(raw.lstrip()))
            if len(sentence) <= piece_limit:
                yield offset, sentence
                continue
            for piece in textwrap.wrap(
                sentence, width=piece_limit, break_on_hyphens=False
            ):
                yield offset, piece

    def split(self, text: str) -> List[Tuple[int, str]]:
        """Split text into (offset, chunk_text) pairs."""
        if not text or not text.strip():
            return []

        chunks: List[Tuple[int, str]] = []
        buffer = ""
        buffer_offset = 0

        for offset, sentence in self._sentences(text):
            if not buffer:
                buffer, buffer_offset = sentence, offset
            # Fit rule: buffer + ". " + sentence must fit in max_chunk_chars
            elif (
                len(buffer) + len(SENTENCE_SEPARATOR) + len(sentence)
                <= self.max_chunk_chars
            ):
                buffer += SENTENCE_SEPARATOR + sentence
            else:
                closed = buffer + "."
                chunks.append((buffer_offset, closed))

                tail = closed[-self.overlap_chars:].lstrip() if self.overlap_chars > 0 else ""
                buffer = f"{tail} {sentence}" if tail else sentence
                buffer_offset = offset

        if buffer:
            chunks.append((buffer_offset, buffer + "."))

        if not chunks:
            # Punctuation-only input: keep the content rather than drop it
            stripped = text.strip()
            chunks = [
                (text.find(stripped), piece)
                for piece in textwrap.wrap(stripped, width=self.max_chunk_chars)
            ]
            logger.debug("no_sentences_found_using_whole_text", text_length=len(text))

        return chunks

    def chunk(self, text: str) -> List[Chunk]:
        """Split text into overlapping chunks with fresh ids.

        Args:
            text: Text to chunk

        Returns:
            List of Chunk objects in document order
        """
        chunks = [
            Chunk(id=new_chunk_id(), text=content, source_offset_hint=offset)
            for offset, content in self.split(text)
        ]

        if chunks:
            logger.info(
                "text_chunked",
                text_length=len(text),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.text) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.overlap_chars,
        }


def chunk_text(
    text: str, max_chunk_chars: int = 500, overlap_chars: int = 50
) -> List[str]:
    """Chunk text into plain strings (convenience function).

    Args:
        text: Text to chunk
        max_chunk_chars: Target chunk size in characters
        overlap_chars: Characters carried over from the previous chunk

    Returns:
        Ordered list of chunk texts
    """
    chunker = TextChunker(max_chunk_chars=max_chunk_chars, overlap_chars=overlap_chars)
    return [content for _, content in chunker.split(text)]
