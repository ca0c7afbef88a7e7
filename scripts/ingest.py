#!/usr/bin/env python
"""Index a document (or the context file) for the RAG pipeline.

Usage:
    python scripts/ingest.py notes/handbook.pdf    # Index one document
    python scripts/ingest.py --context             # Re-index the context file
    python scripts/ingest.py --drop --context      # Drop the collection first
    python scripts/ingest.py --ask "Who is Alice?" # Ask a question
"""
import argparse
import asyncio
import mimetypes
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from contextqa import config
from contextqa.errors import ContextQAError
from contextqa.service import RAGService
import structlog

logger = structlog.get_logger()


async def run(args: argparse.Namespace) -> int:
    service = RAGService()
    await service.open()

    try:
        if args.drop:
            print("\n⚠️  Drop mode: Will delete every indexed chunk!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)
            await service.vector_store.drop_collection()
            await service.vector_store.ensure_collection(
                service.vector_store.collection_name, service.dimension
            )

        start = datetime.now()

        if args.context:
            chunks = await service.load_context_file()
            print(f"  📝 Context file chunks: {chunks}")

        if args.path:
            content_type, _ = mimetypes.guess_type(args.path.name)
            document = await service.ingest_document(
                args.path.read_bytes(), args.path.name, content_type
            )
            print(f"  📁 Document id:   {document['id']}")
            print(f"  📝 Chunks stored: {document['chunk_count']}")

        if args.ask:
            answer = await service.answer(args.ask)
            print(f"\n  ❓ {answer.question}")
            print(f"  💬 {answer.answer or answer.error}")
            print(f"  🎯 Confidence: {answer.confidence:.2f} ({len(answer.sources)} sources)")

        elapsed = (datetime.now() - start).total_seconds()
        print(f"  ⏱️  Time elapsed: {elapsed:.1f}s\n")
        return 0

    finally:
        await service.close()


def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Index documents for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("path", nargs="?", type=Path, help="Document to index (.txt, .md, .pdf)")
    parser.add_argument("--context", action="store_true", help=f"Re-index {config.CONTEXT_FILE}")
    parser.add_argument("--drop", action="store_true", help="Drop the collection before indexing")
    parser.add_argument("--ask", metavar="QUESTION", help="Ask a question after indexing")

    args = parser.parse_args()

    if not (args.path or args.context or args.ask):
        parser.error("nothing to do: pass a path, --context or --ask")

    if args.path and not args.path.exists():
        print(f"\n❌ Error: file not found: {args.path}\n")
        sys.exit(1)

    print("\n📋 Configuration:")
    print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
    print(f"   Dimension:        {config.VECTOR_DIMENSION}")
    print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
    print(f"   Collection:       {config.COLLECTION_NAME}\n")

    try:
        sys.exit(asyncio.run(run(args)))

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        sys.exit(1)

    except ContextQAError as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
