"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document text extraction
- Sentence-based chunking with overlap
- Tiered embedding generation
- FAISS vector storage
- Retrieval and grounded answering
"""
