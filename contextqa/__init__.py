"""Question answering over a private corpus with retrieval-augmented generation."""
