"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
CONTEXT_FILE = Path(os.getenv("CONTEXT_FILE", str(BASE_DIR / "about_me.txt")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama3.1:latest")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "all-minilm:latest")
EMBEDDING_FALLBACK_MODEL = os.getenv("EMBEDDING_FALLBACK_MODEL", "")  # empty = disabled
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30.0"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "120.0"))

# Embedding cascade
VECTOR_DIMENSION = int(os.getenv("VECTOR_DIMENSION", "384"))
EMBEDDING_NORMALIZE = os.getenv("EMBEDDING_NORMALIZE", "true").lower() == "true"
EMBEDDING_GENERATIVE_FALLBACK = (
    os.getenv("EMBEDDING_GENERATIVE_FALLBACK", "false").lower() == "true"
)
GENERATIVE_EMBEDDING_WIDTH = int(os.getenv("GENERATIVE_EMBEDDING_WIDTH", "64"))
EMBEDDING_MAX_ATTEMPTS = int(os.getenv("EMBEDDING_MAX_ATTEMPTS", "3"))
EMBEDDING_RETRY_BACKOFF = float(os.getenv("EMBEDDING_RETRY_BACKOFF", "2.0"))  # 2s, 4s, 8s...
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "5"))
EMBEDDING_BATCH_DELAY = float(os.getenv("EMBEDDING_BATCH_DELAY", "1.0"))

# Generation
GENERATION_MAX_ATTEMPTS = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.7"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "1024"))
GENERATION_TOP_P = float(os.getenv("GENERATION_TOP_P", "0.95"))
GENERATION_TOP_K = int(os.getenv("GENERATION_TOP_K", "40"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "500"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "50"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
FALLBACK_SCAN_LIMIT = int(os.getenv("FALLBACK_SCAN_LIMIT", "10"))

# Vector index
COLLECTION_NAME = os.getenv("COLLECTION_NAME", "context_chunks")
IVF_NLIST = int(os.getenv("IVF_NLIST", "1024"))
IVF_NPROBE = int(os.getenv("IVF_NPROBE", "10"))

# Uploads
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Database
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "contextqa.sqlite")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
