"""Quart application exposing ingestion and question answering over HTTP."""
import logging
from dataclasses import asdict
from datetime import datetime, timezone

import structlog
from quart import Quart, jsonify, request

from contextqa import config
from contextqa.errors import (
    ContextQAError,
    DocumentNotFound,
    EmbeddingUnavailable,
    IndexUnavailable,
    NoExtractableText,
    ValidationError,
)
from contextqa.service import RAGService

# Configure structured logging
logging.basicConfig(format="%(message)s", level=config.LOG_LEVEL)
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()

# Initialize Quart app
app = Quart(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES

rag_service = RAGService()


@app.before_serving
async def startup():
    """Open the vector store and index the context file."""
    await rag_service.open()
    try:
        await rag_service.load_context_file()
    except ContextQAError as e:
        # The service still answers from previously indexed documents
        logger.error("context_file_ingest_failed", error=str(e), error_type=type(e).__name__)


@app.after_serving
async def shutdown():
    await rag_service.close()


def _error(message: str, status: int, **extra):
    return jsonify({"error": message, **extra}), status


@app.errorhandler(ValidationError)
async def handle_validation_error(error: ValidationError):
    return _error(error.message, 400, **error.details)


@app.errorhandler(NoExtractableText)
async def handle_no_text(error: NoExtractableText):
    return _error(error.message, 400)


@app.errorhandler(DocumentNotFound)
async def handle_not_found(error: DocumentNotFound):
    return _error(error.message, 404)


@app.errorhandler(EmbeddingUnavailable)
async def handle_embedding_unavailable(error: EmbeddingUnavailable):
    logger.error("embedding_unavailable", error=str(error))
    return _error("Embedding service unavailable. Please try again.", 503)


@app.errorhandler(IndexUnavailable)
async def handle_index_unavailable(error: IndexUnavailable):
    logger.error("index_unavailable", error=str(error))
    return _error("Vector store unavailable. Please try again.", 503)


async def _answer(question: str, top_k=None, documents_only: bool = False):
    if documents_only:
        answer = await rag_service.answer_from_documents(question)
    else:
        answer = await rag_service.answer(question, top_k=top_k)

    logger.info(
        "query_answered",
        question_length=len(question),
        sources=len(answer.sources),
        confidence=round(answer.confidence, 4),
        generated=answer.generated,
        documents_only=documents_only,
    )

    body = asdict(answer)
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return jsonify(body)


@app.route("/api/query", methods=["POST"])
async def query():
    """Answer a question from the indexed documents.

    Expects JSON body:
    {
        "question": "user question",
        "top_k": 5,               // optional
        "documents_only": false   // optional, answer from uploaded documents without search
    }

    Returns JSON:
    {
        "question": "...",
        "answer": "...",
        "sources": ["chunk text or file name", ...],
        "confidence": 0.0-1.0,
        "generated": true,
        "error": null,
        "timestamp": "..."
    }
    """
    data = await request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", field="body")

    question = data.get("question")
    if question is None:
        question = ""
    if not isinstance(question, str):
        raise ValidationError("question must be a string", field="question")

    top_k = data.get("top_k")
    if top_k is not None and (
        isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 0
    ):
        raise ValidationError("top_k must be a non-negative integer", field="top_k")

    documents_only = data.get("documents_only", False)
    if not isinstance(documents_only, bool):
        raise ValidationError("documents_only must be a boolean", field="documents_only")

    return await _answer(question, top_k=top_k, documents_only=documents_only)


@app.route("/api/query", methods=["GET"])
async def query_get():
    """Answer a question passed as ?q=..."""
    return await _answer(request.args.get("q", ""))


@app.route("/api/documents", methods=["POST"])
async def upload_document():
    """Upload a document (multipart field 'file') and index it.

    Returns JSON:
    {
        "message": "...",
        "document": {"id": "doc_...", "filename": "...", "chunk_count": 3}
    }
    """
    files = await request.files
    upload = files.get("file")

    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded", field="file")

    data = upload.read()
    logger.info("document_upload_received", filename=upload.filename, size=len(data))

    document = await rag_service.ingest_document(data, upload.filename, upload.mimetype)

    return jsonify({
        "message": "Document uploaded and processed successfully",
        "document": document,
    }), 201


@app.route("/api/documents", methods=["GET"])
async def list_documents():
    """List documents with truncated text and overall stats."""
    return jsonify({
        "documents": rag_service.list_documents(),
        "stats": rag_service.document_stats(),
    })


@app.route("/api/documents/<document_id>", methods=["GET"])
async def get_document(document_id: str):
    return jsonify(rag_service.get_document(document_id))


@app.route("/api/documents/<document_id>", methods=["DELETE"])
async def delete_document(document_id: str):
    deleted = await rag_service.delete_document(document_id)
    if not deleted:
        return _error(f"Document with ID {document_id} not found", 404)

    return jsonify({"message": "Document deleted successfully", "deleted": True})


@app.route("/api/documents/<document_id>/reprocess", methods=["POST"])
async def reprocess_document(document_id: str):
    chunk_count = await rag_service.reprocess(document_id)
    return jsonify({"id": document_id, "chunk_count": chunk_count})


@app.route("/api/reprocess", methods=["POST"])
async def reprocess_context():
    """Re-index the context file."""
    chunk_count = await rag_service.load_context_file()
    return jsonify({
        "message": "Context file reprocessed and embeddings updated successfully",
        "chunk_count": chunk_count,
    })


@app.route("/api/stats", methods=["GET"])
async def stats():
    return jsonify(rag_service.document_stats())


@app.route("/health/ready")
async def health_ready():
    """Readiness probe - check that the generation model is reachable."""
    healthy = await rag_service.generation_healthy()

    checks = {
        "status": "healthy" if healthy else "unhealthy",
        "ollama": healthy,
        "model": config.CHAT_MODEL,
    }

    return jsonify(checks), 200 if healthy else 503


@app.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


@app.errorhandler(404)
async def not_found(error):
    """Handle 404 errors."""
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
async def internal_error(error):
    """Handle 500 errors."""
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
