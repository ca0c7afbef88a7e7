"""SQLite persistence for the retrieval pipeline.

Stores:
- Collection definitions (dimension and ANN index parameters)
- Indexed records (chunk id, text, raw vector, source document)
- Document bookkeeping for uploaded files
"""
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from contextqa import config

logger = structlog.get_logger()


class Database:
    """Thin wrapper around a SQLite file; opens a connection per operation."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path or config.DB_PATH)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        """Initialize the database schema.

        Creates tables if they don't exist:
        - collections: one row per vector collection
        - records: chunk text and vectors, keyed by an integer row id
        - documents: uploaded document bookkeeping
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS collections (
                    name TEXT PRIMARY KEY,
                    dimension INTEGER NOT NULL,
                    index_type TEXT NOT NULL,
                    metric_type TEXT NOT NULL,
                    nlist INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            # No uniqueness on chunk_id: callers own id uniqueness
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    chunk_id TEXT NOT NULL,
                    source_id TEXT,
                    text TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_collection
                ON records(collection)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_source
                ON records(collection, source_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    text_content TEXT NOT NULL,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    uploaded_at TEXT NOT NULL
                )
            """)

            conn.commit()
            logger.info("database_initialized", db_path=str(self.db_path))

        except Exception as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    # Collections

    def get_collection(self, name: str) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM collections WHERE name = ?", (name,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def create_collection(
        self,
        name: str,
        dimension: int,
        index_type: str,
        metric_type: str,
        nlist: int,
    ) -> None:
        conn = self.get_connection()
        try:
            conn.execute(
                """
                INSERT INTO collections
                    (name, dimension, index_type, metric_type, nlist, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (name, dimension, index_type, metric_type, nlist, datetime.now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def drop_collection(self, name: str) -> int:
        """Delete a collection and all of its records.

        Returns:
            Number of records deleted
        """
        conn = self.get_connection()
        try:
            cursor = conn.execute("DELETE FROM records WHERE collection = ?", (name,))
            deleted = cursor.rowcount
            conn.execute("DELETE FROM collections WHERE name = ?", (name,))
            conn.commit()
            return deleted
        finally:
            conn.close()

    # Records

    def insert_records(
        self,
        collection: str,
        rows: Sequence[Tuple[str, Optional[str], str, bytes]],
    ) -> List[int]:
        """Insert (chunk_id, source_id, text, embedding_blob) rows.

        Returns:
            Row ids in insertion order
        """
        conn = self.get_connection()
        created_at = datetime.now().isoformat()
        row_ids = []
        try:
            for chunk_id, source_id, text, blob in rows:
                cursor = conn.execute(
                    """
                    INSERT INTO records
                        (collection, chunk_id, source_id, text, embedding, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (collection, chunk_id, source_id, text, blob, created_at),
                )
                row_ids.append(cursor.lastrowid)
            conn.commit()
            return row_ids
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_vectors(self, collection: str) -> List[Tuple[int, bytes]]:
        """Return (row_id, embedding_blob) for every record in a collection."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT row_id, embedding FROM records WHERE collection = ? ORDER BY row_id",
                (collection,),
            ).fetchall()
            return [(row["row_id"], row["embedding"]) for row in rows]
        finally:
            conn.close()

    def get_records_by_row_ids(
        self, collection: str, row_ids: List[int]
    ) -> Dict[int, Dict[str, Any]]:
        if not row_ids:
            return {}

        conn = self.get_connection()
        try:
            placeholders = ",".join("?" * len(row_ids))
            rows = conn.execute(
                f"""
                SELECT row_id, chunk_id, source_id, text FROM records
                WHERE collection = ? AND row_id IN ({placeholders})
                """,
                (collection, *row_ids),
            ).fetchall()
            return {row["row_id"]: dict(row) for row in rows}
        finally:
            conn.close()

    def scan_records(self, collection: str, limit: int) -> List[Dict[str, Any]]:
        """Read up to ``limit`` records in insertion order."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT chunk_id, source_id, text, embedding FROM records
                WHERE collection = ? ORDER BY row_id LIMIT ?
                """,
                (collection, limit),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def delete_records_by_source(self, collection: str, source_id: str) -> List[int]:
        """Delete a source's records.

        Returns:
            Row ids that were deleted
        """
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT row_id FROM records WHERE collection = ? AND source_id = ?",
                (collection, source_id),
            ).fetchall()
            row_ids = [row["row_id"] for row in rows]
            conn.execute(
                "DELETE FROM records WHERE collection = ? AND source_id = ?",
                (collection, source_id),
            )
            conn.commit()
            return row_ids
        finally:
            conn.close()

    # Documents

    def insert_document(
        self,
        document_id: str,
        filename: str,
        content_type: str,
        text_content: str,
        chunk_count: int,
    ) -> Dict[str, Any]:
        uploaded_at = datetime.now().isoformat()
        conn = self.get_connection()
        try:
            conn.execute(
                """
                INSERT INTO documents
                    (id, filename, content_type, text_content, chunk_count, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    filename = excluded.filename,
                    content_type = excluded.content_type,
                    text_content = excluded.text_content,
                    chunk_count = excluded.chunk_count,
                    uploaded_at = excluded.uploaded_at
                """,
                (document_id, filename, content_type, text_content, chunk_count, uploaded_at),
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug("document_saved", document_id=document_id, chunk_count=chunk_count)

        return {
            "id": document_id,
            "filename": filename,
            "content_type": content_type,
            "text_content": text_content,
            "chunk_count": chunk_count,
            "uploaded_at": uploaded_at,
        }

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def list_documents(self) -> List[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM documents ORDER BY uploaded_at DESC"
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def update_document_chunk_count(self, document_id: str, chunk_count: int) -> None:
        conn = self.get_connection()
        try:
            conn.execute(
                "UPDATE documents SET chunk_count = ? WHERE id = ?",
                (chunk_count, document_id),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_document(self, document_id: str) -> bool:
        conn = self.get_connection()
        try:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def document_stats(self) -> Dict[str, int]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS documents, COALESCE(SUM(chunk_count), 0) AS chunks "
                "FROM documents"
            ).fetchone()
            return {"total_documents": row["documents"], "total_chunks": row["chunks"]}
        finally:
            conn.close()
