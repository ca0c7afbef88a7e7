"""FAISS vector store for semantic search.

Handles:
- Named collections with a fixed embedding dimension
- IVF index (inner product) trained once enough vectors exist
- Exact inner-product search while the IVF index is untrained
- Record persistence in SQLite (vectors are rebuilt into FAISS on load)
"""
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import faiss
import numpy as np
import structlog

from contextqa import config
from contextqa.db import Database
from contextqa.errors import IndexUnavailable

logger = structlog.get_logger()

INDEX_TYPE = "IVF_FLAT"
METRIC_TYPE = "IP"


@dataclass
class IndexedRecord:
    """The persisted unit: chunk id, text and its embedding."""

    id: str
    text: str
    embedding: List[float]
    source_id: Optional[str] = None


@dataclass
class SearchHit:
    """A search result scored by inner product (higher is closer)."""

    id: str
    text: str
    score: float


@dataclass
class _LoadedCollection:
    name: str
    dimension: int
    nlist: int
    index: Optional[faiss.Index] = None
    quantizer: Optional[faiss.Index] = None
    # Vectors waiting for the IVF index to be trained
    pending_ids: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    pending_vectors: Optional[np.ndarray] = None

    @property
    def trained(self) -> bool:
        return self.index is not None

    @property
    def ntotal(self) -> int:
        if self.index is not None:
            return self.index.ntotal
        return len(self.pending_ids)


def _to_blob(vector: List[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class FAISSVectorStore:
    """FAISS-backed vector store with SQLite record storage."""

    def __init__(
        self,
        database: Database = None,
        collection_name: str = None,
        nlist: int = None,
        nprobe: int = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            database: Record database (default: config.DB_PATH)
            collection_name: Default collection for insert/search/scan
            nlist: Number of IVF inverted lists used on collection creation
            nprobe: Number of lists probed per search once trained
        """
        self.database = database or Database()
        self.collection_name = collection_name or config.COLLECTION_NAME
        self.nlist = nlist or config.IVF_NLIST
        self.nprobe = nprobe or config.IVF_NPROBE

        self._collections: Dict[str, _LoadedCollection] = {}
        self._opened = False

        logger.info(
            "faiss_store_initialized",
            db_path=str(self.database.db_path),
            collection=self.collection_name,
            nlist=self.nlist,
        )

    async def open(self) -> None:
        """Prepare the record database. Call once at process start."""
        try:
            self.database.init_database()
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to open vector store: {e}") from e
        self._opened = True

    async def close(self) -> None:
        """Release in-memory indexes."""
        self._collections.clear()
        self._opened = False
        logger.info("faiss_store_closed")

    def _require_open(self) -> None:
        if not self._opened:
            raise IndexUnavailable("Vector store is not open. Call open() first.")

    async def ensure_collection(self, name: str = None, dimension: int = None) -> None:
        """Create the collection if absent, then load it for querying.

        Index parameters are recorded only on first creation. Loading always
        rebuilds the in-memory FAISS structures from stored vectors.

        Raises:
            ValueError: If the collection exists with a different dimension
            IndexUnavailable: If the store cannot be read
        """
        self._require_open()
        name = name or self.collection_name
        dimension = dimension or config.VECTOR_DIMENSION

        try:
            meta = self.database.get_collection(name)
            if meta is None:
                self.database.create_collection(
                    name, dimension, INDEX_TYPE, METRIC_TYPE, self.nlist
                )
                meta = self.database.get_collection(name)
                logger.info(
                    "collection_created",
                    collection=name,
                    dimension=dimension,
                    index_type=INDEX_TYPE,
                    metric_type=METRIC_TYPE,
                    nlist=self.nlist,
                )
            else:
                logger.info("collection_exists", collection=name)

            if meta["dimension"] != dimension:
                raise ValueError(
                    f"Dimension mismatch: collection {name} was built with "
                    f"dim={meta['dimension']}, but dim={dimension} was requested. "
                    f"Drop the collection and reprocess."
                )

            stored = self.database.get_vectors(name)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to load collection {name}: {e}") from e

        collection = _LoadedCollection(name=name, dimension=dimension, nlist=meta["nlist"])
        if stored:
            row_ids = np.array([row_id for row_id, _ in stored], dtype=np.int64)
            vectors = np.vstack([_from_blob(blob) for _, blob in stored])
            self._add_vectors(collection, row_ids, vectors)

        self._collections[name] = collection

        logger.info(
            "collection_loaded",
            collection=name,
            vector_count=collection.ntotal,
            trained=collection.trained,
        )

    def _add_vectors(
        self, collection: _LoadedCollection, row_ids: np.ndarray, vectors: np.ndarray
    ) -> None:
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)

        if collection.trained:
            collection.index.add_with_ids(vectors, row_ids)
            return

        if collection.pending_vectors is None:
            collection.pending_vectors = vectors
        else:
            collection.pending_vectors = np.vstack([collection.pending_vectors, vectors])
        collection.pending_ids = np.concatenate([collection.pending_ids, row_ids])

        if len(collection.pending_ids) >= collection.nlist:
            self._train(collection)

    def _train(self, collection: _LoadedCollection) -> None:
        quantizer = faiss.IndexFlatIP(collection.dimension)
        index = faiss.IndexIVFFlat(
            quantizer, collection.dimension, collection.nlist, faiss.METRIC_INNER_PRODUCT
        )
        index.train(collection.pending_vectors)
        index.add_with_ids(collection.pending_vectors, collection.pending_ids)
        index.nprobe = min(self.nprobe, collection.nlist)

        # The IVF index does not own its quantizer
        collection.quantizer = quantizer
        collection.index = index
        collection.pending_vectors = None
        collection.pending_ids = np.empty(0, dtype=np.int64)

        logger.info(
            "ivf_index_trained",
            collection=collection.name,
            nlist=collection.nlist,
            vector_count=index.ntotal,
        )

    def _loaded(self, name: Optional[str]) -> Optional[_LoadedCollection]:
        return self._collections.get(name or self.collection_name)

    async def insert(self, records: List[IndexedRecord], collection: str = None) -> int:
        """Append records. No dedup: callers own id uniqueness.

        Returns:
            Number of records inserted

        Raises:
            ValueError: On embedding dimension mismatch
            IndexUnavailable: If the collection is not loaded or storage fails
        """
        self._require_open()
        if not records:
            return 0

        loaded = self._loaded(collection)
        if loaded is None:
            raise IndexUnavailable(
                f"Collection {collection or self.collection_name} is not loaded. "
                f"Call ensure_collection() first."
            )

        vectors = np.array([r.embedding for r in records], dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != loaded.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {loaded.dimension}, "
                f"got {vectors.shape[-1] if vectors.ndim > 1 else 0}"
            )

        try:
            row_ids = self.database.insert_records(
                loaded.name,
                [(r.id, r.source_id, r.text, _to_blob(r.embedding)) for r in records],
            )
            self._add_vectors(loaded, np.array(row_ids, dtype=np.int64), vectors)
        except (sqlite3.Error, RuntimeError) as e:
            logger.error("vector_insert_failed", collection=loaded.name, error=str(e))
            raise IndexUnavailable(f"Failed to insert records: {e}") from e

        logger.info(
            "vectors_added",
            collection=loaded.name,
            count=len(records),
            total_vectors=loaded.ntotal,
        )

        return len(records)

    def _nearest(
        self, loaded: _LoadedCollection, query: np.ndarray, top_k: int
    ) -> List[tuple]:
        if loaded.trained:
            scores, ids = loaded.index.search(query[None, :], top_k)
            return [
                (int(row_id), float(score))
                for row_id, score in zip(ids[0], scores[0])
                if row_id != -1
            ]

        scores = loaded.pending_vectors @ query
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [(int(loaded.pending_ids[i]), float(scores[i])) for i in order]

    async def search(
        self, query_vector: List[float], top_k: int = None, collection: str = None
    ) -> List[SearchHit]:
        """Search for the records closest to a query vector.

        Args:
            query_vector: Query embedding
            top_k: Maximum number of hits (default from config)
            collection: Collection name (default: the store's collection)

        Returns:
            Hits ordered by descending inner product; empty when nothing matches

        Raises:
            ValueError: On query dimension mismatch
            IndexUnavailable: If the store cannot be read
        """
        self._require_open()
        if top_k is None:
            top_k = config.RETRIEVAL_TOP_K
        if top_k <= 0:
            return []

        loaded = self._loaded(collection)
        if loaded is None:
            logger.warning("search_on_unloaded_collection", collection=collection or self.collection_name)
            return []

        # Ensure we don't request more results than we have
        top_k = min(top_k, loaded.ntotal)
        if top_k == 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (loaded.dimension,):
            raise ValueError(
                f"Query dimension mismatch: expected {loaded.dimension}, "
                f"got {query.shape[0] if query.ndim == 1 else query.shape}"
            )

        try:
            nearest = self._nearest(loaded, query, top_k)
            rows = self.database.get_records_by_row_ids(
                loaded.name, [row_id for row_id, _ in nearest]
            )
        except (sqlite3.Error, RuntimeError) as e:
            logger.error("vector_search_failed", collection=loaded.name, error=str(e))
            raise IndexUnavailable(f"Search failed: {e}") from e

        hits = [
            SearchHit(id=rows[row_id]["chunk_id"], text=rows[row_id]["text"], score=score)
            for row_id, score in nearest
            if row_id in rows
        ]

        logger.info(
            "vector_search_completed",
            collection=loaded.name,
            top_k=top_k,
            results_found=len(hits),
            top_score=hits[0].score if hits else None,
        )

        return hits

    async def scan_all(self, limit: int = 100, collection: str = None) -> List[IndexedRecord]:
        """Read up to ``limit`` records without similarity ranking.

        Best-effort: storage errors are logged and treated as no records.
        """
        name = collection or self.collection_name
        try:
            rows = self.database.scan_records(name, limit)
        except sqlite3.Error as e:
            logger.error("scan_all_failed", collection=name, error=str(e))
            return []

        logger.info("scan_all_completed", collection=name, records=len(rows))

        return [
            IndexedRecord(
                id=row["chunk_id"],
                text=row["text"],
                embedding=_from_blob(row["embedding"]).tolist(),
                source_id=row["source_id"],
            )
            for row in rows
        ]

    async def delete_source(self, source_id: str, collection: str = None) -> int:
        """Remove every record ingested for a source document.

        Returns:
            Number of records removed
        """
        self._require_open()
        name = collection or self.collection_name

        try:
            row_ids = self.database.delete_records_by_source(name, source_id)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to delete records: {e}") from e

        loaded = self._collections.get(name)
        if loaded is not None and row_ids:
            removed = np.array(row_ids, dtype=np.int64)
            if loaded.trained:
                loaded.index.remove_ids(removed)
            else:
                keep = ~np.isin(loaded.pending_ids, removed)
                loaded.pending_ids = loaded.pending_ids[keep]
                loaded.pending_vectors = loaded.pending_vectors[keep]

        logger.info("source_records_deleted", collection=name, source_id=source_id, count=len(row_ids))
        return len(row_ids)

    async def drop_collection(self, name: str = None) -> None:
        """Delete a collection with all of its records.

        Raises:
            IndexUnavailable: If the store cannot be written
        """
        self._require_open()
        name = name or self.collection_name
        logger.warning("dropping_collection", collection=name)

        try:
            deleted = self.database.drop_collection(name)
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Failed to drop collection {name}: {e}") from e

        self._collections.pop(name, None)
        logger.info("collection_dropped", collection=name, records_deleted=deleted)

    def count(self, collection: str = None) -> int:
        loaded = self._loaded(collection)
        return loaded.ntotal if loaded else 0

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics
        """
        loaded = self._loaded(None)
        if loaded is None:
            return {
                "initialized": False,
                "collection": self.collection_name,
                "vector_count": 0,
                "dimension": None,
            }

        return {
            "initialized": True,
            "collection": loaded.name,
            "vector_count": loaded.ntotal,
            "dimension": loaded.dimension,
            "index_type": INDEX_TYPE if loaded.trained else "exact",
            "metric_type": METRIC_TYPE,
            "nlist": loaded.nlist,
        }
