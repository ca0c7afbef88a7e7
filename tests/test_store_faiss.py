"""Tests for the FAISS vector store."""
import sqlite3

import numpy as np
import pytest

from conftest import DIMENSION
from contextqa.errors import IndexUnavailable
from contextqa.rag.store_faiss import FAISSVectorStore, IndexedRecord


def unit(*slots: int) -> list:
    """Unit vector with equal weight on the given slots."""
    vector = np.zeros(DIMENSION)
    vector[list(slots)] = 1.0
    return (vector / np.linalg.norm(vector)).tolist()


def record(chunk_id: str, *slots: int, source_id: str = "doc_a") -> IndexedRecord:
    return IndexedRecord(
        id=chunk_id, text=f"text of {chunk_id}", embedding=unit(*slots), source_id=source_id
    )


class TestSearch:
    """Similarity search behaviour."""

    @pytest.mark.asyncio
    async def test_empty_collection_returns_nothing(self, store):
        assert await store.search(unit(0), top_k=5) == []

    @pytest.mark.asyncio
    async def test_top_k_zero_returns_nothing(self, store):
        await store.insert([record("a", 0)])

        assert await store.search(unit(0), top_k=0) == []

    @pytest.mark.asyncio
    async def test_hits_ordered_by_descending_score(self, store):
        await store.insert([record("far", 3), record("near", 0), record("mid", 0, 1)])

        hits = await store.search(unit(0), top_k=3)

        assert [h.id for h in hits] == ["near", "mid", "far"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)
        assert hits[0].text == "text of near"
        assert all(a.score >= b.score for a, b in zip(hits, hits[1:]))

    @pytest.mark.asyncio
    async def test_top_k_caps_results(self, store):
        await store.insert([record(f"r{i}", i) for i in range(3)])

        assert len(await store.search(unit(0), top_k=2)) == 2
        assert len(await store.search(unit(0), top_k=10)) == 3

    @pytest.mark.asyncio
    async def test_search_on_unloaded_collection_is_empty(self, store):
        assert await store.search(unit(0), top_k=3, collection="missing") == []

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch(self, store):
        await store.insert([record("a", 0)])

        with pytest.raises(ValueError):
            await store.search([1.0, 0.0], top_k=1)

    @pytest.mark.asyncio
    async def test_ivf_index_trains_once_nlist_reached(self, store):
        records = [record(f"r{i}", i) for i in range(8)]

        await store.insert(records[:3])
        assert store.get_stats()["index_type"] == "exact"

        await store.insert(records[3:])
        stats = store.get_stats()
        assert stats["index_type"] == "IVF_FLAT"
        assert stats["vector_count"] == 8

        hits = await store.search(unit(5), top_k=1)
        assert hits[0].id == "r5"


class TestCollections:
    """Collection lifecycle and persistence."""

    @pytest.mark.asyncio
    async def test_ensure_collection_is_idempotent_and_reloads(self, store, database):
        await store.insert([record("a", 0), record("b", 1)])

        reopened = FAISSVectorStore(database=database, collection_name="test_chunks", nlist=4)
        await reopened.open()
        await reopened.ensure_collection("test_chunks", DIMENSION)
        await reopened.ensure_collection("test_chunks", DIMENSION)

        assert reopened.count() == 2
        hits = await reopened.search(unit(1), top_k=1)
        assert hits[0].id == "b"

    @pytest.mark.asyncio
    async def test_dimension_mismatch_on_existing_collection(self, store):
        with pytest.raises(ValueError):
            await store.ensure_collection("test_chunks", DIMENSION * 2)

    @pytest.mark.asyncio
    async def test_insert_dimension_mismatch(self, store):
        bad = IndexedRecord(id="x", text="x", embedding=[1.0, 0.0])

        with pytest.raises(ValueError):
            await store.insert([bad])

    @pytest.mark.asyncio
    async def test_insert_into_unloaded_collection(self, store):
        with pytest.raises(IndexUnavailable):
            await store.insert([record("a", 0)], collection="missing")

    @pytest.mark.asyncio
    async def test_store_must_be_opened(self, database):
        unopened = FAISSVectorStore(database=database, collection_name="test_chunks")

        with pytest.raises(IndexUnavailable):
            await unopened.ensure_collection("test_chunks", DIMENSION)

    @pytest.mark.asyncio
    async def test_drop_collection(self, store, database):
        await store.insert([record("a", 0)])

        await store.drop_collection()

        assert store.count() == 0
        assert database.get_collection("test_chunks") is None
        assert await store.search(unit(0), top_k=1) == []

    @pytest.mark.asyncio
    async def test_insert_allows_duplicate_ids(self, store):
        await store.insert([record("same", 0), record("same", 1)])

        assert store.count() == 2


class TestScanAndDelete:
    """Unranked scans and per-source deletion."""

    @pytest.mark.asyncio
    async def test_scan_all_respects_limit(self, store):
        await store.insert([record(f"r{i}", i) for i in range(5)])

        records = await store.scan_all(limit=3)

        assert [r.id for r in records] == ["r0", "r1", "r2"]
        assert len(records[0].embedding) == DIMENSION

    @pytest.mark.asyncio
    async def test_scan_all_swallows_storage_errors(self, store, monkeypatch):
        def broken(collection, limit):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store.database, "scan_records", broken)

        assert await store.scan_all(limit=10) == []

    @pytest.mark.asyncio
    async def test_delete_source_before_training(self, store):
        await store.insert([record("a", 0, source_id="doc_a"), record("b", 1, source_id="doc_b")])

        removed = await store.delete_source("doc_a")

        assert removed == 1
        assert store.count() == 1
        hits = await store.search(unit(0), top_k=5)
        assert [h.id for h in hits] == ["b"]

    @pytest.mark.asyncio
    async def test_delete_source_after_training(self, store):
        await store.insert([record(f"a{i}", i, source_id="doc_a") for i in range(4)])
        await store.insert([record("b", 10, source_id="doc_b")])

        removed = await store.delete_source("doc_a")

        assert removed == 4
        assert store.count() == 1
        hits = await store.search(unit(10), top_k=5)
        assert [h.id for h in hits] == ["b"]

    @pytest.mark.asyncio
    async def test_delete_unknown_source(self, store):
        assert await store.delete_source("nope") == 0
