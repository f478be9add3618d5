# =============================================================================
# Unit Tests: Vector Store (ChromaDB backend)
# =============================================================================
#
# Uses ChromaDB's in-process mode (no external services needed).
# pgvector is not covered here; it requires a running PostgreSQL instance.
# =============================================================================

from fakes import run

from expert_engine.services.vectorstore import ChromaVectorStore, RetrievedChunk


class TestChromaVectorStore:
    """Tests for ChromaVectorStore (in-process mode)."""

    _test_counter = 0

    def _make_store(self) -> ChromaVectorStore:
        """Fresh store with a unique collection per test."""
        TestChromaVectorStore._test_counter += 1
        store = ChromaVectorStore()
        store._collection = store._client.get_or_create_collection(
            name=f"test_knowledge_{TestChromaVectorStore._test_counter}",
            metadata={"hnsw:space": "cosine"},
        )
        return store

    def _add(self, store, expert_id, document_id, contents, embeddings):
        return store.add_chunks(
            expert_id=expert_id,
            document_id=document_id,
            document_name=f"doc-{document_id}.md",
            file_type="md",
            contents=contents,
            embeddings=embeddings,
            metadatas=[
                {"chunk_index": i, "section_title": f"Section {i}", "page_number": None}
                for i in range(len(contents))
            ],
        )

    def test_add_chunks_returns_scoped_ids(self):
        store = self._make_store()
        ids = self._add(store, 7, 3, ["a", "b"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        assert ids == ["exp7_doc3_chunk0", "exp7_doc3_chunk1"]

    def test_search_ranks_by_similarity(self):
        store = self._make_store()
        self._add(
            store, 1, 1,
            ["Cover is 45mm", "Fire rating is 2h"],
            [[1.0, 0.0, 0.0], [0.6, 0.8, 0.0]],
        )

        results = run(store.search([1.0, 0.0, 0.0], expert_id=1, top_k=2, threshold=0.0))

        assert len(results) == 2
        assert all(isinstance(r, RetrievedChunk) for r in results)
        assert results[0].similarity >= results[1].similarity
        assert results[0].content == "Cover is 45mm"
        assert results[0].document_name == "doc-1.md"
        assert results[0].file_type == "md"
        assert results[0].section_title == "Section 0"
        assert results[0].page_number is None

    def test_search_is_scoped_to_expert(self):
        store = self._make_store()
        self._add(store, 1, 1, ["Expert one"], [[1.0, 0.0, 0.0]])
        self._add(store, 2, 2, ["Expert two"], [[0.9, 0.1, 0.0]])

        results = run(store.search([1.0, 0.0, 0.0], expert_id=2, top_k=10, threshold=0.0))

        assert [r.content for r in results] == ["Expert two"]

    def test_threshold_is_exclusive(self):
        store = self._make_store()
        self._add(
            store, 1, 1, ["match", "orthogonal"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
        )

        results = run(store.search([1.0, 0.0, 0.0], expert_id=1, top_k=10, threshold=0.5))

        assert [r.content for r in results] == ["match"]

    def test_reingest_replaces_chunks(self):
        store = self._make_store()
        self._add(store, 1, 1, ["old"], [[1.0, 0.0, 0.0]])
        self._add(store, 1, 1, ["new"], [[1.0, 0.0, 0.0]])

        results = run(store.search([1.0, 0.0, 0.0], expert_id=1, top_k=10, threshold=0.0))

        assert [r.content for r in results] == ["new"]
