from __future__ import annotations

from collections.abc import Sequence

import pytest

from coderag.errors import RetrievalError
from coderag.errors import VectorStoreError
from coderag.infra.cache import InMemoryCache
from coderag.retrieval.models import RetrievalFilter
from coderag.retrieval.semantic import SemanticRetriever
from coderag.retrieval.semantic import build_cache_key
from coderag.storage.models import ChunkFilter
from coderag.storage.models import VectorPoint
from coderag.storage.models import VectorSearchHit
from coderag.storage.vector_store import InMemoryVectorStore
from fakes import FakeEmbeddingClient
from fakes import hash_vector


def _point(point_id: str, project_id: str, content: str, file_path: str = "a.py", language: str = "python") -> VectorPoint:
    return VectorPoint(
        id=point_id,
        vector=hash_vector(content),
        payload={
            "project_id": project_id,
            "codebase_index_id": f"idx-{project_id}",
            "file_path": file_path,
            "chunk_index": 0,
            "chunk_type": "function",
            "language": language,
            "start_line": 1,
            "end_line": 2,
            "content": content,
            "name": None,
        },
    )


async def _store() -> InMemoryVectorStore:
    store = InMemoryVectorStore()
    await store.upsert(
        [
            _point("a1", "A", "def parse_config(path): load yaml config"),
            _point("a2", "A", "def send_email(to): smtp message", file_path="mail.py"),
            _point("a3", "A", "function parseConfig(path) { load yaml config }", file_path="cfg.js", language="javascript"),
            _point("b1", "B", "def parse_config(path): load yaml config"),
        ]
    )
    return store


@pytest.mark.anyio
async def test_results_are_scoped_to_project() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=await _store())
    for project_id, foreign in (("A", "b"), ("B", "a")):
        results = await retriever.retrieve("parse config path load yaml config", project_id, top_k=10, score_threshold=0.0)
        assert results
        assert not any(r.chunk_id.startswith(foreign) for r in results)


@pytest.mark.anyio
async def test_results_sorted_and_thresholded() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=await _store())
    results = await retriever.retrieve("def parse_config(path): load yaml config", "A", top_k=10, score_threshold=0.5)
    assert results[0].chunk_id == "a1"
    assert results[0].score == pytest.approx(1.0)
    assert all(r.score >= 0.5 for r in results)
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
    assert "a2" not in {r.chunk_id for r in results}


@pytest.mark.anyio
async def test_top_k_limits_results() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=await _store())
    results = await retriever.retrieve("config", "A", top_k=1, score_threshold=0.0)
    assert len(results) == 1


@pytest.mark.anyio
async def test_filter_by_language() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=await _store())
    results = await retriever.retrieve(
        "parse config", "A", top_k=10, filter=RetrievalFilter(language="javascript"), score_threshold=0.0
    )
    assert [r.chunk_id for r in results] == ["a3"]


@pytest.mark.anyio
async def test_second_identical_query_is_served_from_cache() -> None:
    embedding = FakeEmbeddingClient()
    retriever = SemanticRetriever(embedding_client=embedding, vector_store=await _store(), cache=InMemoryCache())

    first = await retriever.retrieve("parse yaml config", "A", top_k=5)
    second = await retriever.retrieve("parse yaml config", "A", top_k=5)

    assert first == second
    assert len(embedding.calls) == 1


@pytest.mark.anyio
async def test_cache_holds_unthresholded_results() -> None:
    embedding = FakeEmbeddingClient()
    retriever = SemanticRetriever(embedding_client=embedding, vector_store=await _store(), cache=InMemoryCache())

    strict = await retriever.retrieve("def parse_config(path): load yaml config", "A", top_k=5, score_threshold=0.99)
    loose = await retriever.retrieve("def parse_config(path): load yaml config", "A", top_k=5, score_threshold=0.0)

    assert [r.chunk_id for r in strict] == ["a1"]
    assert len(loose) == 3
    assert len(embedding.calls) == 1


def test_cache_key_depends_on_every_input() -> None:
    base = build_cache_key("q", "A", 5, None)
    assert base == build_cache_key("q", "A", 5, None)
    assert base != build_cache_key("q", "B", 5, None)
    assert base != build_cache_key("q", "A", 6, None)
    assert base != build_cache_key("q2", "A", 5, None)
    assert base != build_cache_key("q", "A", 5, RetrievalFilter(language="go"))


@pytest.mark.anyio
async def test_embedding_failure_raises_retrieval_error() -> None:
    embedding = FakeEmbeddingClient()
    embedding.fail = True
    retriever = SemanticRetriever(embedding_client=embedding, vector_store=await _store())
    with pytest.raises(RetrievalError):
        await retriever.retrieve("config", "A")


class _BrokenVectorStore(InMemoryVectorStore):
    async def search(self, vector: Sequence[float], filter: ChunkFilter, top_k: int) -> list[VectorSearchHit]:
        raise VectorStoreError("connection refused")


@pytest.mark.anyio
async def test_vector_store_failure_raises_retrieval_error() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=_BrokenVectorStore())
    with pytest.raises(RetrievalError):
        await retriever.retrieve("config", "A")


@pytest.mark.anyio
async def test_retrieve_multiple_deduplicates() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=await _store())
    results = await retriever.retrieve_multiple(
        ["parse config", "yaml config loader"], "A", top_k_per_query=3, score_threshold=0.0
    )
    ids = [r.chunk_id for r in results]
    assert len(ids) == len(set(ids))
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)


@pytest.mark.anyio
async def test_invalid_arguments() -> None:
    retriever = SemanticRetriever(embedding_client=FakeEmbeddingClient(), vector_store=InMemoryVectorStore())
    with pytest.raises(ValueError):
        await retriever.retrieve("  ", "A")
    with pytest.raises(ValueError):
        await retriever.retrieve("q", "A", top_k=0)


@pytest.mark.anyio
async def test_close_is_idempotent() -> None:
    embedding = FakeEmbeddingClient()
    store = InMemoryVectorStore()
    retriever = SemanticRetriever(embedding_client=embedding, vector_store=store)
    await retriever.close()
    await retriever.close()
    assert embedding.closed and store.closed
