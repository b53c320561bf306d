from __future__ import annotations

from collections.abc import Sequence

import anyio
import pytest

from coderag.errors import IndexingCancelledError
from coderag.errors import IndexNotFoundError
from coderag.errors import MetadataStoreError
from coderag.errors import VcsError
from coderag.errors import VectorStoreError
from coderag.indexing.embedder import ChunkEmbedder
from coderag.indexing.indexer import RepositoryIndexer
from coderag.llm.client import embedding_price_per_token
from coderag.storage.metadata_store import InMemoryMetadataStore
from coderag.storage.models import CodebaseIndex
from coderag.storage.models import VectorPoint
from coderag.storage.models import build_vector_point_id
from coderag.storage.vector_store import InMemoryVectorStore
from fakes import FakeEmbeddingClient
from fakes import FakeVcs

MODEL = "text-embedding-3-small"


def _build(
    vcs: FakeVcs,
    embedding: FakeEmbeddingClient | None = None,
    vector_store: InMemoryVectorStore | None = None,
) -> tuple[RepositoryIndexer, InMemoryVectorStore, InMemoryMetadataStore, FakeEmbeddingClient]:
    embedding = embedding or FakeEmbeddingClient()
    vector_store = vector_store if vector_store is not None else InMemoryVectorStore()
    metadata_store = InMemoryMetadataStore()
    indexer = RepositoryIndexer(
        vcs=vcs,
        embedder=ChunkEmbedder(client=embedding, model_name=MODEL, retry_base_delay_seconds=0),
        vector_store=vector_store,
        metadata_store=metadata_store,
        embedding_model=MODEL,
        retry_base_delay_seconds=0,
    )
    return indexer, vector_store, metadata_store, embedding


@pytest.mark.anyio
async def test_two_file_repository_is_indexed() -> None:
    vcs = FakeVcs(
        {
            "src/a.py": "def alpha():\n    return 1\n",
            "src/b.py": "def beta():\n    return 2\n",
        }
    )
    indexer, vector_store, metadata_store, _ = _build(vcs)

    index_id = await indexer.index_repository("acme", "repo", project_id="p1")

    index = await metadata_store.get_index(index_id)
    assert index is not None
    assert index.status == "COMPLETED"
    assert index.total_chunks == 2
    assert index.total_files == 2
    assert index.completed_at is not None
    assert index.tokens_used > 0
    assert index.cost == pytest.approx(index.tokens_used * embedding_price_per_token(MODEL))

    chunks = await metadata_store.list_chunks(index_id)
    assert {(c.file_path, c.chunk_type, c.metadata.get("name")) for c in chunks} == {
        ("src/a.py", "function", "alpha"),
        ("src/b.py", "function", "beta"),
    }
    for chunk in chunks:
        assert chunk.id == chunk.vector_point_id == build_vector_point_id(index_id, chunk.file_path, chunk.chunk_index)
        point = vector_store.points[chunk.vector_point_id]
        assert point.payload["project_id"] == "p1"
        assert point.payload["codebase_index_id"] == index_id
        assert point.payload["content"] == chunk.content


@pytest.mark.anyio
async def test_filtered_paths_are_not_fetched() -> None:
    vcs = FakeVcs(
        {
            "main.go": "package main\n\nfunc main() {}\n",
            "node_modules/lib/index.js": "function x() {}\n",
            "README.md": "# hello\n",
        }
    )
    indexer, _, metadata_store, _ = _build(vcs)
    index_id = await indexer.index_repository("acme", "repo", project_id="p1")
    assert vcs.fetched == ["main.go"]
    index = await metadata_store.get_index(index_id)
    assert index is not None and index.total_files == 1


@pytest.mark.anyio
async def test_failing_file_is_skipped() -> None:
    vcs = FakeVcs({"a.py": "def a():\n    pass\n", "b.py": "def b():\n    pass\n"})
    vcs.failing_paths.add("b.py")
    indexer, _, metadata_store, _ = _build(vcs)

    index_id = await indexer.index_repository("acme", "repo", project_id="p1")

    index = await metadata_store.get_index(index_id)
    assert index is not None
    assert index.status == "COMPLETED"
    assert index.total_files == 1
    assert {c.file_path for c in await metadata_store.list_chunks(index_id)} == {"a.py"}


@pytest.mark.anyio
async def test_all_files_failing_marks_index_failed_but_returns_id() -> None:
    vcs = FakeVcs({"a.py": "def a():\n    pass\n"})
    embedding = FakeEmbeddingClient()
    embedding.fail = True
    indexer, vector_store, metadata_store, _ = _build(vcs, embedding=embedding)

    index_id = await indexer.index_repository("acme", "repo", project_id="p1")

    index = await metadata_store.get_index(index_id)
    assert index is not None
    assert index.status == "FAILED"
    assert index.failure_reason
    assert vector_store.points == {}
    # 默认 3 次重试
    assert len(embedding.calls) == 3


@pytest.mark.anyio
async def test_empty_repository_marks_index_failed() -> None:
    indexer, _, metadata_store, _ = _build(FakeVcs({}))
    index_id = await indexer.index_repository("acme", "repo", project_id="p1")
    index = await metadata_store.get_index(index_id)
    assert index is not None
    assert index.status == "FAILED"
    assert index.failure_reason == "no files indexed"


@pytest.mark.anyio
async def test_listing_error_marks_failed_and_reraises() -> None:
    vcs = FakeVcs({})
    vcs.list_error = VcsError("rate limited")
    indexer, _, metadata_store, _ = _build(vcs)

    with pytest.raises(VcsError):
        await indexer.index_repository("acme", "repo", project_id="p1")

    [index] = metadata_store.indexes.values()
    assert index.status == "FAILED"
    assert index.failure_reason == "rate limited"


class _SlowVcs(FakeVcs):
    async def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> str:
        await anyio.sleep(10)
        return await super().get_file_content(owner, repo, path, ref)


@pytest.mark.anyio
async def test_timeout_marks_index_cancelled() -> None:
    vcs = _SlowVcs({"a.py": "def a():\n    pass\n"})
    indexer, _, metadata_store, _ = _build(vcs)

    with pytest.raises(IndexingCancelledError):
        await indexer.index_repository("acme", "repo", project_id="p1", timeout_seconds=0.05)

    [index] = metadata_store.indexes.values()
    assert index.status == "FAILED"
    assert index.failure_reason is not None and index.failure_reason.startswith("cancelled")


@pytest.mark.anyio
async def test_outer_cancellation_marks_index_failed() -> None:
    vcs = _SlowVcs({"a.py": "def a():\n    pass\n"})
    indexer, _, metadata_store, _ = _build(vcs)

    with anyio.move_on_after(0.05) as scope:
        await indexer.index_repository("acme", "repo", project_id="p1")
    assert scope.cancelled_caught

    [index] = metadata_store.indexes.values()
    assert index.status == "FAILED"
    assert index.failure_reason == "cancelled"


class _FailingSaveStore(InMemoryMetadataStore):
    """第 `fail_on` 次 save_index 抛错，其余照常。"""

    fail_on = 2
    saves = 0

    async def save_index(self, index: CodebaseIndex) -> None:
        self.saves += 1
        if self.saves == self.fail_on:
            raise MetadataStoreError("db down")
        await super().save_index(index)


@pytest.mark.anyio
async def test_store_error_inside_file_task_surfaces_unwrapped() -> None:
    metadata_store = _FailingSaveStore()
    indexer = RepositoryIndexer(
        vcs=FakeVcs({"a.py": "def a():\n    pass\n"}),
        embedder=ChunkEmbedder(client=FakeEmbeddingClient(), model_name=MODEL, retry_base_delay_seconds=0),
        vector_store=InMemoryVectorStore(),
        metadata_store=metadata_store,
        embedding_model=MODEL,
    )

    with pytest.raises(MetadataStoreError, match="db down"):
        await indexer.index_repository("acme", "repo", project_id="p1")

    [index] = metadata_store.indexes.values()
    assert index.status == "FAILED"
    assert index.failure_reason == "db down"

class _FlakyVectorStore(InMemoryVectorStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise VectorStoreError("temporarily unavailable")
        await super().upsert(points)


@pytest.mark.anyio
async def test_vector_upsert_is_retried() -> None:
    vcs = FakeVcs({"a.py": "def a():\n    pass\n"})
    indexer, vector_store, metadata_store, _ = _build(vcs, vector_store=_FlakyVectorStore(failures=2))

    index_id = await indexer.index_repository("acme", "repo", project_id="p1")

    index = await metadata_store.get_index(index_id)
    assert index is not None and index.status == "COMPLETED"
    assert len(vector_store.points) == 1


@pytest.mark.anyio
async def test_delete_index_removes_points_and_rows() -> None:
    vcs = FakeVcs({"a.py": "def a():\n    pass\n"})
    indexer, vector_store, metadata_store, _ = _build(vcs)
    index_id = await indexer.index_repository("acme", "repo", project_id="p1")

    await indexer.delete_index(index_id)

    assert vector_store.points == {}
    assert await metadata_store.get_index(index_id) is None
    with pytest.raises(IndexNotFoundError):
        await indexer.delete_index(index_id)


@pytest.mark.anyio
async def test_close_is_idempotent() -> None:
    indexer, vector_store, metadata_store, embedding = _build(FakeVcs({}))
    await indexer.close()
    await indexer.close()
    assert embedding.closed and vector_store.closed and metadata_store.closed
