from __future__ import annotations

import anyio
import pytest

from coderag.errors import ConcurrentUpdateError
from coderag.errors import IndexNotFoundError
from coderag.errors import VcsError
from coderag.indexing.embedder import ChunkEmbedder
from coderag.indexing.file_filter import MAX_FILE_CHARS
from coderag.indexing.incremental import FileDiff
from coderag.indexing.incremental import IncrementalIndexer
from coderag.indexing.indexer import RepositoryIndexer
from coderag.storage.metadata_store import InMemoryMetadataStore
from coderag.storage.models import CodebaseIndex
from coderag.storage.vector_store import InMemoryVectorStore
from fakes import FakeEmbeddingClient
from fakes import FakeVcs

MODEL = "text-embedding-3-small"

ORIGINAL = "def one():\n    return 1\n\n\ndef two():\n    return 2\n"
EDITED = "def one():\n    return 1\n\n\ndef two():\n    return 22\n\n\ndef three():\n    return 3\n"


class _Env:
    def __init__(self, files: dict[str, str], max_file_chars: int = MAX_FILE_CHARS) -> None:
        self.vcs = FakeVcs(files)
        self.embedding = FakeEmbeddingClient()
        self.vector_store = InMemoryVectorStore()
        self.metadata_store = InMemoryMetadataStore()
        embedder = ChunkEmbedder(client=self.embedding, model_name=MODEL, retry_base_delay_seconds=0)
        self.full = RepositoryIndexer(
            vcs=self.vcs,
            embedder=embedder,
            vector_store=self.vector_store,
            metadata_store=self.metadata_store,
            embedding_model=MODEL,
        )
        self.incremental = IncrementalIndexer(
            vcs=self.vcs,
            embedder=embedder,
            vector_store=self.vector_store,
            metadata_store=self.metadata_store,
            embedding_model=MODEL,
            max_file_chars=max_file_chars,
        )

    async def index(self) -> CodebaseIndex:
        index_id = await self.full.index_repository("acme", "repo", project_id="p1")
        index = await self.metadata_store.get_index(index_id)
        assert index is not None and index.status == "COMPLETED"
        self.embedding.calls.clear()
        return index


@pytest.mark.anyio
async def test_add_then_remove_restores_totals() -> None:
    env = _Env({"a.py": ORIGINAL})
    before = await env.index()

    env.vcs.files["b.py"] = "def b():\n    return 'b'\n\n\nclass B:\n    pass\n"
    added = await env.incremental.update_index("acme", "repo", before.id, FileDiff(added=["b.py"]))
    assert added.chunks_added == 2
    assert added.tokens_used > 0
    mid = await env.metadata_store.get_index(before.id)
    assert mid is not None
    assert mid.total_chunks == before.total_chunks + 2
    assert mid.total_files == before.total_files + 1

    removed = await env.incremental.update_index("acme", "repo", before.id, FileDiff(removed=["b.py"]))
    assert removed.chunks_removed == 2
    after = await env.metadata_store.get_index(before.id)
    assert after is not None
    assert after.status == "COMPLETED"
    assert after.total_chunks == before.total_chunks
    assert after.total_files == before.total_files
    assert {p.payload["file_path"] for p in env.vector_store.points.values()} == {"a.py"}


@pytest.mark.anyio
async def test_modified_file_only_reembeds_changed_chunks() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()
    old = {c.chunk_index: c for c in await env.metadata_store.list_chunks(index.id, file_path="a.py")}

    env.vcs.files["a.py"] = EDITED
    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))

    assert (result.chunks_added, result.chunks_modified, result.chunks_removed) == (1, 1, 0)
    assert env.embedding.embedded_texts == ["def two():\n    return 22", "def three():\n    return 3"]
    new = {c.chunk_index: c for c in await env.metadata_store.list_chunks(index.id, file_path="a.py")}
    assert new[0] == old[0]
    assert new[1].vector_point_id == old[1].vector_point_id
    assert env.vector_store.points[old[1].vector_point_id].payload["content"] == "def two():\n    return 22"
    updated = await env.metadata_store.get_index(index.id)
    assert updated is not None and updated.total_chunks == 3


@pytest.mark.anyio
async def test_shrinking_file_deletes_trailing_chunks() -> None:
    env = _Env({"a.py": EDITED})
    index = await env.index()

    env.vcs.files["a.py"] = "def one():\n    return 1\n"
    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))

    assert (result.chunks_added, result.chunks_modified, result.chunks_removed) == (0, 0, 2)
    assert env.embedding.calls == []
    assert len(env.vector_store.points) == 1
    updated = await env.metadata_store.get_index(index.id)
    assert updated is not None and updated.total_chunks == 1 and updated.total_files == 1


@pytest.mark.anyio
async def test_missing_index_raises() -> None:
    env = _Env({})
    with pytest.raises(IndexNotFoundError):
        await env.incremental.update_index("acme", "repo", "nope", FileDiff(added=["a.py"]))


@pytest.mark.anyio
@pytest.mark.parametrize("status", ["UPDATING", "INDEXING", "PENDING"])
async def test_update_rejected_unless_completed_or_failed(status: str) -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()
    await env.metadata_store.save_index(index.model_copy(update={"status": status}))

    with pytest.raises(ConcurrentUpdateError) as excinfo:
        await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))
    assert excinfo.value.status == status
    current = await env.metadata_store.get_index(index.id)
    assert current is not None and current.status == status


@pytest.mark.anyio
async def test_only_one_update_can_begin() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()
    assert await env.metadata_store.try_begin_update(index.id)
    assert not await env.metadata_store.try_begin_update(index.id)


@pytest.mark.anyio
async def test_failure_marks_failed_and_keeps_earlier_work() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()

    env.vcs.files["b.py"] = "def b():\n    pass\n"
    env.vcs.files["c.py"] = "def c():\n    pass\n"
    env.vcs.failing_paths.add("c.py")
    with pytest.raises(VcsError):
        await env.incremental.update_index("acme", "repo", index.id, FileDiff(added=["b.py", "c.py"]))

    failed = await env.metadata_store.get_index(index.id)
    assert failed is not None
    assert failed.status == "FAILED"
    assert failed.failure_reason == "cannot fetch c.py"
    assert failed.total_chunks == index.total_chunks + 1
    assert [c.file_path for c in await env.metadata_store.list_chunks(index.id, file_path="b.py")] == ["b.py"]

    # FAILED 的 index 可以再次更新
    env.vcs.failing_paths.clear()
    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(added=["c.py"]))
    assert result.chunks_added == 1
    recovered = await env.metadata_store.get_index(index.id)
    assert recovered is not None and recovered.status == "COMPLETED" and recovered.failure_reason is None


@pytest.mark.anyio
async def test_filtered_paths_are_skipped() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()
    env.vcs.files["dist/bundle.js"] = "function x() {}\n"

    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(added=["dist/bundle.js"]))

    assert result.chunks_added == 0
    assert "dist/bundle.js" not in env.vcs.fetched


@pytest.mark.anyio
async def test_cancelled_update_leaves_index_failed_and_updatable() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()

    env.vcs.files["a.py"] = EDITED
    env.vcs.delay = 10
    with anyio.move_on_after(0.05) as scope:
        await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))
    assert scope.cancelled_caught

    cancelled = await env.metadata_store.get_index(index.id)
    assert cancelled is not None
    assert cancelled.status == "FAILED"
    assert cancelled.failure_reason == "cancelled"

    env.vcs.delay = 0
    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))
    assert result.chunks_added == 1
    recovered = await env.metadata_store.get_index(index.id)
    assert recovered is not None and recovered.status == "COMPLETED"


@pytest.mark.anyio
async def test_concurrent_updates_admit_exactly_one() -> None:
    env = _Env({"a.py": ORIGINAL})
    index = await env.index()
    env.vcs.files["b.py"] = "def b():\n    pass\n"
    env.vcs.delay = 0.05
    outcomes: list[str] = []

    async def _update() -> None:
        try:
            await env.incremental.update_index("acme", "repo", index.id, FileDiff(added=["b.py"]))
        except ConcurrentUpdateError as exc:
            assert exc.status == "UPDATING"
            outcomes.append("rejected")
        else:
            outcomes.append("applied")

    async with anyio.create_task_group() as tg:
        tg.start_soon(_update)
        tg.start_soon(_update)

    assert sorted(outcomes) == ["applied", "rejected"]
    final = await env.metadata_store.get_index(index.id)
    assert final is not None
    assert final.status == "COMPLETED"
    assert final.total_chunks == index.total_chunks + 1


@pytest.mark.anyio
async def test_modified_file_over_size_limit_drops_old_chunks() -> None:
    env = _Env({"a.py": ORIGINAL, "b.py": "def b():\n    pass\n"}, max_file_chars=200)
    index = await env.index()
    old = await env.metadata_store.list_chunks(index.id, file_path="a.py")
    assert len(old) == 2

    env.vcs.files["a.py"] = ORIGINAL + "\n\n" + "\n\n".join(f"def f{i}():\n    return {i}\n" for i in range(20))
    result = await env.incremental.update_index("acme", "repo", index.id, FileDiff(modified=["a.py"]))

    assert result.chunks_removed == 2
    assert env.embedding.calls == []
    assert await env.metadata_store.list_chunks(index.id, file_path="a.py") == []
    assert not any(c.vector_point_id in env.vector_store.points for c in old)
    updated = await env.metadata_store.get_index(index.id)
    assert updated is not None
    assert updated.total_files == index.total_files - 1
    assert updated.total_chunks == index.total_chunks - 2
