"""
增量索引（Incremental Indexer）：把文件级 diff 应用到已有 index 上。

约定：
- 同一个 index 同时只允许一个更新：status 只有在 COMPLETED / FAILED 时才能切到 UPDATING（check-and-set），
  否则立刻抛 `ConcurrentUpdateError`，不排队
- 按 (file_path, chunk_index, content_hash) 对比新旧 chunk：
  - 未变化：不动（不重新 embedding）
  - 内容变化：同一个 vector_point_id 原地覆盖
  - 新增下标：插入；多出来的旧下标：删除
- 每处理完一个文件就保存 totals；中途失败或被取消不回滚，index 标记为 FAILED
- 修改后超过大小上限的文件视为 0 个 chunk（旧的行和 point 删除）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import anyio
from pydantic import BaseModel, Field

from coderag.errors import ConcurrentUpdateError
from coderag.errors import IndexNotFoundError
from coderag.errors import VectorStoreError
from coderag.indexing.chunker import ChunkingOptions
from coderag.indexing.chunker import CodeChunker
from coderag.indexing.embedder import ChunkEmbedder
from coderag.indexing.embedder import build_document_chunk
from coderag.indexing.embedder import build_vector_point
from coderag.indexing.file_filter import MAX_FILE_CHARS
from coderag.indexing.file_filter import FileFilter
from coderag.infra.retry import retry_async
from coderag.llm.client import embedding_price_per_token
from coderag.storage.metadata_store import MetadataStore
from coderag.storage.models import CodeChunk
from coderag.storage.models import CodebaseIndex
from coderag.storage.models import DocumentChunk
from coderag.storage.vector_store import VectorStore
from coderag.vcs.client import VcsClient

logger = logging.getLogger(__name__)


class FileDiff(BaseModel):
    """仓库相对路径的文件级变更集合。"""

    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


class UpdateResult(BaseModel):
    chunks_added: int = 0
    chunks_modified: int = 0
    chunks_removed: int = 0
    tokens_used: int = 0
    cost: float = 0.0


@dataclass
class _FileSync:
    added: int = 0
    modified: int = 0
    removed: int = 0
    tokens_used: int = 0
    had_rows: bool = False


class IncrementalIndexer:
    def __init__(
        self,
        vcs: VcsClient,
        embedder: ChunkEmbedder,
        vector_store: VectorStore,
        metadata_store: MetadataStore,
        embedding_model: str,
        chunker: CodeChunker | None = None,
        file_filter: FileFilter | None = None,
        chunking: ChunkingOptions = ChunkingOptions(),
        upsert_retry_attempts: int = 3,
        retry_base_delay_seconds: float = 0.5,
        max_file_chars: int = MAX_FILE_CHARS,
    ) -> None:
        self._vcs = vcs
        self._embedder = embedder
        self._vector_store = vector_store
        self._metadata_store = metadata_store
        self._embedding_model = embedding_model
        self._chunker = chunker if chunker is not None else CodeChunker()
        self._file_filter = file_filter if file_filter is not None else FileFilter()
        self._chunking = chunking
        self._upsert_retry_attempts = upsert_retry_attempts
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._max_file_chars = max_file_chars
        self._closed = False

    async def update_index(self, owner: str, repo: str, index_id: str, diff: FileDiff, ref: str = "HEAD") -> UpdateResult:
        index = await self._metadata_store.get_index(index_id)
        if index is None:
            raise IndexNotFoundError(f"Index {index_id} not found")
        if not await self._metadata_store.try_begin_update(index_id):
            current = await self._metadata_store.get_index(index_id)
            status = current.status if current is not None else "MISSING"
            logger.warning(f"Rejected concurrent update: index={index_id}, status={status}")
            raise ConcurrentUpdateError(index_id=index_id, status=status)

        # 重新读取：UPDATING 状态由 store 写入
        index = await self._metadata_store.get_index(index_id)
        if index is None:
            raise IndexNotFoundError(f"Index {index_id} not found")
        logger.info(
            f"Incremental update started: index={index_id}, added={len(diff.added)}, "
            f"modified={len(diff.modified)}, removed={len(diff.removed)}"
        )

        result = UpdateResult()
        try:
            for path in diff.removed:
                await self._remove_file(index=index, path=path, result=result)
            for path in diff.modified:
                await self._sync_file(index=index, owner=owner, repo=repo, path=path, ref=ref, result=result)
            for path in diff.added:
                await self._sync_file(index=index, owner=owner, repo=repo, path=path, ref=ref, result=result)
        except anyio.get_cancelled_exc_class():
            # 取消时也要离开 UPDATING 状态
            with anyio.CancelScope(shield=True):
                await self._mark_failed(index=index, reason="cancelled")
            raise
        except Exception as exc:
            logger.error(f"Incremental update failed: index={index_id}: {exc}")
            await self._mark_failed(index=index, reason=str(exc) or type(exc).__name__)
            raise

        index.status = "COMPLETED"
        index.failure_reason = None
        index.completed_at = datetime.now(timezone.utc)
        await self._metadata_store.save_index(index)
        logger.info(
            f"Incremental update completed: index={index_id}, +{result.chunks_added} ~{result.chunks_modified} "
            f"-{result.chunks_removed} chunks, tokens={result.tokens_used}, cost=${result.cost:.6f}"
        )
        return result

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._embedder.close()
        await self._vector_store.close()
        await self._metadata_store.close()

    async def _mark_failed(self, index: CodebaseIndex, reason: str) -> None:
        index.status = "FAILED"
        index.failure_reason = reason
        await self._metadata_store.save_index(index)

    async def _remove_file(self, index: CodebaseIndex, path: str, result: UpdateResult) -> None:
        existing = await self._metadata_store.list_chunks(index.id, file_path=path)
        if not existing:
            logger.debug(f"Removed file {path} has no indexed chunks")
            return
        await self._vector_store.delete([c.vector_point_id for c in existing])
        await self._metadata_store.delete_chunks([c.id for c in existing])
        result.chunks_removed += len(existing)
        index.total_files = max(0, index.total_files - 1)
        index.total_chunks = max(0, index.total_chunks - len(existing))
        await self._metadata_store.save_index(index)
        logger.debug(f"Removed {path}: chunks={len(existing)}")

    async def _sync_file(self, index: CodebaseIndex, owner: str, repo: str, path: str, ref: str, result: UpdateResult) -> None:
        """新增 / 修改文件共用：新文件就是“没有旧行”的修改。"""
        if not self._file_filter.accepts(path):
            logger.debug(f"Skipping filtered path {path}")
            return

        text = await self._vcs.get_file_content(owner, repo, path, ref)
        if len(text) > self._max_file_chars:
            # 超限文件不再索引：当作 0 个 chunk，已有的行和 point 一并删除
            logger.info(f"Dropping oversized file {path} ({len(text)} chars)")
            chunks: list[CodeChunk] = []
        else:
            chunks = self._chunker.chunk(
                text=text,
                file_path=path,
                max_chunk_chars=self._chunking.max_chunk_chars,
                fallback_chunk_chars=self._chunking.fallback_chunk_chars,
                overlap_chars=self._chunking.overlap_chars,
            )
        existing = await self._metadata_store.list_chunks(index.id, file_path=path)
        documents = [build_document_chunk(codebase_index_id=index.id, file_path=path, chunk=c) for c in chunks]
        sync = await self._apply_chunks(index=index, path=path, new_documents=documents, existing=existing)

        result.chunks_added += sync.added
        result.chunks_modified += sync.modified
        result.chunks_removed += sync.removed
        result.tokens_used += sync.tokens_used
        result.cost = result.tokens_used * embedding_price_per_token(self._embedding_model)

        if not sync.had_rows and chunks:
            index.total_files += 1
        elif sync.had_rows and not chunks:
            index.total_files = max(0, index.total_files - 1)
        index.total_chunks = max(0, index.total_chunks + sync.added - sync.removed)
        index.tokens_used += sync.tokens_used
        index.cost = index.tokens_used * embedding_price_per_token(self._embedding_model)
        await self._metadata_store.save_index(index)
        logger.debug(f"Synced {path}: +{sync.added} ~{sync.modified} -{sync.removed}")

    async def _apply_chunks(
        self,
        index: CodebaseIndex,
        path: str,
        new_documents: list[DocumentChunk],
        existing: list[DocumentChunk],
    ) -> _FileSync:
        old_by_index = {c.chunk_index: c for c in existing}
        new_indices = {d.chunk_index for d in new_documents}

        to_embed: list[DocumentChunk] = []
        modified = 0
        for document in new_documents:
            old = old_by_index.get(document.chunk_index)
            if old is None:
                to_embed.append(document)
            elif old.content_hash != document.content_hash:
                to_embed.append(document)
                modified += 1
        stale = [c for c in existing if c.chunk_index not in new_indices]

        tokens_used = 0
        if to_embed:
            batch = await self._embedder.embed([d.content for d in to_embed])
            tokens_used = batch.tokens_used
            points = [
                build_vector_point(project_id=index.project_id, document=d, vector=v)
                for d, v in zip(to_embed, batch.vectors)
            ]
            await retry_async(
                lambda: self._vector_store.upsert(points),
                attempts=self._upsert_retry_attempts,
                base_delay_seconds=self._retry_base_delay_seconds,
                retry_on=(VectorStoreError,),
                description=f"Vector upsert for {path}",
            )
            await self._metadata_store.upsert_chunks(to_embed)
        if stale:
            await self._vector_store.delete([c.vector_point_id for c in stale])
            await self._metadata_store.delete_chunks([c.id for c in stale])

        return _FileSync(
            added=len(to_embed) - modified,
            modified=modified,
            removed=len(stale),
            tokens_used=tokens_used,
            had_rows=bool(existing),
        )
