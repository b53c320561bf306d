"""
全量索引（Repository Indexer）。

流程：
- 建 CodebaseIndex（PENDING → INDEXING）
- VCS 列文件 → watch/ignore 过滤
- 每个文件（有界并发）：取内容 → 切分 → embedding → 写向量库 → 写元数据库 → 保存进度
- 全部结束：COMPLETED；一个文件都没成功：FAILED（仍返回 index id）

失败语义：
- 单文件失败（取内容 / embedding 重试耗尽 / 写库失败）：记日志、清掉该文件已写入的 point、跳过
- 其它异常：FAILED + failure_reason，然后重新抛出
- 超时 / 外部取消：FAILED，failure_reason 以 "cancelled" 开头
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import anyio

from coderag.errors import EmbeddingError
from coderag.errors import IndexingCancelledError
from coderag.errors import IndexNotFoundError
from coderag.errors import MetadataStoreError
from coderag.errors import VcsError
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
from coderag.storage.models import CodebaseIndex
from coderag.storage.vector_store import VectorStore
from coderag.vcs.client import VcsClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_FILES = 5
DEFAULT_UPSERT_RETRY_ATTEMPTS = 3

# 这些错误只影响单个文件：跳过该文件，继续索引其它文件
_FILE_ERRORS: tuple[type[Exception], ...] = (VcsError, EmbeddingError, VectorStoreError, MetadataStoreError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    first = group.exceptions[0]
    if isinstance(first, BaseExceptionGroup):
        return _first_leaf(first)
    if len(group.exceptions) > 1:
        logger.warning(f"{len(group.exceptions) - 1} more error(s) during indexing: {group.exceptions[1:]}")
    return first


@dataclass
class _Progress:
    files_succeeded: int = 0
    files_failed: int = 0


class RepositoryIndexer:
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
        max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES,
        upsert_retry_attempts: int = DEFAULT_UPSERT_RETRY_ATTEMPTS,
        retry_base_delay_seconds: float = 0.5,
        max_file_chars: int = MAX_FILE_CHARS,
    ) -> None:
        if max_concurrent_files <= 0:
            raise ValueError("max_concurrent_files must be > 0")
        self._vcs = vcs
        self._embedder = embedder
        self._vector_store = vector_store
        self._metadata_store = metadata_store
        self._embedding_model = embedding_model
        self._chunker = chunker if chunker is not None else CodeChunker()
        self._file_filter = file_filter if file_filter is not None else FileFilter()
        self._chunking = chunking
        self._max_concurrent_files = max_concurrent_files
        self._upsert_retry_attempts = upsert_retry_attempts
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._max_file_chars = max_file_chars
        self._closed = False

    async def index_repository(
        self,
        owner: str,
        repo: str,
        project_id: str,
        ref: str = "HEAD",
        timeout_seconds: float | None = None,
    ) -> str:
        """
        全量索引一个仓库，返回 CodebaseIndex id。

        - 一个文件都没成功时 index 为 FAILED，但依然返回 id（调用方据此查询原因）
        - 超时抛 `IndexingCancelledError`；外部取消照常向上传播
        """
        if not owner or not repo:
            raise ValueError("owner and repo are required")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        index = await self._metadata_store.create_index(project_id)
        index.status = "INDEXING"
        await self._metadata_store.save_index(index)
        logger.info(f"Indexing started: index={index.id}, repo={owner}/{repo}@{ref}, project={project_id}")

        try:
            with anyio.fail_after(timeout_seconds):
                await self._run(index=index, owner=owner, repo=repo, ref=ref)
        except TimeoutError:
            reason = f"cancelled: timed out after {timeout_seconds}s"
            await self._mark_failed(index=index, reason=reason)
            raise IndexingCancelledError(f"Indexing of {owner}/{repo} {reason}") from None
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self._mark_failed(index=index, reason="cancelled")
            raise
        except Exception as exc:
            logger.error(f"Indexing failed: index={index.id}, repo={owner}/{repo}: {exc}")
            await self._mark_failed(index=index, reason=str(exc) or type(exc).__name__)
            raise
        return index.id

    async def delete_index(self, index_id: str) -> None:
        """删除一个 index 的全部向量 point 与元数据行。"""
        index = await self._metadata_store.get_index(index_id)
        if index is None:
            raise IndexNotFoundError(f"Index {index_id} not found")
        chunks = await self._metadata_store.list_chunks(index_id)
        if chunks:
            await self._vector_store.delete([c.vector_point_id for c in chunks])
        await self._metadata_store.delete_index(index_id)
        logger.info(f"Index deleted: index={index_id}, chunks={len(chunks)}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._embedder.close()
        await self._vector_store.close()
        await self._metadata_store.close()

    async def _run(self, index: CodebaseIndex, owner: str, repo: str, ref: str) -> None:
        paths = await self._vcs.list_files(owner, repo, ref)
        accepted = self._file_filter.filter(paths)
        logger.info(f"Files to index: {len(accepted)} of {len(paths)} (index={index.id})")

        progress = _Progress()
        limiter = anyio.CapacityLimiter(self._max_concurrent_files)
        lock = anyio.Lock()
        try:
            async with anyio.create_task_group() as tg:
                for path in accepted:
                    tg.start_soon(self._index_file, index, owner, repo, path, ref, limiter, lock, progress)
        except ExceptionGroup as group:
            # 拆掉 task group 的包装，向上抛具体错误
            raise _first_leaf(group) from group

        if progress.files_succeeded == 0:
            reason = "no files indexed" if not accepted else f"all {progress.files_failed} file(s) failed to index"
            await self._mark_failed(index=index, reason=reason)
            logger.warning(f"Indexing produced no chunks: index={index.id}, reason={reason}")
            return

        index.status = "COMPLETED"
        index.completed_at = _utcnow()
        await self._metadata_store.save_index(index)
        logger.info(
            f"Indexing completed: index={index.id}, files={index.total_files}, chunks={index.total_chunks}, "
            f"skipped={progress.files_failed}, tokens={index.tokens_used}, cost=${index.cost:.6f}"
        )

    async def _index_file(
        self,
        index: CodebaseIndex,
        owner: str,
        repo: str,
        path: str,
        ref: str,
        limiter: anyio.CapacityLimiter,
        lock: anyio.Lock,
        progress: _Progress,
    ) -> None:
        async with limiter:
            written: list[str] = []
            try:
                text = await self._vcs.get_file_content(owner, repo, path, ref)
                if len(text) > self._max_file_chars:
                    logger.info(f"Skipping oversized file {path} ({len(text)} chars)")
                    return
                chunks = self._chunker.chunk(
                    text=text,
                    file_path=path,
                    max_chunk_chars=self._chunking.max_chunk_chars,
                    fallback_chunk_chars=self._chunking.fallback_chunk_chars,
                    overlap_chars=self._chunking.overlap_chars,
                )
                if not chunks:
                    logger.debug(f"No chunks for {path}, skipping")
                    return
                batch = await self._embedder.embed([c.content for c in chunks])
                documents = [build_document_chunk(codebase_index_id=index.id, file_path=path, chunk=c) for c in chunks]
                points = [
                    build_vector_point(project_id=index.project_id, document=d, vector=v)
                    for d, v in zip(documents, batch.vectors)
                ]
                written = [p.id for p in points]
                await retry_async(
                    lambda: self._vector_store.upsert(points),
                    attempts=self._upsert_retry_attempts,
                    base_delay_seconds=self._retry_base_delay_seconds,
                    retry_on=(VectorStoreError,),
                    description=f"Vector upsert for {path}",
                )
                await self._metadata_store.upsert_chunks(documents)
            except _FILE_ERRORS as exc:
                logger.warning(f"Skipping file {path} (index={index.id}): {exc}")
                await self._discard_points(point_ids=written, path=path)
                async with lock:
                    progress.files_failed += 1
                return

            async with lock:
                progress.files_succeeded += 1
                index.total_files += 1
                index.total_chunks += len(documents)
                index.tokens_used += batch.tokens_used
                index.cost = index.tokens_used * embedding_price_per_token(self._embedding_model)
                await self._metadata_store.save_index(index)
            logger.debug(f"Indexed {path}: chunks={len(documents)}, tokens={batch.tokens_used}")

    async def _discard_points(self, point_ids: list[str], path: str) -> None:
        if not point_ids:
            return
        try:
            await self._vector_store.delete(point_ids)
        except VectorStoreError as exc:
            logger.error(f"Failed to remove partial points for {path}: {exc}")

    async def _mark_failed(self, index: CodebaseIndex, reason: str) -> None:
        index.status = "FAILED"
        index.failure_reason = reason
        index.completed_at = _utcnow()
        await self._metadata_store.save_index(index)
