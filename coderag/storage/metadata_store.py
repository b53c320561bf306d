"""
元数据库（Metadata Store）：CodebaseIndex / DocumentChunk 的 CRUD。

- `PgMetadataStore`：Postgres 实现（阻塞调用放到 worker thread）
- `InMemoryMetadataStore`：进程内实现（开发 / 测试）

`try_begin_update` 是增量更新的互斥点：只有 status ∈ {COMPLETED, FAILED} 时才能
原子地切到 UPDATING，第二个并发调用直接拿到 False。

关键词检索：按关键词出现总次数降序取前 limit 个，同分再按 (file_path, chunk_index)。
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import anyio
import psycopg
from psycopg.types.json import Jsonb

from coderag.errors import MetadataStoreError
from coderag.storage.models import ChunkFilter
from coderag.storage.models import CodebaseIndex
from coderag.storage.models import DocumentChunk
from coderag.storage.models import RetrievalLog
from coderag.storage.models import RetrievalMethod
from coderag.storage.pg import PgConnector

logger = logging.getLogger(__name__)

UPDATABLE_STATUSES: tuple[str, ...] = ("COMPLETED", "FAILED")


class MetadataStore(Protocol):
    async def create_index(self, project_id: str) -> CodebaseIndex: ...

    async def get_index(self, index_id: str) -> CodebaseIndex | None: ...

    async def save_index(self, index: CodebaseIndex) -> None: ...

    async def try_begin_update(self, index_id: str) -> bool: ...

    async def upsert_chunks(self, chunks: Sequence[DocumentChunk]) -> None: ...

    async def list_chunks(self, index_id: str, file_path: str | None = None) -> list[DocumentChunk]: ...

    async def delete_chunks(self, ids: Sequence[str]) -> None: ...

    async def search_chunks_by_keywords(self, filter: ChunkFilter, keywords: Sequence[str], limit: int) -> list[DocumentChunk]: ...

    async def delete_index(self, index_id: str) -> None: ...

    async def record_retrieval(self, log: RetrievalLog) -> None: ...

    async def list_retrievals(self, project_id: str, method: RetrievalMethod, since: datetime) -> list[RetrievalLog]: ...

    async def close(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_index(project_id: str) -> CodebaseIndex:
    if not project_id:
        raise ValueError("project_id must be non-empty")
    return CodebaseIndex(id=str(uuid.uuid4()), project_id=project_id, status="PENDING", started_at=_utcnow())


def keyword_occurrences(content: str, keywords: Sequence[str]) -> int:
    """关键词（小写）在 content 中出现的总次数，不区分大小写。"""
    lowered = content.lower()
    return sum(lowered.count(k) for k in keywords)


def _chunk_matches(chunk: DocumentChunk, filter: ChunkFilter) -> bool:
    if filter.language is not None and chunk.language != filter.language:
        return False
    if filter.chunk_type is not None and chunk.chunk_type != filter.chunk_type:
        return False
    if filter.file_paths and chunk.file_path not in filter.file_paths:
        return False
    return True


@dataclass
class InMemoryMetadataStore:
    """内存元数据库：只用于开发/测试。返回的都是副本，调用方修改不会污染存储。"""

    indexes: MutableMapping[str, CodebaseIndex] = field(default_factory=dict)
    chunks: MutableMapping[str, DocumentChunk] = field(default_factory=dict)
    retrievals: list[RetrievalLog] = field(default_factory=list)
    closed: bool = False

    async def create_index(self, project_id: str) -> CodebaseIndex:
        index = _new_index(project_id)
        self.indexes[index.id] = index.model_copy()
        return index

    async def get_index(self, index_id: str) -> CodebaseIndex | None:
        index = self.indexes.get(index_id)
        return index.model_copy() if index is not None else None

    async def save_index(self, index: CodebaseIndex) -> None:
        if index.id not in self.indexes:
            raise MetadataStoreError(f"Index {index.id} not found")
        self.indexes[index.id] = index.model_copy()

    async def try_begin_update(self, index_id: str) -> bool:
        # 单个事件循环内 check 与 set 之间没有 await，天然原子
        index = self.indexes.get(index_id)
        if index is None or index.status not in UPDATABLE_STATUSES:
            return False
        self.indexes[index_id] = index.model_copy(update={"status": "UPDATING", "failure_reason": None})
        return True

    async def upsert_chunks(self, chunks: Sequence[DocumentChunk]) -> None:
        for chunk in chunks:
            self.chunks[chunk.id] = chunk.model_copy()

    async def list_chunks(self, index_id: str, file_path: str | None = None) -> list[DocumentChunk]:
        found = [
            c.model_copy()
            for c in self.chunks.values()
            if c.codebase_index_id == index_id and (file_path is None or c.file_path == file_path)
        ]
        found.sort(key=lambda c: (c.file_path, c.chunk_index))
        return found

    async def delete_chunks(self, ids: Sequence[str]) -> None:
        for chunk_id in ids:
            self.chunks.pop(chunk_id, None)

    async def search_chunks_by_keywords(self, filter: ChunkFilter, keywords: Sequence[str], limit: int) -> list[DocumentChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if not keywords:
            return []
        index_ids = {i.id for i in self.indexes.values() if i.project_id == filter.project_id}
        lowered = [k.lower() for k in keywords]
        found = [
            c.model_copy()
            for c in self.chunks.values()
            if c.codebase_index_id in index_ids
            and _chunk_matches(c, filter)
            and any(k in c.content.lower() for k in lowered)
        ]
        found.sort(key=lambda c: (-keyword_occurrences(c.content, lowered), c.file_path, c.chunk_index))
        return found[:limit]

    async def delete_index(self, index_id: str) -> None:
        for chunk_id in [c.id for c in self.chunks.values() if c.codebase_index_id == index_id]:
            self.chunks.pop(chunk_id, None)
        self.indexes.pop(index_id, None)

    async def record_retrieval(self, log: RetrievalLog) -> None:
        self.retrievals.append(log.model_copy())

    async def list_retrievals(self, project_id: str, method: RetrievalMethod, since: datetime) -> list[RetrievalLog]:
        return [
            r.model_copy()
            for r in self.retrievals
            if r.project_id == project_id and r.method == method and r.created_at >= since
        ]

    async def close(self) -> None:
        self.closed = True


_INDEX_COLUMNS = "id, project_id, status, total_files, total_chunks, cost, tokens_used, started_at, completed_at, failure_reason"
_CHUNK_COLUMNS = (
    "id, codebase_index_id, file_path, start_line, end_line, chunk_index, content, content_hash, "
    "language, chunk_type, vector_point_id, metadata"
)
_RETRIEVAL_COLUMNS = (
    "id, project_id, query, method, chunk_ids, scores, retrieval_time_ms, chunks_scanned, tokens_used, cost, created_at"
)


def _row_to_index(row: Sequence[Any]) -> CodebaseIndex:
    return CodebaseIndex(
        id=row[0],
        project_id=row[1],
        status=row[2],
        total_files=row[3],
        total_chunks=row[4],
        cost=row[5],
        tokens_used=row[6],
        started_at=row[7],
        completed_at=row[8],
        failure_reason=row[9],
    )


def _row_to_chunk(row: Sequence[Any]) -> DocumentChunk:
    return DocumentChunk(
        id=row[0],
        codebase_index_id=row[1],
        file_path=row[2],
        start_line=row[3],
        end_line=row[4],
        chunk_index=row[5],
        content=row[6],
        content_hash=row[7],
        language=row[8],
        chunk_type=row[9],
        vector_point_id=row[10],
        metadata=row[11] or {},
    )


def _row_to_retrieval(row: Sequence[Any]) -> RetrievalLog:
    return RetrievalLog(
        id=row[0],
        project_id=row[1],
        query=row[2],
        method=row[3],
        chunk_ids=list(row[4] or []),
        scores=list(row[5] or []),
        retrieval_time_ms=row[6],
        chunks_scanned=row[7],
        tokens_used=row[8],
        cost=row[9],
        created_at=row[10],
    )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PgMetadataStore:
    """Postgres 元数据库。表结构见 `coderag.storage.pg.ensure_schema`。"""

    def __init__(self, connector: PgConnector) -> None:
        self._connector = connector
        self._closed = False

    async def create_index(self, project_id: str) -> CodebaseIndex:
        index = _new_index(project_id)
        await self._run(self._insert_index_sync, index)
        return index

    async def get_index(self, index_id: str) -> CodebaseIndex | None:
        return await self._run(self._get_index_sync, index_id)

    async def save_index(self, index: CodebaseIndex) -> None:
        await self._run(self._save_index_sync, index)

    async def try_begin_update(self, index_id: str) -> bool:
        return await self._run(self._try_begin_update_sync, index_id)

    async def upsert_chunks(self, chunks: Sequence[DocumentChunk]) -> None:
        if not chunks:
            return
        await self._run(self._upsert_chunks_sync, list(chunks))

    async def list_chunks(self, index_id: str, file_path: str | None = None) -> list[DocumentChunk]:
        return await self._run(self._list_chunks_sync, index_id, file_path)

    async def delete_chunks(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._run(self._delete_chunks_sync, list(ids))

    async def search_chunks_by_keywords(self, filter: ChunkFilter, keywords: Sequence[str], limit: int) -> list[DocumentChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if not keywords:
            return []
        return await self._run(self._search_keywords_sync, filter, list(keywords), limit)

    async def delete_index(self, index_id: str) -> None:
        await self._run(self._delete_index_sync, index_id)

    async def record_retrieval(self, log: RetrievalLog) -> None:
        await self._run(self._insert_retrieval_sync, log)

    async def list_retrievals(self, project_id: str, method: RetrievalMethod, since: datetime) -> list[RetrievalLog]:
        return await self._run(self._list_retrievals_sync, project_id, method, since)

    async def close(self) -> None:
        self._closed = True

    async def _run(self, func: Any, *args: Any) -> Any:
        try:
            return await anyio.to_thread.run_sync(func, *args)
        except psycopg.Error as exc:
            logger.error(f"Metadata store error in {func.__name__}: {exc}")
            raise MetadataStoreError(f"Metadata store operation failed: {exc}") from exc

    def _insert_index_sync(self, index: CodebaseIndex) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO codebase_index ({_INDEX_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        index.id,
                        index.project_id,
                        index.status,
                        index.total_files,
                        index.total_chunks,
                        index.cost,
                        index.tokens_used,
                        index.started_at,
                        index.completed_at,
                        index.failure_reason,
                    ),
                )
            conn.commit()

    def _get_index_sync(self, index_id: str) -> CodebaseIndex | None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_INDEX_COLUMNS} FROM codebase_index WHERE id = %s", (index_id,))
                row = cur.fetchone()
        return _row_to_index(row) if row is not None else None

    def _save_index_sync(self, index: CodebaseIndex) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE codebase_index
                    SET status = %s, total_files = %s, total_chunks = %s, cost = %s, tokens_used = %s,
                        started_at = %s, completed_at = %s, failure_reason = %s
                    WHERE id = %s
                    """,
                    (
                        index.status,
                        index.total_files,
                        index.total_chunks,
                        index.cost,
                        index.tokens_used,
                        index.started_at,
                        index.completed_at,
                        index.failure_reason,
                        index.id,
                    ),
                )
                if cur.rowcount == 0:
                    raise MetadataStoreError(f"Index {index.id} not found")
            conn.commit()

    def _try_begin_update_sync(self, index_id: str) -> bool:
        # 单条 UPDATE ... WHERE status IN (...) 即 check-and-set
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE codebase_index SET status = 'UPDATING', failure_reason = NULL
                    WHERE id = %s AND status = ANY(%s)
                    RETURNING id
                    """,
                    (index_id, list(UPDATABLE_STATUSES)),
                )
                row = cur.fetchone()
            conn.commit()
        return row is not None

    def _upsert_chunks_sync(self, chunks: list[DocumentChunk]) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    f"""
                    INSERT INTO document_chunks ({_CHUNK_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (codebase_index_id, file_path, chunk_index)
                    DO UPDATE SET start_line = EXCLUDED.start_line, end_line = EXCLUDED.end_line,
                        content = EXCLUDED.content, content_hash = EXCLUDED.content_hash,
                        language = EXCLUDED.language, chunk_type = EXCLUDED.chunk_type,
                        metadata = EXCLUDED.metadata
                    """,
                    [
                        (
                            c.id,
                            c.codebase_index_id,
                            c.file_path,
                            c.start_line,
                            c.end_line,
                            c.chunk_index,
                            c.content,
                            c.content_hash,
                            c.language,
                            c.chunk_type,
                            c.vector_point_id,
                            Jsonb(c.metadata),
                        )
                        for c in chunks
                    ],
                )
            conn.commit()

    def _list_chunks_sync(self, index_id: str, file_path: str | None) -> list[DocumentChunk]:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                if file_path is None:
                    cur.execute(
                        f"SELECT {_CHUNK_COLUMNS} FROM document_chunks WHERE codebase_index_id = %s "
                        "ORDER BY file_path, chunk_index",
                        (index_id,),
                    )
                else:
                    cur.execute(
                        f"SELECT {_CHUNK_COLUMNS} FROM document_chunks WHERE codebase_index_id = %s AND file_path = %s "
                        "ORDER BY chunk_index",
                        (index_id, file_path),
                    )
                rows = cur.fetchall()
        return [_row_to_chunk(row) for row in rows]

    def _delete_chunks_sync(self, ids: list[str]) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM document_chunks WHERE id = ANY(%s)", (ids,))
            conn.commit()

    def _search_keywords_sync(self, filter: ChunkFilter, keywords: list[str], limit: int) -> list[DocumentChunk]:
        conditions = ["i.project_id = %s", "c.content ILIKE ANY(%s)"]
        params: list[Any] = [filter.project_id, [f"%{_escape_like(k)}%" for k in keywords]]
        if filter.language is not None:
            conditions.append("c.language = %s")
            params.append(filter.language)
        if filter.chunk_type is not None:
            conditions.append("c.chunk_type = %s")
            params.append(filter.chunk_type)
        if filter.file_paths:
            conditions.append("c.file_path = ANY(%s)")
            params.append(list(filter.file_paths))
        lowered = [k.lower() for k in keywords]
        params.extend([lowered, limit])
        columns = ", ".join(f"c.{col.strip()}" for col in _CHUNK_COLUMNS.split(","))
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {columns}
                    FROM document_chunks c
                    JOIN codebase_index i ON i.id = c.codebase_index_id
                    WHERE {" AND ".join(conditions)}
                    ORDER BY (
                        SELECT COALESCE(SUM((length(lower(c.content)) - length(replace(lower(c.content), k, ''))) / length(k)), 0)
                        FROM unnest(%s::text[]) AS k
                    ) DESC, c.file_path, c.chunk_index
                    LIMIT %s
                    """,
                    params,
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row) for row in rows]

    def _delete_index_sync(self, index_id: str) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM document_chunks WHERE codebase_index_id = %s", (index_id,))
                cur.execute("DELETE FROM codebase_index WHERE id = %s", (index_id,))
            conn.commit()

    def _insert_retrieval_sync(self, log: RetrievalLog) -> None:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO rag_retrieval ({_RETRIEVAL_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        log.id,
                        log.project_id,
                        log.query,
                        log.method,
                        log.chunk_ids,
                        log.scores,
                        log.retrieval_time_ms,
                        log.chunks_scanned,
                        log.tokens_used,
                        log.cost,
                        log.created_at,
                    ),
                )
            conn.commit()

    def _list_retrievals_sync(self, project_id: str, method: str, since: datetime) -> list[RetrievalLog]:
        with self._connector.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_RETRIEVAL_COLUMNS} FROM rag_retrieval "
                    "WHERE project_id = %s AND method = %s AND created_at >= %s ORDER BY created_at",
                    (project_id, method, since),
                )
                rows = cur.fetchall()
        return [_row_to_retrieval(row) for row in rows]
