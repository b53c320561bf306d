"""
向量库（Vector Store）。

- `VectorStore` Protocol：upsert / search / delete / close
- `PgVectorStore`：pgvector 实现（一个 deployment 一个 collection 表，记录按 project_id 隔离）
- `InMemoryVectorStore`：进程内实现（开发 / 测试）

租户隔离：`search` 的 filter 类型是 `ChunkFilter`，其 `project_id` 必填，
两种实现都把它作为查询条件的一部分，而不是对结果做事后检查。
"""

from __future__ import annotations

import logging
import math
from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import anyio
import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from coderag.errors import VectorStoreError
from coderag.storage.models import VectorPoint
from coderag.storage.models import ChunkFilter
from coderag.storage.models import VectorSearchHit
from coderag.storage.pg import PgConnector

logger = logging.getLogger(__name__)


class VectorStore(Protocol):
    async def upsert(self, points: Sequence[VectorPoint]) -> None: ...

    async def search(self, vector: Sequence[float], filter: ChunkFilter, top_k: int) -> list[VectorSearchHit]: ...

    async def delete(self, ids: Sequence[str]) -> None: ...

    async def close(self) -> None: ...


def _check_payload(point: VectorPoint) -> str:
    project_id = point.payload.get("project_id")
    if not isinstance(project_id, str) or not project_id:
        raise ValueError(f"Vector point {point.id} has no project_id in payload")
    return project_id


def _matches(payload: dict[str, Any], filter: ChunkFilter) -> bool:
    if payload.get("project_id") != filter.project_id:
        return False
    if filter.language is not None and payload.get("language") != filter.language:
        return False
    if filter.chunk_type is not None and payload.get("chunk_type") != filter.chunk_type:
        return False
    if filter.file_paths and payload.get("file_path") not in filter.file_paths:
        return False
    return True


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise VectorStoreError(f"Vector dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return dot / norm


@dataclass
class InMemoryVectorStore:
    """内存向量库：暴力余弦相似度，只用于开发/测试。"""

    points: MutableMapping[str, VectorPoint] = field(default_factory=dict)
    closed: bool = False

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        for point in points:
            _check_payload(point)
            self.points[point.id] = point.model_copy(deep=True)

    async def search(self, vector: Sequence[float], filter: ChunkFilter, top_k: int) -> list[VectorSearchHit]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        scored = [
            VectorSearchHit(id=point.id, score=_cosine(vector, point.vector), payload=dict(point.payload))
            for point in self.points.values()
            if _matches(point.payload, filter)
        ]
        scored.sort(key=lambda h: (-h.score, h.id))
        return scored[:top_k]

    async def delete(self, ids: Sequence[str]) -> None:
        for point_id in ids:
            self.points.pop(point_id, None)

    async def close(self) -> None:
        self.closed = True


class PgVectorStore:
    """pgvector 实现；score = 1 - cosine distance。"""

    def __init__(self, connector: PgConnector, collection: str) -> None:
        if not collection:
            raise ValueError("collection must be non-empty")
        self._connector = connector
        self._table = sql.Identifier(collection)
        self._closed = False

    async def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        for point in points:
            _check_payload(point)
        await anyio.to_thread.run_sync(self._upsert_sync, list(points))

    async def search(self, vector: Sequence[float], filter: ChunkFilter, top_k: int) -> list[VectorSearchHit]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        return await anyio.to_thread.run_sync(self._search_sync, list(vector), filter, top_k)

    async def delete(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        await anyio.to_thread.run_sync(self._delete_sync, list(ids))

    async def close(self) -> None:
        self._closed = True

    def _upsert_sync(self, points: list[VectorPoint]) -> None:
        query = sql.SQL(
            """
            INSERT INTO {table} (id, project_id, embedding, payload)
            VALUES (%s, %s, %s::vector, %s)
            ON CONFLICT (id)
            DO UPDATE SET project_id = EXCLUDED.project_id, embedding = EXCLUDED.embedding, payload = EXCLUDED.payload
            """
        ).format(table=self._table)
        try:
            with self._connector.connect() as conn:
                with conn.cursor() as cur:
                    cur.executemany(
                        query,
                        [(p.id, p.payload["project_id"], p.vector, Jsonb(p.payload)) for p in points],
                    )
                conn.commit()
        except psycopg.Error as exc:
            logger.error(f"Vector upsert failed ({len(points)} points): {exc}")
            raise VectorStoreError(f"Vector upsert failed: {exc}") from exc

    def _search_sync(self, vector: list[float], filter: ChunkFilter, top_k: int) -> list[VectorSearchHit]:
        conditions = [sql.SQL("project_id = %s")]
        params: list[Any] = [vector, filter.project_id]
        if filter.language is not None:
            conditions.append(sql.SQL("payload->>'language' = %s"))
            params.append(filter.language)
        if filter.chunk_type is not None:
            conditions.append(sql.SQL("payload->>'chunk_type' = %s"))
            params.append(filter.chunk_type)
        if filter.file_paths:
            conditions.append(sql.SQL("payload->>'file_path' = ANY(%s)"))
            params.append(list(filter.file_paths))
        params.extend([vector, top_k])

        query = sql.SQL(
            """
            SELECT id, 1 - (embedding <=> %s::vector) AS score, payload
            FROM {table}
            WHERE {where}
            ORDER BY embedding <=> %s::vector
            LIMIT %s
            """
        ).format(table=self._table, where=sql.SQL(" AND ").join(conditions))
        try:
            with self._connector.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()
        except psycopg.Error as exc:
            logger.error(f"Vector search failed: {exc}")
            raise VectorStoreError(f"Vector search failed: {exc}") from exc
        return [VectorSearchHit(id=row[0], score=float(row[1]), payload=row[2]) for row in rows]

    def _delete_sync(self, ids: list[str]) -> None:
        query = sql.SQL("DELETE FROM {table} WHERE id = ANY(%s)").format(table=self._table)
        try:
            with self._connector.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (ids,))
                conn.commit()
        except psycopg.Error as exc:
            logger.error(f"Vector delete failed ({len(ids)} ids): {exc}")
            raise VectorStoreError(f"Vector delete failed: {exc}") from exc
