"""
存储层领域模型（Pydantic）。

- `CodeChunk`：chunker 的输出（未持久化）
- `CodebaseIndex` / `DocumentChunk`：元数据库中的两张表
- `VectorPoint` / `ChunkFilter` / `VectorSearchHit`：向量库的读写结构
- `RetrievalLog`：每次检索一条记录（统计用）
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

IndexStatus = Literal["PENDING", "INDEXING", "COMPLETED", "FAILED", "UPDATING"]
ChunkType = Literal["module", "function", "class"]
RetrievalMethod = Literal["semantic", "hybrid"]

# 固定 namespace：同一个 (index, path, chunk_index) 永远映射到同一个 point id
_POINT_ID_NAMESPACE = uuid.UUID("5b0c7f1e-3d0a-4f55-9a53-2f4f3c8c6a10")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_vector_point_id(codebase_index_id: str, file_path: str, chunk_index: int) -> str:
    """(codebase_index_id, file_path, chunk_index) -> 稳定的 UUID 字符串（幂等 upsert / 定向删除）。"""
    if chunk_index < 0:
        raise ValueError("chunk_index must be >= 0")
    return str(uuid.uuid5(_POINT_ID_NAMESPACE, f"{codebase_index_id}\x00{file_path}\x00{chunk_index}"))


class CodeChunk(BaseModel):
    """单个文件切分出的一个片段。"""

    content: str
    start_line: int
    end_line: int
    chunk_index: int
    chunk_type: ChunkType
    language: str
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        return sha256_text(self.content)


class CodebaseIndex(BaseModel):
    """一个 (repository, project) 的索引记录。"""

    id: str
    project_id: str
    status: IndexStatus
    total_files: int = 0
    total_chunks: int = 0
    cost: float = 0.0
    tokens_used: int = 0
    started_at: datetime
    completed_at: datetime | None = None
    failure_reason: str | None = None


class DocumentChunk(BaseModel):
    """持久化的 chunk 行；`id` 与 `vector_point_id` 相同。"""

    id: str
    codebase_index_id: str
    file_path: str
    start_line: int
    end_line: int
    chunk_index: int
    content: str
    content_hash: str
    language: str
    chunk_type: ChunkType
    vector_point_id: str
    metadata: dict[str, str] = Field(default_factory=dict)


class VectorPoint(BaseModel):
    id: str
    vector: list[float]
    payload: dict[str, Any]


class ChunkFilter(BaseModel):
    """
    chunk 检索过滤条件（向量检索与关键词检索共用）。

    `project_id` 是必填项：两个 store 的检索一定会带上租户条件，
    不存在“忘了加过滤”的代码路径。
    """

    project_id: str = Field(min_length=1)
    language: str | None = None
    chunk_type: ChunkType | None = None
    file_paths: list[str] | None = None


class VectorSearchHit(BaseModel):
    id: str
    score: float
    payload: dict[str, Any]


class RetrievalLog(BaseModel):
    """一次检索的记录：命中的 chunk、分数、耗时与 embedding 成本。"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    query: str
    method: RetrievalMethod
    chunk_ids: list[str] = Field(default_factory=list)
    scores: list[float] = Field(default_factory=list)
    retrieval_time_ms: float = 0.0
    chunks_scanned: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    created_at: datetime
