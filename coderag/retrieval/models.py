"""
检索领域模型（Pydantic）。

- `RetrievalFilter`：调用方可选的过滤条件（租户条件由 retriever 自己补上）
- `RetrievalResult`：一次检索返回的单个 chunk（临时对象，不持久化）
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from coderag.storage.models import ChunkFilter
from coderag.storage.models import ChunkType
from coderag.storage.models import DocumentChunk
from coderag.storage.models import VectorSearchHit


class RetrievalFilter(BaseModel):
    language: str | None = None
    chunk_type: ChunkType | None = None
    file_paths: list[str] | None = None

    def for_project(self, project_id: str) -> ChunkFilter:
        return ChunkFilter(
            project_id=project_id,
            language=self.language,
            chunk_type=self.chunk_type,
            file_paths=self.file_paths,
        )


class RetrievalResult(BaseModel):
    chunk_id: str
    file_path: str
    content: str
    score: float = Field(ge=0.0, le=1.0)
    language: str
    chunk_index: int
    chunk_type: ChunkType
    start_line: int
    end_line: int
    metadata: dict[str, str] = Field(default_factory=dict)


def clamp_score(score: float) -> float:
    return min(1.0, max(0.0, score))


def result_from_hit(hit: VectorSearchHit) -> RetrievalResult:
    payload: dict[str, Any] = hit.payload
    metadata: dict[str, str] = {}
    if payload.get("name"):
        metadata["name"] = str(payload["name"])
    return RetrievalResult(
        chunk_id=hit.id,
        file_path=payload["file_path"],
        content=payload["content"],
        score=clamp_score(hit.score),
        language=payload["language"],
        chunk_index=int(payload["chunk_index"]),
        chunk_type=payload["chunk_type"],
        start_line=int(payload["start_line"]),
        end_line=int(payload["end_line"]),
        metadata=metadata,
    )


def result_from_chunk(chunk: DocumentChunk, score: float) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=chunk.id,
        file_path=chunk.file_path,
        content=chunk.content,
        score=clamp_score(score),
        language=chunk.language,
        chunk_index=chunk.chunk_index,
        chunk_type=chunk.chunk_type,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        metadata=dict(chunk.metadata),
    )
