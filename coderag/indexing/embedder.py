"""
chunk embedding + 持久化记录构造（全量 / 增量索引共用）。

- `ChunkEmbedder`：按 batch 调 embedding（EmbeddingError 有界重试），可选 embedding 缓存
- `build_document_chunk` / `build_vector_point`：同一个 chunk 的两条记录共享确定性 id
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence

from coderag.errors import EmbeddingError
from coderag.infra.cache import Cache
from coderag.infra.retry import retry_async
from coderag.llm.client import EmbeddingBatch
from coderag.llm.client import EmbeddingClient
from coderag.storage.models import CodeChunk
from coderag.storage.models import DocumentChunk
from coderag.storage.models import VectorPoint
from coderag.storage.models import build_vector_point_id

logger = logging.getLogger(__name__)

DEFAULT_EMBED_BATCH_SIZE = 32
DEFAULT_EMBED_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 0.5


class ChunkEmbedder:
    """
    批量 embedding。

    - 输出顺序与输入一致
    - 缓存命中的文本不计 tokens（没有发生 provider 调用）
    - 重试耗尽后抛 `EmbeddingError`，由 indexer 决定跳过文件
    """

    def __init__(
        self,
        client: EmbeddingClient,
        model_name: str,
        batch_size: int = DEFAULT_EMBED_BATCH_SIZE,
        retry_attempts: int = DEFAULT_EMBED_RETRY_ATTEMPTS,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        cache: Cache | None = None,
        cache_ttl_seconds: float = 86400.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._client = client
        self._model_name = model_name
        self._batch_size = batch_size
        self._retry_attempts = retry_attempts
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        if not texts:
            return EmbeddingBatch(vectors=[], tokens_used=0)

        vectors: list[list[float] | None] = [None] * len(texts)
        if self._cache is not None:
            for i, text in enumerate(texts):
                cached = await self._cache.get(self._cache_key(text))
                if cached is not None:
                    vectors[i] = json.loads(cached)

        pending = [i for i, v in enumerate(vectors) if v is None]
        tokens_used = 0
        for start in range(0, len(pending), self._batch_size):
            positions = pending[start : start + self._batch_size]
            batch_texts = [texts[i] for i in positions]
            batch = await retry_async(
                lambda: self._client.embed(batch_texts),
                attempts=self._retry_attempts,
                base_delay_seconds=self._retry_base_delay_seconds,
                retry_on=(EmbeddingError,),
                description=f"Embedding batch of {len(batch_texts)}",
            )
            if len(batch.vectors) != len(batch_texts):
                raise EmbeddingError(f"Embedding count mismatch: expected {len(batch_texts)}, got {len(batch.vectors)}")
            tokens_used += batch.tokens_used
            for pos, vector in zip(positions, batch.vectors):
                vectors[pos] = vector
                if self._cache is not None:
                    await self._cache.set(self._cache_key(texts[pos]), json.dumps(vector), self._cache_ttl_seconds)

        logger.debug(f"Embedded {len(texts)} text(s): {len(pending)} from provider, tokens={tokens_used}")
        return EmbeddingBatch(vectors=[v for v in vectors if v is not None], tokens_used=tokens_used)

    async def close(self) -> None:
        await self._client.close()

    def _cache_key(self, text: str) -> str:
        digest = hashlib.sha256(f"{self._model_name}\x00{text}".encode("utf-8")).hexdigest()
        return f"emb:{digest}"


def build_document_chunk(codebase_index_id: str, file_path: str, chunk: CodeChunk) -> DocumentChunk:
    point_id = build_vector_point_id(codebase_index_id=codebase_index_id, file_path=file_path, chunk_index=chunk.chunk_index)
    return DocumentChunk(
        id=point_id,
        codebase_index_id=codebase_index_id,
        file_path=file_path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        content_hash=chunk.content_hash,
        language=chunk.language,
        chunk_type=chunk.chunk_type,
        vector_point_id=point_id,
        metadata=dict(chunk.metadata),
    )


def build_vector_point(project_id: str, document: DocumentChunk, vector: list[float]) -> VectorPoint:
    return VectorPoint(
        id=document.vector_point_id,
        vector=vector,
        payload={
            "project_id": project_id,
            "codebase_index_id": document.codebase_index_id,
            "file_path": document.file_path,
            "chunk_index": document.chunk_index,
            "chunk_type": document.chunk_type,
            "language": document.language,
            "start_line": document.start_line,
            "end_line": document.end_line,
            "content": document.content,
            "name": document.metadata.get("name"),
        },
    )
