"""
语义检索（Semantic Retriever）。

流程：cache → embedding(query) → 向量库 search（project_id 必填）→ 写 cache → 按阈值过滤 → 写检索记录。

约定：
- 缓存里存的是阈值过滤之前的结果，所以不同 score_threshold 可以共用同一个缓存项
- embedding / 向量库失败统一抛 `RetrievalError`，不返回部分结果
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone

import anyio
from pydantic import TypeAdapter, ValidationError

from coderag.errors import EmbeddingError
from coderag.errors import RetrievalError
from coderag.errors import VectorStoreError
from coderag.infra.cache import Cache
from coderag.llm.client import EmbeddingClient
from coderag.llm.client import embedding_price_per_token
from coderag.retrieval.models import RetrievalFilter
from coderag.retrieval.models import RetrievalResult
from coderag.retrieval.models import result_from_hit
from coderag.retrieval.stats import RetrievalStats
from coderag.retrieval.stats import load_stats
from coderag.retrieval.stats import record_retrieval
from coderag.storage.metadata_store import MetadataStore
from coderag.storage.models import RetrievalLog
from coderag.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
DEFAULT_SCORE_THRESHOLD = 0.3
DEFAULT_CACHE_TTL_SECONDS = 300.0

_RESULTS_ADAPTER = TypeAdapter(list[RetrievalResult])


def build_cache_key(query: str, project_id: str, top_k: int, filter: RetrievalFilter | None) -> str:
    raw = json.dumps(
        {
            "query": query,
            "project_id": project_id,
            "top_k": top_k,
            "filter": filter.model_dump() if filter is not None else None,
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return "retrieval:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SemanticRetriever:
    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        cache: Cache | None = None,
        default_top_k: int = DEFAULT_TOP_K,
        default_score_threshold: float = DEFAULT_SCORE_THRESHOLD,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        retrieval_log: MetadataStore | None = None,
        embedding_model: str | None = None,
    ) -> None:
        """
        - retrieval_log：写检索记录 / `get_stats` 用的元数据库；不传则不记录
        - embedding_model：用于计算 query embedding 的成本；不传则 cost 记为 0
        """
        if default_top_k <= 0:
            raise ValueError("default_top_k must be > 0")
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._cache = cache
        self._default_top_k = default_top_k
        self._default_score_threshold = default_score_threshold
        self._cache_ttl_seconds = cache_ttl_seconds
        self._retrieval_log = retrieval_log
        self._embedding_model = embedding_model
        self._closed = False

    async def retrieve(
        self,
        query: str,
        project_id: str,
        top_k: int | None = None,
        filter: RetrievalFilter | None = None,
        score_threshold: float | None = None,
    ) -> list[RetrievalResult]:
        """
        检索与 query 最相关的 chunk。

        - 输出：按 score 降序，长度 ≤ top_k；没有结果是合法的（空列表）
        - 失败：`RetrievalError`
        """
        if not query.strip():
            raise ValueError("query must be non-empty")
        if not project_id:
            raise ValueError("project_id must be non-empty")
        k = top_k if top_k is not None else self._default_top_k
        if k <= 0:
            raise ValueError("top_k must be > 0")
        threshold = score_threshold if score_threshold is not None else self._default_score_threshold
        started = time.perf_counter()

        tokens_used = 0
        key = build_cache_key(query=query, project_id=project_id, top_k=k, filter=filter)
        results = await self._read_cache(key)
        if results is None:
            results, tokens_used = await self._search(query=query, project_id=project_id, top_k=k, filter=filter)
            if self._cache is not None:
                await self._cache.set(key, _RESULTS_ADAPTER.dump_json(results).decode("utf-8"), self._cache_ttl_seconds)
        else:
            logger.debug(f"Retrieval cache hit: project={project_id}, top_k={k}")

        kept = [r for r in results if r.score >= threshold]
        if self._retrieval_log is not None:
            await record_retrieval(
                self._retrieval_log,
                RetrievalLog(
                    project_id=project_id,
                    query=query,
                    method="semantic",
                    chunk_ids=[r.chunk_id for r in kept],
                    scores=[r.score for r in kept],
                    retrieval_time_ms=(time.perf_counter() - started) * 1000,
                    chunks_scanned=len(results),
                    tokens_used=tokens_used,
                    cost=self._cost(tokens_used),
                    created_at=datetime.now(timezone.utc),
                ),
            )
        return kept

    async def retrieve_multiple(
        self,
        queries: Sequence[str],
        project_id: str,
        top_k_per_query: int | None = None,
        filter: RetrievalFilter | None = None,
        score_threshold: float | None = None,
    ) -> list[RetrievalResult]:
        """多个 query 并发检索，按 chunk_id 去重（保留最高分），score 降序。"""
        if any(not q.strip() for q in queries):
            raise ValueError("queries must be non-empty strings")
        per_query: list[list[RetrievalResult]] = [[] for _ in queries]
        errors: list[RetrievalError] = []

        async def _one(i: int, q: str) -> None:
            try:
                per_query[i] = await self.retrieve(
                    query=q,
                    project_id=project_id,
                    top_k=top_k_per_query,
                    filter=filter,
                    score_threshold=score_threshold,
                )
            except RetrievalError as exc:
                errors.append(exc)

        async with anyio.create_task_group() as tg:
            for i, q in enumerate(queries):
                tg.start_soon(_one, i, q)
        if errors:
            raise errors[0]

        best: dict[str, RetrievalResult] = {}
        for results in per_query:
            for r in results:
                current = best.get(r.chunk_id)
                if current is None or r.score > current.score:
                    best[r.chunk_id] = r
        return sorted(best.values(), key=lambda r: (-r.score, r.file_path, r.chunk_index))

    async def get_stats(self, project_id: str, hours: float = 24.0) -> RetrievalStats:
        """最近 `hours` 小时内语义检索的汇总（检索次数、平均结果数、平均分、平均耗时、总成本）。"""
        if self._retrieval_log is None:
            raise RetrievalError("Retrieval logging is not configured")
        return await load_stats(self._retrieval_log, project_id=project_id, method="semantic", hours=hours)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._embedding_client.close()
        await self._vector_store.close()
        if self._cache is not None:
            await self._cache.close()

    async def _read_cache(self, key: str) -> list[RetrievalResult] | None:
        if self._cache is None:
            return None
        raw = await self._cache.get(key)
        if raw is None:
            return None
        try:
            return _RESULTS_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.warning(f"Discarding malformed cache entry {key}: {exc}")
            return None

    async def _search(
        self,
        query: str,
        project_id: str,
        top_k: int,
        filter: RetrievalFilter | None,
    ) -> tuple[list[RetrievalResult], int]:
        chunk_filter = (filter or RetrievalFilter()).for_project(project_id)
        try:
            batch = await self._embedding_client.embed([query])
            hits = await self._vector_store.search(batch.vectors[0], chunk_filter, top_k)
        except (EmbeddingError, VectorStoreError) as exc:
            logger.error(f"Retrieval failed for project={project_id}: {exc}")
            raise RetrievalError(f"Retrieval failed: {exc}") from exc
        results = [result_from_hit(hit) for hit in hits]
        results.sort(key=lambda r: -r.score)
        logger.info(f"Retrieved {len(results)} chunk(s) for project={project_id}, top_k={top_k}")
        return results[:top_k], batch.tokens_used

    def _cost(self, tokens_used: int) -> float:
        if self._embedding_model is None:
            return 0.0
        return tokens_used * embedding_price_per_token(self._embedding_model)
