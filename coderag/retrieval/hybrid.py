"""
混合检索（Hybrid Retriever）：语义检索 + 关键词包含匹配。

打分：
- keyword score：每个关键词每出现一次 +0.1，整词命中再 +0.2，上限 1.0
- combined = semantic_weight × semantic + keyword_weight × keyword（默认 0.7 / 0.3）
- 同一个 chunk 只出现一次（按 chunk_id 合并两路分数）

排序：combined 降序 → semantic 降序 → file_path → chunk_index（输出确定）。

每次检索写一条 method="hybrid" 的记录（内部的语义检索另记一条 "semantic"）。
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from coderag.errors import MetadataStoreError
from coderag.errors import RetrievalError
from coderag.llm.client import estimate_tokens
from coderag.retrieval.models import RetrievalFilter
from coderag.retrieval.models import RetrievalResult
from coderag.retrieval.models import clamp_score
from coderag.retrieval.models import result_from_chunk
from coderag.retrieval.semantic import SemanticRetriever
from coderag.retrieval.stats import RetrievalStats
from coderag.retrieval.stats import load_stats
from coderag.retrieval.stats import record_retrieval
from coderag.storage.metadata_store import MetadataStore
from coderag.storage.models import RetrievalLog

logger = logging.getLogger(__name__)

DEFAULT_SEMANTIC_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3
MIN_KEYWORD_LENGTH = 3

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
        "be", "have", "has", "had", "do", "does", "did", "will", "would", "should",
        "could", "may", "might", "must", "can", "this", "that", "these", "those",
    }
)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def extract_keywords(query: str, min_length: int = MIN_KEYWORD_LENGTH) -> list[str]:
    """小写 token（字母/数字/下划线），去掉短词和停用词；保持首次出现的顺序。"""
    seen: set[str] = set()
    keywords: list[str] = []
    for token in _TOKEN_RE.findall(query.lower()):
        if len(token) < min_length or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords


def score_keyword_match(content: str, keywords: Sequence[str]) -> float:
    lowered = content.lower()
    score = 0.0
    for keyword in keywords:
        score += lowered.count(keyword) * 0.1
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            score += 0.2
    return min(score, 1.0)


@dataclass
class _Candidate:
    result: RetrievalResult
    semantic: float = 0.0
    keyword: float = 0.0


class HybridRetriever:
    def __init__(
        self,
        semantic: SemanticRetriever,
        metadata_store: MetadataStore,
        semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
        min_keyword_length: int = MIN_KEYWORD_LENGTH,
        semantic_score_threshold: float = 0.0,
    ) -> None:
        if semantic_weight < 0 or keyword_weight < 0:
            raise ValueError("weights must be >= 0")
        if semantic_weight + keyword_weight > 1.0 + 1e-9:
            raise ValueError("semantic_weight + keyword_weight must be <= 1")
        if semantic_weight < keyword_weight:
            raise ValueError("semantic_weight must be >= keyword_weight")
        self._semantic = semantic
        self._metadata_store = metadata_store
        self._semantic_weight = semantic_weight
        self._keyword_weight = keyword_weight
        self._min_keyword_length = min_keyword_length
        self._semantic_score_threshold = semantic_score_threshold
        self._closed = False

    async def retrieve(
        self,
        query: str,
        project_id: str,
        top_k: int = 10,
        filter: RetrievalFilter | None = None,
    ) -> list[RetrievalResult]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        candidate_k = top_k * 2
        started = time.perf_counter()
        chunks_scanned = 0

        semantic_results = await self._semantic.retrieve(
            query=query,
            project_id=project_id,
            top_k=candidate_k,
            filter=filter,
            score_threshold=self._semantic_score_threshold,
        )

        candidates: dict[str, _Candidate] = {}
        for r in semantic_results:
            current = candidates.get(r.chunk_id)
            if current is None or r.score > current.semantic:
                candidates[r.chunk_id] = _Candidate(result=r, semantic=r.score)

        keywords = extract_keywords(query, min_length=self._min_keyword_length)
        if keywords:
            chunk_filter = (filter or RetrievalFilter()).for_project(project_id)
            try:
                chunks = await self._metadata_store.search_chunks_by_keywords(chunk_filter, keywords, candidate_k * 2)
            except MetadataStoreError as exc:
                logger.error(f"Keyword search failed for project={project_id}: {exc}")
                raise RetrievalError(f"Keyword search failed: {exc}") from exc
            chunks_scanned = len(chunks)
            for chunk in chunks:
                kw_score = score_keyword_match(chunk.content, keywords)
                current = candidates.get(chunk.id)
                if current is None:
                    candidates[chunk.id] = _Candidate(result=result_from_chunk(chunk, score=0.0), keyword=kw_score)
                else:
                    current.keyword = max(current.keyword, kw_score)
        else:
            logger.debug("No keywords extracted from query, semantic results only")

        merged: list[tuple[float, _Candidate]] = [
            (clamp_score(self._semantic_weight * c.semantic + self._keyword_weight * c.keyword), c)
            for c in candidates.values()
        ]
        merged.sort(key=lambda x: (-x[0], -x[1].semantic, x[1].result.file_path, x[1].result.chunk_index))
        results = [c.result.model_copy(update={"score": combined}) for combined, c in merged[:top_k]]
        logger.info(
            f"Hybrid retrieval: project={project_id}, semantic={len(semantic_results)}, "
            f"keywords={len(keywords)}, merged={len(merged)}, returned={len(results)}"
        )
        await record_retrieval(
            self._metadata_store,
            RetrievalLog(
                project_id=project_id,
                query=query,
                method="hybrid",
                chunk_ids=[r.chunk_id for r in results],
                scores=[r.score for r in results],
                retrieval_time_ms=(time.perf_counter() - started) * 1000,
                chunks_scanned=len(semantic_results) + chunks_scanned,
                tokens_used=estimate_tokens(query),
                created_at=datetime.now(timezone.utc),
            ),
        )
        return results

    async def get_stats(self, project_id: str, hours: float = 24.0) -> RetrievalStats:
        return await load_stats(self._metadata_store, project_id=project_id, method="hybrid", hours=hours)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._semantic.close()
        await self._metadata_store.close()
