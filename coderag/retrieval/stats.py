"""
检索记录与统计。

- 每次检索写一条 `RetrievalLog`（best effort：写失败只记日志，不影响检索结果）
- `load_stats`：按 project + method 汇总最近 N 小时的记录
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from coderag.errors import MetadataStoreError
from coderag.errors import RetrievalError
from coderag.storage.metadata_store import MetadataStore
from coderag.storage.models import RetrievalLog
from coderag.storage.models import RetrievalMethod

logger = logging.getLogger(__name__)


class RetrievalStats(BaseModel):
    total_retrievals: int = 0
    average_results: float = 0.0
    average_score: float = 0.0
    average_time_ms: float = 0.0
    total_cost: float = 0.0


def summarize_retrievals(logs: Sequence[RetrievalLog]) -> RetrievalStats:
    """average_score 是所有返回结果的平均分（不是每次检索平均分的平均）。"""
    if not logs:
        return RetrievalStats()
    score_count = sum(len(log.scores) for log in logs)
    return RetrievalStats(
        total_retrievals=len(logs),
        average_results=sum(len(log.chunk_ids) for log in logs) / len(logs),
        average_score=sum(sum(log.scores) for log in logs) / score_count if score_count else 0.0,
        average_time_ms=sum(log.retrieval_time_ms for log in logs) / len(logs),
        total_cost=sum(log.cost for log in logs),
    )


async def record_retrieval(store: MetadataStore, log: RetrievalLog) -> None:
    try:
        await store.record_retrieval(log)
    except MetadataStoreError as exc:
        logger.warning(f"Failed to record retrieval for project={log.project_id}: {exc}")


async def load_stats(
    store: MetadataStore,
    project_id: str,
    method: RetrievalMethod,
    hours: float = 24.0,
    now: datetime | None = None,
) -> RetrievalStats:
    if not project_id:
        raise ValueError("project_id must be non-empty")
    if hours <= 0:
        raise ValueError("hours must be > 0")
    since = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
    try:
        logs = await store.list_retrievals(project_id, method, since)
    except MetadataStoreError as exc:
        raise RetrievalError(f"Failed to load retrieval stats: {exc}") from exc
    return summarize_retrievals(logs)
