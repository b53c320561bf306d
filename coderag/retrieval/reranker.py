"""
LLM 重排（Reranker）。

约定：
- prompt 只列出前 `max_candidates` 个候选（输入已按分数排序），每个只给 400 字符预览，控制 token 成本
- 模型输出：每行一个下标；合法且不重复的下标映射回原对象，没被排到的候选按原顺序跟在后面
- 生成失败 / 解析不出任何下标：返回输入的前 top_k 个，顺序不变。`rerank` 永远不抛异常
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

import anyio

from coderag.errors import RerankError
from coderag.llm.client import GenerationClient
from coderag.retrieval.models import RetrievalResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 20
PREVIEW_CHARS = 400

_INDEX_LINE_RE = re.compile(r"^\s*\[?(\d+)\]?[.)]?\s*$")


def build_rerank_prompt(query: str, candidates: Sequence[RetrievalResult]) -> str:
    parts: list[str] = [
        "Given this user query:",
        f'"{query}"',
        "",
        "Rank these code snippets by relevance (most relevant first). Consider:",
        "- How well the code addresses the query",
        "- Relevance to the task described",
        "",
        "Code snippets:",
        "",
    ]
    for idx, candidate in enumerate(candidates):
        preview = candidate.content[:PREVIEW_CHARS]
        ellipsis = "..." if len(candidate.content) > PREVIEW_CHARS else ""
        parts.append(f"[{idx}] File: {candidate.file_path}")
        parts.append(f"Type: {candidate.chunk_type} | Language: {candidate.language}")
        parts.append(f"Code:\n{preview}{ellipsis}")
        parts.append("")
    parts.append("Respond with ONLY the indices in order of relevance, one per line.")
    parts.append("Your response (indices only, most relevant first):")
    return "\n".join(parts)


def parse_rankings(text: str, size: int) -> list[int]:
    """每行一个下标；越界 / 重复 / 无法解析的行忽略。"""
    rankings: list[int] = []
    for line in text.strip().splitlines():
        match = _INDEX_LINE_RE.match(line)
        if match is None:
            continue
        idx = int(match.group(1))
        if idx < size and idx not in rankings:
            rankings.append(idx)
    return rankings


class LLMReranker:
    def __init__(self, generation_client: GenerationClient, max_candidates: int = DEFAULT_MAX_CANDIDATES) -> None:
        if max_candidates <= 0:
            raise ValueError("max_candidates must be > 0")
        self._generation_client = generation_client
        self._max_candidates = max_candidates

    async def rerank(self, query: str, candidates: Sequence[RetrievalResult], top_k: int = 5) -> list[RetrievalResult]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        if len(candidates) <= 1:
            return list(candidates[:top_k])

        try:
            reranked = await self._rerank(query=query, candidates=candidates)
        except Exception as exc:
            logger.warning(f"Reranking failed, keeping original order: {exc}")
            return list(candidates[:top_k])
        return reranked[:top_k]

    async def rerank_batch(
        self,
        requests: Sequence[tuple[str, Sequence[RetrievalResult]]],
        top_k: int = 5,
    ) -> list[list[RetrievalResult]]:
        """多个 (query, candidates) 并发重排，输出顺序与输入一致。"""
        outputs: list[list[RetrievalResult]] = [[] for _ in requests]

        async def _one(i: int, query: str, candidates: Sequence[RetrievalResult]) -> None:
            outputs[i] = await self.rerank(query=query, candidates=candidates, top_k=top_k)

        async with anyio.create_task_group() as tg:
            for i, (query, candidates) in enumerate(requests):
                tg.start_soon(_one, i, query, candidates)
        logger.info(f"Batch reranking completed: queries={len(requests)}, results={sum(len(o) for o in outputs)}")
        return outputs

    async def _rerank(self, query: str, candidates: Sequence[RetrievalResult]) -> list[RetrievalResult]:
        window = list(candidates[: self._max_candidates])
        text = await self._generation_client.generate(build_rerank_prompt(query=query, candidates=window))
        rankings = parse_rankings(text=text, size=len(window))
        if not rankings:
            raise RerankError(f"No usable indices in reranker output: {text[:100]!r}")

        ranked = set(rankings)
        ordered = [window[i] for i in rankings]
        ordered.extend(c for i, c in enumerate(window) if i not in ranked)
        ordered.extend(candidates[self._max_candidates :])
        logger.info(f"Reranked {len(window)} candidate(s): {len(rankings)} ranked by the model")
        return ordered
