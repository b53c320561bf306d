from __future__ import annotations

import pytest

from coderag.retrieval.models import RetrievalResult
from coderag.retrieval.reranker import LLMReranker
from coderag.retrieval.reranker import build_rerank_prompt
from coderag.retrieval.reranker import parse_rankings
from fakes import FakeGenerationClient


def _candidates(n: int) -> list[RetrievalResult]:
    return [
        RetrievalResult(
            chunk_id=f"c{i}",
            file_path=f"f{i}.py",
            content=f"def f{i}(): pass",
            score=1.0 - i * 0.01,
            language="python",
            chunk_index=0,
            chunk_type="function",
            start_line=1,
            end_line=1,
        )
        for i in range(n)
    ]


def test_parse_rankings_ignores_noise() -> None:
    text = "2\n[0]\n1.\nfoo\n2\n9\n  3)  \n"
    assert parse_rankings(text, size=4) == [2, 0, 1, 3]


def test_prompt_truncates_previews() -> None:
    [candidate] = _candidates(1)
    long = candidate.model_copy(update={"content": "x" * 1000})
    prompt = build_rerank_prompt("query", [long])
    assert "x" * 400 + "..." in prompt
    assert "x" * 401 not in prompt
    assert "[0] File: f0.py" in prompt


@pytest.mark.anyio
async def test_rerank_applies_model_order() -> None:
    candidates = _candidates(5)
    reranker = LLMReranker(generation_client=FakeGenerationClient(reply="3\n1\n"))
    result = await reranker.rerank("q", candidates, top_k=4)
    assert [r.chunk_id for r in result] == ["c3", "c1", "c0", "c2"]
    assert result[0] is candidates[3]


@pytest.mark.anyio
async def test_generation_error_falls_back_to_input_order() -> None:
    candidates = _candidates(6)
    reranker = LLMReranker(generation_client=FakeGenerationClient(error=RuntimeError("provider down")))
    result = await reranker.rerank("q", candidates, top_k=3)
    assert result == candidates[:3]


@pytest.mark.anyio
async def test_unparseable_reply_falls_back() -> None:
    candidates = _candidates(4)
    reranker = LLMReranker(generation_client=FakeGenerationClient(reply="I think the second one is best"))
    result = await reranker.rerank("q", candidates, top_k=2)
    assert result == candidates[:2]


@pytest.mark.anyio
async def test_only_bounded_prefix_is_sent_to_model() -> None:
    candidates = _candidates(30)
    client = FakeGenerationClient(reply="25\n4\n")
    reranker = LLMReranker(generation_client=client, max_candidates=20)
    result = await reranker.rerank("q", candidates, top_k=30)
    assert "[19] File" in client.prompts[0]
    assert "[20] File" not in client.prompts[0]
    # 25 越界被忽略
    assert [r.chunk_id for r in result[:2]] == ["c4", "c0"]
    assert len(result) == 30
    assert result[20:] == candidates[20:]


@pytest.mark.anyio
async def test_single_candidate_skips_model() -> None:
    client = FakeGenerationClient(reply="0")
    reranker = LLMReranker(generation_client=client)
    assert await reranker.rerank("q", _candidates(1), top_k=5) == _candidates(1)
    assert await reranker.rerank("q", [], top_k=5) == []
    assert client.prompts == []


@pytest.mark.anyio
async def test_rerank_batch_keeps_request_order() -> None:
    reranker = LLMReranker(generation_client=FakeGenerationClient(reply="1\n0\n"))
    first = _candidates(2)
    second = _candidates(3)
    outputs = await reranker.rerank_batch([("a", first), ("b", second)], top_k=2)
    assert [[r.chunk_id for r in out] for out in outputs] == [["c1", "c0"], ["c1", "c0"]]
