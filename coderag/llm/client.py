"""
LLM / Embedding Client（基于 OpenAI SDK，对接任意 OpenAI-compatible 服务，例如 OpenRouter / LiteLLM Proxy）。

目标：
- **尽量薄**：只做协议适配与错误处理
- **统一接口**：索引/检索只依赖 `EmbeddingClient` / `GenerationClient` 两个 Protocol，测试里可以直接换成 fake
- **错误包装**：embedding 失败统一抛 `EmbeddingError`，上游按文件重试/跳过
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

from coderag.errors import EmbeddingError

logger = logging.getLogger(__name__)

# USD / 1M tokens
EMBEDDING_PRICE_PER_MILLION_TOKENS: dict[str, float] = {
    "text-embedding-3-small": 0.02,
    "text-embedding-3-large": 0.13,
    "text-embedding-ada-002": 0.10,
}
DEFAULT_EMBEDDING_PRICE_PER_MILLION_TOKENS = 0.13


class ChatMessage(BaseModel):
    """OpenAI chat message 的最小结构。"""

    role: str
    content: str


class EmbeddingBatch(BaseModel):
    """一次 embedding 调用的结果：向量顺序与输入文本一致。"""

    vectors: list[list[float]]
    tokens_used: int = Field(ge=0)


class EmbeddingClient(Protocol):
    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch: ...

    async def close(self) -> None: ...


class GenerationClient(Protocol):
    async def generate(self, prompt: str) -> str: ...


def embedding_price_per_token(model: str) -> float:
    """embedding 模型单价（USD / token）；未知模型按 large 计价（宁可高估成本）。"""
    name = model.rsplit("/", 1)[-1]
    per_million = EMBEDDING_PRICE_PER_MILLION_TOKENS.get(name, DEFAULT_EMBEDDING_PRICE_PER_MILLION_TOKENS)
    return per_million / 1_000_000


def estimate_tokens(text: str) -> int:
    # 粗略估算：1 token ≈ 4 chars（provider 没返回 usage 时使用）
    return math.ceil(len(text) / 4)


def _normalize_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    if normalized.endswith("/v1"):
        return normalized
    return f"{normalized}/v1"


class OpenAICompatLLMClient:
    """
    同时实现 `EmbeddingClient` 与 `GenerationClient`。

    - embedding_model 用于 `embed`
    - model 用于 `generate`（reranker）；只做 embedding 时可以为 None
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        embedding_model: str,
        model: str | None = None,
        embedding_dimensions: int | None = None,
        max_tokens: int = 1000,
    ) -> None:
        """
        - api_key: LLM API key
        - base_url: OpenAI-compatible base URL
        - http_client: 复用 httpx.AsyncClient 连接池（由 runtime 统一关闭）
        """
        self._base_url = _normalize_base_url(base_url=base_url)
        self._embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._model = model
        self._max_tokens = max_tokens
        self._client = AsyncOpenAI(api_key=api_key, base_url=self._base_url, http_client=http_client)
        self._closed = False

    @property
    def embedding_model(self) -> str:
        return self._embedding_model

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        """
        批量 embedding。

        - 输入顺序 == 输出顺序（按 response 的 index 排序，不依赖返回顺序）
        - tokens_used 优先取 provider 返回的 usage，缺失时估算
        """
        if not texts:
            raise ValueError("texts must not be empty")
        try:
            logger.debug(f"Embedding request: model={self._embedding_model}, texts={len(texts)}")
            kwargs: dict[str, object] = {"model": self._embedding_model, "input": list(texts)}
            if self._embedding_dimensions is not None:
                kwargs["dimensions"] = self._embedding_dimensions
            response = await self._client.embeddings.create(**kwargs)
        except OpenAIError as exc:
            logger.error(f"Embedding API error: {exc}")
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Embedding HTTP error: {exc}")
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise EmbeddingError(f"Embedding count mismatch: expected {len(texts)}, got {len(data)}")

        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", None) if usage is not None else None
        if tokens_used is None:
            tokens_used = sum(estimate_tokens(t) for t in texts)
        return EmbeddingBatch(vectors=[list(d.embedding) for d in data], tokens_used=int(tokens_used))

    async def complete_text(self, messages: Sequence[ChatMessage]) -> str:
        """
        调用 chat completion 并返回纯文本 content。

        注意：出错直接抛异常，由调用方决定是否降级（reranker 会回退到原始顺序）。
        """
        if self._model is None:
            raise RuntimeError("No generation model configured")
        try:
            logger.info(f"LLM request: model={self._model}, messages={len(messages)} msg(s)")
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[m.model_dump() for m in messages],
                max_tokens=self._max_tokens,
            )
        except OpenAIError as exc:
            logger.error(f"LLM API error: {exc}")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"LLM HTTP error: {exc}")
            raise

        content = response.choices[0].message.content
        if content is None:
            logger.error("LLM returned None content")
            raise RuntimeError("LLM returned None content")

        logger.info(f"LLM response: {len(content)} chars")
        return str(content)

    async def generate(self, prompt: str) -> str:
        return await self.complete_text(messages=[ChatMessage(role="user", content=prompt)])

    async def close(self) -> None:
        # http_client 由外部注入，这里不关闭；只保证重复调用安全
        self._closed = True
