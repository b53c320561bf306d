"""
RAG 核心配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL/数字范围，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
- **可选分组要么完整要么不配**：例如只配了 REDIS_PORT 没配 REDIS_HOST 视为配置错误
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, Field, HttpUrl, model_validator

from coderag.indexing.chunker import DEFAULT_FALLBACK_CHUNK_CHARS
from coderag.indexing.chunker import DEFAULT_MAX_CHUNK_CHARS
from coderag.indexing.chunker import DEFAULT_OVERLAP_CHARS
from coderag.indexing.file_filter import DEFAULT_IGNORE_GLOBS
from coderag.indexing.file_filter import DEFAULT_WATCH_GLOBS


class EmbeddingConfig(BaseModel):
    base_url: HttpUrl
    api_key: str
    model: str
    dimensions: int = Field(gt=0)


class GenerationConfig(BaseModel):
    """reranker 使用的 chat 模型（与 embedding 共用 base_url / api_key）。"""

    model: str
    max_tokens: int = Field(default=1000, gt=0)


class VectorStoreConfig(BaseModel):
    dsn: str
    collection: str = "code_chunks"


class MetadataStoreConfig(BaseModel):
    dsn: str


class CacheConfig(BaseModel):
    """查询缓存；未配置 Redis 时使用进程内缓存。"""

    redis_host: str | None = None
    redis_port: int = 6379
    redis_password: str | None = None
    ttl_minutes: float = Field(default=5.0, gt=0)


class ChunkingConfig(BaseModel):
    max_chunk_chars: int = Field(default=DEFAULT_MAX_CHUNK_CHARS, gt=0)
    fallback_chunk_chars: int = Field(default=DEFAULT_FALLBACK_CHUNK_CHARS, gt=0)
    overlap_chars: int = Field(default=DEFAULT_OVERLAP_CHARS, ge=0)

    @model_validator(mode="after")
    def _overlap_smaller_than_window(self) -> ChunkingConfig:
        if self.overlap_chars >= self.fallback_chunk_chars:
            raise ValueError("RAG_OVERLAP_CHARS must be < RAG_FALLBACK_CHUNK_CHARS")
        return self


class IndexingConfig(BaseModel):
    max_concurrent_files: int = Field(default=5, gt=0)
    embed_batch_size: int = Field(default=32, gt=0)
    retry_attempts: int = Field(default=3, gt=0)
    watch_globs: list[str] = Field(default_factory=lambda: list(DEFAULT_WATCH_GLOBS))
    ignore_globs: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_GLOBS))


class RetrievalConfig(BaseModel):
    top_k: int = Field(default=10, gt=0)
    score_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    semantic_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    keyword_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    rerank_max_candidates: int = Field(default=20, gt=0)

    @model_validator(mode="after")
    def _weights_sum_at_most_one(self) -> RetrievalConfig:
        if self.semantic_weight + self.keyword_weight > 1.0 + 1e-9:
            raise ValueError("RAG_SEMANTIC_WEIGHT + RAG_KEYWORD_WEIGHT must be <= 1")
        if self.semantic_weight < self.keyword_weight:
            raise ValueError("RAG_SEMANTIC_WEIGHT must be >= RAG_KEYWORD_WEIGHT")
        return self


class GitHubConfig(BaseModel):
    api_base_url: HttpUrl
    token: str


class AppConfig(BaseModel):
    """RAG 核心运行所需的配置集合。"""

    embedding: EmbeddingConfig
    generation: GenerationConfig | None = None
    vector_store: VectorStoreConfig
    metadata_store: MetadataStoreConfig
    cache: CacheConfig = Field(default_factory=CacheConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    github: GitHubConfig | None = None


def _split_globs(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _optional(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    return value if value else None


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：必填项缺失/为空、可选分组只配了一半、数值越界，都抛 `ValueError`
    """

    required_keys: tuple[str, ...] = (
        "LLM_BASE_URL",
        "LLM_API_KEY",
        "EMBEDDING_MODEL",
        "EMBEDDING_DIMENSIONS",
        "DATABASE_URL",
    )
    missing: list[str] = [key for key in required_keys if key not in environ or not environ[key]]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")

    github: GitHubConfig | None = None
    github_token = _optional(environ, "GITHUB_TOKEN")
    github_base_url = _optional(environ, "GITHUB_API_BASE_URL")
    if github_base_url is not None and github_token is None:
        raise ValueError("Partial GitHub config: GITHUB_API_BASE_URL is set but GITHUB_TOKEN is missing")
    if github_token is not None:
        github = GitHubConfig(api_base_url=github_base_url or "https://api.github.com", token=github_token)

    redis_host = _optional(environ, "REDIS_HOST")
    if redis_host is None and (_optional(environ, "REDIS_PORT") or _optional(environ, "REDIS_PASSWORD")):
        raise ValueError("Partial Redis config: REDIS_PORT/REDIS_PASSWORD set but REDIS_HOST is missing")
    cache_kwargs: dict[str, object] = {"redis_host": redis_host, "redis_password": _optional(environ, "REDIS_PASSWORD")}
    if _optional(environ, "REDIS_PORT"):
        cache_kwargs["redis_port"] = environ["REDIS_PORT"]
    if _optional(environ, "RAG_CACHE_TTL_MINUTES"):
        cache_kwargs["ttl_minutes"] = environ["RAG_CACHE_TTL_MINUTES"]

    llm_model = _optional(environ, "LLM_MODEL")
    generation = GenerationConfig(model=llm_model) if llm_model is not None else None

    # 交给 Pydantic 做类型校验（例如 URL 合法性、数值范围）
    return AppConfig(
        embedding=EmbeddingConfig(
            base_url=environ["LLM_BASE_URL"],
            api_key=environ["LLM_API_KEY"],
            model=environ["EMBEDDING_MODEL"],
            dimensions=environ["EMBEDDING_DIMENSIONS"],
        ),
        generation=generation,
        vector_store=VectorStoreConfig(
            dsn=_optional(environ, "VECTOR_STORE_DSN") or environ["DATABASE_URL"],
            collection=_optional(environ, "VECTOR_COLLECTION") or "code_chunks",
        ),
        metadata_store=MetadataStoreConfig(dsn=environ["DATABASE_URL"]),
        cache=CacheConfig(**cache_kwargs),
        chunking=ChunkingConfig(
            **_pick(
                environ,
                {
                    "RAG_MAX_CHUNK_CHARS": "max_chunk_chars",
                    "RAG_FALLBACK_CHUNK_CHARS": "fallback_chunk_chars",
                    "RAG_OVERLAP_CHARS": "overlap_chars",
                },
            )
        ),
        indexing=IndexingConfig(
            **_pick(
                environ,
                {
                    "RAG_MAX_CONCURRENT_FILES": "max_concurrent_files",
                    "RAG_EMBED_BATCH_SIZE": "embed_batch_size",
                    "RAG_RETRY_ATTEMPTS": "retry_attempts",
                },
            ),
            **{
                field: _split_globs(environ[key])
                for key, field in (("RAG_WATCH_GLOBS", "watch_globs"), ("RAG_IGNORE_GLOBS", "ignore_globs"))
                if _optional(environ, key)
            },
        ),
        retrieval=RetrievalConfig(
            **_pick(
                environ,
                {
                    "RAG_TOP_K": "top_k",
                    "RAG_SCORE_THRESHOLD": "score_threshold",
                    "RAG_SEMANTIC_WEIGHT": "semantic_weight",
                    "RAG_KEYWORD_WEIGHT": "keyword_weight",
                    "RAG_RERANK_MAX_CANDIDATES": "rerank_max_candidates",
                },
            )
        ),
        github=github,
    )


def _pick(environ: Mapping[str, str], mapping: Mapping[str, str]) -> dict[str, str]:
    return {field: environ[key] for key, field in mapping.items() if _optional(environ, key)}
