"""
运行时装配（进程级依赖）。

这里做三件事：
- 按配置创建进程级 handle（HTTP client / LLM client / Postgres / 缓存）
- 把 handle 按引用注入各组件（indexer / retriever / reranker），组件之间不互相创建依赖
- `aclose()` 显式释放全部 handle（幂等）

注意：
- 业务流程不写在这里
- `httpx.AsyncClient` 会被复用（GitHub 与 LLM 调用共用连接池）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import anyio
import httpx

from coderag.config import AppConfig
from coderag.indexing.chunker import ChunkingOptions
from coderag.indexing.chunker import CodeChunker
from coderag.indexing.embedder import ChunkEmbedder
from coderag.indexing.file_filter import FileFilter
from coderag.indexing.incremental import IncrementalIndexer
from coderag.indexing.indexer import RepositoryIndexer
from coderag.infra.cache import Cache
from coderag.infra.cache import InMemoryCache
from coderag.infra.cache import RedisCache
from coderag.llm.client import OpenAICompatLLMClient
from coderag.retrieval.hybrid import HybridRetriever
from coderag.retrieval.reranker import LLMReranker
from coderag.retrieval.semantic import SemanticRetriever
from coderag.storage.metadata_store import PgMetadataStore
from coderag.storage.pg import PgConnector
from coderag.storage.pg import ensure_schema
from coderag.storage.vector_store import PgVectorStore
from coderag.vcs.client import GitHubVcsClient
from coderag.vcs.client import StaticTokenResolver
from coderag.vcs.client import TokenResolver
from coderag.vcs.client import VcsClient

logger = logging.getLogger(__name__)


@dataclass
class RagRuntime:
    """RAG 核心运行时依赖集合。"""

    http_client: httpx.AsyncClient
    llm_client: OpenAICompatLLMClient
    vector_store: PgVectorStore
    metadata_store: PgMetadataStore
    cache: Cache
    repository_indexer: RepositoryIndexer
    incremental_indexer: IncrementalIndexer
    semantic_retriever: SemanticRetriever
    hybrid_retriever: HybridRetriever
    reranker: LLMReranker | None
    _closed: bool = field(default=False, repr=False)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.llm_client.close()
        await self.vector_store.close()
        await self.metadata_store.close()
        await self.cache.close()
        await self.http_client.aclose()
        logger.info("RAG runtime closed")


async def build_rag_runtime(
    config: AppConfig,
    vcs: VcsClient | None = None,
    token_resolver: TokenResolver | None = None,
    create_schema: bool = True,
) -> RagRuntime:
    """
    创建运行时。

    - vcs：外部注入的 VCS client；不传时按 GitHub 配置创建（token 由 `token_resolver` 或静态 token 提供）
    - create_schema：启动时建表（幂等）
    """
    if vcs is None and config.github is None:
        raise ValueError("Either a VCS client or GitHub config is required")

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    llm_client = OpenAICompatLLMClient(
        api_key=config.embedding.api_key,
        base_url=str(config.embedding.base_url).rstrip("/"),
        http_client=http_client,
        embedding_model=config.embedding.model,
        model=config.generation.model if config.generation is not None else None,
        embedding_dimensions=config.embedding.dimensions,
        max_tokens=config.generation.max_tokens if config.generation is not None else 1000,
    )

    if vcs is None:
        if config.github is None:
            raise ValueError("GitHub config is required when no VCS client is given")
        vcs = GitHubVcsClient(
            api_base_url=str(config.github.api_base_url),
            token_resolver=token_resolver or StaticTokenResolver(config.github.token),
            http_client=http_client,
        )

    vector_connector = PgConnector(dsn=config.vector_store.dsn, embedding_dim=config.embedding.dimensions)
    metadata_connector = PgConnector(dsn=config.metadata_store.dsn, embedding_dim=config.embedding.dimensions)
    if create_schema:
        await anyio.to_thread.run_sync(ensure_schema, vector_connector, config.vector_store.collection)
        if config.metadata_store.dsn != config.vector_store.dsn:
            await anyio.to_thread.run_sync(ensure_schema, metadata_connector, config.vector_store.collection)

    vector_store = PgVectorStore(connector=vector_connector, collection=config.vector_store.collection)
    metadata_store = PgMetadataStore(connector=metadata_connector)

    cache: Cache
    if config.cache.redis_host is not None:
        cache = RedisCache(host=config.cache.redis_host, port=config.cache.redis_port, password=config.cache.redis_password)
    else:
        cache = InMemoryCache()

    embedder = ChunkEmbedder(
        client=llm_client,
        model_name=config.embedding.model,
        batch_size=config.indexing.embed_batch_size,
        retry_attempts=config.indexing.retry_attempts,
        cache=cache,
    )
    chunker = CodeChunker()
    file_filter = FileFilter(watch_globs=config.indexing.watch_globs, ignore_globs=config.indexing.ignore_globs)
    chunking = ChunkingOptions(
        max_chunk_chars=config.chunking.max_chunk_chars,
        fallback_chunk_chars=config.chunking.fallback_chunk_chars,
        overlap_chars=config.chunking.overlap_chars,
    )

    semantic = SemanticRetriever(
        embedding_client=llm_client,
        vector_store=vector_store,
        cache=cache,
        default_top_k=config.retrieval.top_k,
        default_score_threshold=config.retrieval.score_threshold,
        cache_ttl_seconds=config.cache.ttl_minutes * 60,
        retrieval_log=metadata_store,
        embedding_model=config.embedding.model,
    )
    runtime = RagRuntime(
        http_client=http_client,
        llm_client=llm_client,
        vector_store=vector_store,
        metadata_store=metadata_store,
        cache=cache,
        repository_indexer=RepositoryIndexer(
            vcs=vcs,
            embedder=embedder,
            vector_store=vector_store,
            metadata_store=metadata_store,
            embedding_model=config.embedding.model,
            chunker=chunker,
            file_filter=file_filter,
            chunking=chunking,
            max_concurrent_files=config.indexing.max_concurrent_files,
            upsert_retry_attempts=config.indexing.retry_attempts,
        ),
        incremental_indexer=IncrementalIndexer(
            vcs=vcs,
            embedder=embedder,
            vector_store=vector_store,
            metadata_store=metadata_store,
            embedding_model=config.embedding.model,
            chunker=chunker,
            file_filter=file_filter,
            chunking=chunking,
            upsert_retry_attempts=config.indexing.retry_attempts,
        ),
        semantic_retriever=semantic,
        hybrid_retriever=HybridRetriever(
            semantic=semantic,
            metadata_store=metadata_store,
            semantic_weight=config.retrieval.semantic_weight,
            keyword_weight=config.retrieval.keyword_weight,
        ),
        reranker=(
            LLMReranker(generation_client=llm_client, max_candidates=config.retrieval.rerank_max_candidates)
            if config.generation is not None
            else None
        ),
    )
    logger.info(
        f"RAG runtime ready: embedding_model={config.embedding.model}, collection={config.vector_store.collection}, "
        f"cache={'redis' if config.cache.redis_host else 'memory'}, reranker={'on' if runtime.reranker else 'off'}"
    )
    return runtime
