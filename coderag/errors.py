"""
RAG 核心的错误类型。

约定：
- 调用方只需要 catch 这里定义的类型（外部 SDK 的异常在 client 边界被包装）
- `ChunkingError` / `RerankError` 只在模块内部使用，不会抛给调用方
"""

from __future__ import annotations


class RagError(RuntimeError):
    """所有 RAG 核心错误的基类。"""

    pass


class ChunkingError(RagError):
    """结构化解析失败（内部使用：chunker 会降级到 fallback 切分）。"""

    pass


class EmbeddingError(RagError):
    """Embedding provider 调用失败（可重试）。"""

    pass


class VectorStoreError(RagError):
    """向量库读写失败。"""

    pass


class MetadataStoreError(RagError):
    """元数据库读写失败。"""

    pass


class VcsError(RagError):
    """VCS（GitHub 等）API 调用失败。"""

    pass


class IndexNotFoundError(RagError):
    """指定的 CodebaseIndex 不存在。"""

    pass


class ConcurrentUpdateError(RagError):
    """同一个 index 已有增量更新在进行中（或尚未完成全量索引）；调用方稍后重试。"""

    def __init__(self, index_id: str, status: str) -> None:
        super().__init__(f"Index {index_id} cannot be updated while status={status}")
        self.index_id = index_id
        self.status = status


class IndexingCancelledError(RagError):
    """全量索引超时/被取消（index 已被标记为 FAILED）。"""

    pass


class RetrievalError(RagError):
    """检索失败（embedding 或向量库不可用），不返回部分结果。"""

    pass


class RerankError(RagError):
    """重排失败（内部使用：reranker 会回退到原始顺序）。"""

    pass
