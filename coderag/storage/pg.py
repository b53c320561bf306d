from __future__ import annotations

import logging

import psycopg
from pgvector.psycopg import register_vector
from psycopg import sql

logger = logging.getLogger(__name__)


class PgConnector:
    """Postgres + pgvector 连接器（每次操作一个短连接，阻塞调用由上层放到 worker thread）。"""

    def __init__(self, dsn: str, embedding_dim: int) -> None:
        if embedding_dim <= 0:
            raise ValueError("embedding_dim must be > 0")
        self._dsn = dsn
        self._embedding_dim = embedding_dim

    def connect(self) -> psycopg.Connection:
        conn = psycopg.connect(self._dsn)
        register_vector(conn)
        return conn

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim


def ensure_schema(connector: PgConnector, collection: str) -> None:
    """建表（幂等）：元数据表（index / chunk / 检索记录）+ 向量 collection 表。"""
    collection_table = sql.Identifier(collection)
    with connector.connect() as conn:
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS codebase_index (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    total_files INTEGER NOT NULL DEFAULT 0,
                    total_chunks INTEGER NOT NULL DEFAULT 0,
                    cost DOUBLE PRECISION NOT NULL DEFAULT 0,
                    tokens_used BIGINT NOT NULL DEFAULT 0,
                    started_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    failure_reason TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS document_chunks (
                    id TEXT PRIMARY KEY,
                    codebase_index_id TEXT NOT NULL REFERENCES codebase_index (id) ON DELETE CASCADE,
                    file_path TEXT NOT NULL,
                    start_line INTEGER NOT NULL,
                    end_line INTEGER NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    language TEXT NOT NULL,
                    chunk_type TEXT NOT NULL,
                    vector_point_id TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    UNIQUE (codebase_index_id, file_path, chunk_index)
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_document_chunks_index_path
                ON document_chunks (codebase_index_id, file_path)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS rag_retrieval (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    query TEXT NOT NULL,
                    method TEXT NOT NULL,
                    chunk_ids TEXT[] NOT NULL,
                    scores DOUBLE PRECISION[] NOT NULL,
                    retrieval_time_ms DOUBLE PRECISION NOT NULL,
                    chunks_scanned INTEGER NOT NULL,
                    tokens_used INTEGER NOT NULL,
                    cost DOUBLE PRECISION NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_rag_retrieval_project_time ON rag_retrieval (project_id, created_at)"
            )
            cur.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        embedding VECTOR({dim}) NOT NULL,
                        payload JSONB NOT NULL
                    )
                    """
                ).format(table=collection_table, dim=sql.Literal(connector.embedding_dim))
            )
            cur.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {name} ON {table} (project_id)").format(
                    name=sql.Identifier(f"idx_{collection}_project"),
                    table=collection_table,
                )
            )
            cur.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {name} ON {table} USING hnsw (embedding vector_cosine_ops)").format(
                    name=sql.Identifier(f"idx_{collection}_embedding"),
                    table=collection_table,
                )
            )
        conn.commit()
    logger.info(f"Schema ensured (collection={collection}, dim={connector.embedding_dim})")
