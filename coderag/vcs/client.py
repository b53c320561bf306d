"""
VCS 客户端（外部系统连接器）。

约定：
- 这里只做 HTTP 调用 + 错误处理 + schema 校验
- 出错直接抛 `VcsError`（不要吞），由 indexer 决定跳过文件还是整体失败
- token 不在构造时固定：每次请求通过 `TokenResolver` 取（OAuth 刷新由外部系统负责）
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from coderag.errors import VcsError

logger = logging.getLogger(__name__)


class VcsClient(Protocol):
    async def list_files(self, owner: str, repo: str, ref: str) -> list[str]: ...

    async def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> str: ...


class TokenResolver(Protocol):
    async def resolve(self, provider: str) -> str: ...


class StaticTokenResolver:
    """固定 token（本地开发 / 单租户部署）。"""

    def __init__(self, token: str) -> None:
        self._token = token

    async def resolve(self, provider: str) -> str:
        return self._token


class GitHubTreeEntry(BaseModel):
    path: str
    type: Literal["blob", "tree", "commit"]


class GitHubTree(BaseModel):
    sha: str
    tree: list[GitHubTreeEntry]
    truncated: bool = False


class GitHubVcsClient:
    """最小 GitHub API client（recursive tree 列文件 + contents 取原文）。"""

    provider = "github"

    def __init__(self, api_base_url: str, token_resolver: TokenResolver, http_client: httpx.AsyncClient) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._token_resolver = token_resolver
        self._http_client = http_client

    async def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        token = await self._token_resolver.resolve(self.provider)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _get(self, url: str, accept: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            response = await self._http_client.get(url, headers=await self._headers(accept=accept), params=params)
        except httpx.HTTPError as exc:
            logger.error(f"GitHub HTTP error for {url}: {exc}")
            raise VcsError(f"GitHub request failed: {exc}") from exc
        if response.status_code >= 400:
            raise VcsError(f"GitHub API error {response.status_code}: {response.text}")
        return response

    async def list_files(self, owner: str, repo: str, ref: str) -> list[str]:
        """
        列出 ref 下所有文件路径（只保留 blob，子模块/目录忽略）。

        注意：GitHub 对超大仓库会返回 truncated=true；这里记录告警并使用已返回的部分。
        """
        url = f"{self._api_base_url}/repos/{owner}/{repo}/git/trees/{quote(ref, safe='')}"
        response = await self._get(url, accept="application/vnd.github+json", params={"recursive": "1"})
        try:
            tree = GitHubTree.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise VcsError(f"Unexpected GitHub response shape for tree {owner}/{repo}@{ref}: {exc}") from exc
        if tree.truncated:
            logger.warning(f"GitHub tree truncated for {owner}/{repo}@{ref}; indexing the returned subset")
        return [entry.path for entry in tree.tree if entry.type == "blob"]

    async def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> str:
        url = f"{self._api_base_url}/repos/{owner}/{repo}/contents/{quote(path.lstrip('/'))}"
        response = await self._get(url, accept="application/vnd.github.raw+json", params={"ref": ref})
        return response.text
