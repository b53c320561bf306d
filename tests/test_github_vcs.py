from __future__ import annotations

import httpx
import pytest

from coderag.errors import VcsError
from coderag.vcs.client import GitHubVcsClient


class _Resolver:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def resolve(self, provider: str) -> str:
        self.calls.append(provider)
        return f"token-{len(self.calls)}"


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/repos/acme/repo/git/trees/main":
        assert request.url.params["recursive"] == "1"
        return httpx.Response(
            200,
            json={
                "sha": "abc",
                "truncated": False,
                "tree": [
                    {"path": "src", "type": "tree"},
                    {"path": "src/a.py", "type": "blob"},
                    {"path": "vendor/lib", "type": "commit"},
                ],
            },
        )
    if request.url.path == "/repos/acme/repo/contents/src/a.py":
        assert request.url.params["ref"] == "main"
        assert request.headers["Accept"] == "application/vnd.github.raw+json"
        return httpx.Response(200, text="def a():\n    pass\n")
    return httpx.Response(404, json={"message": "Not Found"})


@pytest.mark.anyio
async def test_list_files_and_get_content() -> None:
    resolver = _Resolver()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http_client:
        client = GitHubVcsClient(api_base_url="https://api.github.com/", token_resolver=resolver, http_client=http_client)
        assert await client.list_files("acme", "repo", "main") == ["src/a.py"]
        assert await client.get_file_content("acme", "repo", "src/a.py", "main") == "def a():\n    pass\n"
    # 每次请求都重新取 token
    assert resolver.calls == ["github", "github"]


@pytest.mark.anyio
async def test_http_error_raises_vcs_error() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http_client:
        client = GitHubVcsClient(api_base_url="https://api.github.com", token_resolver=_Resolver(), http_client=http_client)
        with pytest.raises(VcsError):
            await client.get_file_content("acme", "repo", "missing.py", "main")
        with pytest.raises(VcsError):
            await client.list_files("acme", "other", "main")


@pytest.mark.anyio
async def test_authorization_header_uses_resolved_token() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json={"sha": "x", "tree": []})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = GitHubVcsClient(api_base_url="https://api.github.com", token_resolver=_Resolver(), http_client=http_client)
        assert await client.list_files("acme", "repo", "HEAD") == []
    assert seen == ["Bearer token-1"]
