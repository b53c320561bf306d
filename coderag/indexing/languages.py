"""
通过文件扩展名推断语言。

这是一个非常“工程”的步骤：不需要 LLM，且必须确定性。
未知扩展名统一映射为 "text"（走 fallback 切分）。
"""

from __future__ import annotations

import posixpath

DEFAULT_LANGUAGE = "text"

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".php": "php",
    ".rb": "ruby",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".swift": "swift",
    ".kt": "kotlin",
    ".sql": "sql",
}


def infer_language_from_path(path: str) -> str:
    ext = posixpath.splitext(path.lower())[1]
    return LANGUAGE_BY_EXTENSION.get(ext, DEFAULT_LANGUAGE)
