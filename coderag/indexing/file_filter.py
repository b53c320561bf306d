from __future__ import annotations

from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase

DEFAULT_WATCH_GLOBS: tuple[str, ...] = (
    "*.py",
    "*.ts",
    "*.tsx",
    "*.js",
    "*.jsx",
    "*.go",
    "*.rs",
    "*.java",
    "*.php",
    "*.rb",
    "*.c",
    "*.cpp",
    "*.cs",
    "*.swift",
    "*.kt",
)

DEFAULT_IGNORE_GLOBS: tuple[str, ...] = (
    ".git/*",
    "node_modules/*",
    "*/node_modules/*",
    "dist/*",
    "build/*",
    "vendor/*",
    "*/vendor/*",
    "coverage/*",
    ".next/*",
    ".cache/*",
    "*/__pycache__/*",
    "__pycache__/*",
    ".venv/*",
    "*.min.js",
)

MAX_FILE_CHARS = 1_000_000


class FileFilter:
    """
    watch / ignore glob 过滤（仓库内相对路径，POSIX 分隔符）。

    `*` 可以跨目录匹配（fnmatch 语义），所以 `*.py` 会命中 `src/a/b.py`。
    """

    def __init__(self, watch_globs: Sequence[str] = DEFAULT_WATCH_GLOBS, ignore_globs: Sequence[str] = DEFAULT_IGNORE_GLOBS) -> None:
        if not watch_globs:
            raise ValueError("watch_globs must not be empty")
        self._watch = tuple(watch_globs)
        self._ignore = tuple(ignore_globs)

    def accepts(self, path: str) -> bool:
        normalized = path.replace("\\", "/").lstrip("/")
        if not normalized:
            return False
        if any(fnmatchcase(normalized, pattern) for pattern in self._ignore):
            return False
        return any(fnmatchcase(normalized, pattern) for pattern in self._watch)

    def filter(self, paths: Iterable[str]) -> list[str]:
        # 排序保证处理顺序（以及日志）确定
        return sorted({p for p in paths if self.accepts(p)})
