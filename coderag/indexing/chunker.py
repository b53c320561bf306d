from __future__ import annotations

import logging
from dataclasses import dataclass

from coderag.errors import ChunkingError
from coderag.indexing.languages import infer_language_from_path
from coderag.indexing.parsers import ParserRegistry
from coderag.indexing.parsers import StructuralNode
from coderag.indexing.parsers import default_parser_registry
from coderag.storage.models import ChunkType
from coderag.storage.models import CodeChunk

logger = logging.getLogger(__name__)

# 所有尺寸单位都是字符（structural 上限与 fallback 窗口一致）
DEFAULT_MAX_CHUNK_CHARS = 1500
DEFAULT_FALLBACK_CHUNK_CHARS = 100
DEFAULT_OVERLAP_CHARS = 20


@dataclass(frozen=True)
class ChunkingOptions:
    max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS
    fallback_chunk_chars: int = DEFAULT_FALLBACK_CHUNK_CHARS
    overlap_chars: int = DEFAULT_OVERLAP_CHARS


class CodeChunker:
    """
    单文件切分器。

    - 有 structural parser 的语言：每个顶层函数 / 函数值 const / 类一个 chunk
    - 超过 `max_chunk_chars` 的声明不单独输出，它覆盖的行改走 fallback 窗口
    - 解析失败 / 没有 parser：整个文件走 fallback 窗口
    - 对任何输入都不抛异常；相同输入永远得到相同输出（增量索引靠 content hash 判断“未变化”）
    """

    def __init__(self, registry: ParserRegistry | None = None) -> None:
        self._registry = registry if registry is not None else default_parser_registry()

    def chunk(
        self,
        text: str,
        file_path: str,
        max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
        fallback_chunk_chars: int = DEFAULT_FALLBACK_CHUNK_CHARS,
        overlap_chars: int = DEFAULT_OVERLAP_CHARS,
    ) -> list[CodeChunk]:
        if max_chunk_chars <= 0:
            raise ValueError("max_chunk_chars must be > 0")
        if fallback_chunk_chars <= 0:
            raise ValueError("fallback_chunk_chars must be > 0")
        if overlap_chars < 0 or overlap_chars >= fallback_chunk_chars:
            raise ValueError("overlap_chars must be >= 0 and < fallback_chunk_chars")

        if not text.strip():
            return []

        language = infer_language_from_path(path=file_path)
        parser = self._registry.get(language)
        if parser is None:
            pieces = _window_text(text=text, first_line=1, size=fallback_chunk_chars, overlap=overlap_chars)
            return _number(pieces=pieces, language=language)

        try:
            nodes = parser.parse(text, file_path)
        except ChunkingError as exc:
            logger.warning(f"Structural parse failed, falling back to windows: {exc}")
            pieces = _window_text(text=text, first_line=1, size=fallback_chunk_chars, overlap=overlap_chars)
            return _number(pieces=pieces, language=language)

        lines = text.split("\n")
        pieces: list[_Piece] = []
        for node in nodes:
            content = "\n".join(lines[node.start_line - 1 : node.end_line])
            if len(content) > max_chunk_chars:
                logger.debug(
                    f"Declaration too large for a single chunk: {file_path}:{node.start_line}-{node.end_line} "
                    f"name={node.name} size={len(content)}"
                )
                pieces.extend(
                    _window_text(
                        text=content,
                        first_line=node.start_line,
                        size=fallback_chunk_chars,
                        overlap=overlap_chars,
                    )
                )
                continue
            pieces.append(_structural_piece(node=node, content=content))

        if not pieces:
            logger.debug(f"No top-level declarations in {file_path}, using fallback windows")
            pieces = _window_text(text=text, first_line=1, size=fallback_chunk_chars, overlap=overlap_chars)

        pieces.sort(key=lambda p: (p.start_line, p.end_line))
        return _number(pieces=pieces, language=language)


def chunk_file(
    text: str,
    file_path: str,
    max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    fallback_chunk_chars: int = DEFAULT_FALLBACK_CHUNK_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
) -> list[CodeChunk]:
    """使用默认 parser registry 切分单个文件。"""
    return _default_chunker().chunk(
        text=text,
        file_path=file_path,
        max_chunk_chars=max_chunk_chars,
        fallback_chunk_chars=fallback_chunk_chars,
        overlap_chars=overlap_chars,
    )


_DEFAULT_CHUNKER: CodeChunker | None = None


def _default_chunker() -> CodeChunker:
    global _DEFAULT_CHUNKER
    if _DEFAULT_CHUNKER is None:
        _DEFAULT_CHUNKER = CodeChunker()
    return _DEFAULT_CHUNKER


@dataclass(frozen=True)
class _Piece:
    content: str
    start_line: int
    end_line: int
    chunk_type: ChunkType
    name: str | None


def _structural_piece(node: StructuralNode, content: str) -> _Piece:
    return _Piece(
        content=content,
        start_line=node.start_line,
        end_line=node.end_line,
        chunk_type=node.chunk_type,
        name=node.name,
    )


def _window_text(text: str, first_line: int, size: int, overlap: int) -> list[_Piece]:
    """
    固定字符窗口切分：每个窗口 `size` 个字符，下一个窗口以上一个窗口末尾 `overlap` 个字符开头。

    窗口覆盖全部字符（不丢行）；纯空白窗口不输出。
    """
    pieces: list[_Piece] = []
    start = 0
    length = len(text)
    step = size - overlap
    while start < length:
        end = min(start + size, length)
        window = text[start:end]
        if window.strip():
            start_line = first_line + text.count("\n", 0, start)
            end_line = first_line + text.count("\n", 0, end - 1)
            pieces.append(_Piece(content=window, start_line=start_line, end_line=end_line, chunk_type="module", name=None))
        if end == length:
            break
        start += step
    return pieces


def _number(pieces: list[_Piece], language: str) -> list[CodeChunk]:
    chunks: list[CodeChunk] = []
    for idx, piece in enumerate(pieces):
        metadata: dict[str, str] = {}
        if piece.name is not None:
            metadata["name"] = piece.name
        chunks.append(
            CodeChunk(
                content=piece.content,
                start_line=piece.start_line,
                end_line=piece.end_line,
                chunk_index=idx,
                chunk_type=piece.chunk_type,
                language=language,
                metadata=metadata,
            )
        )
    return chunks
