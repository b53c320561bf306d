"""
结构化解析器（可插拔，按语言注册）。

- `StructuralParser` Protocol：把一个文件解析为顶层声明（函数 / 类）的行号区间
- `TreeSitterParser`：基于 tree-sitter 的实现（python / js / ts / go / java / rust）
- 没有注册 parser 的语言由 chunker 走 fallback 窗口切分；新增语言只需要 register，不影响检索代码
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from tree_sitter import Node, Parser
from tree_sitter_language_pack import get_parser

from coderag.errors import ChunkingError
from coderag.storage.models import ChunkType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuralNode:
    """一个顶层声明：1-based、闭区间的行号 + 类型 + 名称（匿名时为 None）。"""

    start_line: int
    end_line: int
    chunk_type: ChunkType
    name: str | None


class StructuralParser(Protocol):
    """解析失败时必须抛 `ChunkingError`（chunker 负责降级）。"""

    def parse(self, text: str, file_path: str) -> list[StructuralNode]: ...


@dataclass(frozen=True)
class NodeRules:
    """tree-sitter 节点类型 -> chunk 类型的映射规则。"""

    function_types: frozenset[str]
    class_types: frozenset[str]
    # const/let/var 声明：只有 value 是函数时才算 function chunk
    variable_types: frozenset[str] = frozenset()
    function_value_types: frozenset[str] = frozenset()
    # export / decorator 之类的包装节点：区间取外层，类型取内层
    wrapper_types: frozenset[str] = frozenset()


_JS_RULES = NodeRules(
    function_types=frozenset(
        {"function_declaration", "generator_function_declaration", "function_expression", "function"}
    ),
    class_types=frozenset({"class_declaration", "class"}),
    variable_types=frozenset({"lexical_declaration", "variable_declaration"}),
    function_value_types=frozenset({"arrow_function", "function_expression", "function", "generator_function"}),
    wrapper_types=frozenset({"export_statement"}),
)

_TS_RULES = NodeRules(
    function_types=_JS_RULES.function_types,
    class_types=_JS_RULES.class_types | {"abstract_class_declaration"},
    variable_types=_JS_RULES.variable_types,
    function_value_types=_JS_RULES.function_value_types,
    wrapper_types=_JS_RULES.wrapper_types,
)

_PYTHON_RULES = NodeRules(
    function_types=frozenset({"function_definition"}),
    class_types=frozenset({"class_definition"}),
    wrapper_types=frozenset({"decorated_definition"}),
)

_GO_RULES = NodeRules(
    function_types=frozenset({"function_declaration", "method_declaration"}),
    class_types=frozenset({"type_declaration"}),
)

_JAVA_RULES = NodeRules(
    function_types=frozenset(),
    class_types=frozenset({"class_declaration", "interface_declaration", "enum_declaration", "record_declaration"}),
)

_RUST_RULES = NodeRules(
    function_types=frozenset({"function_item"}),
    class_types=frozenset({"struct_item", "enum_item", "trait_item", "impl_item"}),
)


@functools.lru_cache(maxsize=None)
def _load_parser(grammar: str) -> Parser:
    return get_parser(grammar)


@dataclass
class TreeSitterParser:
    """只看 root 的直接子节点（顶层声明），嵌套的方法/闭包归属于外层 chunk。"""

    grammar: str
    rules: NodeRules
    # 同一语言不同扩展名使用不同 grammar（例如 .tsx）
    grammar_by_extension: Mapping[str, str] = field(default_factory=dict)

    def parse(self, text: str, file_path: str) -> list[StructuralNode]:
        grammar = self._grammar_for(file_path)
        try:
            parser = _load_parser(grammar)
            tree = parser.parse(text.encode("utf-8"))
        except Exception as exc:
            # grammar 缺失 / binding 版本不匹配等，异常类型不统一
            raise ChunkingError(f"tree-sitter parse failed for {file_path} ({grammar}): {exc}") from exc

        root = tree.root_node
        if root.has_error:
            raise ChunkingError(f"Syntax errors in {file_path}")

        found: list[StructuralNode] = []
        for child in root.named_children:
            node = self._to_structural(child)
            if node is not None:
                found.append(node)
        return found

    def _grammar_for(self, file_path: str) -> str:
        lowered = file_path.lower()
        for ext, grammar in self.grammar_by_extension.items():
            if lowered.endswith(ext):
                return grammar
        return self.grammar

    def _to_structural(self, node: Node) -> StructuralNode | None:
        inner = node
        if node.type in self.rules.wrapper_types:
            inner = self._unwrap(node)
            if inner is None:
                return None

        classified = self._classify(inner)
        if classified is None:
            return None
        chunk_type, name = classified
        return StructuralNode(
            start_line=node.start_point[0] + 1,
            end_line=node.end_point[0] + 1,
            chunk_type=chunk_type,
            name=name,
        )

    def _unwrap(self, node: Node) -> Node | None:
        for field_name in ("declaration", "definition"):
            inner = node.child_by_field_name(field_name)
            if inner is not None:
                return inner
        for child in node.named_children:
            if self._classify(child) is not None:
                return child
        return None

    def _classify(self, node: Node) -> tuple[ChunkType, str | None] | None:
        if node.type in self.rules.function_types:
            return "function", _node_name(node)
        if node.type in self.rules.class_types:
            return "class", _node_name(node)
        if node.type in self.rules.variable_types:
            for declarator in node.named_children:
                value = declarator.child_by_field_name("value")
                if value is not None and value.type in self.rules.function_value_types:
                    return "function", _node_name(declarator)
        return None


def _node_name(node: Node) -> str | None:
    name_node = node.child_by_field_name("name")
    if name_node is None:
        # Go: type_declaration -> type_spec -> name；Rust: impl_item -> type
        for child in node.named_children:
            if child.type == "type_spec":
                name_node = child.child_by_field_name("name")
                break
        if name_node is None:
            name_node = node.child_by_field_name("type") if node.type == "impl_item" else None
    if name_node is None or name_node.text is None:
        return None
    name = name_node.text.decode("utf-8", errors="replace").strip()
    return name or None


class ParserRegistry:
    """language -> StructuralParser。"""

    def __init__(self, parsers: Mapping[str, StructuralParser] | None = None) -> None:
        self._parsers: dict[str, StructuralParser] = dict(parsers or {})

    def register(self, language: str, parser: StructuralParser) -> None:
        if not language:
            raise ValueError("language must be non-empty")
        self._parsers[language] = parser

    def get(self, language: str) -> StructuralParser | None:
        return self._parsers.get(language)

    def languages(self) -> list[str]:
        return sorted(self._parsers)


def default_parser_registry() -> ParserRegistry:
    return ParserRegistry(
        {
            "python": TreeSitterParser(grammar="python", rules=_PYTHON_RULES),
            "javascript": TreeSitterParser(grammar="javascript", rules=_JS_RULES),
            "typescript": TreeSitterParser(
                grammar="typescript",
                rules=_TS_RULES,
                grammar_by_extension={".tsx": "tsx"},
            ),
            "go": TreeSitterParser(grammar="go", rules=_GO_RULES),
            "java": TreeSitterParser(grammar="java", rules=_JAVA_RULES),
            "rust": TreeSitterParser(grammar="rust", rules=_RUST_RULES),
        }
    )
