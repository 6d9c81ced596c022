"""
Tree-sitter based block extraction for multiple languages.

Walks the syntax tree and turns function, method and class definitions into
code blocks, recording the enclosing scope of every definition and the calls
it makes. Supports Python, JavaScript, TypeScript, Go, Rust and C.
"""

import logging
import threading
from collections import Counter
from typing import Iterator, NamedTuple, Optional
from tree_sitter import Language, Node, Parser, Tree

from ..errors import ParseFailure
from ..models import CodeBlock
from .base import BlockCandidates, BlockExtractor

logger = logging.getLogger(__name__)


class _Scope(NamedTuple):
    name: str
    is_class: bool


def _node_text(node: Node) -> str:
    return node.text.decode("utf8", errors="replace")


def _first_descendant(node: Node, node_type: str) -> Optional[Node]:
    """First node of the given type in pre-order, including node itself."""
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type == node_type:
            return current
        stack.extend(reversed(current.children))
    return None


class TreeSitterExtractor(BlockExtractor):
    """
    Multi-language AST-based block extractor using tree-sitter.

    Each language config lists:
    - definitions: node type -> block type ("function" or "class")
    - scopes: node types that name a scope without being a block themselves
    - wrappers: node types whose span replaces their inner definition's
      (Python decorators)
    - calls: call node types; the callee is their "function" field

    Functions whose enclosing scope is a class-like definition become
    "method" blocks.
    """

    # Lazy-loaded grammars, shared by all extractors
    _languages: dict[str, Language] = {}
    _languages_lock = threading.Lock()

    LANGUAGE_CONFIGS = {
        "python": {
            "definitions": {
                "function_definition": "function",
                "class_definition": "class",
            },
            "scopes": {},
            "wrappers": ("decorated_definition",),
            "calls": ("call",),
        },
        "javascript": {
            "definitions": {
                "function_declaration": "function",
                "generator_function_declaration": "function",
                "method_definition": "function",
                "variable_declarator": "function",  # only with a function value
                "class_declaration": "class",
            },
            "scopes": {},
            "wrappers": (),
            "calls": ("call_expression",),
        },
        "typescript": {
            "definitions": {
                "function_declaration": "function",
                "generator_function_declaration": "function",
                "method_definition": "function",
                "variable_declarator": "function",
                "class_declaration": "class",
                "abstract_class_declaration": "class",
            },
            "scopes": {},
            "wrappers": (),
            "calls": ("call_expression",),
        },
        "go": {
            "definitions": {
                "function_declaration": "function",
                "method_declaration": "method",
                "type_spec": "class",  # only struct and interface types
            },
            "scopes": {},
            "wrappers": (),
            "calls": ("call_expression",),
        },
        "rust": {
            "definitions": {
                "function_item": "function",
                "struct_item": "class",
                "enum_item": "class",
                "trait_item": "class",
            },
            "scopes": {
                "impl_item": True,
                "mod_item": False,
            },
            "wrappers": (),
            "calls": ("call_expression",),
        },
        "c": {
            "definitions": {
                "function_definition": "function",
            },
            "scopes": {},
            "wrappers": (),
            "calls": ("call_expression",),
        },
    }
    LANGUAGE_CONFIGS["tsx"] = LANGUAGE_CONFIGS["typescript"]

    FUNCTION_VALUE_TYPES = ("arrow_function", "function_expression", "function", "generator_function")

    @classmethod
    def _get_language(cls, lang: str) -> Language:
        """
        Lazy-load a tree-sitter grammar.

        Raises:
            ValueError: If language is not supported
        """
        with cls._languages_lock:
            if lang not in cls._languages:
                logger.debug(f"Lazy-loading tree-sitter language: {lang}")
                if lang == "python":
                    import tree_sitter_python as ts
                    cls._languages[lang] = Language(ts.language())
                elif lang == "javascript":
                    import tree_sitter_javascript as ts
                    cls._languages[lang] = Language(ts.language())
                elif lang == "typescript":
                    import tree_sitter_typescript as ts
                    cls._languages[lang] = Language(ts.language_typescript())
                elif lang == "tsx":
                    import tree_sitter_typescript as ts
                    cls._languages[lang] = Language(ts.language_tsx())
                elif lang == "go":
                    import tree_sitter_go as ts
                    cls._languages[lang] = Language(ts.language())
                elif lang == "rust":
                    import tree_sitter_rust as ts
                    cls._languages[lang] = Language(ts.language())
                elif lang == "c":
                    import tree_sitter_c as ts
                    cls._languages[lang] = Language(ts.language())
                else:
                    raise ValueError(f"Unsupported language: {lang}")
            return cls._languages[lang]

    def __init__(self, language: str, strict: bool = True):
        """
        Initialize the extractor.

        Args:
            language: One of LANGUAGE_CONFIGS
            strict: Fail with ParseFailure when the tree contains syntax errors

        Raises:
            ValueError: If language is not supported
        """
        self.language_name = language
        self.strict = strict

        self.config = self.LANGUAGE_CONFIGS.get(language)
        if not self.config:
            raise ValueError(
                f"Unsupported language: {language}. "
                f"Supported: {list(self.LANGUAGE_CONFIGS.keys())}"
            )
        self.language = self._get_language(language)

    def extract(self, source: str, path: str) -> BlockCandidates:
        if not source.strip():
            return BlockCandidates(path, lambda: iter(()))

        try:
            data = source.encode("utf8")
        except UnicodeEncodeError as e:
            raise ParseFailure(path, f"source is not encodable as UTF-8: {e}") from e

        # Parsers are not thread-safe; one per call keeps extraction parallel
        tree = Parser(self.language).parse(data)

        if tree.root_node.has_error:
            line = self._first_error_line(tree.root_node)
            if self.strict:
                raise ParseFailure(path, f"syntax error near line {line} ({self.language_name})")
            logger.debug(f"Parse errors in {path} near line {line}, extracting anyway")

        return BlockCandidates(path, lambda: self._iter_blocks(tree, path))

    def _iter_blocks(self, tree: Tree, path: str) -> Iterator[CodeBlock]:
        """Pre-order walk with an explicit stack; deep trees must not hit the recursion limit."""
        definitions = self.config["definitions"]
        occurrences: Counter = Counter()
        stack: list[tuple[Node, Optional[_Scope]]] = [(tree.root_node, None)]

        while stack:
            node, scope = stack.pop()
            children = node.children

            if node.type in self.config["wrappers"]:
                inner = node.child_by_field_name("definition")
                if inner is not None and inner.type in definitions:
                    block, scope = self._visit_definition(inner, node, scope, path, occurrences)
                    if block is not None:
                        yield block
                    children = inner.children
            elif node.type in definitions:
                block, scope = self._visit_definition(node, node, scope, path, occurrences)
                if block is not None:
                    yield block
            elif node.type in self.config["scopes"]:
                name = self._scope_name(node)
                if name:
                    scope = _Scope(name, self.config["scopes"][node.type])

            # Reversed so the stack pops children in source order
            stack.extend((child, scope) for child in reversed(children))

    def _visit_definition(
        self,
        node: Node,
        span_node: Node,
        scope: Optional[_Scope],
        path: str,
        occurrences: Counter,
    ) -> tuple[Optional[CodeBlock], Optional[_Scope]]:
        """
        Turn a definition node into a block.

        Returns:
            The block (None when the node is not a named definition) and the
            scope its children are walked in
        """
        block_type = self._block_type(node, scope)
        name = self._extract_name(node) if block_type else None

        if not name:
            # Not a block (e.g. a plain variable); keep looking inside it
            return None, scope

        if node.type == "method_declaration":
            receiver = self._go_receiver_type(node)
            if receiver:
                scope = _Scope(receiver, True)

        scope_name = scope.name if scope else None
        key = (scope_name, name)
        occurrence = occurrences[key]
        occurrences[key] += 1

        block = CodeBlock(
            path=path,
            language=self.language_name,
            block_type=block_type,
            name=name,
            scope=scope_name,
            occurrence=occurrence,
            start_byte=span_node.start_byte,
            end_byte=span_node.end_byte,
            start_line=span_node.start_point[0] + 1,  # tree-sitter uses 0-indexed lines
            end_line=span_node.end_point[0] + 1,
            text=_node_text(span_node),
            outgoing_calls=self._outgoing_calls(node),
        )
        return block, _Scope(name, block_type == "class")

    def _block_type(self, node: Node, scope: Optional[_Scope]) -> Optional[str]:
        block_type = self.config["definitions"][node.type]

        if node.type == "variable_declarator":
            value = node.child_by_field_name("value")
            if value is None or value.type not in self.FUNCTION_VALUE_TYPES:
                return None
        elif node.type == "type_spec":
            type_node = node.child_by_field_name("type")
            if type_node is None or type_node.type not in ("struct_type", "interface_type"):
                return None

        if block_type == "function" and scope is not None and scope.is_class:
            return "method"
        return block_type

    def _extract_name(self, node: Node) -> Optional[str]:
        if self.language_name == "c":
            return self._extract_c_name(node)

        name_node = node.child_by_field_name("name")
        if name_node is None or name_node.type in ("array_pattern", "object_pattern"):
            return None
        return _node_text(name_node)

    def _extract_c_name(self, node: Node) -> Optional[str]:
        """Follow the declarator chain of a C function definition down to its identifier."""
        declarator = node.child_by_field_name("declarator")
        while declarator is not None:
            if declarator.type in ("identifier", "field_identifier"):
                return _node_text(declarator)
            inner = declarator.child_by_field_name("declarator")
            if inner is None:
                identifier = _first_descendant(declarator, "identifier")
                return _node_text(identifier) if identifier is not None else None
            declarator = inner
        return None

    def _scope_name(self, node: Node) -> Optional[str]:
        """Name of a scope-only node (Rust impl and mod blocks)."""
        if node.type == "impl_item":
            type_node = node.child_by_field_name("type")
            if type_node is None:
                return None
            if type_node.type == "type_identifier":
                return _node_text(type_node)
            identifier = _first_descendant(type_node, "type_identifier")
            return _node_text(identifier) if identifier is not None else _node_text(type_node)

        name_node = node.child_by_field_name("name")
        return _node_text(name_node) if name_node is not None else None

    def _go_receiver_type(self, node: Node) -> Optional[str]:
        receiver = node.child_by_field_name("receiver")
        if receiver is None:
            return None
        identifier = _first_descendant(receiver, "type_identifier")
        return _node_text(identifier) if identifier is not None else None

    def _outgoing_calls(self, node: Node) -> list[str]:
        """Callee expressions of every call inside the definition, first occurrence order."""
        calls: list[str] = []
        seen: set[str] = set()
        stack = [node]
        while stack:
            current = stack.pop()
            if current.type in self.config["calls"]:
                callee = current.child_by_field_name("function")
                if callee is not None:
                    text = " ".join(_node_text(callee).split())
                    if text not in seen:
                        seen.add(text)
                        calls.append(text)
            # Reversed so the stack pops children in source order
            stack.extend(reversed(current.children))
        return calls

    def _first_error_line(self, node: Node) -> int:
        stack = [node]
        while stack:
            current = stack.pop()
            if current.type == "ERROR" or current.is_missing:
                return current.start_point[0] + 1
            if current.has_error:
                stack.extend(reversed(current.children))
        return node.start_point[0] + 1

    def __repr__(self) -> str:
        return f"TreeSitterExtractor(language={self.language_name}, strict={self.strict})"
