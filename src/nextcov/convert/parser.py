"""Tree-sitter parsing for JavaScript and TypeScript sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

EXTENSION_LANGUAGES = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
}


def language_for_path(path: str | PurePath) -> str | None:
    return EXTENSION_LANGUAGES.get(PurePath(path).suffix.lower())


@dataclass
class ParseResult:
    tree: Any
    source: bytes
    language: str
    error_count: int

    @property
    def root_node(self) -> Any:
        return self.tree.root_node


@dataclass
class JsParser:
    """
    Tree-sitter parser for bundled JavaScript and original TS/TSX sources.

    Usage::

        parser = JsParser()
        result = parser.parse(code)                      # bundled JavaScript
        result = parser.parse(text, language="tsx")      # original source
    """

    _parser: Any = field(default=None, repr=False)
    _languages: dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        """Initialize the parser."""
        try:
            import tree_sitter
        except ImportError as e:
            raise ImportError("tree-sitter is required. Install with: pip install tree-sitter") from e

        self._parser = tree_sitter.Parser()
        self._languages = {}

    def _get_language(self, lang_name: str) -> Any:
        """Get or load a Tree-sitter language."""
        if lang_name in self._languages:
            return self._languages[lang_name]

        import tree_sitter

        if lang_name == "javascript":
            import tree_sitter_javascript

            capsule = tree_sitter_javascript.language()
        elif lang_name in ("typescript", "tsx"):
            import tree_sitter_typescript

            capsule = (
                tree_sitter_typescript.language_tsx()
                if lang_name == "tsx"
                else tree_sitter_typescript.language_typescript()
            )
        else:
            raise ValueError(f"Language not available: {lang_name}")

        lang = tree_sitter.Language(capsule)
        self._languages[lang_name] = lang
        return lang

    def parse(self, code: str, language: str = "javascript") -> ParseResult:
        """
        Parse source text.

        Args:
            code: Source text.
            language: ``javascript``, ``typescript`` or ``tsx``.

        Returns:
            ParseResult with the tree and the UTF-8 bytes it indexes.
        """
        source = code.encode("utf-8")
        self._parser.language = self._get_language(language)
        tree = self._parser.parse(source)

        error_count = 0
        stack = [tree.root_node]
        while stack:
            node = stack.pop()
            if node.type == "ERROR" or node.is_missing:
                error_count += 1
            if node.has_error:
                stack.extend(node.children)

        return ParseResult(tree=tree, source=source, language=language, error_count=error_count)
