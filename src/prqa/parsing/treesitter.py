"""Tree-sitter wrapper used to syntax-check generated test sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, cast

import tree_sitter
import tree_sitter_language_pack as tslp

if TYPE_CHECKING:
    from tree_sitter_language_pack import SupportedLanguage

logger = logging.getLogger(__name__)

# Map file extensions to tree-sitter language names
EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
}

SUPPORTED_LANGUAGES = frozenset(EXTENSION_TO_LANGUAGE.values())

_IMPORT_NODE_TYPES = frozenset(
    {"import_statement", "import_from_statement", "future_import_statement"}
)
_NAME_NODE_TYPES = frozenset({"identifier", "dotted_name", "type_identifier"})


@dataclass(frozen=True)
class SyntaxIssue:
    """A syntax error located in a parsed source."""

    line: int
    """1-based line of the error node."""

    column: int
    """1-based column of the error node."""

    snippet: str
    """Source text covered by the error node (possibly empty for missing nodes)."""

    missing: bool = False
    """``True`` when the parser inserted a missing token rather than skipping text."""


# ── Module-level caches ──────────────────────────────────────────
_parser_cache: dict[str, tree_sitter.Parser] = {}


def detect_language(file_path: str | Path) -> str | None:
    """Detect language from file extension.

    Returns the tree-sitter language name, or None if unsupported.
    """
    ext = Path(file_path).suffix.lower()
    return EXTENSION_TO_LANGUAGE.get(ext)


def get_parser(language: str) -> tree_sitter.Parser:
    """Get a (cached) tree-sitter parser for the given language."""
    if language not in SUPPORTED_LANGUAGES:
        raise ValueError(f"Unsupported language: {language}")
    cached = _parser_cache.get(language)
    if cached is not None:
        return cached
    parser = tslp.get_parser(cast("SupportedLanguage", language))
    _parser_cache[language] = parser
    return parser


def parse_code(source: bytes, language: str) -> tree_sitter.Tree:
    """Parse source bytes with the parser for *language*."""
    return get_parser(language).parse(source)


def has_parse_errors(root: tree_sitter.Node) -> bool:
    """Return True if the AST contains any ERROR or MISSING nodes."""
    return root.has_error


def collect_syntax_issues(root: tree_sitter.Node, *, limit: int = 20) -> list[SyntaxIssue]:
    """Collect ERROR and MISSING nodes in document order."""
    issues: list[SyntaxIssue] = []
    _walk_errors(root, issues, limit)
    return issues


def collect_imported_names(root: tree_sitter.Node) -> set[str]:
    """Return every identifier that appears inside an import statement.

    Covers Python ``import``/``from ... import`` and ES module ``import``.
    Dotted names are also split so ``import unittest.mock`` yields
    ``unittest`` and ``mock`` as well as the full path.
    """
    names: set[str] = set()
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in _IMPORT_NODE_TYPES:
            _collect_names(node, names)
            continue
        stack.extend(node.children)
    return names


# ── Helpers ───────────────────────────────────────────────────────


def _walk_errors(node: tree_sitter.Node, issues: list[SyntaxIssue], limit: int) -> None:
    if len(issues) >= limit:
        return
    if node.is_error or node.is_missing:
        issues.append(
            SyntaxIssue(
                line=node.start_point.row + 1,
                column=node.start_point.column + 1,
                snippet=_node_text(node)[:80],
                missing=node.is_missing,
            )
        )
        if node.is_missing:
            return
    for child in node.children:
        _walk_errors(child, issues, limit)


def _collect_names(node: tree_sitter.Node, names: set[str]) -> None:
    if node.type in _NAME_NODE_TYPES:
        text = _node_text(node)
        if text:
            names.add(text)
            names.update(part for part in text.split(".") if part)
    for child in node.children:
        _collect_names(child, names)


def _node_text(node: tree_sitter.Node) -> str:
    """Decode node text from bytes."""
    return node.text.decode("utf-8", errors="replace") if node.text else ""
