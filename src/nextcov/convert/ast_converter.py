"""V8 ranges to Istanbul coverage through the script's syntax tree.

The unit of work is one script: its code, its (sanitized) source map, and
the V8 function ranges captured for it. The tree is walked once; every
statement, function and branch point gets the count of the innermost V8
range containing its start, and its position is translated through the
source map. One script can yield coverage for several original files.

``process_entry`` is what worker processes run. It never raises: failures
are reported with ``success=False``.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from nextcov.convert.parser import JsParser, ParseResult
from nextcov.convert.ranges import FilterStats, OffsetIndex, RangeIndex, overlaps_any
from nextcov.coverage.istanbul import (
    BranchMapping,
    FileCoverage,
    FunctionMapping,
    Location,
    Position,
)
from nextcov.coverage.models import SourceMapData, V8Function
from nextcov.sourcemaps.consumer import SourceMapConsumer

STATEMENT_TYPES = frozenset(
    {
        "expression_statement",
        "lexical_declaration",
        "variable_declaration",
        "return_statement",
        "if_statement",
        "for_statement",
        "for_in_statement",
        "while_statement",
        "do_statement",
        "switch_statement",
        "throw_statement",
        "try_statement",
        "break_statement",
        "continue_statement",
        "debugger_statement",
        "class_declaration",
        "abstract_class_declaration",
    }
)

FUNCTION_TYPES = frozenset(
    {
        "function_declaration",
        "generator_function_declaration",
        "function_expression",
        "function",
        "generator_function",
        "arrow_function",
        "method_definition",
    }
)

LOGICAL_OPERATORS = frozenset({"&&", "||", "??"})

_NAME_PARENTS = {
    "variable_declarator": "name",
    "assignment_expression": "left",
    "pair": "key",
    "field_definition": "property",
    "public_field_definition": "name",
}


@dataclass(slots=True)
class ConvertTask:
    """One script to convert. Only plain data, so it can cross process boundaries."""

    code: str
    url: str
    functions: list[V8Function] = field(default_factory=list)
    source_map: SourceMapData | None = None
    src_code_ranges: list[tuple[int, int]] | None = None
    file_path: str | None = None  # attribution path when there is no source map
    language: str = "javascript"


@dataclass(frozen=True, slots=True)
class ConversionTimings:
    parse_ms: float = 0.0
    convert_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(slots=True)
class ConversionResult:
    success: bool
    files: list[FileCoverage] = field(default_factory=list)
    timings: ConversionTimings = field(default_factory=ConversionTimings)
    filter_stats: FilterStats = field(default_factory=FilterStats)
    error: str | None = None


class _FileBuilder:
    """Accumulates one file's maps; repeated constructs keep the highest count."""

    def __init__(self, path: str) -> None:
        self.coverage = FileCoverage(path=path)
        self._statements: dict[Location, str] = {}
        self._functions: dict[tuple[str, Location], str] = {}
        self._branches: dict[tuple[str, Location, tuple[Location, ...]], str] = {}

    def add_statement(self, loc: Location, count: int) -> None:
        fc = self.coverage
        sid = self._statements.get(loc)
        if sid is None:
            sid = self._statements[loc] = str(len(fc.statement_map))
            fc.statement_map[sid] = loc
            fc.s[sid] = count
        else:
            fc.s[sid] = max(fc.s[sid], count)

    def add_function(self, name: str, decl: Location, loc: Location, count: int) -> None:
        fc = self.coverage
        key = (name, decl)
        fid = self._functions.get(key)
        if fid is None:
            fid = self._functions[key] = str(len(fc.fn_map))
            fc.fn_map[fid] = FunctionMapping(name=name, decl=decl, loc=loc, line=decl.start.line)
            fc.f[fid] = count
        else:
            fc.f[fid] = max(fc.f[fid], count)

    def add_branch(
        self, kind: str, loc: Location, locations: tuple[Location, ...], counts: list[int]
    ) -> None:
        fc = self.coverage
        key = (kind, loc, locations)
        bid = self._branches.get(key)
        if bid is None:
            bid = self._branches[key] = str(len(fc.branch_map))
            fc.branch_map[bid] = BranchMapping(
                type=kind, loc=loc, locations=locations, line=loc.start.line
            )
            fc.b[bid] = list(counts)
        else:
            fc.b[bid] = [max(a, c) for a, c in zip(fc.b[bid], counts, strict=False)]


def _text(node: Any, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _unwrap_parens(node: Any) -> Any:
    while (
        node is not None
        and node.type == "parenthesized_expression"
        and node.named_child_count == 1
    ):
        node = node.named_children[0]
    return node


def _is_logical(node: Any) -> bool:
    if node.type != "binary_expression":
        return False
    op = node.child_by_field_name("operator")
    return op is not None and op.type in LOGICAL_OPERATORS


def _in_logical_chain(node: Any) -> bool:
    """True when ``node`` is an operand of an enclosing logical expression,
    looking through any wrapping parentheses."""
    parent = node.parent
    while parent is not None and parent.type == "parenthesized_expression":
        parent = parent.parent
    return parent is not None and _is_logical(parent)


def is_ignored_statement(node: Any, source: bytes) -> bool:
    """Bundler scaffolding that should not count as a statement.

    ``__webpack_require__(...)``, ``__webpack_exports__.x(...)``,
    ``module.exports = ...`` and the ``"use strict"`` directive.
    """
    if node.type != "expression_statement" or node.named_child_count == 0:
        return False
    expr = node.named_children[0]
    if expr.type == "string":
        return _text(expr, source)[1:-1] == "use strict"
    if expr.type == "call_expression":
        callee = expr.child_by_field_name("function")
        if callee is None:
            return False
        if callee.type == "identifier":
            return _text(callee, source) == "__webpack_require__"
        if callee.type == "member_expression":
            obj = callee.child_by_field_name("object")
            return obj is not None and _text(obj, source) == "__webpack_exports__"
        return False
    if expr.type == "assignment_expression":
        left = expr.child_by_field_name("left")
        if left is None or left.type != "member_expression":
            return False
        obj = left.child_by_field_name("object")
        prop = left.child_by_field_name("property")
        return (
            obj is not None
            and prop is not None
            and _text(obj, source) == "module"
            and _text(prop, source) == "exports"
        )
    return False


class _Walker:
    def __init__(
        self,
        parsed: ParseResult,
        offsets: OffsetIndex,
        ranges: RangeIndex,
        consumer: SourceMapConsumer | None,
        default_path: str,
        windows: Sequence[tuple[int, int]] | None = None,
    ) -> None:
        self.source = parsed.source
        self.root = parsed.root_node
        self.offsets = offsets
        self.ranges = ranges
        self.consumer = consumer
        self.default_path = default_path
        self.windows = windows
        self.unmapped = 0
        self._builders: dict[str, _FileBuilder] = {}
        self._anonymous = 0

    def run(self) -> list[FileCoverage]:
        stack = [self.root]
        while stack:
            node = stack.pop()
            if self.windows and not overlaps_any(
                self.offsets.to_utf16(node.start_byte),
                self.offsets.to_utf16(node.end_byte),
                self.windows,
            ):
                continue
            self._visit(node)
            stack.extend(reversed(node.named_children))
        return [b.coverage for b in self._builders.values()]

    # -- positions -----------------------------------------------------------

    def _count(self, node: Any) -> int:
        return self.ranges.count_at(self.offsets.to_utf16(node.start_byte)) or 0

    def _locate(self, node: Any) -> tuple[str, Location] | None:
        start = self.offsets.to_utf16(node.start_byte)
        end = self.offsets.to_utf16(node.end_byte)
        s_line, s_col = self.offsets.position(start)
        e_line, e_col = self.offsets.position(end)
        if self.consumer is None:
            return self.default_path, Location(Position(s_line, s_col), Position(e_line, e_col))

        orig = self.consumer.original_position_for(s_line, s_col)
        if orig is None:
            return None
        start_pos = Position(orig.line, orig.column)
        end_pos = start_pos
        if end > start:
            last_line, last_col = self.offsets.position(end - 1)
            orig_end = self.consumer.original_position_for(last_line, last_col)
            if orig_end is not None and orig_end.source == orig.source:
                candidate = Position(orig_end.line, orig_end.column + 1)
                if (candidate.line, candidate.column) > (start_pos.line, start_pos.column):
                    end_pos = candidate
        return orig.source, Location(start_pos, end_pos)

    def _builder(self, path: str) -> _FileBuilder:
        builder = self._builders.get(path)
        if builder is None:
            builder = self._builders[path] = _FileBuilder(path)
        return builder

    # -- constructs ----------------------------------------------------------

    def _visit(self, node: Any) -> None:
        kind = node.type
        if kind in STATEMENT_TYPES and not is_ignored_statement(node, self.source):
            self._statement(node)

        if kind in FUNCTION_TYPES:
            self._function(node)
            if kind == "arrow_function":
                body = node.child_by_field_name("body")
                if body is not None and body.type != "statement_block":
                    self._statement(body)
        elif kind == "if_statement":
            self._if(node)
        elif kind == "ternary_expression":
            arms = [node.child_by_field_name("consequence"), node.child_by_field_name("alternative")]
            if all(arm is not None for arm in arms):
                self._branch("cond-expr", node, arms, [self._count(arm) for arm in arms])
        elif kind == "binary_expression":
            if _is_logical(node) and not _in_logical_chain(node):
                leaves = self._logical_leaves(node)
                self._branch("binary-expr", node, leaves, [self._count(leaf) for leaf in leaves])
        elif kind == "switch_statement":
            body = node.child_by_field_name("body")
            cases = [
                c for c in (body.named_children if body is not None else [])
                if c.type in ("switch_case", "switch_default")
            ]
            if cases:
                self._branch("switch", node, cases, [self._count(c) for c in cases])
        elif kind in ("assignment_pattern", "required_parameter", "optional_parameter"):
            self._default_arg(node)

    def _statement(self, node: Any) -> None:
        located = self._locate(node)
        if located is None:
            self.unmapped += 1
            return
        path, loc = located
        self._builder(path).add_statement(loc, self._count(node))

    def _function_name(self, node: Any) -> tuple[str, Any]:
        name_node = node.child_by_field_name("name")
        if name_node is not None:
            return _text(name_node, self.source), name_node
        parent = node.parent
        field_name = _NAME_PARENTS.get(parent.type) if parent is not None else None
        if field_name is not None:
            target = parent.child_by_field_name(field_name)
            if target is not None and target.type in (
                "identifier",
                "property_identifier",
                "private_property_identifier",
                "member_expression",
                "string",
            ):
                return _text(target, self.source).strip("\"'"), target
        self._anonymous += 1
        return f"(anonymous_{self._anonymous - 1})", None

    def _function(self, node: Any) -> None:
        located = self._locate(node)
        if located is None:
            self.unmapped += 1
            return
        path, loc = located
        name, name_node = self._function_name(node)
        decl = loc
        if name_node is not None:
            decl_located = self._locate(name_node)
            if decl_located is not None and decl_located[0] == path:
                decl = decl_located[1]
        self._builder(path).add_function(name, decl, loc, self._count(node))

    def _if(self, node: Any) -> None:
        consequence = node.child_by_field_name("consequence")
        if consequence is None:
            return
        cons_count = self._count(consequence)
        alternative = node.child_by_field_name("alternative")
        if alternative is not None:
            # else_clause wraps the statement that runs
            target = alternative.named_children[0] if alternative.named_child_count else alternative
            self._branch("if", node, [consequence, target], [cons_count, self._count(target)])
        else:
            implicit = max(self._count(node) - cons_count, 0)
            self._branch("if", node, [consequence, None], [cons_count, implicit])

    def _logical_leaves(self, node: Any) -> list[Any]:
        leaves = []
        stack = [node]
        while stack:
            current = _unwrap_parens(stack.pop())
            if current is not None and _is_logical(current):
                stack.append(current.child_by_field_name("right"))
                stack.append(current.child_by_field_name("left"))
            elif current is not None:
                leaves.append(current)
        return leaves

    def _default_arg(self, node: Any) -> None:
        parent = node.parent
        if node.type == "assignment_pattern":
            if parent is None or parent.type != "formal_parameters":
                return
            value = node.child_by_field_name("right")
        else:
            value = node.child_by_field_name("value")
        if value is not None:
            self._branch("default-arg", value, [value], [self._count(value)])

    def _branch(self, kind: str, node: Any, arms: Sequence[Any], counts: list[int]) -> None:
        located = self._locate(node)
        if located is None:
            self.unmapped += 1
            return
        path, loc = located
        locations = []
        for arm in arms:
            arm_located = self._locate(arm) if arm is not None else None
            locations.append(arm_located[1] if arm_located and arm_located[0] == path else loc)
        self._builder(path).add_branch(kind, loc, tuple(locations), counts)


_parser: JsParser | None = None


def _get_parser() -> JsParser:
    global _parser
    if _parser is None:
        _parser = JsParser()
    return _parser


def process_entry(task: ConvertTask) -> ConversionResult:
    """Convert one script. Runs in worker processes and inline alike."""
    start_total = time.perf_counter()
    parse_ms = 0.0
    try:
        start_parse = time.perf_counter()
        parsed = _get_parser().parse(task.code, task.language)
        parse_ms = (time.perf_counter() - start_parse) * 1000

        start_convert = time.perf_counter()
        ranges, stats = RangeIndex.from_functions(task.functions, task.src_code_ranges)
        consumer = SourceMapConsumer(task.source_map) if task.source_map is not None else None
        walker = _Walker(
            parsed,
            OffsetIndex(task.code),
            ranges,
            consumer,
            default_path=task.file_path or task.url,
            windows=task.src_code_ranges,
        )
        files = walker.run()
        convert_ms = (time.perf_counter() - start_convert) * 1000
    except Exception as e:  # noqa: BLE001 - reported to the caller as a failed result
        return ConversionResult(
            success=False,
            error=f"{type(e).__name__}: {e}",
            timings=ConversionTimings(
                parse_ms=parse_ms, total_ms=(time.perf_counter() - start_total) * 1000
            ),
        )

    return ConversionResult(
        success=True,
        files=files,
        timings=ConversionTimings(
            parse_ms=parse_ms,
            convert_ms=convert_ms,
            total_ms=(time.perf_counter() - start_total) * 1000,
        ),
        filter_stats=FilterStats(
            original=stats.original, filtered=stats.filtered, unmapped=walker.unmapped
        ),
    )


def instrument_source(code: str, path: str, language: str) -> FileCoverage:
    """All-zero coverage for an original source file that never ran."""
    parsed = _get_parser().parse(code, language)
    walker = _Walker(parsed, OffsetIndex(code), RangeIndex([]), None, default_path=path)
    files = walker.run()
    return files[0] if files else FileCoverage(path=path)
