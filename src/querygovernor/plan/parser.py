"""
Parsers for textual EXPLAIN output.

Plan text is pattern-matched, not semantically parsed: each parser pulls a
handful of metrics (cost range, actual time, row estimate, scan strategies,
index names) out of the backend's diagnostic text and returns a typed
PlanAnalysis.

Parsers are dialect-specific and pluggable:
    register_plan_parser("mydialect", MyParser)
    parser = get_plan_parser("mydialect")

Reference format (PostgreSQL EXPLAIN ANALYZE, text):
    Seq Scan on orders  (cost=0.00..1693.00 rows=48 width=97) (actual time=0.019..11.237 rows=52 loops=1)
      Filter: (customer_id = 42)
      Rows Removed by Filter: 49948
    Planning Time: 0.080 ms
    Execution Time: 11.263 ms
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Protocol, Union

from querygovernor.exceptions import AnalysisError
from querygovernor.models import PlanAnalysis, ScanType

logger = logging.getLogger(__name__)

PlanInput = Union[str, Iterable[Any]]

_NUMBER = r"(\d+(?:\.\d+)?)"


class PlanParser(Protocol):
    """Turns a backend's diagnostic plan output into a PlanAnalysis."""

    def explain_statement(self, query: str, analyze: bool) -> str:
        """Wrap a query in this dialect's EXPLAIN syntax."""
        ...

    def parse(self, plan: PlanInput) -> PlanAnalysis:
        """Extract metrics; raises AnalysisError on unusable input."""
        ...


def plan_text(plan: PlanInput, column: str = "QUERY PLAN") -> str:
    """
    Flatten plan output to text.

    Accepts a string, an iterable of strings, or rows (dicts or tuples)
    whose first/``column`` value is a plan line.
    """
    if isinstance(plan, str):
        return plan

    lines: list[str] = []
    for row in plan:
        if isinstance(row, str):
            lines.append(row)
        elif isinstance(row, dict):
            if column in row:
                lines.append(str(row[column]))
            elif row:
                lines.append(str(next(iter(row.values()))))
        elif isinstance(row, (tuple, list)) and row:
            lines.append(str(row[0]))
        else:
            raise AnalysisError(f"Unsupported plan row type: {type(row).__name__}")
    return "\n".join(lines)


class PostgresTextPlanParser:
    """
    Pattern-based parser for PostgreSQL text-format EXPLAIN output.

    Cost, actual time and row estimate are taken from the first match,
    which is the root node of the plan. A sequential scan adds a warning when
    the rows it read reach ``seq_scan_warning_rows``. Rows read are the rows
    the node returned plus its "Rows Removed by Filter" count; a filtered
    scan without that count (plain EXPLAIN) reads an unknown number of rows
    and always warns.
    """

    COST_PATTERN = re.compile(rf"cost={_NUMBER}\.\.{_NUMBER}")
    ACTUAL_TIME_PATTERN = re.compile(rf"actual time={_NUMBER}\.\.{_NUMBER}")
    ROWS_PATTERN = re.compile(r"rows=(\d+)")

    SEQ_SCAN_PATTERN = re.compile(r"Seq Scan on ([\w.\"]+)")
    ESTIMATED_ROWS_PATTERN = re.compile(r"cost=\S+ rows=(\d+)")
    ACTUAL_ROWS_PATTERN = re.compile(r"actual time=\S+ rows=(\d+)")
    ROWS_REMOVED_PATTERN = re.compile(r"Rows Removed by Filter: (\d+)")
    FILTER_PATTERN = re.compile(r"^\s*Filter: ")
    INDEX_SCAN_PATTERN = re.compile(
        r"(?<!Bitmap )Index (?:Only )?Scan (?:Backward )?using ([\w\"]+) on ([\w.\"]+)"
    )
    BARE_INDEX_SCAN_PATTERN = re.compile(r"(?<!Bitmap )Index (?:Only )?Scan\b")
    BITMAP_INDEX_PATTERN = re.compile(r"Bitmap Index Scan on ([\w\"]+)")
    BITMAP_HEAP_PATTERN = re.compile(r"Bitmap Heap Scan on ([\w.\"]+)")

    PLANNING_TIME_PATTERN = re.compile(rf"Planning(?: Time)?: {_NUMBER} ms")
    EXECUTION_TIME_PATTERN = re.compile(rf"Execution(?: Time)?: {_NUMBER} ms")

    def __init__(self, seq_scan_warning_rows: int = 1000) -> None:
        self.seq_scan_warning_rows = seq_scan_warning_rows

    def explain_statement(self, query: str, analyze: bool) -> str:
        if analyze:
            return f"EXPLAIN (ANALYZE, BUFFERS) {query}"
        return f"EXPLAIN {query}"

    def parse(self, plan: PlanInput) -> PlanAnalysis:
        text = plan_text(plan)
        if not text.strip():
            raise AnalysisError("Empty plan output")

        analysis = PlanAnalysis()
        recognised = False

        cost = self.COST_PATTERN.search(text)
        if cost:
            analysis.startup_cost = float(cost.group(1))
            analysis.total_cost = float(cost.group(2))
            recognised = True

        actual = self.ACTUAL_TIME_PATTERN.search(text)
        if actual:
            analysis.actual_time = float(actual.group(2))
            recognised = True

        rows = self.ROWS_PATTERN.search(text)
        if rows:
            analysis.row_estimate = int(rows.group(1))

        lines = text.splitlines()
        for index, line in enumerate(lines):
            match = self.SEQ_SCAN_PATTERN.search(line)
            if not match:
                continue
            recognised = True
            table = _unquote(match.group(1))
            analysis.scan_types.add(ScanType.SEQUENTIAL.value)
            analysis.tables_scanned.add(table)
            scanned = self._rows_read(lines, index)
            if scanned is None or scanned >= self.seq_scan_warning_rows:
                analysis.warnings.append(
                    f"Sequential scan on {table}"
                    + (f" (~{scanned} rows)" if scanned is not None else "")
                    + " - consider adding index"
                )

        if self.BARE_INDEX_SCAN_PATTERN.search(text):
            recognised = True
            analysis.scan_types.add(ScanType.INDEX.value)
        for match in self.INDEX_SCAN_PATTERN.finditer(text):
            analysis.indexes_used.add(_unquote(match.group(1)))
            analysis.tables_scanned.add(_unquote(match.group(2)))

        for match in self.BITMAP_HEAP_PATTERN.finditer(text):
            recognised = True
            analysis.scan_types.add(ScanType.BITMAP.value)
            analysis.tables_scanned.add(_unquote(match.group(1)))
        for match in self.BITMAP_INDEX_PATTERN.finditer(text):
            recognised = True
            analysis.indexes_used.add(_unquote(match.group(1)))

        planning = self.PLANNING_TIME_PATTERN.search(text)
        if planning:
            analysis.planning_time_ms = float(planning.group(1))
        execution = self.EXECUTION_TIME_PATTERN.search(text)
        if execution:
            analysis.execution_time_ms = float(execution.group(1))

        if not recognised:
            raise AnalysisError(f"Unrecognised plan output: {text[:100]!r}")

        return analysis

    def _rows_read(self, lines: list[str], index: int) -> int | None:
        """Rows a scan node read: returned rows plus rows its filter removed."""
        node = lines[index]
        returned = self.ACTUAL_ROWS_PATTERN.search(node) or self.ESTIMATED_ROWS_PATTERN.search(node)
        if returned is None:
            return None

        depth = _indent(node)
        filtered = False
        for detail in lines[index + 1:]:
            # Details are indented deeper than their node; "->" starts a child
            if _indent(detail) <= depth or detail.lstrip().startswith("->"):
                break
            removed = self.ROWS_REMOVED_PATTERN.search(detail)
            if removed:
                return int(returned.group(1)) + int(removed.group(1))
            if self.FILTER_PATTERN.match(detail):
                filtered = True

        return None if filtered else int(returned.group(1))


def _indent(line: str) -> int:
    stripped = line.lstrip()
    indent = len(line) - len(stripped)
    if stripped.startswith("->"):
        indent += 2
    return indent


def _unquote(identifier: str) -> str:
    return identifier.replace('"', "")


_PARSERS: dict[str, Callable[..., PlanParser]] = {
    "postgresql": PostgresTextPlanParser,
    "postgres": PostgresTextPlanParser,
}


def register_plan_parser(dialect: str, factory: Callable[..., PlanParser]) -> None:
    """Make a parser available under a dialect name."""
    _PARSERS[dialect.lower()] = factory


def get_plan_parser(dialect: str = "postgresql", **options: Any) -> PlanParser:
    """
    Instantiate the parser registered for a dialect.

    Raises:
        KeyError: No parser is registered for the dialect.
    """
    try:
        factory = _PARSERS[dialect.lower()]
    except KeyError:
        raise KeyError(
            f"No plan parser for dialect {dialect!r}; known: {sorted(_PARSERS)}"
        ) from None
    return factory(**options)
