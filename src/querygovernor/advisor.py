"""
Index Advisor - heuristic index proposals for slow queries.

Technical approach:
1. Tokenise the query with sqlparse (a non-validating lexer) to find the
   first table after FROM and the top-level WHERE clause
2. Scan the WHERE text for ``<column> <comparison>`` predicates
3. Propose one single-column index per column whose conventional index
   ``<table>_<column>_idx`` the plan did not already use
4. If the plan shows a sequential scan but no column could be extracted,
   propose a composite index and flag it for manual investigation

Suggestions accumulate in a SuggestionLog. Deduplication across repeated
analyses of the same query shape is configurable and off by default.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Iterable

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Identifier, IdentifierList, Where

from querygovernor.models import (
    IndexPriority,
    IndexSuggestion,
    PlanAnalysis,
    SuggestionKind,
)

logger = logging.getLogger(__name__)

SINGLE_COLUMN_BENEFIT = "70-90% latency reduction"
COMPOSITE_BENEFIT = "Eliminates full table scans"

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_PREDICATE = re.compile(
    r"(?<![\w$.\"])"                           # Not part of a larger token
    r"(?:([A-Za-z_]\w*)\.)?"                   # Optional table/alias qualifier
    r"([A-Za-z_]\w*)"                          # Column name
    r"\s*(=|<>|!=|<=|>=|<|>)"                  # Comparison operator
)
_NOT_COLUMNS = frozenset({
    "AND", "OR", "NOT", "NULL", "TRUE", "FALSE", "WHERE", "CASE", "WHEN",
    "THEN", "ELSE", "END", "ANY", "ALL", "SOME", "EXISTS", "IN", "IS",
})


def index_name(table: str, column: str) -> str:
    """Conventional index name used for suggestions and the already-used check."""
    return f"{table}_{column}_idx"


class PredicateScanner:
    """
    Lexical extraction of the target table and filter columns.

    Handles:
    - Simple: SELECT * FROM orders WHERE customer_id = $1
    - Aliased: SELECT * FROM orders o WHERE o.status = 'open'
    - Compound: ... WHERE a = 1 AND (b > 2 OR c <= 3)

    Columns qualified with some other table or alias (join partners) are
    ignored, since the suggestion targets the FROM table only.
    """

    def scan(self, query: str) -> tuple[str | None, list[str]]:
        """Return (table, filter columns in first-seen order)."""
        parsed = sqlparse.parse(query)
        if not parsed:
            return None, []

        stmt = parsed[0]
        table, alias = self._extract_table(stmt)
        where = next((t for t in stmt.tokens if isinstance(t, Where)), None)
        if table is None or where is None:
            return table, []

        return table, self._extract_columns(str(where), table, alias)

    def _extract_table(self, stmt: sqlparse.sql.Statement) -> tuple[str | None, str | None]:
        """First table after FROM, with its alias."""
        from_seen = False
        for token in stmt.tokens:
            if token.is_whitespace:
                continue
            if token.ttype is T.Keyword and token.value.upper() == "FROM":
                from_seen = True
                continue
            if not from_seen:
                continue

            if isinstance(token, IdentifierList):
                token = next(iter(token.get_identifiers()), None)
            if isinstance(token, Identifier):
                name = token.get_real_name()
                if name is None or token.is_group and token.token_first().is_group:
                    # Subquery in FROM
                    return None, None
                return name, token.get_alias()
            return None, None
        return None, None

    def _extract_columns(self, where_text: str, table: str, alias: str | None) -> list[str]:
        text = _STRING_LITERAL.sub("''", where_text)
        allowed_qualifiers = {table.lower()}
        if alias:
            allowed_qualifiers.add(alias.lower())

        columns: list[str] = []
        for match in _PREDICATE.finditer(text):
            qualifier, column, _operator = match.groups()
            if column.upper() in _NOT_COLUMNS:
                continue
            if qualifier and qualifier.lower() not in allowed_qualifiers:
                continue
            if column not in columns:
                columns.append(column)
        return columns


class IndexAdvisor:
    """
    Turns a slow query plus its plan analysis into index suggestions.

    Example:
        advisor = IndexAdvisor()
        suggestions = advisor.suggest(
            "SELECT * FROM orders WHERE customer_id = $1",
            analysis,
        )
        # [IndexSuggestion(table="orders", column="customer_id", priority="high", ...)]
    """

    def __init__(self, scanner: PredicateScanner | None = None) -> None:
        self.scanner = scanner or PredicateScanner()

    def suggest(
        self,
        query: str,
        analysis: PlanAnalysis,
        signature: str | None = None,
    ) -> list[IndexSuggestion]:
        table, columns = self.scanner.scan(query)
        suggestions: list[IndexSuggestion] = []

        if table is not None:
            for column in columns:
                name = index_name(table, column)
                if name in analysis.indexes_used:
                    continue
                suggestions.append(
                    IndexSuggestion(
                        kind=SuggestionKind.SINGLE_COLUMN,
                        table=table,
                        column=column,
                        ddl_text=f"CREATE INDEX CONCURRENTLY {name} ON {table} ({column});",
                        reason=f"Column {column} filters {table} in WHERE clause without a supporting index",
                        priority=IndexPriority.HIGH,
                        estimated_benefit=SINGLE_COLUMN_BENEFIT,
                        signature=signature,
                    )
                )

        if analysis.has_sequential_scan and not columns:
            target = table or next(iter(sorted(analysis.tables_scanned)), None)
            if target is not None:
                suggestions.append(
                    IndexSuggestion(
                        kind=SuggestionKind.COMPOSITE,
                        table=target,
                        ddl_text=(
                            f"-- Consider creating a composite index on frequently "
                            f"queried columns of {target}"
                        ),
                        reason=(
                            "Sequential scan detected and the predicate could not be "
                            "decomposed; manual investigation needed"
                        ),
                        priority=IndexPriority.CRITICAL,
                        estimated_benefit=COMPOSITE_BENEFIT,
                        signature=signature,
                    )
                )

        return suggestions


class SuggestionLog:
    """
    In-memory, unbounded log of index suggestions.

    With ``dedupe=True`` a suggestion identical (kind, table, column, DDL)
    to one already logged is dropped.
    """

    def __init__(self, dedupe: bool = False) -> None:
        self.dedupe = dedupe
        self._entries: list[IndexSuggestion] = []
        self._seen: set[tuple[str, str, str | None, str]] = set()
        self._lock = threading.Lock()

    def extend(self, suggestions: Iterable[IndexSuggestion]) -> list[IndexSuggestion]:
        """Append suggestions; returns the ones actually logged."""
        added: list[IndexSuggestion] = []
        with self._lock:
            for suggestion in suggestions:
                key = suggestion.dedupe_key()
                if self.dedupe and key in self._seen:
                    logger.debug("Skipping duplicate suggestion: %s", suggestion.ddl_text)
                    continue
                self._seen.add(key)
                self._entries.append(suggestion)
                added.append(suggestion)
        return added

    def pending(self, limit: int | None = 10) -> list[IndexSuggestion]:
        """Most recent suggestions, oldest first; all of them when limit is None."""
        with self._lock:
            if limit is None:
                return list(self._entries)
            if limit <= 0:
                return []
            return self._entries[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._seen.clear()

    def __len__(self) -> int:
        return len(self._entries)
