"""
Plan Analyzer - on-demand diagnostic plans for slow queries.

Re-runs the slow query under EXPLAIN and hands the output to a
dialect-specific PlanParser. Read statements are explained with
ANALYZE (the query really executes, instrumented); anything else gets a
plain EXPLAIN so that analysis never repeats a write.

Every failure (backend refusing the EXPLAIN, unparseable output) is raised
as AnalysisError for the caller's error boundary to log.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence

from querygovernor.exceptions import AnalysisError
from querygovernor.models import PlanAnalysis
from querygovernor.plan.parser import PlanParser, PostgresTextPlanParser
from querygovernor.recorder import is_read_query

logger = logging.getLogger(__name__)

Fetch = Callable[[str, Sequence[Any]], Awaitable[list[dict[str, Any]]]]


class PlanAnalyzer:
    """
    Requests and parses execution plans.

    Example:
        analyzer = PlanAnalyzer(gateway.fetch)
        analysis = await analyzer.analyze("SELECT * FROM orders WHERE customer_id = $1", [42])
        print(analysis.scan_types, analysis.indexes_used)
    """

    def __init__(self, fetch: Fetch, parser: PlanParser | None = None) -> None:
        self._fetch = fetch
        self.parser: PlanParser = parser or PostgresTextPlanParser()

    async def analyze(self, query: str, params: Sequence[Any] = ()) -> PlanAnalysis:
        """
        Obtain and parse the plan for a query.

        Raises:
            AnalysisError: The plan could not be obtained or parsed.
        """
        with_analyze = is_read_query(query)
        statement = self.parser.explain_statement(query, analyze=with_analyze)

        try:
            rows = await self._fetch(statement, params)
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError(
                f"EXPLAIN failed: {e.__class__.__name__}: {e}", query=query
            ) from e

        try:
            analysis = self.parser.parse(rows)
        except AnalysisError as e:
            raise AnalysisError(e.message, query=query) from e

        logger.debug(
            "Plan parsed: cost=%.2f..%.2f scans=%s indexes=%s",
            analysis.startup_cost,
            analysis.total_cost,
            sorted(analysis.scan_types),
            sorted(analysis.indexes_used),
        )
        return analysis
