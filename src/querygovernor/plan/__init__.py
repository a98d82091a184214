"""Execution plan retrieval and parsing."""

from querygovernor.plan.analyzer import PlanAnalyzer
from querygovernor.plan.parser import (
    PlanParser,
    PostgresTextPlanParser,
    get_plan_parser,
    plan_text,
    register_plan_parser,
)

__all__ = [
    "PlanAnalyzer",
    "PlanParser",
    "PostgresTextPlanParser",
    "get_plan_parser",
    "plan_text",
    "register_plan_parser",
]
