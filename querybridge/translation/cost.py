from __future__ import annotations

import re
from typing import Any


# Coarse confirmation-gate heuristic, not a planner estimate.
FIND_BASE = 0.1
AGGREGATE_BASE = 0.2
PER_STAGE = 0.05
LOOKUP_COST = 0.3
FACET_COST = 0.3
GROUP_COST = 0.15
EXTRA_GROUP_COST = 0.1
BUCKET_COST = 0.1

SQL_BASE = 0.1
SQL_JOIN_COST = 0.25
SQL_GROUP_BY_COST = 0.15
SQL_ORDER_BY_COST = 0.1
SQL_SUBQUERY_COST = 0.15
SQL_DISTINCT_COST = 0.1
SQL_UNION_COST = 0.1
SQL_UNFILTERED_COST = 0.1

_JOIN_RE = re.compile(r"\bJOIN\b", re.IGNORECASE)
_SUBQUERY_RE = re.compile(r"\(\s*SELECT\b", re.IGNORECASE)


def _clamp(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 4)


def _stage_names(pipeline: list[Any]) -> list[str]:
    names: list[str] = []
    for stage in pipeline:
        if isinstance(stage, dict):
            names.extend(str(key) for key in stage)
    return names


def mongo_cost(query: dict[str, Any]) -> float:
    pipeline = query.get("aggregate")
    if not isinstance(pipeline, list):
        return FIND_BASE
    stages = _stage_names(pipeline)
    cost = AGGREGATE_BASE + PER_STAGE * len(stages)
    if "$lookup" in stages:
        cost += LOOKUP_COST
    if "$facet" in stages:
        cost += FACET_COST
    groups = stages.count("$group")
    if groups:
        cost += GROUP_COST + EXTRA_GROUP_COST * (groups - 1)
    if "$bucket" in stages:
        cost += BUCKET_COST
    return _clamp(cost)


def sql_cost(sql: str) -> float:
    upper = sql.upper()
    cost = SQL_BASE + SQL_JOIN_COST * len(_JOIN_RE.findall(sql))
    if re.search(r"\bGROUP\s+BY\b", upper):
        cost += SQL_GROUP_BY_COST
    if re.search(r"\bORDER\s+BY\b", upper):
        cost += SQL_ORDER_BY_COST
    if _SUBQUERY_RE.search(sql):
        cost += SQL_SUBQUERY_COST
    if re.search(r"\bDISTINCT\b", upper):
        cost += SQL_DISTINCT_COST
    if re.search(r"\bUNION\b", upper):
        cost += SQL_UNION_COST
    if not re.search(r"\bWHERE\b", upper):
        cost += SQL_UNFILTERED_COST
    return _clamp(cost)


def estimate_cost(query: Any, *, engine_type: str) -> float:
    """Score in [0, 1]; empty (refused) queries score zero."""
    if not query:
        return 0.0
    if engine_type == "mongodb":
        return mongo_cost(query) if isinstance(query, dict) else 0.0
    return sql_cost(str(query))


def complexity_label(cost: float) -> str:
    if cost < 0.3:
        return "low"
    if cost < 0.7:
        return "medium"
    return "high"
