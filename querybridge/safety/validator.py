from __future__ import annotations

import copy
from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Iterator

from querybridge.core.config import get_settings
from querybridge.core.errors import SafetyViolation


logger = logging.getLogger(__name__)

ALLOWED_STAGES = frozenset(
    {
        "$match",
        "$group",
        "$sort",
        "$limit",
        "$skip",
        "$project",
        "$lookup",
        "$unwind",
        "$count",
        "$addFields",
        "$facet",
        "$bucket",
    }
)
BLACKLISTED_OPERATORS = frozenset(
    {
        "$where",
        "$function",
        "$accumulator",
        "$out",
        "$merge",
        "$eval",
        "$planCacheStats",
        "$currentOp",
        "$indexStats",
    }
)
SQL_DISALLOWED_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
    "MERGE",
    "INTO",
)
MONGO_OPERATIONS = ("find", "findOne", "aggregate", "count")

_SQL_KEYWORD_RE = re.compile(r"\b(" + "|".join(SQL_DISALLOWED_KEYWORDS) + r")\b", re.IGNORECASE)
_SQL_LEADING_RE = re.compile(r"^\s*\(*\s*(SELECT|WITH)\b", re.IGNORECASE)
_SQL_COMMENT_RE = re.compile(r"--|/\*|\*/|#")
# Single-quoted literal with doubled-quote escapes; an unterminated quote never matches.
_SQL_STRING_RE = re.compile(r"'(?:[^']|'')*'")
_JS_FUNCTION_RE = re.compile(r"function\s*\(")
_JS_ARROW = "=>"


@dataclass(frozen=True)
class ValidatedQuery:
    query: Any
    row_cap: int
    # Set when the validator added or lowered a limit, so hitting row_cap means rows were cut.
    limit_injected: bool = False


def _contains_script(text: str) -> bool:
    return bool(_JS_FUNCTION_RE.search(text)) or _JS_ARROW in text


def _walk_keys(value: Any) -> Iterator[str]:
    # Every mapping key at every depth, including inside $facet and $lookup sub-pipelines.
    if isinstance(value, dict):
        for key, item in value.items():
            yield str(key)
            yield from _walk_keys(item)
    elif isinstance(value, list):
        for item in value:
            yield from _walk_keys(item)


def _sub_pipelines(stage: dict[str, Any]) -> Iterator[list[Any]]:
    facet = stage.get("$facet")
    if isinstance(facet, dict):
        for pipeline in facet.values():
            if isinstance(pipeline, list):
                yield pipeline
    lookup = stage.get("$lookup")
    if isinstance(lookup, dict) and isinstance(lookup.get("pipeline"), list):
        yield lookup["pipeline"]


class QuerySafetyValidator:
    """Independent gate over generated queries; ignores the model's own safety claim.

    Rejections raise ``SafetyViolation`` carrying the offending ``stage`` (MongoDB)
    or ``keyword`` (SQL). Accepted MongoDB pipelines come back with a bounded
    ``$limit``; the input object is never mutated.
    """

    def __init__(self, *, max_rows: int | None = None, max_stages: int | None = None) -> None:
        settings = get_settings()
        self._max_rows = max_rows if max_rows is not None else settings.max_rows
        self._max_stages = max_stages if max_stages is not None else settings.max_pipeline_stages

    @property
    def max_rows(self) -> int:
        return self._max_rows

    def validate(self, query: Any, *, engine_type: str) -> ValidatedQuery:
        if engine_type == "mongodb":
            return self.validate_mongo(query)
        return self.validate_sql(query)

    def validate_sql(self, sql: Any) -> ValidatedQuery:
        if not isinstance(sql, str) or not sql.strip():
            raise SafetyViolation("Query must be non-empty SQL text")
        text = sql.strip().rstrip(";").strip()
        if "$where" in text.lower():
            raise SafetyViolation("Disallowed operator: $where", keyword="$where")
        if _contains_script(text):
            raise SafetyViolation("JavaScript functions are not allowed in queries", keyword="function")
        # Comment markers and separators count only outside quoted literals.
        bare = _SQL_STRING_RE.sub("''", text)
        comment = _SQL_COMMENT_RE.search(bare)
        if comment:
            raise SafetyViolation("Comments are not allowed in generated SQL", keyword=comment.group(0))
        if ";" in bare:
            raise SafetyViolation("Multiple statements are not allowed", keyword=";")
        keyword = _SQL_KEYWORD_RE.search(text)
        if keyword:
            found = keyword.group(1).upper()
            raise SafetyViolation(f"Disallowed keyword: {found}", keyword=found)
        if not _SQL_LEADING_RE.match(text):
            raise SafetyViolation("Only SELECT queries are allowed", keyword=text.split(None, 1)[0].upper())
        return ValidatedQuery(query=text, row_cap=self._max_rows)

    def validate_mongo(self, query: Any) -> ValidatedQuery:
        if not isinstance(query, dict) or not query:
            raise SafetyViolation("Query must be a MongoDB find or aggregate object")
        collection = query.get("collection")
        if not isinstance(collection, str) or not collection or collection.startswith("system."):
            raise SafetyViolation("Query must name a user collection")
        operation = query.get("operation")
        if operation is not None and operation not in MONGO_OPERATIONS:
            raise SafetyViolation(f"Unsupported operation: {operation}", stage=str(operation))

        for key in _walk_keys(query):
            if key in BLACKLISTED_OPERATORS:
                raise SafetyViolation(f"Disallowed operator: {key}", stage=key)

        if "aggregate" in query:
            return self._validate_pipeline(query)
        if "find" not in query and operation not in ("count", "findOne"):
            raise SafetyViolation("Query must contain find or aggregate")
        filter_doc = query.get("find") or {}
        if not isinstance(filter_doc, dict):
            raise SafetyViolation("find must be a filter object")
        if _contains_script(json.dumps(filter_doc, default=str)):
            raise SafetyViolation("JavaScript functions are not allowed in queries", stage="find")

        validated = copy.deepcopy(query)
        limit = validated.get("limit")
        capped = False
        if isinstance(limit, int) and not isinstance(limit, bool) and limit > self._max_rows:
            validated["limit"] = self._max_rows
            capped = True
        return ValidatedQuery(query=validated, row_cap=self._max_rows, limit_injected=capped)

    def _check_stages(self, pipeline: list[Any]) -> None:
        for stage in pipeline:
            if not isinstance(stage, dict) or not stage:
                raise SafetyViolation("Pipeline stages must be non-empty objects")
            for name in stage:
                if name not in ALLOWED_STAGES:
                    raise SafetyViolation(f"Unknown or disallowed stage: {name}", stage=str(name))
            if "$addFields" in stage and _contains_script(json.dumps(stage["$addFields"], default=str)):
                raise SafetyViolation("JavaScript functions are not allowed in $addFields", stage="$addFields")
            for nested in _sub_pipelines(stage):
                self._check_stages(nested)

    def _validate_pipeline(self, query: dict[str, Any]) -> ValidatedQuery:
        pipeline = query.get("aggregate")
        if not isinstance(pipeline, list):
            raise SafetyViolation("aggregate must be a list of stages")
        if len(pipeline) > self._max_stages:
            raise SafetyViolation(f"Pipeline exceeds maximum {self._max_stages} stages")
        self._check_stages(pipeline)

        validated = copy.deepcopy(query)
        stages: list[dict[str, Any]] = validated["aggregate"]
        limit_injected = False
        has_limit = False
        for stage in stages:
            if "$limit" in stage:
                has_limit = True
                value = stage["$limit"]
                if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                    raise SafetyViolation("$limit must be a positive integer", stage="$limit")
                if value > self._max_rows:
                    stage["$limit"] = self._max_rows
                    limit_injected = True
        if not has_limit:
            stages.append({"$limit": self._max_rows})
            limit_injected = True
            logger.debug("pipeline_limit_injected collection=%s limit=%s", validated.get("collection"), self._max_rows)
        return ValidatedQuery(query=validated, row_cap=self._max_rows, limit_injected=limit_injected)
