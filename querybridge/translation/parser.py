from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr
from pydantic import ValidationError as PydanticValidationError

from querybridge.core.errors import TranslationFormatError
from querybridge.translation.prompts import query_key


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?```\s*$", re.DOTALL)


class SafetyVerdict(BaseModel):
    model_config = ConfigDict(strict=True)

    allowed: StrictBool
    reason: StrictStr


class _ModelOutput(BaseModel):
    # Strict: a string "true" or a bare list where an object belongs is a format error, not coerced.
    model_config = ConfigDict(strict=True, populate_by_name=True)

    explain: StrictStr
    requires_indexes: list[StrictStr] = Field(alias="requiresIndexes")
    safety: SafetyVerdict


class _MongoOutput(_ModelOutput):
    query: dict[str, Any] = Field(alias="mongoQuery")


class _SqlOutput(_ModelOutput):
    query: StrictStr = Field(alias="sqlQuery")


@dataclass(frozen=True)
class ParsedTranslation:
    query: Any
    explain: str
    requires_indexes: tuple[str, ...]
    allowed: bool
    reason: str


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def _check_mongo_shape(query: dict[str, Any]) -> None:
    collection = query.get("collection")
    if not isinstance(collection, str) or not collection:
        raise TranslationFormatError("mongoQuery must include a collection name")
    has_find = "find" in query
    has_aggregate = "aggregate" in query
    if has_find == has_aggregate:
        raise TranslationFormatError("mongoQuery must include exactly one of find or aggregate")
    if has_find and not isinstance(query["find"], dict):
        raise TranslationFormatError("mongoQuery.find must be an object")
    if has_aggregate:
        pipeline = query["aggregate"]
        if not isinstance(pipeline, list) or not all(isinstance(stage, dict) for stage in pipeline):
            raise TranslationFormatError("mongoQuery.aggregate must be a list of stage objects")


def parse_model_output(text: str, *, engine_type: str) -> ParsedTranslation:
    """Parse and validate one model response for the given engine.

    A refused translation (``safety.allowed`` false) may carry an empty query;
    an allowed one must carry a complete find/aggregate object or SQL text.
    """
    cleaned = strip_code_fence(text)
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        logger.warning("translation_output_not_json length=%s", len(cleaned))
        raise TranslationFormatError("Failed to parse model response as JSON") from exc
    if not isinstance(payload, dict):
        raise TranslationFormatError("Model response must be a JSON object")

    model = _MongoOutput if engine_type == "mongodb" else _SqlOutput
    try:
        output = model.model_validate(payload)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        logger.warning("translation_output_invalid fields=%s", ",".join(fields))
        raise TranslationFormatError(
            f"Model response is missing or mistyped fields: {', '.join(fields)}",
            fields=fields,
        ) from exc

    query: Any = output.query
    if output.safety.allowed:
        if engine_type == "mongodb":
            _check_mongo_shape(query)
        elif not query.strip():
            raise TranslationFormatError(f"{query_key(engine_type)} must not be empty")
    if isinstance(query, str):
        query = query.strip().rstrip(";").strip()

    return ParsedTranslation(
        query=query,
        explain=output.explain,
        requires_indexes=tuple(output.requires_indexes),
        allowed=output.safety.allowed,
        reason=output.safety.reason,
    )
