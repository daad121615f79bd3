from __future__ import annotations

import json

import pytest

from querybridge.core.errors import TranslationFormatError
from querybridge.translation.parser import parse_model_output, strip_code_fence
from querybridge.tests.utils.fakes import model_response


def test_fenced_json_is_unwrapped() -> None:
    body = model_response({"collection": "customers", "find": {"city": "New York"}}, engine_type="mongodb")
    parsed = parse_model_output(f"```json\n{body}\n```", engine_type="mongodb")
    assert parsed.query == {"collection": "customers", "find": {"city": "New York"}}
    assert parsed.allowed is True
    assert strip_code_fence("  plain  ") == "plain"


def test_sql_trailing_semicolon_is_dropped() -> None:
    parsed = parse_model_output(model_response("SELECT 1;  "), engine_type="postgres")
    assert parsed.query == "SELECT 1"
    assert parsed.requires_indexes == ()


def test_missing_fields_are_listed() -> None:
    payload = json.dumps({"mongoQuery": {"collection": "c", "find": {}}, "explain": "x"})
    with pytest.raises(TranslationFormatError) as excinfo:
        parse_model_output(payload, engine_type="mongodb")
    assert excinfo.value.details["fields"] == ["requiresIndexes", "safety"]


def test_safety_flag_is_not_coerced() -> None:
    payload = json.loads(model_response("SELECT 1"))
    payload["safety"]["allowed"] = "true"
    with pytest.raises(TranslationFormatError) as excinfo:
        parse_model_output(json.dumps(payload), engine_type="mysql")
    assert "safety.allowed" in excinfo.value.details["fields"]


def test_non_json_and_non_object_outputs_fail() -> None:
    with pytest.raises(TranslationFormatError):
        parse_model_output("I cannot help with that.", engine_type="postgres")
    with pytest.raises(TranslationFormatError):
        parse_model_output("[1, 2]", engine_type="postgres")


@pytest.mark.parametrize(
    "query",
    [
        {"find": {}},
        {"collection": "c"},
        {"collection": "c", "find": {}, "aggregate": []},
        {"collection": "c", "aggregate": [{"$match": {}}, "oops"]},
        {"collection": "c", "find": []},
    ],
)
def test_allowed_mongo_queries_must_be_complete(query) -> None:
    with pytest.raises(TranslationFormatError):
        parse_model_output(model_response(query, engine_type="mongodb"), engine_type="mongodb")


def test_refusals_may_carry_empty_queries() -> None:
    refused = parse_model_output(
        model_response({}, engine_type="mongodb", allowed=False, reason="Writes are not allowed"),
        engine_type="mongodb",
    )
    assert refused.query == {}
    assert refused.allowed is False
    assert refused.reason == "Writes are not allowed"

    sql_refused = parse_model_output(model_response("", allowed=False), engine_type="sqlserver")
    assert sql_refused.query == ""

    with pytest.raises(TranslationFormatError):
        parse_model_output(model_response("   "), engine_type="postgres")
