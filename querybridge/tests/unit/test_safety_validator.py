from __future__ import annotations

import copy

import pytest

from querybridge.core.errors import SafetyViolation
from querybridge.safety.validator import BLACKLISTED_OPERATORS, QuerySafetyValidator


@pytest.fixture
def validator() -> QuerySafetyValidator:
    return QuerySafetyValidator(max_rows=100, max_stages=10)


def _nestings(operator: str) -> list[dict]:
    # The same forbidden operator placed at increasingly deep positions.
    return [
        {"collection": "c", "aggregate": [{operator: "target"}]},
        {"collection": "c", "find": {operator: "this.a > 1"}},
        {"collection": "c", "find": {"$and": [{"a": {operator: 1}}]}},
        {"collection": "c", "aggregate": [{"$facet": {"x": [{"$match": {}}, {operator: "y"}]}}]},
        {
            "collection": "c",
            "aggregate": [{"$lookup": {"from": "d", "as": "e", "pipeline": [{"$match": {"z": {operator: 1}}}]}}],
        },
        {"collection": "c", "aggregate": [{"$group": {"_id": "$a", "v": {operator: {"init": "f"}}}}]},
    ]


@pytest.mark.parametrize("operator", sorted(BLACKLISTED_OPERATORS))
def test_blacklisted_operators_rejected_at_any_depth(validator, operator) -> None:
    for query in _nestings(operator):
        with pytest.raises(SafetyViolation) as excinfo:
            validator.validate(query, engine_type="mongodb")
        assert excinfo.value.stage == operator


def test_unknown_stage_and_stage_count(validator) -> None:
    with pytest.raises(SafetyViolation) as excinfo:
        validator.validate_mongo({"collection": "c", "aggregate": [{"$graphLookup": {}}]})
    assert excinfo.value.stage == "$graphLookup"

    too_long = {"collection": "c", "aggregate": [{"$match": {}}] * 11}
    with pytest.raises(SafetyViolation):
        validator.validate_mongo(too_long)


def test_javascript_in_add_fields_and_filters_is_rejected(validator) -> None:
    with pytest.raises(SafetyViolation):
        validator.validate_mongo(
            {"collection": "c", "aggregate": [{"$addFields": {"x": "function() { return 1 }"}}]}
        )
    with pytest.raises(SafetyViolation):
        validator.validate_mongo({"collection": "c", "find": {"a": "() => 1"}})


def test_system_collections_and_malformed_queries_are_rejected(validator) -> None:
    for query in (
        {"collection": "system.users", "find": {}},
        {"find": {}},
        {},
        "db.c.find()",
        {"collection": "c"},
        {"collection": "c", "operation": "deleteMany", "find": {}},
        {"collection": "c", "aggregate": {"$match": {}}},
    ):
        with pytest.raises(SafetyViolation):
            validator.validate(query, engine_type="mongodb")


def test_pipeline_without_limit_gets_one_appended_without_mutating_input(validator) -> None:
    query = {"collection": "orders", "aggregate": [{"$match": {"status": "paid"}}, {"$sort": {"total": -1}}]}
    original = copy.deepcopy(query)

    validated = validator.validate_mongo(query)
    assert validated.query["aggregate"][-1] == {"$limit": 100}
    assert validated.limit_injected is True
    assert validated.row_cap == 100
    assert query == original


def test_oversized_limits_are_clamped(validator) -> None:
    validated = validator.validate_mongo({"collection": "o", "aggregate": [{"$limit": 5000}]})
    assert validated.query["aggregate"] == [{"$limit": 100}]
    assert validated.limit_injected is True

    small = validator.validate_mongo({"collection": "o", "aggregate": [{"$limit": 5}]})
    assert small.query["aggregate"] == [{"$limit": 5}]
    assert small.limit_injected is False

    find = validator.validate_mongo({"collection": "o", "find": {}, "limit": 1000})
    assert find.query["limit"] == 100
    assert find.limit_injected is True

    with pytest.raises(SafetyViolation):
        validator.validate_mongo({"collection": "o", "aggregate": [{"$limit": 0}]})


def test_allowed_pipeline_passes(validator) -> None:
    query = {
        "collection": "orders",
        "aggregate": [
            {"$unwind": "$items"},
            {"$match": {"created_at": {"$gte": "2025-07-01"}}},
            {"$group": {"_id": "$items.product_id", "revenue": {"$sum": "$items.price"}}},
            {"$sort": {"revenue": -1}},
            {"$limit": 5},
        ],
    }
    assert validator.validate(query, engine_type="mongodb").query == query


@pytest.mark.parametrize(
    ("sql", "keyword"),
    [
        ("DELETE FROM customers", "DELETE"),
        ("SELECT * INTO backup FROM customers", "INTO"),
        ("select * from t; drop table t", ";"),
        ("SELECT * FROM t -- trailing", "--"),
        ("SELECT /* x */ 1", "/*"),
        ("EXEC sp_who", "EXEC"),
        ("WITH gone AS (DELETE FROM t RETURNING *) SELECT * FROM gone", "DELETE"),
        ("SHOW TABLES", "SHOW"),
    ],
)
def test_sql_rejections_name_the_keyword(validator, sql, keyword) -> None:
    with pytest.raises(SafetyViolation) as excinfo:
        validator.validate(sql, engine_type="postgres")
    assert excinfo.value.keyword == keyword


def test_sql_reads_pass_and_trailing_semicolon_is_dropped(validator) -> None:
    validated = validator.validate_sql("SELECT name FROM customers WHERE city = 'Boston';")
    assert validated.query == "SELECT name FROM customers WHERE city = 'Boston'"
    assert validated.limit_injected is False
    assert validator.validate_sql("  with t as (select 1 as a) select a from t").query.startswith("with")
    # Identifiers that merely contain a keyword are fine.
    assert validator.validate_sql("SELECT updated_at, deleted FROM audit_log")


def test_empty_sql_is_rejected(validator) -> None:
    for sql in ("", "   ", None, {"collection": "c"}):
        with pytest.raises(SafetyViolation):
            validator.validate_sql(sql)


def test_comment_markers_inside_string_literals_are_data(validator) -> None:
    assert validator.validate_sql("SELECT * FROM parts WHERE code = '#A1'").query.endswith("'#A1'")
    assert validator.validate_sql("SELECT * FROM notes WHERE body = 'a -- b; c'")
    assert validator.validate_sql("SELECT * FROM notes WHERE body = 'it''s /* fine */'")


@pytest.mark.parametrize(
    ("sql", "keyword"),
    [
        ("SELECT * FROM parts WHERE code = 'x' # trailing", "#"),
        ("SELECT * FROM parts WHERE code = 'x'; SELECT 1", ";"),
        # An unterminated quote hides nothing.
        ("SELECT * FROM parts WHERE code = 'x -- open", "--"),
    ],
)
def test_comment_markers_outside_literals_are_still_rejected(validator, sql, keyword) -> None:
    with pytest.raises(SafetyViolation) as excinfo:
        validator.validate_sql(sql)
    assert excinfo.value.keyword == keyword
