from __future__ import annotations

from datetime import date
import json
from typing import Any, Sequence

from querybridge.domain.schema import TableMatch


_MONGO_EXAMPLES = """User: "Show customers from New York with lifetime value over 5000"
Output:
{"mongoQuery": {"collection": "customers", "find": {"city": "New York", "lifetime_value": {"$gt": 5000}}},
 "explain": "Find customers in city 'New York' with lifetime_value > 5000.",
 "requiresIndexes": ["city", "lifetime_value"],
 "safety": {"allowed": true, "reason": "Read-only find operation"}}

User: "Top 5 products by revenue last quarter"
Output:
{"mongoQuery": {"collection": "orders", "aggregate": [
   {"$unwind": "$items"},
   {"$match": {"created_at": {"$gte": "2025-07-01", "$lt": "2025-10-01"}}},
   {"$group": {"_id": "$items.product_id", "revenue": {"$sum": {"$multiply": ["$items.qty", "$items.price"]}}}},
   {"$sort": {"revenue": -1}},
   {"$limit": 5}]},
 "explain": "Aggregate orders to compute revenue per product in Q3 2025, sort desc, limit 5.",
 "requiresIndexes": ["created_at", "items.product_id"],
 "safety": {"allowed": true, "reason": "Aggregation with allowed stages."}}

User: "Delete all old records"
Output:
{"mongoQuery": {},
 "explain": "This operation requires write permission. The system is read-only for natural-language queries.",
 "requiresIndexes": [],
 "safety": {"allowed": false, "reason": "Detected write/delete operation. Disallowed."}}"""

_SQL_EXAMPLES = """User: "Show customers from New York with lifetime value over 5000"
Output:
{"sqlQuery": "SELECT * FROM customers WHERE city = 'New York' AND lifetime_value > 5000",
 "explain": "Select customers in city 'New York' with lifetime_value > 5000.",
 "requiresIndexes": ["customers.city", "customers.lifetime_value"],
 "safety": {"allowed": true, "reason": "Read-only SELECT"}}

User: "Top 5 products by revenue last quarter"
Output:
{"sqlQuery": "SELECT p.name, SUM(oi.qty * oi.price) AS revenue FROM order_items oi JOIN products p ON p.id = oi.product_id JOIN orders o ON o.id = oi.order_id WHERE o.created_at >= '2025-07-01' AND o.created_at < '2025-10-01' GROUP BY p.name ORDER BY revenue DESC LIMIT 5",
 "explain": "Sum item revenue per product for Q3 2025, sort desc, limit 5.",
 "requiresIndexes": ["orders.created_at", "order_items.product_id"],
 "safety": {"allowed": true, "reason": "Read-only aggregation"}}

User: "Delete all old records"
Output:
{"sqlQuery": "",
 "explain": "This operation requires write permission. The system is read-only for natural-language queries.",
 "requiresIndexes": [],
 "safety": {"allowed": false, "reason": "Detected write/delete operation. Disallowed."}}"""

_DIALECTS = {
    "postgres": "PostgreSQL",
    "mysql": "MySQL",
    "mariadb": "MariaDB",
    "sqlserver": "SQL Server (T-SQL, use TOP instead of LIMIT)",
}


def query_key(engine_type: str) -> str:
    return "mongoQuery" if engine_type == "mongodb" else "sqlQuery"


def shortlist_payload(matches: Sequence[TableMatch]) -> list[dict[str, Any]]:
    # Only names, types and key flags reach the model; never connection details.
    return [
        {
            "table": match.table.name,
            "schema": match.table.schema_or_db,
            "columns": [
                {
                    "name": column.name,
                    "type": column.type,
                    "nullable": column.nullable,
                    "primaryKey": column.primary_key,
                    "foreignKey": column.foreign_key,
                }
                for column in match.table.columns
            ],
        }
        for match in matches
    ]


def build_system_prompt(
    *,
    engine_type: str,
    shortlist: Sequence[TableMatch],
    user_role: str,
    today: date | None = None,
) -> str:
    today = today or date.today()
    schema_json = json.dumps(shortlist_payload(shortlist), indent=2)
    if engine_type == "mongodb":
        header = (
            "You are a MongoDB query generator. Return only JSON, no explanation or markdown.\n\n"
            "Output format: {\n"
            '  "mongoQuery": {"collection": "<name>", "find": {...}} or {"collection": "<name>", "aggregate": [...]},\n'
            '  "explain": "<plain-language explanation>",\n'
            '  "requiresIndexes": [fieldPaths],\n'
            '  "safety": {"allowed": true|false, "reason": "..."}\n'
            "}\n\n"
            "CONSTRAINTS:\n"
            "- NEVER return commands that modify or delete data\n"
            "- NEVER include shell meta-commands or code comments\n"
            "- Only use safe aggregation stages: $match, $group, $sort, $limit, $skip, $project, $lookup, "
            "$unwind, $count, $addFields, $facet, $bucket\n"
            "- FORBIDDEN: $where, $function, $accumulator, $merge, $out, $eval, JavaScript in $addFields\n"
        )
        examples = _MONGO_EXAMPLES
    else:
        dialect = _DIALECTS.get(engine_type, engine_type)
        header = (
            f"You are a {dialect} query generator. Return only JSON, no explanation or markdown.\n\n"
            "Output format: {\n"
            '  "sqlQuery": "<one SELECT statement>",\n'
            '  "explain": "<plain-language explanation>",\n'
            '  "requiresIndexes": ["table.column"],\n'
            '  "safety": {"allowed": true|false, "reason": "..."}\n'
            "}\n\n"
            "CONSTRAINTS:\n"
            "- Return exactly one read-only SELECT (or WITH ... SELECT) statement\n"
            "- NEVER use INSERT, UPDATE, DELETE, DROP, CREATE, ALTER, TRUNCATE, GRANT, REVOKE, EXEC or SELECT INTO\n"
            "- NEVER include comments or multiple statements\n"
        )
        examples = _SQL_EXAMPLES
    return (
        f"{header}"
        "- If ambiguous, return safety.allowed=false with reason\n"
        "- Use only the tables and fields in SCHEMA\n"
        "- For dates without explicit range, add a warning in explain\n"
        f"- Current date is {today.isoformat()}\n\n"
        f"SCHEMA:\n{schema_json}\n\n"
        f"USER ROLE: {user_role}\n\n"
        f"EXAMPLES:\n\n{examples}"
    )


def build_user_prompt(
    question: str,
    *,
    engine_type: str,
    history: Sequence[dict[str, str]] = (),
    recent_tables: Sequence[str] = (),
) -> str:
    lines = [f'User Query: "{question}"']
    if history:
        lines.append("Conversation so far:")
        lines.extend(f"{turn['role'].upper()}: {turn['content']}" for turn in history)
    if recent_tables:
        lines.append(f"Recently used tables: {', '.join(recent_tables)}")
    lines.append("")
    lines.append(f"Generate the {query_key(engine_type)} following the constraints above.")
    return "\n".join(lines)
