from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.account import Account
from .models.base import DBSerializableModel
from .models.consumption import ConsumptionRecord
from .models.ledger import LedgerEntry
from .models.transaction import Transaction
from .permissions import ACCESS_RULES

MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    Transaction,
    ConsumptionRecord,
    LedgerEntry,
]

# Backward references: child collection field -> parent collection.
# Deleting the parent cascades to the child.
REFERENCES: Dict[str, Dict[str, str]] = {
    ConsumptionRecord.collection_name: {"user_id": Account.collection_name},
    Transaction.collection_name: {"user_id": Account.collection_name},
}
CASCADE_ON_DELETE = {ConsumptionRecord.collection_name}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic logical schema for all registered models, with their
    references and access rules attached.
    """
    schema: Dict[str, Any] = {}
    for model in MODEL_REGISTRY:
        spec = model.db_schema()
        spec["references"] = REFERENCES.get(model.collection_name, {})
        spec["cascade_on_delete"] = model.collection_name in CASCADE_ON_DELETE
        spec["rules"] = ACCESS_RULES.get(model.collection_name, {})
        schema[model.collection_name] = spec
    return schema


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer. Access rules are not expressible here and are
    left to the store's own policy layer.
    """
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        for field_name, parent in spec.get("references", {}).items():
            on_delete = " ON DELETE CASCADE" if spec.get("cascade_on_delete") else ""
            columns.append(f'    FOREIGN KEY ("{field_name}") REFERENCES "{parent}" ("id"){on_delete}')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        lines.append(ddl)
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON description for document stores, rules included."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "TEXT"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate record-store schemas and access rules for credit fulfillment."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
