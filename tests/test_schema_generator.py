from __future__ import annotations

import json

from credit_fulfillment.permissions import is_allowed
from credit_fulfillment.schema_generator import (
    generate_logical_schema,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_store_collections():
    schema = generate_logical_schema()

    assert set(schema) == {"accounts", "credit_transactions", "consumption_records", "credit_ledger"}
    accounts = schema["accounts"]["properties"]
    assert accounts["balance"]["type"] == "integer"
    assert accounts["external_customer_ref"]["type"] == "string"
    assert schema["consumption_records"]["references"] == {"user_id": "accounts"}
    assert schema["consumption_records"]["cascade_on_delete"] is True


def test_nosql_output_carries_owner_only_rules():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))

    rules = rendered["consumption_records"]["rules"]
    assert rules["view"] == "auth.id != null && auth.id == data.user_id"
    assert rules["create"] == rules["update"] == rules["delete"] == "false"


def test_sql_ddl_cascades_consumption_records():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "consumption_records"' in ddl
    assert 'REFERENCES "accounts" ("id") ON DELETE CASCADE' in ddl


def test_access_rules_restrict_records_to_their_owner():
    record = {"id": "r1", "user_id": "user-1"}

    assert is_allowed("consumption_records", "view", "user-1", record)
    assert not is_allowed("consumption_records", "view", "user-2", record)
    assert not is_allowed("consumption_records", "view", None, record)
    assert not is_allowed("consumption_records", "update", "user-1", record)
    assert is_allowed("accounts", "view", "user-1", {"id": "user-1"})
