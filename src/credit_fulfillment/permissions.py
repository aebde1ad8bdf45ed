"""
Declarative access rules for the record store.

Rules are expressions evaluated by the store against the authenticated
viewer (`auth.id`) and the stored record (`data`). The in-memory store
evaluates them with `is_allowed`; other stores publish them as-is.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

OWNER_ONLY = "auth.id != null && auth.id == data.user_id"
SELF_ONLY = "auth.id != null && auth.id == data.id"
DENY = "false"

ACCESS_RULES: Dict[str, Dict[str, str]] = {
    "accounts": {
        "view": SELF_ONLY,
        "create": DENY,
        "update": DENY,
        "delete": DENY,
    },
    "consumption_records": {
        "view": OWNER_ONLY,
        "create": DENY,
        "update": DENY,
        "delete": DENY,
    },
    "credit_transactions": {
        "view": OWNER_ONLY,
        "create": DENY,
        "update": DENY,
        "delete": DENY,
    },
}

# Field on the record that a rule compares against the viewer id.
_RULE_FIELDS = {OWNER_ONLY: "user_id", SELF_ONLY: "id"}


def is_allowed(
    collection: str, action: str, viewer_id: Optional[str], record: Mapping[str, Any]
) -> bool:
    """
    Evaluate a client-facing rule. Server-side writes bypass these rules;
    they only gate what an end user may read or change directly.
    """
    rule = ACCESS_RULES.get(collection, {}).get(action, DENY)
    field = _RULE_FIELDS.get(rule)
    if field is None or viewer_id is None:
        return False
    return record.get(field) == viewer_id
