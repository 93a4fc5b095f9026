"""Filter normalization and in-memory evaluation.

Two filter forms are accepted:

    {"ID": "o1", "status": "open"}          # equality, AND-ed

    {"operator": "or",
     "conditions": [
         {"field": "stock", "operator": "lt", "value": 5},
         {"field": "title", "operator": "startsWith", "value": "Wuth"},
     ]}
"""

from typing import Any

from servforge.errors import ValidationError

OPERATORS = (
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "notIn",
    "contains",
    "startsWith",
    "isNull",
    "isNotNull",
    "between",
)


def normalize_filter(filter: dict[str, Any] | None) -> dict[str, Any]:
    """Return the structured form of a filter.

    Raises:
        ValidationError: On unknown operators or malformed conditions
    """
    if not filter:
        return {"operator": "and", "conditions": []}

    if "conditions" in filter:
        op = str(filter.get("operator", "and")).lower()
        if op not in ("and", "or"):
            raise ValidationError(f"Unsupported filter operator '{op}'", target="filter")
        conditions = []
        for i, cond in enumerate(filter["conditions"]):
            if not isinstance(cond, dict) or "field" not in cond:
                raise ValidationError(
                    "Filter condition needs a field", target=f"filter.conditions[{i}]"
                )
            operator = cond.get("operator", "eq")
            if operator not in OPERATORS:
                raise ValidationError(
                    f"Unsupported filter operator '{operator}'",
                    target=f"filter.conditions[{i}]",
                )
            if operator == "between" and (
                not isinstance(cond.get("value"), (list, tuple)) or len(cond["value"]) != 2
            ):
                raise ValidationError(
                    "between needs a two-element value", target=f"filter.conditions[{i}]"
                )
            conditions.append(
                {"field": cond["field"], "operator": operator, "value": cond.get("value")}
            )
        return {"operator": op, "conditions": conditions}

    return {
        "operator": "and",
        "conditions": [
            {"field": field, "operator": "eq", "value": value}
            for field, value in filter.items()
        ],
    }


def matches(record: dict[str, Any], filter: dict[str, Any]) -> bool:
    """Evaluate a normalized filter against a record."""
    conditions = filter["conditions"]
    if not conditions:
        return True

    results = (_matches_condition(record, cond) for cond in conditions)
    if filter["operator"] == "or":
        return any(results)
    return all(results)


def _matches_condition(record: dict[str, Any], cond: dict[str, Any]) -> bool:
    value = record.get(cond["field"])
    op = cond["operator"]
    expected = cond["value"]

    if op == "isNull":
        return value is None
    if op == "isNotNull":
        return value is not None
    if op == "eq":
        return value == expected
    if op == "neq":
        return value != expected
    if op == "in":
        return value in expected
    if op == "notIn":
        return value not in expected

    if value is None:
        return False

    try:
        if op == "gt":
            return value > expected
        if op == "gte":
            return value >= expected
        if op == "lt":
            return value < expected
        if op == "lte":
            return value <= expected
        if op == "between":
            return expected[0] <= value <= expected[1]
    except TypeError:
        return False

    if op == "contains":
        return str(expected) in str(value)
    if op == "startsWith":
        return str(value).startswith(str(expected))

    return False
