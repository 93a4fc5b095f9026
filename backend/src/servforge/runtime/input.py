"""Input validation and coercion for request payloads.

Shape and type checks run while a request is resolved. Required-field
checks run after the before hooks, which may still fill values in.
"""

import uuid
from typing import Any

from servforge.core.types import CoercionError, get_field_type
from servforge.errors import InternalError, ValidationError
from servforge.metadata.model import (
    AssociationDefinition,
    CustomOperation,
    EntityDefinition,
    FieldDefinition,
    Parameter,
)
from servforge.metadata.registry import ModelRegistry
from servforge.persistence.filters import normalize_filter

_NO_VALUE_OPERATORS = ("isNull", "isNotNull")
_LIST_OPERATORS = ("in", "notIn", "between")


def _path(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def coerce_value(type_name: str, value: Any, target: str, length: int | None = None) -> Any:
    """Coerce one value to a primitive type.

    Raises:
        ValidationError: If the value doesn't fit the type
    """
    if value is None:
        return None
    try:
        coerced = get_field_type(type_name).coerce(value)
    except CoercionError as e:
        raise ValidationError(f"{target}: {e}", target=target) from e
    if length is not None and isinstance(coerced, str) and len(coerced) > length:
        raise ValidationError(
            f"{target}: must be at most {length} characters", target=target
        )
    return coerced


def coerce_record(
    entity: EntityDefinition,
    data: Any,
    model: ModelRegistry,
    *,
    columns: tuple[str, ...] | None = None,
    path: str = "",
) -> dict[str, Any]:
    """Check a record payload's shape and coerce its field values.

    Composition children are checked recursively against their target
    entity. Nulls on non-nullable fields are rejected here; absent
    fields are left to check_required().

    Raises:
        ValidationError: On unknown or unexposed elements and bad values
    """
    if not isinstance(data, dict):
        raise ValidationError(
            f"Expected an object for {entity.name}", target=path or None
        )

    record: dict[str, Any] = {}
    for name, value in data.items():
        target = _path(path, name)
        if columns is not None and name not in columns and name not in entity.keys:
            raise ValidationError(f"'{name}' is not exposed", target=target)

        field = entity.get_field(name)
        if field is not None:
            record[name] = _coerce_field(field, value, target)
            continue

        link = entity.get_link(name)
        if link is None:
            raise ValidationError(
                f"'{name}' is not an element of {entity.name}", target=target
            )
        if not link.composition:
            raise ValidationError(
                f"Association '{name}' cannot be written; set its join fields",
                target=target,
            )
        record[name] = _coerce_children(link, value, model, target)
    return record


def _coerce_field(field: FieldDefinition, value: Any, target: str) -> Any:
    if value is None:
        if field.key or not field.nullable:
            raise ValidationError(f"'{field.name}' must not be null", target=target)
        return None
    return coerce_value(field.type, value, target, field.length)


def _coerce_children(
    link: AssociationDefinition, value: Any, model: ModelRegistry, path: str
) -> Any:
    child_entity = model.resolve(link.target)
    if link.many:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValidationError(f"'{link.name}' must be a list", target=path)
        return [
            coerce_record(child_entity, item, model, path=f"{path}[{i}]")
            for i, item in enumerate(value)
        ]
    if value is None:
        return None
    return coerce_record(child_entity, value, model, path=path)


def apply_defaults(
    entity: EntityDefinition, record: dict[str, Any], model: ModelRegistry
) -> dict[str, Any]:
    """Fill declared defaults and generate missing UUID keys, recursively."""
    for f in entity.fields:
        if f.name in record:
            continue
        if f.key and get_field_type(f.type).generated_key:
            record[f.name] = str(uuid.uuid4())
        elif f.default is not None:
            record[f.name] = coerce_value(f.type, f.default, f"{entity.name}.{f.name}")
    apply_child_defaults(entity, record, model)
    return record


def apply_child_defaults(
    entity: EntityDefinition, record: dict[str, Any], model: ModelRegistry
) -> None:
    """apply_defaults() for the composition children carried by a record."""
    for link in entity.compositions:
        children = record.get(link.name)
        if children is None:
            continue
        child_entity = model.resolve(link.target)
        for child in children if link.many else [children]:
            apply_defaults(child_entity, child, model)


def check_required(
    entity: EntityDefinition,
    record: dict[str, Any],
    model: ModelRegistry,
    *,
    path: str = "",
    filled: tuple[str, ...] = (),
) -> None:
    """Reject absent or null non-nullable fields.

    Args:
        filled: Fields the runtime fills in itself (composition join fields)

    Raises:
        ValidationError: Naming the first missing field
    """
    for f in entity.fields:
        if f.name in filled or (f.nullable and not f.key):
            continue
        if record.get(f.name) is None:
            kind = "key" if f.key else "field"
            raise ValidationError(
                f"Missing required {kind} '{f.name}' on {entity.name}",
                target=_path(path, f.name),
            )
    check_required_children(entity, record, model, path=path)


def check_required_children(
    entity: EntityDefinition, record: dict[str, Any], model: ModelRegistry, *, path: str = ""
) -> None:
    for link in entity.compositions:
        children = record.get(link.name)
        if children is None:
            continue
        child_entity = model.resolve(link.target)
        join_fields = tuple(t for t, _ in link.on)
        items = children if link.many else [children]
        for i, child in enumerate(items):
            child_path = _path(path, f"{link.name}[{i}]" if link.many else link.name)
            check_required(child_entity, child, model, path=child_path, filled=join_fields)


def coerce_key(entity: EntityDefinition, key: Any) -> dict[str, Any]:
    """Validate and coerce a record key.

    Single-key entities accept a bare value as well as a mapping.

    Raises:
        ValidationError: On missing, unknown or badly typed key fields
    """
    if not isinstance(key, dict):
        if len(entity.keys) != 1:
            raise ValidationError(
                f"{entity.name} has a compound key {list(entity.keys)}", target="key"
            )
        key = {entity.keys[0]: key}

    unknown = [k for k in key if k not in entity.keys]
    if unknown:
        raise ValidationError(
            f"'{unknown[0]}' is not a key of {entity.name}", target=unknown[0]
        )

    coerced = {}
    for name in entity.keys:
        if key.get(name) is None:
            raise ValidationError(f"Missing key '{name}' for {entity.name}", target=name)
        coerced[name] = coerce_value(entity.get_field(name).type, key[name], name)
    return coerced


def check_key_unchanged(entity: EntityDefinition, key: dict[str, Any], patch: dict[str, Any]) -> None:
    """Keys are immutable: an update may repeat them, not change them."""
    for name in entity.keys:
        if name in patch and patch[name] != key[name]:
            raise ValidationError(f"Key '{name}' cannot be changed", target=name)


def coerce_params(
    operation: CustomOperation, data: Any, *, check_missing: bool = True
) -> dict[str, Any]:
    """Validate custom operation parameters.

    Raises:
        ValidationError: On unknown, missing or badly typed parameters
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError(f"Parameters of '{operation.name}' must be an object")

    declared: dict[str, Parameter] = {p.name: p for p in operation.params}
    for name in data:
        if name not in declared:
            raise ValidationError(
                f"'{name}' is not a parameter of {operation.name}", target=name
            )

    params: dict[str, Any] = {}
    for name, param in declared.items():
        value = data.get(name)
        if value is None:
            if check_missing and not param.nullable:
                raise ValidationError(f"Missing parameter '{name}'", target=name)
            if name in data:
                params[name] = None
            continue
        params[name] = coerce_value(param.type, value, name)
    return params


def coerce_result(operation: CustomOperation, result: Any, model: ModelRegistry) -> Any:
    """Check an on handler's result against the operation's return shape.

    None is accepted for every shape, and operations that declare no
    return shape pass their result through unchanged.

    Raises:
        InternalError: If the result doesn't fit the declared shape
    """
    shape = operation.returns
    if result is None or (shape.type is None and shape.entity is None and not shape.fields):
        return result

    try:
        if not shape.many:
            return _coerce_returned(operation, result, model, operation.name)
        if not isinstance(result, list):
            raise ValidationError(f"{operation.name}: expected a list", target=operation.name)
        return [
            _coerce_returned(operation, item, model, f"{operation.name}[{i}]")
            for i, item in enumerate(result)
        ]
    except ValidationError as e:
        raise InternalError(
            f"Result of '{operation.name}' does not match its return type: {e.message}",
            target=e.target,
        ) from e


def _coerce_returned(
    operation: CustomOperation, value: Any, model: ModelRegistry, target: str
) -> Any:
    shape = operation.returns
    if shape.type is not None:
        return coerce_value(shape.type, value, target)
    if not isinstance(value, dict):
        raise ValidationError(f"{target}: expected an object", target=target)

    if shape.entity is not None:
        entity = model.resolve(shape.entity)
        types = {f.name: f.type for f in entity.fields}
        passthrough = {link.name for link in entity.links()}
    else:
        types = {p.name: p.type for p in shape.fields}
        passthrough = set()

    record: dict[str, Any] = {}
    for name, item in value.items():
        if name in types:
            record[name] = coerce_value(types[name], item, _path(target, name))
        elif name in passthrough:
            record[name] = item
        else:
            raise ValidationError(
                f"'{name}' is not part of the result of {operation.name}",
                target=_path(target, name),
            )
    return record


def check_filter(
    entity: EntityDefinition, filter: Any, columns: tuple[str, ...] | None = None
) -> dict[str, Any] | None:
    """Normalize a READ filter and coerce its values to the field types.

    Raises:
        ValidationError: On malformed filters or unknown fields
    """
    if not filter:
        return None
    if not isinstance(filter, dict):
        raise ValidationError("Filter must be an object", target="filter")

    normalized = normalize_filter(filter)
    for cond in normalized["conditions"]:
        name = cond["field"]
        field = entity.get_field(name)
        if field is None or (columns is not None and name not in columns and not field.key):
            raise ValidationError(f"Cannot filter on '{name}'", target=name)

        op = cond["operator"]
        value = cond["value"]
        if op in _NO_VALUE_OPERATORS:
            continue
        if op in _LIST_OPERATORS:
            if not isinstance(value, (list, tuple)):
                raise ValidationError(f"'{op}' needs a list value", target=name)
            cond["value"] = [coerce_value(field.type, v, name) for v in value]
        elif op in ("contains", "startsWith"):
            cond["value"] = str(value)
        else:
            cond["value"] = coerce_value(field.type, value, name)
    return normalized


def check_orderby(
    entity: EntityDefinition, orderby: Any, columns: tuple[str, ...] | None = None
) -> list[dict[str, str]] | None:
    """Normalize orderby items to {"field", "direction"}.

    Accepts "price desc" style strings as well as mappings.
    """
    if not orderby:
        return None
    if isinstance(orderby, str):
        orderby = [part for part in orderby.split(",") if part.strip()]

    result = []
    for item in orderby:
        if isinstance(item, str):
            parts = item.split()
            name = parts[0]
            direction = parts[1].lower() if len(parts) > 1 else "asc"
        elif isinstance(item, dict) and "field" in item:
            name = item["field"]
            direction = str(item.get("direction", "asc")).lower()
        else:
            raise ValidationError(f"Bad orderby item {item!r}", target="orderby")

        field = entity.get_field(name)
        if field is None or (columns is not None and name not in columns and not field.key):
            raise ValidationError(f"Cannot order by '{name}'", target="orderby")
        if direction not in ("asc", "desc"):
            raise ValidationError(f"Bad sort direction '{direction}'", target="orderby")
        result.append({"field": name, "direction": direction})
    return result


def check_expand(
    entity: EntityDefinition, expand: Any, columns: tuple[str, ...] | None = None
) -> tuple[str, ...]:
    if not expand:
        return ()
    if isinstance(expand, str):
        expand = [part.strip() for part in expand.split(",") if part.strip()]
    for name in expand:
        if entity.get_link(name) is None or (columns is not None and name not in columns):
            raise ValidationError(f"Cannot expand '{name}'", target="expand")
    return tuple(expand)


def check_paging(top: Any, skip: Any) -> tuple[int | None, int]:
    try:
        top = None if top is None else int(top)
        skip = int(skip or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError("top and skip must be integers", target="top") from e
    if (top is not None and top < 0) or skip < 0:
        raise ValidationError("top and skip must not be negative", target="top")
    return top, skip
