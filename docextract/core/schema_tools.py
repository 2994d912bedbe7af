"""JSON-schema helpers: type resolution and object type discovery.

Object type discovery walks ``object`` and ``array``-of-object properties
recursively. Each object type found becomes one planning work item.
"""

import hashlib
import json
from typing import Any

from docextract.core.config import CORE_OBJECT_COLUMNS
from docextract.core.value_helpers import key_to_title, normalize_date
from docextract.pydantic_models.plan_models import ObjectTypeInfo, SimpleField


def primary_type(declared: Any) -> str | None:
    """Resolve a JSON-schema ``type`` to a single type name.

    Union types (["string", "null"]) resolve to the first non-null member.
    """
    if isinstance(declared, list):
        for member in declared:
            if member != "null":
                return member
        return None
    return declared


def field_type(prop: dict) -> str | None:
    """Resolved type of a schema property."""
    return primary_type(prop.get("type"))


def is_object_property(prop: dict) -> bool:
    """True for an object property or an array whose items are objects."""
    declared = field_type(prop)
    if declared == "object":
        return True
    if declared == "array":
        return field_type(prop.get("items") or {}) == "object"
    return False


def schema_hash(value: Any) -> str:
    """sha256 over canonical (sorted-key) JSON."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def simple_fields_of(schema: dict) -> dict[str, SimpleField]:
    """Scalar (or array-of-scalar) properties of an object schema."""
    fields: dict[str, SimpleField] = {}
    for key, prop in (schema.get("properties") or {}).items():
        if is_object_property(prop):
            continue
        fields[key] = SimpleField(
            title=prop.get("title") or key_to_title(key),
            description=prop.get("description"),
        )
    return fields


def extract_object_types(schema: dict, root_name: str | None = None) -> list[ObjectTypeInfo]:
    """All object types in the schema, root first, depth first after that.

    Args:
        schema: Root JSON schema. Returns [] unless its type is "object".
        root_name: Name for the root type when the schema has no title.

    Returns:
        One ObjectTypeInfo per object/array-of-object property plus the root.
    """
    if field_type(schema) != "object":
        return []

    root_title = schema.get("title") or root_name or "Root"
    types = [
        ObjectTypeInfo(
            name=root_title,
            path="",
            level=0,
            parent_type=None,
            is_array=False,
            simple_fields=simple_fields_of(schema),
        )
    ]
    _collect_nested_types(schema, "", 0, root_title, types)
    return types


def _collect_nested_types(
    schema: dict,
    parent_path: str,
    parent_level: int,
    parent_title: str,
    types: list[ObjectTypeInfo],
) -> None:
    for key, prop in (schema.get("properties") or {}).items():
        if not is_object_property(prop):
            continue

        is_array = field_type(prop) == "array"
        object_schema = prop.get("items") if is_array else prop
        title = object_schema.get("title") or prop.get("title") or key_to_title(key)
        path = f"{parent_path}.{key}" if parent_path else key

        types.append(
            ObjectTypeInfo(
                name=title,
                path=path,
                level=parent_level + 1,
                parent_type=parent_title,
                is_array=is_array,
                simple_fields=simple_fields_of(object_schema),
            )
        )
        _collect_nested_types(object_schema, path, parent_level + 1, title, types)


def find_property(schema: dict, field_name: str) -> dict | None:
    """First property named field_name anywhere in the schema, depth first."""
    properties = schema.get("properties") or {}
    if field_name in properties:
        return properties[field_name]
    for prop in properties.values():
        if not isinstance(prop, dict):
            continue
        nested = prop.get("items") if field_type(prop) == "array" else prop
        if isinstance(nested, dict):
            found = find_property(nested, field_name)
            if found is not None:
                return found
    return None


def search_field_type(schema: dict | None, field_name: str) -> str:
    """Field type used to pick a search definition ("date" for date formats)."""
    if field_name == "name":
        return "string"
    if field_name == "date":
        return "date"
    prop = find_property(schema or {}, field_name)
    if not prop:
        return "string"
    if prop.get("format") in ("date", "date-time"):
        return prop["format"]
    return field_type(prop) or "string"


def is_date_field(schema: dict | None, field_name: str) -> bool:
    return search_field_type(schema, field_name) in ("date", "date-time")


def field_description(schema: dict | None, field_name: str) -> str:
    prop = find_property(schema or {}, field_name)
    return (prop or {}).get("description") or "No description available"


def split_object_fields(data: dict, schema: dict | None = None) -> tuple[dict, dict]:
    """Split extracted fields into canonical object columns and attributes.

    Empty values are dropped. String values of date fields are stored as
    YYYY-MM-DD.
    """
    columns: dict[str, Any] = {}
    attributes: dict[str, Any] = {}
    for name, value in data.items():
        if value is None or value == "":
            continue
        if isinstance(value, str) and (name == "date" or is_date_field(schema, name)):
            value = normalize_date(value)
        if name in CORE_OBJECT_COLUMNS:
            columns[name] = value
        else:
            attributes[name] = value
    return columns, attributes
