"""Fragment selector engine.

Pure functions over FragmentSelector trees. Every traversal follows the FIRST
child pair at each level; a selector describes exactly one path from the
schema root to a leaf field set, optionally with extra scalar siblings.

For: provider > care_summary > professional > {name, npi}
    nesting_keys()  -> ["provider", "care_summary", "professional"]
    leaf_key()      -> "professional"
    parent_type()   -> "Care Summary"
"""

from __future__ import annotations

import copy
from typing import Any

from docextract.core.value_helpers import snake, title_from_key
from docextract.core.schema_tools import primary_type
from docextract.pydantic_models.plan_models import STRUCTURAL_TYPES, FragmentSelector


def _has_nested_structure(node: FragmentSelector) -> bool:
    """True if any child of node is an explicit object/array."""
    return any(child.type in STRUCTURAL_TYPES for _, child in node.children)


def has_only_scalar_children(children: list[tuple[str, FragmentSelector]]) -> bool:
    """True if no child is an object, array or untyped node."""
    return all(not child.is_structural for _, child in children)


def nesting_keys(selector: FragmentSelector) -> list[str]:
    """All structural keys along the first-child path, root to leaf."""
    keys: list[str] = []
    children = selector.children

    while children:
        key, child = children[0]
        if not child.is_structural:
            break
        keys.append(key)
        if not child.children:
            break
        if has_only_scalar_children(child.children):
            break
        children = child.children

    return keys


def leaf_key(selector: FragmentSelector, fallback_object_type: str | None = None) -> str:
    """The deepest key whose own children are all scalar.

    When the root's children are already all scalar the root is the leaf, and
    the snake-cased object type name stands in for the key.
    """
    fallback = snake(fallback_object_type or "")
    children = selector.children

    if not children or has_only_scalar_children(children):
        return fallback

    last_key: str | None = None
    while children:
        key, child = children[0]
        last_key = key
        if not child.children or not _has_nested_structure(child):
            break
        children = child.children

    return last_key if last_key is not None else fallback


def parent_type(selector: FragmentSelector) -> str | None:
    """Title-cased second-to-last nesting key, or None for top-level selectors."""
    path = nesting_keys(selector)
    if len(path) < 2:
        return None
    return title_from_key(path[-2])


def is_array_type(selector: FragmentSelector, schema_key: str) -> bool:
    """Whether schema_key is declared as an array along the first-child path.

    Flat selectors (scalar children only) never contain the object's own key,
    so a key that is never found is not an array.
    """
    children = selector.children

    while children:
        node = next((child for key, child in children if key == schema_key), None)
        if node is not None:
            return (node.type or "array") == "array"
        children = children[0][1].children

    return False


def is_array_type_at_level(selector: FragmentSelector, level: int) -> bool:
    """Whether the relationship at nesting depth `level` is an array.

    Depths past the end of the selector default to True, since hierarchical
    artifact wrapping treats unknown relationships as collections.
    """
    children = selector.children
    current = 0

    while children:
        _, child = children[0]
        if current == level:
            return (child.type or "array") == "array"
        children = child.children
        current += 1

    return True


def is_leaf_array_type(selector: FragmentSelector, object_type: str | None = None) -> bool:
    """Whether the object type addressed by the selector is a collection."""
    return is_array_type(selector, leaf_key(selector, object_type))


def extractable_fields(selector: FragmentSelector) -> list[str]:
    """All scalar field keys in the selector, depth first, in order."""
    fields: list[str] = []
    for key, child in selector.children:
        if child.type is not None and child.type not in STRUCTURAL_TYPES:
            fields.append(key)
        else:
            fields.extend(extractable_fields(child))
    return fields


def with_leaf_fields(selector: FragmentSelector, fields: list[str]) -> FragmentSelector:
    """Copy of selector with extra scalar fields added to its leaf node.

    Fields the leaf already selects are not repeated.
    """
    result = selector.model_copy(deep=True)
    node = result
    while node.children and not has_only_scalar_children(node.children):
        node = node.children[0][1]

    existing = set(node.keys())
    for name in fields:
        if name not in existing:
            node.children.append((name, FragmentSelector(type="string")))
            existing.add(name)
    return result


def unwrap_data(data: Any, selector: FragmentSelector, preserve_leaf_array: bool = False) -> Any:
    """Follow the first-child path through extracted data down to the leaf object.

    Arrays collapse to their first element on the way down. At the leaf
    level, preserve_leaf_array keeps the whole list so every extracted item
    survives (array-of-object remaining-field extraction needs this).
    """
    if not selector.children or not isinstance(data, dict):
        return data

    key, child = selector.children[0]
    child_data = data.get(key)
    if child_data is None:
        return data

    nested = _has_nested_structure(child)

    if isinstance(child_data, list) and child_data:
        at_leaf = not nested
        if not preserve_leaf_array or not at_leaf:
            child_data = child_data[0]

    if nested and child.children:
        return unwrap_data(child_data, child, preserve_leaf_array)

    return child_data if isinstance(child_data, (dict, list)) else data


def wrap_data(leaf_data: Any, selector: FragmentSelector) -> Any:
    """Inverse of unwrap_data: nest leaf data under the selector's path.

    Array-typed levels wrap their content in a one-element list, except a
    leaf that is already a list (several items) which is kept as-is.
    """
    path: list[tuple[str, FragmentSelector]] = []
    children = selector.children
    for key in nesting_keys(selector):
        node = next(child for child_key, child in children if child_key == key)
        path.append((key, node))
        children = node.children

    value = leaf_data
    for depth, (key, node) in enumerate(reversed(path)):
        is_leaf = depth == 0
        if node.type == "array" and not (is_leaf and isinstance(value, list)):
            value = [value]
        value = {key: value}
    return value


# =============================================================================
# Building selectors from the schema
# =============================================================================


def build_path_types(path_parts: list[str], schema: dict) -> list[str]:
    """Declared type ("object" / "array") of each path segment, root first.

    Arrays descend into their items. A segment missing from the schema is an
    object and ends the walk; the remaining segments also default to object.
    """
    types: list[str] = []
    current = schema

    for part in path_parts:
        prop = (current.get("properties") or {}).get(part)
        if not prop:
            break
        declared = primary_type(prop.get("type", "object")) or "object"
        types.append(declared)
        current = prop.get("items", {}) if declared == "array" else prop

    types.extend("object" for _ in range(len(path_parts) - len(types)))
    return types


def build_selector_from_fields(
    object_path: str,
    fields: list[str],
    schema: dict,
    leaf_is_array: bool,
) -> FragmentSelector:
    """Build the selector that reaches `fields` of the object at `object_path`.

    The leaf field list is nested under each path segment in reverse order,
    each segment typed from the schema.
    """
    current = FragmentSelector.for_fields(fields, is_array=leaf_is_array)
    if not object_path:
        return current

    parts = object_path.split(".")
    types = build_path_types(parts, schema)

    for part, part_type in zip(reversed(parts), reversed(types)):
        current = FragmentSelector(
            type="object",
            children=[(part, FragmentSelector(type=part_type, children=current.children))],
        )

    return current


def apply_to_schema(schema: dict, selector: FragmentSelector) -> dict:
    """Reduce a JSON schema to the properties the selector reaches.

    Returns a new schema; property order follows the selector.
    """
    result = {k: copy.deepcopy(v) for k, v in schema.items() if k not in ("properties", "items", "required")}
    declared = primary_type(schema.get("type", "object")) or "object"

    if declared == "array":
        result["items"] = apply_to_schema(schema.get("items") or {"type": "object"}, selector)
        return result

    properties = schema.get("properties") or {}
    filtered: dict[str, Any] = {}
    for key, child in selector.children:
        prop = properties.get(key)
        if prop is None:
            prop = {"type": child.type or "string"}
        if child.is_structural and child.children:
            filtered[key] = apply_to_schema(prop, child)
        else:
            filtered[key] = copy.deepcopy(prop)

    result["type"] = schema.get("type", "object")
    result["properties"] = filtered
    required = [key for key in schema.get("required", []) if key in filtered]
    if required:
        result["required"] = required
    return result


def leaf_schema(schema: dict, selector: FragmentSelector) -> dict:
    """Schema of the leaf object the selector addresses (arrays keep their items)."""
    return _leaf_of(apply_to_schema(schema, selector), selector)


def _leaf_of(schema: dict, selector: FragmentSelector) -> dict:
    children = selector.children
    if not children or has_only_scalar_children(children):
        return schema

    key, child = children[0]
    prop = (schema.get("properties") or {}).get(key)
    if prop is None:
        return schema
    if not _has_nested_structure(child):
        return prop
    if primary_type(prop.get("type")) == "array":
        return _leaf_of(prop.get("items") or {}, child)
    return _leaf_of(prop, child)
