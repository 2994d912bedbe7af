"""Merge helpers for combining extraction results across page batches.

Two flavours:
- merge_values(): additive merge, first meaningful value wins, lists union
- merge_with_conflicts(): same walk, but differing meaningful scalars are
  recorded as conflicts for LLM arbitration instead of being dropped
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from docextract.core.config import MergeConfig

logger = logging.getLogger(__name__)


def is_meaningful(value: Any) -> bool:
    """False for None, blanks, placeholder strings and empty collections."""
    if value is None:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        return bool(stripped) and stripped.lower() not in MergeConfig.PLACEHOLDER_VALUES
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def _item_identity(item: Any) -> Any:
    if isinstance(item, dict):
        if item.get("id") is not None:
            return ("id", item["id"])
        name = item.get("name")
        if isinstance(name, str) and name.strip():
            return ("name", name.strip().lower())
    return None


def find_list_item(items: list, candidate: Any) -> int | None:
    """Index of the entry matching candidate by id, by name, else by equality."""
    identity = _item_identity(candidate)
    for index, item in enumerate(items):
        if identity is not None and _item_identity(item) == identity:
            return index
        if identity is None and item == candidate:
            return index
    return None


def merge_lists(existing: list, new: list) -> list:
    """Union two lists, merging dict entries that share an id or name."""
    merged = list(existing)
    for item in new:
        if not is_meaningful(item):
            continue
        index = find_list_item(merged, item)
        if index is None:
            merged.append(copy.deepcopy(item))
        elif isinstance(item, dict) and isinstance(merged[index], dict):
            merged[index] = merge_values(merged[index], item)
    return merged


def merge_values(existing: dict, new: dict) -> dict:
    """Additive merge of new into a copy of existing.

    Meaningless new values never overwrite. Dicts recurse, lists union, and
    for scalars the existing meaningful value is kept.
    """
    result = copy.deepcopy(existing) if existing else {}
    for key, value in (new or {}).items():
        if not is_meaningful(value):
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = merge_values(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            result[key] = merge_lists(current, value)
        elif not is_meaningful(current):
            result[key] = copy.deepcopy(value)
    return result


@dataclass
class FieldConflict:
    """Two batches produced different meaningful values for one field."""

    field_path: str
    field_name: str
    existing_value: Any
    existing_page: int | None
    new_value: Any
    new_page: int | None

    def to_dict(self) -> dict:
        return {
            "field_path": self.field_path,
            "field_name": self.field_name,
            "existing_value": self.existing_value,
            "existing_page": self.existing_page,
            "new_value": self.new_value,
            "new_page": self.new_page,
        }


@dataclass
class MergeResult:
    """Outcome of merge_with_conflicts()."""

    data: dict
    conflicts: list[FieldConflict] = field(default_factory=list)
    updated_fields: list[str] = field(default_factory=list)
    page_sources: dict[str, int] = field(default_factory=dict)


def _values_differ(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() != b.strip().lower()
    return a != b


def merge_with_conflicts(
    existing: dict,
    new: dict,
    existing_pages: dict[str, int] | None = None,
    new_pages: dict[str, int] | None = None,
    prefix: str = "",
) -> MergeResult:
    """Merge new into existing, recording scalar disagreements as conflicts.

    The existing value is kept for every conflict; resolution happens later.
    Page sources are merged only for fields that were actually updated.
    """
    existing_pages = existing_pages or {}
    new_pages = new_pages or {}
    result = MergeResult(data=copy.deepcopy(existing) if existing else {}, page_sources=dict(existing_pages))

    for key, value in (new or {}).items():
        if not is_meaningful(value):
            continue
        path = f"{prefix}.{key}" if prefix else key
        current = result.data.get(key)

        if isinstance(current, dict) and isinstance(value, dict):
            nested = merge_with_conflicts(current, value, existing_pages, new_pages, path)
            result.data[key] = nested.data
            result.conflicts.extend(nested.conflicts)
            result.updated_fields.extend(nested.updated_fields)
            for field_path in nested.updated_fields:
                if field_path in new_pages:
                    result.page_sources[field_path] = new_pages[field_path]
            continue

        if isinstance(current, list) and isinstance(value, list):
            merged = merge_lists(current, value)
            if merged != current:
                result.data[key] = merged
                result.updated_fields.append(path)
                if key in new_pages:
                    result.page_sources[key] = new_pages[key]
            continue

        if not is_meaningful(current):
            result.data[key] = copy.deepcopy(value)
            result.updated_fields.append(path)
            if key in new_pages:
                result.page_sources[key] = new_pages[key]
            continue

        if _values_differ(current, value):
            result.conflicts.append(
                FieldConflict(
                    field_path=path,
                    field_name=key,
                    existing_value=current,
                    existing_page=existing_pages.get(path, existing_pages.get(key)),
                    new_value=value,
                    new_page=new_pages.get(path, new_pages.get(key)),
                )
            )

    if result.conflicts:
        logger.debug(f"Merge produced {len(result.conflicts)} conflict(s)")
    return result


def _set_path(data: dict, path: str, value: Any) -> None:
    *parents, last = path.split(".")
    node = data
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[last] = value


def apply_resolutions(data: dict, resolutions: dict[str, dict], page_sources: dict[str, int] | None = None) -> dict:
    """Write resolved conflict values back into data.

    Args:
        data: Merged data (existing values in place for every conflict).
        resolutions: field_path (dotted for nested fields) -> {resolved_value, source_page}.
        page_sources: Page source map updated in place when given.
    """
    result = copy.deepcopy(data)
    for field_path, resolution in resolutions.items():
        if not isinstance(resolution, dict) or "resolved_value" not in resolution:
            continue
        _set_path(result, field_path, resolution["resolved_value"])
        if page_sources is not None and resolution.get("source_page") is not None:
            page_sources[field_path] = int(resolution["source_page"])
    return result
