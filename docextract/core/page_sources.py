"""Page source attribution for extracted fields.

Extraction responses carry a top-level ``page_sources`` map next to the data:

    {"data": {...}, "page_sources": {"name": 1, "address": 3}}

The artifact builder uses it to split one object's fields into one output
artifact per source page.
"""

from typing import Any

from docextract.pydantic_models.entity_models import Artifact

PAGE_SOURCE_DEF: dict[str, Any] = {
    "type": "integer",
    "minimum": 1,
    "description": "Page number where this value was found",
}


def split_data_by_page(data: dict, page_sources: dict[str, int]) -> dict[int, dict]:
    """Group fields by source page (default page 1), pages ascending."""
    by_page: dict[int, dict] = {}
    for field_name, value in data.items():
        page = page_sources.get(field_name) or 1
        by_page.setdefault(int(page), {})[field_name] = value
    return dict(sorted(by_page.items()))


def extract_page_sources(response: dict | None) -> dict[str, int]:
    """The top-level page_sources map of a response, integer pages only."""
    if not isinstance(response, dict):
        return {}
    sources = response.get("page_sources") or {}
    result: dict[str, int] = {}
    for field_name, page in sources.items():
        try:
            result[field_name] = int(page)
        except (TypeError, ValueError):
            continue
    return result


def item_page_sources(page_sources: dict[str, int], leaf_key: str, index: int) -> dict[str, int]:
    """Page sources of one array item, with the "leaf[i]." prefix stripped.

    Example:
        >>> item_page_sources({"diagnoses[1].name": 2, "diagnoses[0].name": 1}, "diagnoses", 1)
        {'name': 2}
    """
    prefix = f"{leaf_key}[{index}]."
    return {key[len(prefix):]: page for key, page in page_sources.items() if key.startswith(prefix)}


def reindex_item_page_sources(
    page_sources: dict[str, int],
    leaf_key: str,
    index_map: dict[int, int],
) -> dict[str, int]:
    """Rewrite "leaf[i]." keys to "leaf[j]." after items moved in a merged list."""
    result: dict[str, int] = {}
    for old_index, new_index in index_map.items():
        for name, page in item_page_sources(page_sources, leaf_key, old_index).items():
            result[f"{leaf_key}[{new_index}].{name}"] = page
    return result


def page_numbers(artifacts: list[Artifact]) -> list[int]:
    """Sorted unique page numbers (positions) of the given artifacts."""
    return sorted({int(a.position) for a in artifacts if a.position is not None})


def find_artifact_by_page(artifacts: list[Artifact], page_number: int) -> Artifact | None:
    return next((a for a in artifacts if a.position is not None and int(a.position) == page_number), None)


def page_sources_schema(field_names: list[str]) -> dict:
    """Schema for the page_sources block: one pageSource ref per field."""
    return {
        "type": "object",
        "description": (
            "Page numbers where each field value was found. Use field names as keys "
            'and page numbers (integers) as values. For array fields, use dot notation: "field[0].property": 1'
        ),
        "properties": {name: {"$ref": "#/$defs/pageSource"} for name in field_names},
        "additionalProperties": {"$ref": "#/$defs/pageSource"},
    }


def page_source_instructions(artifacts: list[Artifact]) -> str:
    """Prompt section telling the model which page numbers it may cite."""
    pages = page_numbers(artifacts)
    if not pages:
        return ""
    page_list = ", ".join(str(p) for p in pages)
    return (
        "## Page Source Tracking\n"
        f"The content comes from pages: {page_list}.\n"
        "For every field you fill in, record the page number it came from in the top-level "
        '"page_sources" object, e.g. {"name": 2}. Only cite pages from the list above.'
    )
