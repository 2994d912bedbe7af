"""Search query prompts and schema definitions.

A search query is a list of criteria maps ordered from most to least
specific. Each criterion follows the canonical object store's search
grammar: a LIKE pattern or a list of terms for strings, an operator dict
for dates and numbers, a plain boolean for flags.
"""

import json

import yaml


SEARCH_QUERY_DEFS: dict[str, dict] = {
    "stringSearch": {
        "description": (
            'A SQL LIKE pattern ("%acme%") or a list of terms that must all appear '
            '(["acme", "corp"])'
        ),
        "anyOf": [
            {"type": "string"},
            {"type": "array", "items": {"type": "string"}},
        ],
    },
    "dateSearch": {
        "type": "object",
        "properties": {
            "operator": {"type": "string", "enum": ["=", "<", ">", "<=", ">=", "between"]},
            "value": {"type": "string", "description": "Date as YYYY-MM-DD"},
            "value2": {"type": ["string", "null"], "description": "Upper bound for between"},
        },
        "required": ["operator", "value"],
    },
    "booleanSearch": {"type": "boolean"},
    "integerSearch": {
        "type": "object",
        "properties": {
            "operator": {"type": "string", "enum": ["=", "<", ">", "<=", ">=", "between"]},
            "value": {"type": "integer"},
            "value2": {"type": ["integer", "null"]},
        },
        "required": ["operator", "value"],
    },
    "numericSearch": {
        "type": "object",
        "properties": {
            "operator": {"type": "string", "enum": ["=", "<", ">", "<=", ">=", "between"]},
            "value": {"type": "number"},
            "value2": {"type": ["number", "null"]},
        },
        "required": ["operator", "value"],
    },
}

SEARCH_QUERY_INSTRUCTIONS = (
    "MINIMUM 3 search queries ordered MOST SPECIFIC to LEAST SPECIFIC, used to find existing records. "
    "Query 1: Most specific - use exact extracted values. "
    "Query 2: Less specific - key identifying terms only. "
    "Query 3: Broadest - general concept only."
)


SEARCH_QUERY_SYSTEM_PROMPT = """You are generating search queries for duplicate detection. For each item, provide MINIMUM 3 search queries ordered from MOST SPECIFIC to LEAST SPECIFIC.

Purpose: Find existing records efficiently - we check exact matches first, then broaden if needed.
- Query 1: Most specific - use exact extracted values
- Query 2: Less specific - key identifying terms only
- Query 3: Broadest - general concept only

Example for name="Dr. John Smith":
[
  {"name": ["Dr.", "John", "Smith"]},
  {"name": ["John", "Smith"]},
  {"name": ["Smith"]}
]

Example for name="Chiropractic Adjustment", date="2024-10-22":
[
  {"name": ["Chiropractic", "Adjustment"], "date": {"operator": "=", "value": "2024-10-22", "value2": null}},
  {"name": ["Chiropractic"]},
  {"name": ["Adjustment"]}
]

The items are provided in YAML format. Generate search queries for each item in your response."""


def search_type_for(field_type: str | None) -> str:
    """Search definition name for a schema field type."""
    return {
        "date": "dateSearch",
        "date-time": "dateSearch",
        "boolean": "booleanSearch",
        "integer": "integerSearch",
        "number": "numericSearch",
    }.get(field_type or "", "stringSearch")


def build_items_yaml(items: list[dict]) -> str:
    return yaml.safe_dump({"items": items}, sort_keys=False, allow_unicode=True, default_flow_style=False)


def build_item_description(item: dict, index: int) -> str:
    parts = [
        f"{key}='{value if isinstance(value, str) else json.dumps(value, default=str)}'"
        for key, value in item.items()
        if value is not None and value != ""
    ]
    return f"Search query for item {index}: {', '.join(parts)}"
