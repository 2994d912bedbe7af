"""Conflict arbitration prompt and response schema.

Conflicts are listed as YAML, each with both candidate values and the page
each came from:

    - field: name
      description: Legal name of the provider
      option_a: {value: Acme Corp, source_page: 1}
      option_b: {value: Acme Corporation, source_page: 3}
"""

import yaml

from docextract.core.merge import FieldConflict
from docextract.core.schema_tools import field_description


CONFLICT_SYSTEM_PROMPT = """You resolve conflicts between values extracted from different pages of the same document.

For each conflicting field you are given two candidate values and the page each one came from.
Read the pages provided and decide which value is correct. You may also return a corrected value
when both candidates are partially wrong, as long as it appears in the pages.

Prefer, in order:
1. The value that is explicitly and completely stated (not abbreviated or truncated).
2. The value from the page where the field is the subject of the content (not a passing mention).
3. The more recent or more specific value when the pages disagree on purpose (e.g. an amended date).

Respond with JSON only."""


FIELD_RESOLUTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "resolved_value": {
            "description": "The correct value for the field",
        },
        "source_page": {
            "type": "integer",
            "description": "Page number the resolved value was taken from",
        },
        "explanation": {
            "type": "string",
            "description": "Why this value was chosen",
        },
    },
    "required": ["resolved_value", "source_page"],
}


def build_conflicts_yaml(conflicts: list[FieldConflict], schema: dict | None) -> str:
    entries = [
        {
            "field": conflict.field_path,
            "description": field_description(schema, conflict.field_name),
            "option_a": {"value": conflict.existing_value, "source_page": conflict.existing_page},
            "option_b": {"value": conflict.new_value, "source_page": conflict.new_page},
        }
        for conflict in conflicts
    ]
    return yaml.safe_dump(entries, sort_keys=False, allow_unicode=True, default_flow_style=False)


def build_conflict_prompt(conflicts: list[FieldConflict], schema: dict | None) -> str:
    return (
        "The following fields received different values from different pages:\n\n"
        f"{build_conflicts_yaml(conflicts, schema)}\n"
        "For every field above, return the resolved value and the page it came from."
    )


def build_conflict_response_schema(conflicts: list[FieldConflict]) -> dict:
    """One required property per conflicting field, keyed by its dotted path."""
    properties: dict[str, dict] = {}
    for conflict in conflicts:
        resolution = {**FIELD_RESOLUTION_SCHEMA, "additionalProperties": False}
        resolution["description"] = f"Resolution for the '{conflict.field_path}' field conflict"
        properties[conflict.field_path] = resolution
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }
