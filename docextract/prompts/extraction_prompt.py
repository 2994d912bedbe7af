"""Extraction prompts: identity extraction and remaining-group extraction.

Both run over page artifacts attached to the thread. The pieces below are
appended to the system prompt only when they apply (parent selection,
context pages, page source tracking, user instructions).
"""

from __future__ import annotations

import yaml

from docextract.pydantic_models.entity_models import CanonicalObject


IDENTITY_EXTRACTION_SYSTEM_PROMPT = """You extract identifying information about one type of object from document pages.

Rules:
- Extract ONLY values that appear in the pages. Never invent or infer values.
- If a field cannot be found, set it to null.
- Keep values exactly as written (names, numbers, dates) unless a field description asks for a format.
- Put the extracted object under "data" using the key shown in the response schema.

Respond with JSON only."""


GROUP_EXTRACTION_SYSTEM_PROMPT = """You extract structured data from document pages into a JSON schema.

Rules:
- Extract ONLY values that appear in the pages. Never invent or infer values.
- If a field cannot be found, set it to null.
- The object being enriched already exists; its known data is given below. Merge new information
  with it (update or append as needed) rather than replacing it.

Respond with JSON only."""


CONFIDENCE_RATING_INSTRUCTIONS = (
    "Rate your confidence (1-5) for each extracted field: "
    "1 = Very uncertain, likely incorrect; "
    "2 = Uncertain, might be incorrect; "
    "3 = Moderately confident, probably correct; "
    "4 = Confident, very likely correct; "
    "5 = Highly confident, definitely correct. "
    "Rate a field 1 when it was not found."
)


PARENT_CONTEXT_TEMPLATE = """## Parent Selection
The data you extract belongs to exactly one of the following parent objects. Choose the parent
whose information appears on the same pages (or is clearly referenced) and return its ID as
"parent_id".

{parent_options}"""


def build_parent_options(parents: list[tuple[CanonicalObject, list[CanonicalObject]]]) -> str:
    """Render parent candidates with their ancestor hierarchy.

    Args:
        parents: (parent, ancestors root first) pairs.
    """
    if len(parents) <= 1:
        return ""
    lines = []
    for parent, ancestors in parents:
        lines.append(f"Option - ID {parent.id}: {parent.name} (Type: {parent.type})")
        if ancestors:
            hierarchy = " -> ".join(f"{a.type}: {a.name}" for a in ancestors)
            lines.append(f"  Hierarchy: {hierarchy} -> {parent.name}")
        lines.append("")
    return PARENT_CONTEXT_TEMPLATE.format(parent_options="\n".join(lines))


def build_identity_system_prompt(
    object_type: str,
    identity_fields: list[str],
    sections: list[str],
    extraction_instructions: str | None = None,
) -> str:
    """Identity extraction system prompt with optional sections appended."""
    parts = [IDENTITY_EXTRACTION_SYSTEM_PROMPT]
    parts.append(
        f"## Object Type\nYou are identifying **{object_type}** objects. "
        f"The identity fields are: {', '.join(identity_fields) or 'name'}."
    )
    if extraction_instructions:
        parts.append(f"## Additional Instructions\n{extraction_instructions}")
    parts.extend(section for section in sections if section)
    return "\n\n".join(parts)


def existing_object_data(obj: CanonicalObject) -> dict:
    """Known data of an object, as shown to the extractor."""
    data = {"name": obj.name}
    for column in ("date", "description", "url"):
        value = getattr(obj, column)
        if value:
            data[column] = value
    data.update(obj.attributes)
    return data


def build_group_extraction_prompt(
    group_name: str,
    obj: CanonicalObject,
    include_confidence: bool,
    sections: list[str],
    extraction_instructions: str | None = None,
    match_fields: list[str] | None = None,
) -> str:
    """User prompt for one remaining-group extraction call.

    With match_fields (array object types) the call targets obj alone and
    each item must carry its name and those fields.
    """
    lines = [f"You are extracting {group_name} data from documents into a structured format.", ""]

    existing = existing_object_data(obj)
    if existing:
        lines += [
            "EXISTING OBJECT DATA:",
            f"Type: {obj.type}",
            f"Name: {obj.name}",
            yaml.safe_dump(existing, sort_keys=False, allow_unicode=True, default_flow_style=False).rstrip(),
            "",
        ]

    lines += [
        "INSTRUCTIONS:",
        "- Extract the requested fields from the provided documents",
        "- If a field cannot be found, set it to null",
        "- Merge with existing data where appropriate (update or append as needed)",
    ]
    if extraction_instructions:
        lines.append(f"- {extraction_instructions}")

    if match_fields is not None:
        identifying = ", ".join(["name", *[f for f in match_fields if f != "name"]])
        lines.append(
            f"- Extract data only for the {obj.type} '{obj.name}' and include its identifying fields"
            f" ({identifying}) in every item"
        )

    if include_confidence:
        lines.append(f"- {CONFIDENCE_RATING_INSTRUCTIONS}")
    elif match_fields is None:
        lines += ["", "Extract all instances of the requested data found in the documents."]

    text = "\n".join(lines)
    extra = [section for section in sections if section]
    if extra:
        text += "\n\n" + "\n\n".join(extra)
    return text


def confidence_schema(fields: list[str]) -> dict:
    """Per-field 1-5 confidence block."""
    return {
        "type": "object",
        "description": CONFIDENCE_RATING_INSTRUCTIONS,
        "properties": {
            name: {
                "type": "integer",
                "minimum": 1,
                "maximum": 5,
                "description": f"Confidence score for {name} (1=very uncertain, 5=highly confident)",
            }
            for name in fields
        },
        "required": list(fields),
    }
