"""Duplicate record detection prompt."""

import json

from docextract.pydantic_models.entity_models import CanonicalObject


DUPLICATE_SYSTEM_PROMPT = """You decide whether newly extracted data describes the same real-world thing
as one of a small set of existing records. Respond with JSON only."""


def candidate_data(candidate: CanonicalObject) -> dict:
    """Name, date and attributes of a stored record, as shown for comparison."""
    data = {}
    if candidate.name:
        data["name"] = candidate.name
    if candidate.date:
        data["date"] = candidate.date
    data.update(candidate.attributes)
    return data


def _json_block(value) -> str:
    return "```json\n" + json.dumps(value, indent=2, ensure_ascii=False, default=str) + "\n```"


def build_comparison_prompt(extracted: dict, candidates: list[CanonicalObject]) -> str:
    lines = [
        "# Duplicate Record Detection",
        "",
        "You are comparing extracted data against existing records to find duplicates.",
        "",
        "## Extracted Data",
        "",
        _json_block(extracted),
        "",
        "## Existing Records",
        "",
    ]
    for number, candidate in enumerate(candidates, start=1):
        lines += [f"{number}. **ID: {candidate.id}**", "", _json_block(candidate_data(candidate)), ""]

    lines += [
        "## Task",
        "",
        "Determine if the extracted data matches any existing record. Consider:",
        "",
        "- **Name variations:** John Smith vs John W. Smith vs J. Smith",
        "- **Date format differences:** 2024-01-15 vs Jan 15, 2024",
        "- **Minor spelling variations:** Centre vs Center",
        "- **Missing fields:** Some fields may be missing but core identifying fields should match",
        "- **Case sensitivity:** Ignore case differences",
        "",
        "**Important:**",
        "- Set `is_duplicate` to `true` only if you are confident there is a match",
        "- Set `matching_record_id` to the ID of the matching record, or `null` if no match",
        "- Set `confidence` to a value between 0.0 and 1.0 (0.0 = no confidence, 1.0 = certain)",
        "- Provide a clear explanation citing specific fields that match or differ",
    ]
    return "\n".join(lines)
