"""Planning prompts: identity field selection and remaining-field grouping.

Field lists are rendered as YAML ({properties: {key: {title, description}}})
which models read more reliably than JSON for flat property maps.
"""

import yaml

from docextract.pydantic_models.plan_models import ObjectTypeInfo, SimpleField


PLANNING_SYSTEM_PROMPT = """You design extraction plans for structured data extraction from documents.

You are given one object type from a JSON schema and the simple (non-nested)
fields it owns. You decide how instances of that object type are identified
and how its fields are grouped for extraction.

Respond with JSON only."""


def fields_to_yaml(fields: dict[str, SimpleField]) -> str:
    """Render simple fields as a YAML properties block ("" when empty)."""
    if not fields:
        return ""
    properties = {}
    for key, info in fields.items():
        entry = {"title": info.title or key}
        if info.description:
            entry["description"] = info.description
        properties[key] = entry
    return yaml.safe_dump({"properties": properties}, sort_keys=False, allow_unicode=True, indent=2)


def build_identity_prompt(info: ObjectTypeInfo, group_max_points: int) -> str:
    """Ask for identity_fields, skim_fields, search_mode and a page description."""
    lines = [
        "# Identity Field Selection Task",
        "",
        "You are tasked with selecting identity fields for a specific object type in a data extraction schema.",
        "",
        "## Object Type Information",
        "",
        f"**Name:** {info.name}",
        f"**Path:** {info.path}",
        f"**Level:** {info.level}",
    ]
    if info.parent_type:
        lines.append(f"**Parent Type:** {info.parent_type}")
    lines.append(f"**Is Array:** {'Yes' if info.is_array else 'No'}")
    lines += [
        "",
        "## Available Simple Fields",
        "",
        "These are the simple (non-nested) fields available for this object type:",
        "",
        fields_to_yaml(info.simple_fields),
        "## Configuration",
        "",
        f"- **Group Max Points:** {group_max_points} (maximum fields per group)",
        "",
        "## Your Task",
        "",
        "1. **Select Identity Fields:** Choose fields that uniquely identify this object type.",
        "   - Prefer fields like name, date, ID, or unique identifiers",
        "   - These fields should help distinguish one instance from another",
        "   - For array types, identity is especially important",
        "",
        '2. **Select Skim Fields:** Choose additional simple fields to extract together with identity fields in "skim" mode.',
        "   - Include ALL identity fields in skim_fields",
        "   - Add other simple fields that are quick to extract",
        f"   - Total skim fields should not exceed {group_max_points}",
        "",
        "3. **Choose a Search Mode:** skim (stop once the identity is found) or exhaustive (read every relevant page).",
        "",
        "4. **Describe Identification Content:** Explain what document content or page sections contain the identity",
        "   fields and what visual or textual cues to look for. This description is used to classify pages.",
        "",
        "5. **Provide Reasoning:** Briefly explain why you chose these identity fields.",
        "",
        "Generate your response now.",
    ]
    return "\n".join(lines)


def _grouping_rules(group_max_points: int) -> list[str]:
    return [
        "1. **Group Related Fields:** Organize fields into logical groups based on:",
        "   - Semantic similarity (e.g., address fields together)",
        "   - Document structure (e.g., fields likely found in same section)",
        "   - Data type or purpose",
        "",
        "2. **Assign Search Modes:** For each group, choose an appropriate search_mode:",
        "   - **skim:** Quick extraction for simple, obvious fields that are easy to find",
        "   - **exhaustive:** Thorough search for complex or hard-to-find data",
        "",
        f"3. **Respect Size Limits:** Each group should not exceed {group_max_points} fields.",
        "",
        "4. **Name Groups Descriptively:** Use clear, meaningful names for each group.",
        "",
        "5. **Describe Each Group:** Explain what document content or sections contain these fields and",
        "   what cues to look for on a page. The description is used to classify pages by relevance.",
    ]


def build_remaining_prompt(
    object_type: str,
    path: str,
    level: int,
    remaining_fields: dict[str, SimpleField],
    group_max_points: int,
) -> str:
    """First grouping attempt over every remaining field."""
    lines = [
        "# Remaining Fields Grouping Task",
        "",
        "You are tasked with grouping remaining fields for data extraction.",
        "",
        "## Object Type Information",
        "",
        f"**Name:** {object_type}",
        f"**Path:** {path}",
        f"**Level:** {level}",
        "",
        "## Remaining Fields to Group",
        "",
        "These fields were NOT included in the identity skim group and need to be organized:",
        "",
        fields_to_yaml(remaining_fields),
        "## Configuration",
        "",
        f"- **Group Max Points:** {group_max_points} (maximum fields per group)",
        "",
        "## Your Task",
        "",
        "Create logical extraction groups for these remaining fields:",
        "",
        *_grouping_rules(group_max_points),
        "",
        "Generate your extraction groups now.",
    ]
    return "\n".join(lines)


def build_remaining_follow_up_prompt(
    object_type: str,
    path: str,
    missing_fields: dict[str, SimpleField],
    group_max_points: int,
    attempt: int,
) -> str:
    """Retry prompt listing only the fields earlier attempts left out."""
    lines = [
        f"# Follow-up: Missing Fields Grouping (Attempt {attempt})",
        "",
        "Your previous response did not include all required fields. "
        "Please group the following **missing fields** that were not included in your previous response.",
        "",
        "## Object Type Information",
        "",
        f"**Name:** {object_type}",
        f"**Path:** {path}",
        "",
        "## Missing Fields to Group",
        "",
        "These fields were NOT included in your previous response and MUST be grouped:",
        "",
        fields_to_yaml(missing_fields),
        "## Configuration",
        "",
        f"- **Group Max Points:** {group_max_points} (maximum fields per group)",
        "",
        "## Your Task",
        "",
        "**IMPORTANT:** You MUST include ALL of the missing fields listed above in your response.",
        "",
        *_grouping_rules(group_max_points),
        "",
        "Generate your extraction groups for the missing fields now.",
    ]
    return "\n".join(lines)
