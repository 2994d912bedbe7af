"""Page classification prompt and relevance schema."""

from docextract.pydantic_models.plan_models import ExtractionPlan


CLASSIFICATION_SYSTEM_PROMPT = """You classify a single document page by relevance.

For every property in the response schema, answer true if this page contains
information described by that property's description, false otherwise.

Rules:
- Judge only the page you are given. Do not guess about other pages.
- A page can be relevant to several properties, or to none.
- Headers, footers and page numbers alone never make a page relevant.
- When a page clearly continues a table or section relevant to a property, answer true.

Respond with JSON only: one boolean per property."""


def identity_description(object_type: str) -> str:
    return f"Pages relevant for identifying {object_type} objects"


def build_classification_schema(plan: ExtractionPlan) -> dict:
    """One boolean property per plan group, keyed by its classification key.

    Identity groups describe themselves generically; remaining groups use
    the planner's description. The first group to claim a key wins.
    """
    properties: dict[str, dict] = {}

    for level in plan.levels:
        for identity in level.identities:
            key = identity.classification_key
            if key not in properties:
                description = identity_description(identity.object_type)
                if identity.description:
                    description = f"{description}. {identity.description}"
                properties[key] = {"type": "boolean", "description": description}

        for group in level.remaining:
            key = group.classification_key
            if key not in properties:
                properties[key] = {
                    "type": "boolean",
                    "description": group.description or f"Pages containing {group.name} data",
                }

    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
    }


def build_classification_prompt(page_number: int | None) -> str:
    label = f"page {page_number}" if page_number is not None else "this page"
    return f"Classify {label} against every property of the response schema."
