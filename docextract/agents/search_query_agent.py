"""Search query agent: ordered duplicate-detection queries per extracted item.

Items go to the model in batches. Each item gets an opaque hash key in the
response schema so results map back to the caller's indices even when the
model reorders or drops entries:

    items[0] -> "h3f2a9c1e" -> {"search_query": [{...}, {...}, {...}]}
"""

from __future__ import annotations

import hashlib
import json
import logging

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.core.config import ExtractionDefaults, TimeoutConfig, clamp_timeout
from docextract.core.errors import AgentRunError
from docextract.core.schema_tools import search_field_type
from docextract.prompts.search_query_prompt import (
    SEARCH_QUERY_DEFS,
    SEARCH_QUERY_INSTRUCTIONS,
    SEARCH_QUERY_SYSTEM_PROMPT,
    build_item_description,
    build_items_yaml,
    search_type_for,
)

logger = logging.getLogger(__name__)


def hash_key(item: dict, index: int) -> str:
    digest = hashlib.md5((json.dumps(item, sort_keys=True, default=str) + str(index)).encode()).hexdigest()
    return "h" + digest[:8]


def build_query_item_schema(identity_fields: list[str], schema: dict | None) -> tuple[dict, set[str]]:
    """Schema for one item's search_query array and the search defs it uses."""
    used: set[str] = set()
    properties = {}
    for field_name in identity_fields:
        definition = search_type_for(search_field_type(schema, field_name))
        used.add(definition)
        properties[field_name] = {"$ref": f"#/$defs/{definition}"}

    item_schema = {
        "type": "array",
        "description": SEARCH_QUERY_INSTRUCTIONS,
        "items": {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
            "required": list(identity_fields),
        },
        "minItems": 3,
    }
    return item_schema, used


def build_indexed_schema(
    items: list[dict],
    identity_fields: list[str],
    schema: dict | None,
    start_index: int = 0,
) -> tuple[dict, dict[str, int]]:
    """Response schema keyed by item hash, plus the hash -> index mapping."""
    item_schema, used = build_query_item_schema(identity_fields, schema)
    properties: dict[str, dict] = {}
    mapping: dict[str, int] = {}

    for offset, item in enumerate(items):
        index = start_index + offset
        key = hash_key(item, index)
        mapping[key] = index
        properties[key] = {
            "type": "object",
            "description": build_item_description(item, index),
            "properties": {"search_query": item_schema},
            "required": ["search_query"],
            "additionalProperties": False,
        }

    response_schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": list(properties),
        "$defs": {name: SEARCH_QUERY_DEFS[name] for name in sorted(used)},
    }
    return response_schema, mapping


def parse_search_queries(response: dict | None, mapping: dict[str, int]) -> dict[int, list[dict] | None]:
    """Map hash-keyed entries back to item indices; invalid entries become None."""
    results: dict[int, list[dict] | None] = {index: None for index in mapping.values()}
    if not isinstance(response, dict):
        return results
    for key, index in mapping.items():
        entry = response.get(key)
        if not isinstance(entry, dict):
            continue
        queries = entry.get("search_query")
        if isinstance(queries, list) and all(isinstance(q, dict) for q in queries):
            results[index] = queries
    return results


async def _generate_batch(
    service: AgentService,
    items: list[dict],
    identity_fields: list[str],
    schema: dict | None,
    start_index: int,
    timeout: int,
) -> dict[int, list[dict] | None]:
    response_schema, mapping = build_indexed_schema(items, identity_fields, schema, start_index)
    thread = (
        AgentThreadBuilder.named("Search Query Generation", agent="search_query")
        .with_system(SEARCH_QUERY_SYSTEM_PROMPT)
        .with_message(build_items_yaml(items))
        .build()
    )
    result = await service.run(thread, response_schema, timeout=timeout)
    if not result.completed:
        raise AgentRunError(f"Search query generation thread failed: {result.error or 'Unknown error'}")
    return parse_search_queries(result.last_message_json, mapping)


async def generate_search_queries(
    service: AgentService,
    items: list[dict],
    identity_fields: list[str],
    schema: dict | None = None,
    timeout: int | None = TimeoutConfig.SEARCH_QUERY,
    batch_size: int = ExtractionDefaults.SEARCH_QUERY_BATCH_SIZE,
) -> list[list[dict] | None]:
    """Generate search queries for every item, in item order.

    Returns:
        One entry per item: its queries (most specific first) or None when
        the model returned nothing usable for it.

    Raises:
        AgentRunError: A batch's thread failed.
    """
    if not items:
        return []

    seconds = clamp_timeout(timeout, TimeoutConfig.SEARCH_QUERY, upper=TimeoutConfig.SEARCH_QUERY_MAX_SECONDS)
    results: dict[int, list[dict] | None] = {}
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        results.update(await _generate_batch(service, batch, identity_fields, schema, start, seconds))

    missing = sum(1 for index in range(len(items)) if results.get(index) is None)
    if missing:
        logger.debug(f"No search queries returned for {missing} of {len(items)} item(s)")
    return [results.get(index) for index in range(len(items))]
