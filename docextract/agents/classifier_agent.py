"""Classifier agent: per-page relevance classification with a stored-file cache.

The cache lives on the page's stored file so that the same file classified
again under the same schema (another run, a retried work item) skips the
LLM call:

    stored_file.meta["classifications"]["7"] = {
        "schema_definition_id": 7,
        "schema_hash": "3f2a...",
        "classified_at": "2025-01-01T12:00:00",
        "result": {"provider_identification": true, "billing": false},
    }
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from docextract.agents.agent_service import AgentService, AgentThreadBuilder
from docextract.core.config import TimeoutConfig
from docextract.core.errors import ExtractionValidationError
from docextract.core.pipeline_logger import get_logger
from docextract.core.schema_tools import schema_hash
from docextract.core.stores import EntityStore
from docextract.pydantic_models.entity_models import Artifact, StoredFile
from docextract.prompts.classification_prompt import (
    CLASSIFICATION_SYSTEM_PROMPT,
    build_classification_prompt,
)


def cached_classification(stored_file: StoredFile, schema_definition_id: int, current_hash: str) -> dict | None:
    """The cached result for this schema, or None on a miss or a hash mismatch."""
    entry = (stored_file.meta.get("classifications") or {}).get(str(schema_definition_id))
    if not isinstance(entry, dict) or not isinstance(entry.get("result"), dict):
        return None
    if entry.get("schema_hash") != current_hash:
        get_logger().debug(
            "Cached classification hash mismatch",
            stored_file_id=stored_file.id,
            schema_definition_id=schema_definition_id,
        )
        return None
    return entry["result"]


def store_classification(
    store: EntityStore,
    stored_file: StoredFile,
    schema_definition_id: int,
    current_hash: str,
    result: dict,
) -> None:
    classifications = dict(stored_file.meta.get("classifications") or {})
    classifications[str(schema_definition_id)] = {
        "schema_definition_id": schema_definition_id,
        "schema_hash": current_hash,
        "classified_at": datetime.now().isoformat(),
        "result": result,
    }
    store.update_stored_file_meta(stored_file.id, {"classifications": classifications})


TRUE_STRINGS = ("true", "yes", "1")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return False


def _coerce_booleans(data: dict, schema: dict) -> dict:
    # Keys outside the schema are dropped; missing keys count as not relevant.
    return {key: _as_bool(data.get(key, False)) for key in (schema.get("properties") or {})}


async def classify_page(
    service: AgentService,
    store: EntityStore,
    artifact: Artifact,
    classification_schema: dict,
    schema_definition_id: int,
    timeout: int | None = TimeoutConfig.CLASSIFICATION,
) -> dict[str, bool]:
    """Classify one page against the boolean relevance schema.

    Returns:
        {classification_key: bool} for every schema property.

    Raises:
        ExtractionValidationError: No stored file on the artifact, the call
            failed, or it returned no JSON.
    """
    files = store.stored_files_of(artifact)
    if not files:
        raise ExtractionValidationError(f"No StoredFile found for Artifact: {artifact.id}")
    stored_file = files[0]

    current_hash = schema_hash(classification_schema)
    cached = cached_classification(stored_file, schema_definition_id, current_hash)
    if cached is not None:
        get_logger().debug("Using cached classification", artifact_id=artifact.id, stored_file_id=stored_file.id)
        return _coerce_booleans(cached, classification_schema)

    thread = (
        AgentThreadBuilder.named(f"Classify Page {artifact.position}", agent="classification")
        .with_system(CLASSIFICATION_SYSTEM_PROMPT)
        .with_artifacts([artifact], store, include_text=True, include_files=True, include_json=False, include_meta=False)
        .with_message(build_classification_prompt(artifact.position))
        .build()
    )
    result = await service.run(thread, classification_schema, timeout=timeout)

    if not result.completed:
        raise ExtractionValidationError(f"Page classification thread failed: {result.error or 'Unknown error'}")
    if not isinstance(result.last_message_json, dict):
        raise ExtractionValidationError("No valid JSON content returned from page classification thread")

    classification = _coerce_booleans(result.last_message_json, classification_schema)
    store_classification(store, stored_file, schema_definition_id, current_hash, classification)
    return classification


def artifacts_for_category(artifacts: list[Artifact], category_key: str) -> list[Artifact]:
    """Page artifacts whose stored classification marks them relevant to category_key."""
    return [
        artifact for artifact in artifacts
        if (artifact.meta.get("classification") or {}).get(category_key) is True
    ]
