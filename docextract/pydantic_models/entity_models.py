"""Entity records held by the collaborator stores.

Runs, work items, artifacts, stored files and canonical objects. Mutable
dataclasses: the stores own them and hand out the live records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from docextract.pydantic_models.state_models import RunState


class Operation(str, Enum):
    """Operation tag of a work item."""
    PLAN_IDENTIFY = "Plan: Identify"
    PLAN_REMAINING = "Plan: Remaining"
    TRANSCODE = "Transcode"
    CLASSIFY = "Classify"
    EXTRACT_IDENTITY = "Extract Identity"
    EXTRACT_REMAINING = "Extract Remaining"


@dataclass
class StoredFile:
    """A source file attached to an artifact (one page image or text file).

    ``meta`` carries upstream annotations: ``page_number``,
    ``belongs_to_previous`` (file organization adjacency score) and the
    per-schema ``classifications`` cache.
    """
    id: int
    filename: str
    page_number: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class Artifact:
    """A node in a run's content tree.

    Page artifacts carry ``position`` (page number) and ``text_content``.
    Output artifacts carry ``json_content`` and provenance in ``meta``:
    ``parent_id``, ``relationship_key``, ``is_array_type``, ``level``,
    ``operation``, ``object_node``.
    """
    id: int
    run_id: int | None = None
    name: str = ""
    parent_artifact_id: int | None = None
    position: int | None = None
    text_content: str | None = None
    json_content: dict[str, Any] | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    stored_file_ids: list[int] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class WorkItem:
    """One unit of scheduled work.

    ``completed_at`` is set exactly once, by the store, when the item finishes.
    """
    id: int
    run_id: int
    name: str
    operation: Operation
    meta: dict[str, Any] = field(default_factory=dict)
    input_artifact_ids: list[int] = field(default_factory=list)
    output_artifact_ids: list[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @property
    def level(self) -> int | None:
        return self.meta.get("level")


@dataclass
class Run:
    """One extraction job.

    ``state`` is the versioned progress record; it is replaced, never mutated
    in place, through the run state compare-and-swap.
    """
    id: int
    name: str
    schema_definition: dict[str, Any]
    schema_id: int = 1
    input_artifact_ids: list[int] = field(default_factory=list)
    state: RunState = field(default_factory=RunState)
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None


@dataclass
class CanonicalObject:
    """A deduplicated domain entity.

    Core columns (name, date, description, url) live on the record; every
    other extracted field is an attribute.
    """
    id: int
    type: str
    name: str
    schema_id: int | None = None
    root_object_id: int | None = None
    date: str | None = None
    description: str | None = None
    url: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def flattened(self) -> dict[str, Any]:
        """Core columns plus attributes as one dict (used in prompts)."""
        data: dict[str, Any] = {"id": self.id, "type": self.type, "name": self.name}
        for column in ("date", "description", "url"):
            value = getattr(self, column)
            if value is not None:
                data[column] = value
        data.update(self.attributes)
        return data

    def field_value(self, key: str) -> Any:
        if key in ("name", "date", "description", "url"):
            return getattr(self, key)
        return self.attributes.get(key)
