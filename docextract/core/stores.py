"""Collaborator contracts and their in-memory implementations.

- EntityStore: runs, work items, artifacts, stored files
- CanonicalObjectStore: deduplicated domain objects and their parent links
- TranscodeService: prerequisite format conversion
- Dispatcher: schedules created work items

The engine only talks to the abstract classes. The in-memory versions back
the local orchestrator and the test suite.
"""

from __future__ import annotations

import copy
import itertools
import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from rapidfuzz import fuzz, process

from docextract.core.value_helpers import normalize_date, normalize_for_match
from docextract.pydantic_models.entity_models import (
    Artifact,
    CanonicalObject,
    Operation,
    Run,
    StoredFile,
    WorkItem,
)
from docextract.pydantic_models.state_models import RunState

logger = logging.getLogger(__name__)


# =============================================================================
# Entity persistence
# =============================================================================


class EntityStore(ABC):
    """CRUD over runs, work items, artifacts and stored files."""

    @abstractmethod
    def create_run(self, name: str, schema_definition: dict, schema_id: int = 1) -> Run: ...

    @abstractmethod
    def get_run(self, run_id: int) -> Run: ...

    @abstractmethod
    def add_run_inputs(self, run_id: int, artifact_ids: Iterable[int]) -> Run:
        """Append input page artifacts to a run, skipping ones already there."""

    @abstractmethod
    def compare_and_swap_run_state(self, run_id: int, expected_version: int, state: RunState) -> bool:
        """Replace the run state iff its version is still expected_version."""

    @abstractmethod
    def create_work_item(
        self,
        run_id: int,
        name: str,
        operation: Operation,
        meta: dict | None = None,
        input_artifact_ids: Iterable[int] = (),
    ) -> WorkItem: ...

    @abstractmethod
    def get_work_item(self, work_item_id: int) -> WorkItem: ...

    @abstractmethod
    def work_items_for(self, run_id: int, operation: Operation | None = None) -> list[WorkItem]: ...

    @abstractmethod
    def complete_work_item(self, work_item_id: int) -> WorkItem:
        """Stamp completed_at. A second call leaves the first timestamp."""

    @abstractmethod
    def update_work_item_meta(self, work_item_id: int, updates: dict) -> WorkItem: ...

    @abstractmethod
    def create_stored_file(self, filename: str, page_number: int | None = None, meta: dict | None = None) -> StoredFile: ...

    @abstractmethod
    def get_stored_file(self, stored_file_id: int) -> StoredFile: ...

    @abstractmethod
    def update_stored_file_meta(self, stored_file_id: int, updates: dict) -> StoredFile: ...

    @abstractmethod
    def create_artifact(
        self,
        run_id: int | None,
        name: str,
        parent_artifact_id: int | None = None,
        position: int | None = None,
        text_content: str | None = None,
        json_content: dict | None = None,
        meta: dict | None = None,
        stored_file_ids: Iterable[int] = (),
    ) -> Artifact: ...

    @abstractmethod
    def get_artifact(self, artifact_id: int) -> Artifact: ...

    @abstractmethod
    def get_artifacts(self, artifact_ids: Iterable[int]) -> list[Artifact]: ...

    @abstractmethod
    def update_artifact(self, artifact_id: int, **changes) -> Artifact: ...

    @abstractmethod
    def compare_and_swap_artifact_meta(self, artifact_id: int, expected_version: int, meta: dict) -> bool: ...

    @abstractmethod
    def children_of(self, artifact_id: int) -> list[Artifact]: ...

    @abstractmethod
    def root_artifact(self, run_id: int) -> Artifact | None:
        """The run's parentless output artifact (meta output_root), if created."""

    @abstractmethod
    def attach_output_artifacts(self, work_item_id: int, artifact_ids: Iterable[int]) -> None: ...

    @abstractmethod
    def sync_input_artifacts(self, work_item_id: int, artifact_ids: Iterable[int]) -> None: ...

    def input_artifacts(self, work_item: WorkItem) -> list[Artifact]:
        return self.get_artifacts(work_item.input_artifact_ids)

    def run_inputs(self, run: Run) -> list[Artifact]:
        """Page artifacts of a run, ordered by position."""
        pages = self.get_artifacts(run.input_artifact_ids)
        return sorted(pages, key=lambda a: (a.position is None, a.position or 0, a.id))

    def stored_files_of(self, artifact: Artifact) -> list[StoredFile]:
        return [self.get_stored_file(file_id) for file_id in artifact.stored_file_ids]

    def descendants_of(self, artifact_id: int) -> list[Artifact]:
        """All descendants, breadth first."""
        result: list[Artifact] = []
        queue = [artifact_id]
        seen = {artifact_id}
        while queue:
            current = queue.pop(0)
            for child in self.children_of(current):
                if child.id in seen:
                    continue
                seen.add(child.id)
                result.append(child)
                queue.append(child.id)
        return result


@dataclass
class InMemoryEntityStore(EntityStore):
    """Dict-backed EntityStore."""

    runs: dict[int, Run] = field(default_factory=dict)
    work_items: dict[int, WorkItem] = field(default_factory=dict)
    artifacts: dict[int, Artifact] = field(default_factory=dict)
    stored_files: dict[int, StoredFile] = field(default_factory=dict)

    _ids: Any = field(default_factory=lambda: itertools.count(1))
    _children: dict[int, list[int]] = field(default_factory=lambda: defaultdict(list))

    def _next_id(self) -> int:
        return next(self._ids)

    # -- Runs --

    def create_run(self, name: str, schema_definition: dict, schema_id: int = 1) -> Run:
        run = Run(id=self._next_id(), name=name, schema_definition=schema_definition, schema_id=schema_id)
        self.runs[run.id] = run
        return run

    def get_run(self, run_id: int) -> Run:
        return self.runs[run_id]

    def add_run_inputs(self, run_id: int, artifact_ids: Iterable[int]) -> Run:
        run = self.runs[run_id]
        for artifact_id in artifact_ids:
            if artifact_id not in run.input_artifact_ids:
                run.input_artifact_ids.append(artifact_id)
        return run

    def compare_and_swap_run_state(self, run_id: int, expected_version: int, state: RunState) -> bool:
        run = self.runs[run_id]
        if run.state.version != expected_version:
            return False
        run.state = state.model_copy(update={"version": expected_version + 1}, deep=True)
        return True

    # -- Work items --

    def create_work_item(
        self,
        run_id: int,
        name: str,
        operation: Operation,
        meta: dict | None = None,
        input_artifact_ids: Iterable[int] = (),
    ) -> WorkItem:
        item = WorkItem(
            id=self._next_id(),
            run_id=run_id,
            name=name,
            operation=operation,
            meta=copy.deepcopy(meta or {}),
            input_artifact_ids=list(input_artifact_ids),
        )
        self.work_items[item.id] = item
        return item

    def get_work_item(self, work_item_id: int) -> WorkItem:
        return self.work_items[work_item_id]

    def work_items_for(self, run_id: int, operation: Operation | None = None) -> list[WorkItem]:
        return [
            item for item in self.work_items.values()
            if item.run_id == run_id and (operation is None or item.operation == operation)
        ]

    def complete_work_item(self, work_item_id: int) -> WorkItem:
        item = self.work_items[work_item_id]
        if item.completed_at is None:
            item.completed_at = datetime.now()
        return item

    def update_work_item_meta(self, work_item_id: int, updates: dict) -> WorkItem:
        item = self.work_items[work_item_id]
        item.meta.update(copy.deepcopy(updates))
        return item

    # -- Stored files --

    def create_stored_file(self, filename: str, page_number: int | None = None, meta: dict | None = None) -> StoredFile:
        stored = StoredFile(id=self._next_id(), filename=filename, page_number=page_number, meta=dict(meta or {}))
        self.stored_files[stored.id] = stored
        return stored

    def get_stored_file(self, stored_file_id: int) -> StoredFile:
        return self.stored_files[stored_file_id]

    def update_stored_file_meta(self, stored_file_id: int, updates: dict) -> StoredFile:
        stored = self.stored_files[stored_file_id]
        stored.meta.update(copy.deepcopy(updates))
        return stored

    # -- Artifacts --

    def create_artifact(
        self,
        run_id: int | None,
        name: str,
        parent_artifact_id: int | None = None,
        position: int | None = None,
        text_content: str | None = None,
        json_content: dict | None = None,
        meta: dict | None = None,
        stored_file_ids: Iterable[int] = (),
    ) -> Artifact:
        artifact = Artifact(
            id=self._next_id(),
            run_id=run_id,
            name=name,
            parent_artifact_id=parent_artifact_id,
            position=position,
            text_content=text_content,
            json_content=copy.deepcopy(json_content),
            meta=copy.deepcopy(meta or {}),
            stored_file_ids=list(stored_file_ids),
        )
        self.artifacts[artifact.id] = artifact
        if parent_artifact_id is not None:
            self._children[parent_artifact_id].append(artifact.id)
        return artifact

    def get_artifact(self, artifact_id: int) -> Artifact:
        return self.artifacts[artifact_id]

    def get_artifacts(self, artifact_ids: Iterable[int]) -> list[Artifact]:
        return [self.artifacts[artifact_id] for artifact_id in artifact_ids if artifact_id in self.artifacts]

    def update_artifact(self, artifact_id: int, **changes) -> Artifact:
        artifact = self.artifacts[artifact_id]
        for key, value in changes.items():
            if not hasattr(artifact, key):
                raise AttributeError(f"Artifact has no field '{key}'")
            setattr(artifact, key, value)
        return artifact

    def compare_and_swap_artifact_meta(self, artifact_id: int, expected_version: int, meta: dict) -> bool:
        artifact = self.artifacts[artifact_id]
        if artifact.version != expected_version:
            return False
        artifact.meta = copy.deepcopy(meta)
        artifact.version = expected_version + 1
        return True

    def children_of(self, artifact_id: int) -> list[Artifact]:
        return [self.artifacts[child_id] for child_id in self._children.get(artifact_id, [])]

    def root_artifact(self, run_id: int) -> Artifact | None:
        roots = [
            artifact for artifact in self.artifacts.values()
            if artifact.run_id == run_id
            and artifact.parent_artifact_id is None
            and artifact.meta.get("output_root")
        ]
        return max(roots, key=lambda a: a.id) if roots else None

    def attach_output_artifacts(self, work_item_id: int, artifact_ids: Iterable[int]) -> None:
        item = self.work_items[work_item_id]
        for artifact_id in artifact_ids:
            if artifact_id not in item.output_artifact_ids:
                item.output_artifact_ids.append(artifact_id)

    def sync_input_artifacts(self, work_item_id: int, artifact_ids: Iterable[int]) -> None:
        self.work_items[work_item_id].input_artifact_ids = list(dict.fromkeys(artifact_ids))


# =============================================================================
# Canonical objects
# =============================================================================


@dataclass(frozen=True)
class ObjectScope:
    """Where duplicate candidates may come from.

    parent_object_id limits candidates to children of that object; None
    means top-level (or unscoped when any_parent is True).
    """
    object_type: str
    schema_id: int | None = None
    parent_object_id: int | None = None
    any_parent: bool = False


def like_to_regex(pattern: str) -> re.Pattern:
    """Compile a SQL LIKE pattern (% and _) to a case-insensitive regex."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(str(value).replace(",", "")) if value is not None else None
    except ValueError:
        return None


def _compare(operator: str, left: Any, right: Any, upper: Any = None) -> bool:
    if left is None or right is None:
        return False
    if operator == "between":
        return upper is not None and right <= left <= upper
    comparisons = {
        "=": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
        "<": lambda a, b: a < b,
        ">": lambda a, b: a > b,
        "<=": lambda a, b: a <= b,
        ">=": lambda a, b: a >= b,
    }
    compare = comparisons.get(operator)
    return bool(compare and compare(left, right))


def criterion_matches(stored: Any, criterion: Any) -> bool:
    """Whether a stored value satisfies one search criterion.

    Criteria:
        "%acme%"                                    LIKE pattern
        ["acme", "corp"]                            every term appears
        {"operator": ">=", "value": "2024-01-01"}   comparison
        True / 42                                   equality
    """
    if isinstance(criterion, dict):
        operator = criterion.get("operator", "=")
        value = criterion.get("value")
        value2 = criterion.get("value2")
        if value is None:
            return True
        if stored is None:
            return False
        left, right, upper = _as_number(stored), _as_number(value), _as_number(value2)
        if left is None or right is None:
            left, right = normalize_date(stored), normalize_date(value)
            upper = normalize_date(value2) if value2 is not None else None
        return _compare(operator, left, right, upper)

    if stored is None:
        return False

    if isinstance(criterion, list):
        haystack = normalize_for_match(stored)
        return all(normalize_for_match(term) in haystack for term in criterion if isinstance(term, str) and term)

    if isinstance(criterion, str):
        text = normalize_for_match(stored)
        if like_to_regex(criterion.strip()).match(text):
            return True
        # Dates are stored normalized; let "10/31/2017" match "2017-10-31".
        return normalize_date(stored) == normalize_date(criterion)

    return normalize_for_match(stored) == normalize_for_match(criterion)


class CanonicalObjectStore(ABC):
    """Find, create and update deduplicated domain objects."""

    @abstractmethod
    def get(self, object_id: int) -> CanonicalObject | None: ...

    @abstractmethod
    def in_scope(self, scope: ObjectScope) -> list[CanonicalObject]:
        """All objects of the scope, newest first."""

    @abstractmethod
    def create(self, object_type: str, name: str, schema_id: int | None = None, **columns) -> CanonicalObject: ...

    @abstractmethod
    def update(self, object_id: int, columns: dict | None = None, attributes: dict | None = None) -> CanonicalObject:
        """Merge new column values and attributes into an object."""

    @abstractmethod
    def add_relationship(self, parent_id: int, relationship_key: str, child_id: int) -> None: ...

    @abstractmethod
    def parents_of(self, object_id: int) -> list[tuple[int, str]]:
        """(parent id, relationship key) pairs, oldest first."""

    @abstractmethod
    def children_of(self, object_id: int, relationship_key: str | None = None) -> list[int]: ...

    def search(self, scope: ObjectScope, query: dict[str, Any] | None = None, limit: int = 50) -> list[CanonicalObject]:
        """Objects in scope whose fields satisfy every non-empty criterion."""
        criteria = {
            key: value for key, value in (query or {}).items()
            if value is not None and value != "" and value != []
        }
        results = [
            obj for obj in self.in_scope(scope)
            if all(criterion_matches(obj.field_value(key), value) for key, value in criteria.items())
        ]
        return results[:limit]

    def find_by_name(self, scope: ObjectScope, name: str) -> list[CanonicalObject]:
        """Case-insensitive exact name matches."""
        wanted = normalize_for_match(name)
        return [obj for obj in self.in_scope(scope) if normalize_for_match(obj.name) == wanted]

    def similar_by_name(self, scope: ObjectScope, name: str, limit: int = 5, score_cutoff: float = 80) -> list[CanonicalObject]:
        """Objects whose names are fuzzily similar, best first."""
        candidates = self.in_scope(scope)
        if not candidates or not name:
            return []
        matches = process.extract(
            name,
            {obj.id: obj.name for obj in candidates},
            scorer=fuzz.token_sort_ratio,
            processor=str.lower,
            limit=limit,
            score_cutoff=score_cutoff,
        )
        by_id = {obj.id: obj for obj in candidates}
        return [by_id[key] for _, _, key in matches]

    def ancestors_of(self, object_id: int) -> list[tuple[CanonicalObject, str]]:
        """Ancestor chain from the root down to the direct parent.

        Follows the first recorded parent at each step. Each entry pairs the
        ancestor with the relationship key that links it to the next object
        down the chain.
        """
        chain: list[tuple[CanonicalObject, str]] = []
        seen = {object_id}
        current = object_id
        while True:
            parents = self.parents_of(current)
            if not parents:
                break
            parent_id, key = parents[0]
            if parent_id in seen:
                break
            parent = self.get(parent_id)
            if parent is None:
                break
            seen.add(parent_id)
            chain.insert(0, (parent, key))
            current = parent_id
        return chain


@dataclass
class InMemoryCanonicalObjectStore(CanonicalObjectStore):
    """Dict-backed CanonicalObjectStore."""

    objects: dict[int, CanonicalObject] = field(default_factory=dict)
    relationships: list[tuple[int, str, int]] = field(default_factory=list)

    _ids: Any = field(default_factory=lambda: itertools.count(1))

    def get(self, object_id: int) -> CanonicalObject | None:
        return self.objects.get(object_id)

    def in_scope(self, scope: ObjectScope) -> list[CanonicalObject]:
        if scope.parent_object_id is not None:
            allowed = set(self.children_of(scope.parent_object_id))
        else:
            allowed = None
        results = [
            obj for obj in self.objects.values()
            if obj.type == scope.object_type
            and (scope.schema_id is None or obj.schema_id == scope.schema_id)
            and (allowed is None or obj.id in allowed)
            and (allowed is not None or scope.any_parent or not self.parents_of(obj.id))
        ]
        return sorted(results, key=lambda obj: (obj.created_at, obj.id), reverse=True)

    def create(self, object_type: str, name: str, schema_id: int | None = None, **columns) -> CanonicalObject:
        attributes = columns.pop("attributes", None) or {}
        obj = CanonicalObject(
            id=next(self._ids),
            type=object_type,
            name=name,
            schema_id=schema_id,
            attributes=dict(attributes),
            **{key: value for key, value in columns.items() if key in ("date", "description", "url", "root_object_id")},
        )
        self.objects[obj.id] = obj
        logger.debug(f"Created {object_type} '{name}' (id={obj.id})")
        return obj

    def update(self, object_id: int, columns: dict | None = None, attributes: dict | None = None) -> CanonicalObject:
        obj = self.objects[object_id]
        for key, value in (columns or {}).items():
            if key in ("name", "date", "description", "url") and value is not None:
                setattr(obj, key, value)
        for key, value in (attributes or {}).items():
            if value is not None:
                obj.attributes[key] = value
        obj.updated_at = datetime.now()
        return obj

    def add_relationship(self, parent_id: int, relationship_key: str, child_id: int) -> None:
        edge = (parent_id, relationship_key, child_id)
        if edge not in self.relationships:
            self.relationships.append(edge)

    def parents_of(self, object_id: int) -> list[tuple[int, str]]:
        return [(parent, key) for parent, key, child in self.relationships if child == object_id]

    def children_of(self, object_id: int, relationship_key: str | None = None) -> list[int]:
        return [
            child for parent, key, child in self.relationships
            if parent == object_id and (relationship_key is None or key == relationship_key)
        ]


# =============================================================================
# Transcoding and dispatch
# =============================================================================


class TranscodeService(ABC):
    """Prerequisite format conversion for page artifacts."""

    @abstractmethod
    def artifacts_needing_transcode(self, artifacts: list[Artifact]) -> list[Artifact]: ...

    @abstractmethod
    def create_transcode_processes(self, run: Run, artifacts: list[Artifact]) -> list[WorkItem]: ...

    async def transcode(self, work_item: WorkItem) -> None:
        """Perform one conversion. Default: nothing to do."""


@dataclass
class NoTranscodeService(TranscodeService):
    """Pages arrive as text; nothing ever needs converting."""

    def artifacts_needing_transcode(self, artifacts: list[Artifact]) -> list[Artifact]:
        return []

    def create_transcode_processes(self, run: Run, artifacts: list[Artifact]) -> list[WorkItem]:
        return []


class Dispatcher(ABC):
    """Schedules created work items. The return value is never consumed."""

    @abstractmethod
    def dispatch(self, work_items: list[WorkItem]) -> None: ...


@dataclass
class QueueDispatcher(Dispatcher):
    """Collects dispatched work items for a local worker pool to drain."""

    pending: list[WorkItem] = field(default_factory=list)

    def dispatch(self, work_items: list[WorkItem]) -> None:
        self.pending.extend(work_items)

    def drain(self) -> list[WorkItem]:
        items, self.pending = self.pending, []
        return items
