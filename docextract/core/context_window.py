"""Context-window expansion around classified target pages.

Relevance classification picks target pages; extraction sometimes needs the
pages around them (a table continued from the previous page, a heading on
the page before). Neighbours are pulled in as *context* pages unless the
upstream file-organization step marked them as the start of a new document.
"""

from dataclasses import dataclass

from docextract.core.errors import ExtractionValidationError
from docextract.core.stores import EntityStore
from docextract.pydantic_models.entity_models import Artifact


@dataclass
class WindowPage:
    """A page in an expanded window."""
    artifact: Artifact
    is_context: bool = False

    @property
    def position(self) -> int:
        return self.artifact.position or 0


def _adjacency_score(store: EntityStore, artifact: Artifact) -> tuple[bool, int | None]:
    """(annotated, belongs_to_previous) from the artifact's first stored file."""
    files = store.stored_files_of(artifact)
    if not files or "belongs_to_previous" not in files[0].meta:
        return False, None
    return True, files[0].meta["belongs_to_previous"]


def meets_adjacency_threshold(store: EntityStore, artifact: Artifact, threshold: int) -> bool:
    """Whether a neighbour may be included as context.

    Unannotated pages count as continuous. An explicit None score marks a
    document boundary.
    """
    annotated, score = _adjacency_score(store, artifact)
    if not annotated:
        return True
    if score is None:
        return False
    return score >= threshold


def validate_context_available(store: EntityStore, artifacts: list[Artifact]) -> None:
    """Raise if adjacency filtering is requested but pages were never organized."""
    if not artifacts:
        return
    files = store.stored_files_of(artifacts[0])
    if files and "belongs_to_previous" not in files[0].meta:
        raise ExtractionValidationError(
            "Context pages with an adjacency threshold require file organization data "
            "(belongs_to_previous) on the page files"
        )


def expand_with_context(
    store: EntityStore,
    targets: list[Artifact],
    all_pages: list[Artifact],
    before: int,
    after: int,
    threshold: int | None = None,
) -> list[WindowPage]:
    """Targets plus up to `before`/`after` neighbours each, in position order.

    Target status always wins over context status for the same page.
    """
    if before == 0 and after == 0:
        return [WindowPage(artifact, is_context=False) for artifact in targets]

    ordered = sorted(all_pages, key=lambda a: (a.position or 0, a.id))
    index_of = {artifact.id: index for index, artifact in enumerate(ordered)}
    roles: dict[int, str] = {}

    for target in targets:
        index = index_of.get(target.id)
        if index is None:
            continue

        for i in range(max(0, index - before), index):
            neighbour = ordered[i]
            if threshold is not None and not meets_adjacency_threshold(store, neighbour, threshold):
                continue
            roles.setdefault(neighbour.id, "context")

        roles[target.id] = "target"

        for i in range(index + 1, min(len(ordered) - 1, index + after) + 1):
            neighbour = ordered[i]
            if threshold is not None and not meets_adjacency_threshold(store, neighbour, threshold):
                continue
            roles.setdefault(neighbour.id, "context")

    return [
        WindowPage(artifact, is_context=roles[artifact.id] == "context")
        for artifact in ordered
        if artifact.id in roles
    ]


def context_instructions(window: list[WindowPage]) -> str:
    """Prompt section naming target vs context pages, or "" without context."""
    context = sorted(page.position for page in window if page.is_context)
    if not context:
        return ""
    targets = sorted(page.position for page in window if not page.is_context)
    return (
        "## Context Pages\n"
        f"Target pages: {', '.join(map(str, targets))}\n"
        f"Context pages: {', '.join(map(str, context))}\n"
        "Extract data ONLY from the target pages. Context pages are included to help you "
        "understand content that continues across page boundaries; do not extract values "
        "that appear only on context pages."
    )
