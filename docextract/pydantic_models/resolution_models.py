"""Duplicate resolution result."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from docextract.pydantic_models.entity_models import CanonicalObject


@dataclass
class ResolutionResult:
    """Outcome of comparing an extraction against existing canonical objects.

    ``confidence`` is in [0, 1]. ``updated_values`` holds the extracted fields
    that should overwrite the matched object's stored values.
    """
    is_duplicate: bool = False
    existing_object_id: int | None = None
    existing_object: CanonicalObject | None = None
    explanation: str = ""
    confidence: float = 0.0
    updated_values: dict[str, Any] = field(default_factory=dict)
    quick_match: bool = False

    def __post_init__(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    @classmethod
    def no_match(cls, explanation: str) -> ResolutionResult:
        return cls(is_duplicate=False, explanation=explanation, confidence=0.0)

