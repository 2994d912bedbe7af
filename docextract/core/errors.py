"""Structured error types for the extraction engine.

Provides:
- Reportable errors (ExtractionError, PipelineErrors) collected per run
- Raised exceptions for work item preconditions and state conflicts
- Factory functions for common error types
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError


class ErrorSeverity(Enum):
    """Severity levels for extraction errors."""
    WARNING = "warning"   # Non-fatal, work item returned a neutral result
    ERROR = "error"       # Fatal for this work item, run continued
    CRITICAL = "critical" # Run halted


class ErrorCategory(Enum):
    """Categories of extraction errors."""
    LLM_API = "llm_api"               # Router / transport errors
    LLM_PARSE = "llm_parse"           # Unparseable agent response
    VALIDATION = "validation"         # Failed precondition
    CONFIGURATION = "configuration"   # Missing agent or schema
    STATE = "state"                   # Versioned state conflict
    TIMEOUT = "timeout"               # Agent call timed out
    RESOURCE = "resource"             # Rate limit, memory
    UNKNOWN = "unknown"               # Unclassified errors


@dataclass
class ExtractionError:
    """Structured extraction error with context."""

    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    phase: str                          # State machine phase or work item operation
    run_id: int | None = None
    work_item_id: int | None = None
    entity_type: str | None = None      # Object type being extracted
    entity_name: str | None = None      # Work item or object name
    original_error: Exception | None = None
    retry_count: int = 0
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = [f"[{self.severity.value.upper()}] {self.category.value}: {self.message}"]
        if self.entity_name:
            parts.append(f"entity={self.entity_name}")
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.work_item_id is not None:
            parts.append(f"work_item={self.work_item_id}")
        if self.retry_count > 0:
            parts.append(f"retries={self.retry_count}")
        return " | ".join(parts)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "phase": self.phase,
            "run_id": self.run_id,
            "work_item_id": self.work_item_id,
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "retry_count": self.retry_count,
            "context": self.context,
        }


@dataclass
class PipelineErrors:
    """Aggregate errors across an entire run."""

    errors: list[ExtractionError] = field(default_factory=list)
    warnings: list[ExtractionError] = field(default_factory=list)
    failed_work_items: list[int] = field(default_factory=list)

    def add(self, error: ExtractionError):
        """Add an error or warning."""
        if error.severity == ErrorSeverity.WARNING:
            self.warnings.append(error)
        else:
            self.errors.append(error)
            if error.work_item_id is not None and error.work_item_id not in self.failed_work_items:
                self.failed_work_items.append(error.work_item_id)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    def summary(self) -> dict:
        """Get summary statistics."""
        by_category = {}
        for error in self.errors:
            cat = error.category.value
            by_category[cat] = by_category.get(cat, 0) + 1

        return {
            "total_errors": self.error_count,
            "total_warnings": self.warning_count,
            "failed_work_items": len(self.failed_work_items),
            "errors_by_category": by_category,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "failed_work_items": self.failed_work_items,
            "summary": self.summary(),
        }


# Raised exceptions

class ExtractionValidationError(ValueError):
    """A work item precondition failed.

    Aborts only the enclosing work item. Never retried internally; the same
    work item can be re-run once the precondition holds.
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, run_id: int | None = None, work_item_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.work_item_id = work_item_id

    def to_error(self, phase: str) -> ExtractionError:
        """Convert to a reportable ExtractionError."""
        return ExtractionError(
            category=self.category,
            severity=ErrorSeverity.ERROR,
            message=self.message,
            phase=phase,
            run_id=self.run_id,
            work_item_id=self.work_item_id,
            original_error=self,
        )


class AgentConfigurationError(ExtractionValidationError):
    """No agent or no schema is configured for the run."""

    category = ErrorCategory.CONFIGURATION


class AgentRunError(RuntimeError):
    """An agent thread failed where a result is structurally required."""


class StateConflictError(RuntimeError):
    """A versioned record kept changing underneath a compare-and-swap update."""

    def __init__(self, entity: str, attempts: int):
        super().__init__(f"Gave up updating {entity} after {attempts} conflicting writes")
        self.entity = entity
        self.attempts = attempts


# Factory functions for common error types

def llm_api_error(
    message: str,
    phase: str,
    entity_name: str | None = None,
    original: Exception | None = None,
    retry_count: int = 0,
) -> ExtractionError:
    """Create an LLM API error."""
    return ExtractionError(
        category=ErrorCategory.LLM_API,
        severity=ErrorSeverity.ERROR,
        message=message,
        phase=phase,
        entity_name=entity_name,
        original_error=original,
        retry_count=retry_count,
    )


def llm_parse_error(
    message: str,
    phase: str,
    entity_name: str | None = None,
    raw_response: str | None = None,
) -> ExtractionError:
    """Create an LLM parse error."""
    return ExtractionError(
        category=ErrorCategory.LLM_PARSE,
        severity=ErrorSeverity.ERROR,
        message=message,
        phase=phase,
        entity_name=entity_name,
        context={"raw_response": raw_response[:500] if raw_response else None},
    )


def validation_error(
    message: str,
    phase: str,
    entity_name: str | None = None,
    field_name: str | None = None,
) -> ExtractionError:
    """Create a validation warning (recovered locally)."""
    return ExtractionError(
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        message=message,
        phase=phase,
        entity_name=entity_name,
        context={"field": field_name} if field_name else {},
    )


def timeout_error(
    phase: str,
    entity_name: str | None = None,
    timeout_seconds: float | None = None,
) -> ExtractionError:
    """Create a timeout error."""
    return ExtractionError(
        category=ErrorCategory.TIMEOUT,
        severity=ErrorSeverity.ERROR,
        message=f"Operation timed out after {timeout_seconds}s" if timeout_seconds else "Operation timed out",
        phase=phase,
        entity_name=entity_name,
    )



def work_item_error(
    exc: Exception,
    phase: str,
    run_id: int | None = None,
    work_item_id: int | None = None,
    entity_name: str | None = None,
) -> ExtractionError:
    """Convert an exception raised inside a work item into a reportable error."""
    if isinstance(exc, ExtractionValidationError):
        error = exc.to_error(phase)
        error.run_id = error.run_id if error.run_id is not None else run_id
        error.work_item_id = error.work_item_id if error.work_item_id is not None else work_item_id
        error.entity_name = entity_name
        return error

    if isinstance(exc, TimeoutError):
        error = timeout_error(phase, entity_name=entity_name)
    elif isinstance(exc, AgentRunError):
        error = llm_api_error(str(exc), phase, entity_name=entity_name, original=exc)
    elif isinstance(exc, PydanticValidationError):
        error = llm_parse_error(str(exc), phase, entity_name=entity_name)
    else:
        category = ErrorCategory.STATE if isinstance(exc, StateConflictError) else ErrorCategory.UNKNOWN
        error = ExtractionError(category=category, severity=ErrorSeverity.ERROR, message=str(exc), phase=phase)

    error.run_id = run_id
    error.work_item_id = work_item_id
    error.entity_name = entity_name
    error.original_error = exc
    return error
