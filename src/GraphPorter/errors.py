"""Error taxonomy for extraction and import.

Every failure that crosses the public boundary of the package is one of the
classes below; SQLAlchemy, orjson, pydantic and OS errors are wrapped before
they reach callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class GraphPorterError(Exception):
    """Base exception for all GraphPorter errors."""

    pass


class ConfigurationError(GraphPorterError):
    """Raised when configuration values are invalid."""

    pass


class ShapeError(GraphPorterError):
    """Raised when input is not the expected instance or document shape."""

    pass


class TransportError(GraphPorterError):
    """Raised when reading or writing a document or talking to the database fails."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class SerializationError(GraphPorterError):
    """Raised when a record cannot be serialized and strict mode is on."""

    pass


class ExtractionCancelled(GraphPorterError):
    """Raised when a walk observes a set cancellation token."""

    pass


class MissingTypeError(GraphPorterError):
    """Raised when a record type tag or association target is not in the schema."""

    def __init__(self, message: str, *, type_name: str | None = None):
        super().__init__(message)
        self.type_name = type_name


class CycleError(GraphPorterError):
    """Raised when a dependency graph contains a cycle and a total order is required."""

    def __init__(self, cycle: list[str], unresolved: set[str] | None = None):
        self.cycle = list(cycle)
        self.unresolved = set(unresolved or cycle)
        path = " -> ".join([*self.cycle, self.cycle[0]]) if self.cycle else "?"
        super().__init__(f"Circular dependency detected: {path}")


class KeyMappingError(GraphPorterError):
    """Raised when a key mapping would be overwritten with a different value."""

    pass


@dataclass
class RecordError:
    """A failure attached to one record during a walk or an import."""

    type_name: str
    original_key: Any
    message: str
    category: str = "validation"
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.type_name,
            "id": self.original_key,
            "category": self.category,
            "field": self.field,
            "error": self.message,
        }


class ImportValidationError(GraphPorterError):
    """Aggregate raised when any record fails the validation pass.

    Nothing is persisted when this is raised.
    """

    def __init__(self, errors: list[RecordError]):
        self.errors = list(errors)
        preview = "; ".join(
            f"{e.type_name}#{e.original_key}: {e.message}" for e in self.errors[:5]
        )
        more = f" (+{len(self.errors) - 5} more)" if len(self.errors) > 5 else ""
        super().__init__(
            f"Validation failed for {len(self.errors)} record(s): {preview}{more}"
        )


class PersistenceError(GraphPorterError):
    """Failure persisting one record; collected into ImportResult.errors."""

    def __init__(self, message: str, *, type_name: str, original_key: Any):
        super().__init__(message)
        self.type_name = type_name
        self.original_key = original_key

    def to_record_error(self) -> RecordError:
        return RecordError(
            type_name=self.type_name,
            original_key=self.original_key,
            message=str(self),
            category="persistence",
        )


__all__ = [
    "ConfigurationError",
    "CycleError",
    "ExtractionCancelled",
    "GraphPorterError",
    "ImportValidationError",
    "KeyMappingError",
    "MissingTypeError",
    "PersistenceError",
    "RecordError",
    "SerializationError",
    "ShapeError",
    "TransportError",
]

