"""Value types passed between the walker, the codec and the importer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from GraphPorter.errors import RecordError, ShapeError

TYPE_TAG = "_model"
KEY_FIELD = "id"


@dataclass(frozen=True)
class SerializedRecord:
    type: str
    fields: Mapping[str, Any]
    original_key: Any

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def to_document(self) -> dict[str, Any]:
        row: dict[str, Any] = {TYPE_TAG: self.type, KEY_FIELD: self.original_key}
        for name, value in self.fields.items():
            if name in (TYPE_TAG, KEY_FIELD):
                continue
            row[name] = value
        return row

    @classmethod
    def from_document(cls, row: Any) -> SerializedRecord:
        if not isinstance(row, Mapping):
            raise ShapeError(f"Record must be an object, got {type(row).__name__}")
        tag = row.get(TYPE_TAG)
        if not isinstance(tag, str) or not tag:
            raise ShapeError(f"Record is missing its {TYPE_TAG!r} type tag")
        fields = {k: v for k, v in row.items() if k != TYPE_TAG}
        return cls(type=tag, fields=fields, original_key=row.get(KEY_FIELD))


class ExtractionMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    extracted_at: datetime
    root_model: str
    root_models: list[str] = Field(default_factory=list)
    root_ids: list[Any] = Field(default_factory=list)
    total_records: int = 0
    models_extracted: list[str] = Field(default_factory=list)
    type_counts: dict[str, int] = Field(default_factory=dict)
    max_depth_used: int
    max_depth_reached: int = 0
    circular_references_detected: bool = False
    circular_reference_count: int = 0
    cycle_count: int = 0
    shared_reference_count: int = 0
    skipped_records: int = 0
    duration_seconds: float = 0.0

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class ExtractionResult:
    records: list[SerializedRecord]
    metadata: ExtractionMetadata
    errors: list[RecordError] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.records)

    def to_document(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_document(),
            "records": [r.to_document() for r in self.records],
        }


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    updated: int = 0
    errors: list[RecordError] = field(default_factory=list)
    insertion_order: list[str] = field(default_factory=list)
    key_mappings: dict[str, dict[Any, Any]] = field(default_factory=dict)
    rolled_back: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors and not self.rolled_back

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "imported_records": self.imported,
            "skipped_records": self.skipped,
            "updated_records": self.updated,
            "errors": [e.to_dict() for e in self.errors],
            "insertion_order": list(self.insertion_order),
            "rolled_back": self.rolled_back,
            "metadata": dict(self.metadata),
        }
