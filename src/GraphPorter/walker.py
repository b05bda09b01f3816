"""Depth-bounded traversal that serializes a rooted object graph.

Output order is traversal order: each root first, then depth-first through
its associations in declaration order. Every ``(type, key)`` is emitted at
most once per walk. Revisits never recurse; they are counted as cycles when
the target is on the current path and as shared references otherwise.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.exc import DBAPIError

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.config import GraphConfig
from GraphPorter.errors import (
    ConfigurationError,
    ExtractionCancelled,
    GraphPorterError,
    RecordError,
    SerializationError,
    ShapeError,
    TransportError,
)
from GraphPorter.metrics import inc_counter, observe_histogram
from GraphPorter.progress import notify_progress
from GraphPorter.records import ExtractionMetadata, ExtractionResult, SerializedRecord
from GraphPorter.schema import TypeDescriptor

log = structlog.get_logger()

Serializer = Callable[[Any], Mapping[str, Any]]


@dataclass
class _WalkState:
    max_depth: int
    serializers: dict[str, Serializer]
    cancel_token: Any = None
    visited: set[tuple[str, Any]] = field(default_factory=set)
    path: set[tuple[str, Any]] = field(default_factory=set)
    records: list[SerializedRecord] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    cycle_count: int = 0
    shared_count: int = 0
    deepest: int = 0


class GraphWalker:
    def __init__(
        self,
        catalog: AssociationCatalog,
        config: GraphConfig | None = None,
        *,
        progress: Any = None,
    ):
        self.catalog = catalog
        self.config = config or catalog.config
        self.progress = progress

    def walk(
        self,
        roots: Any,
        max_depth: int | None = None,
        custom_serializers: Mapping[str, Serializer] | None = None,
        cancel_token: Any = None,
    ) -> ExtractionResult:
        root_list = self._normalize_roots(roots)
        depth_limit = self.config.max_depth if max_depth is None else max_depth
        if depth_limit <= 0:
            raise ConfigurationError(f"max_depth must be positive, got {depth_limit}")

        serializers: dict[str, Serializer] = dict(self.config.custom_serializers)
        serializers.update(custom_serializers or {})
        state = _WalkState(
            max_depth=depth_limit, serializers=serializers, cancel_token=cancel_token
        )

        descriptors = [self.catalog.descriptor_for(root) for root in root_list]
        extracted_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        if self.config.progress_enabled:
            notify_progress(self.progress, "start_extraction", 0)
        log.info(
            "walker.started",
            roots=[d.name for d in descriptors],
            max_depth=depth_limit,
        )

        for root, descriptor in zip(root_list, descriptors):
            identity = (descriptor.name, getattr(root, descriptor.primary_key))
            if identity in state.visited:
                continue
            self._visit(root, descriptor, 0, state, is_root=True)

        duration = time.perf_counter() - started
        metadata = self._metadata(root_list, descriptors, state, extracted_at, duration)

        inc_counter("walker.records", len(state.records))
        inc_counter("walker.revisits", state.cycle_count + state.shared_count)
        if state.errors:
            inc_counter("walker.errors", len(state.errors))
        observe_histogram("walker.duration_ms", int(duration * 1000))
        if self.config.progress_enabled:
            notify_progress(self.progress, "complete_extraction", len(state.records), duration)
        log.info(
            "walker.completed",
            records=len(state.records),
            cycles=state.cycle_count,
            shared=state.shared_count,
            skipped=len(state.errors),
            duration_ms=int(duration * 1000),
        )
        return ExtractionResult(records=state.records, metadata=metadata, errors=state.errors)

    def _normalize_roots(self, roots: Any) -> list[Any]:
        if roots is None:
            raise ShapeError("Root object cannot be None")
        if isinstance(roots, Sequence) and not isinstance(roots, (str, bytes)):
            root_list = list(roots)
        else:
            root_list = [roots]
        if not root_list:
            raise ShapeError("At least one root object is required")
        for root in root_list:
            if root is None:
                raise ShapeError("Root object cannot be None")
        return root_list

    def _visit(
        self,
        instance: Any,
        descriptor: TypeDescriptor,
        depth: int,
        state: _WalkState,
        *,
        is_root: bool = False,
    ) -> None:
        if state.cancel_token is not None and state.cancel_token.is_set():
            raise ExtractionCancelled(
                f"Extraction cancelled after {len(state.records)} record(s)"
            )

        key = getattr(instance, descriptor.primary_key)
        identity = (descriptor.name, key)
        state.visited.add(identity)

        record = self._serialize(instance, descriptor, key, state, is_root=is_root)
        if record is None:
            return
        state.records.append(record)
        state.deepest = max(state.deepest, depth)
        if self.config.progress_enabled:
            notify_progress(self.progress, "record_extracted", descriptor.name)

        # edges of this node sit at depth + 1
        if depth + 1 > state.max_depth:
            return

        state.path.add(identity)
        try:
            for edge in self.catalog.associations_of(descriptor.name):
                for related in self._load_related(instance, edge):
                    related_descriptor = self.catalog.descriptor_for(related)
                    if not self.config.model_included(related_descriptor.name):
                        continue
                    related_identity = (
                        related_descriptor.name,
                        getattr(related, related_descriptor.primary_key),
                    )
                    if related_identity in state.visited:
                        self._count_revisit(related_identity, state)
                        continue
                    self._visit(related, related_descriptor, depth + 1, state)
        finally:
            state.path.discard(identity)

    def _count_revisit(self, identity: tuple[str, Any], state: _WalkState) -> None:
        if not self.config.handle_circular_references:
            return
        if identity in state.path:
            state.cycle_count += 1
        else:
            state.shared_count += 1
        log.debug("walker.revisit", model=identity[0], id=identity[1])

    def _load_related(self, instance: Any, edge) -> list[Any]:
        try:
            return self.catalog.related(instance, edge)
        except DBAPIError as exc:
            raise TransportError(
                f"Database error loading {edge.from_type}.{edge.name}: {exc.orig}"
            ) from exc

    def _serialize(
        self,
        instance: Any,
        descriptor: TypeDescriptor,
        key: Any,
        state: _WalkState,
        *,
        is_root: bool,
    ) -> SerializedRecord | None:
        try:
            fields = self._fields_of(instance, descriptor, state.serializers)
            return SerializedRecord(type=descriptor.name, fields=fields, original_key=key)
        except DBAPIError as exc:
            raise TransportError(
                f"Database error serializing {descriptor.name}#{key}: {exc.orig}"
            ) from exc
        except GraphPorterError:
            raise
        except Exception as exc:
            if is_root:
                raise ShapeError(
                    f"Failed to serialize root {descriptor.name}#{key}: {exc}"
                ) from exc
            if self.config.strict_serialization:
                raise SerializationError(
                    f"Failed to serialize {descriptor.name}#{key}: {exc}"
                ) from exc
            state.errors.append(
                RecordError(
                    type_name=descriptor.name,
                    original_key=key,
                    message=str(exc),
                    category="serialization",
                )
            )
            log.warning(
                "walker.record.skipped",
                model=descriptor.name,
                id=key,
                error=str(exc),
            )
            return None

    def _fields_of(
        self,
        instance: Any,
        descriptor: TypeDescriptor,
        serializers: Mapping[str, Serializer],
    ) -> dict[str, Any]:
        custom = serializers.get(descriptor.name)
        if custom is not None:
            raw = custom(instance)
            if not isinstance(raw, Mapping):
                raise TypeError(
                    f"custom serializer for {descriptor.name} returned {type(raw).__name__}"
                )
            return {str(k): v for k, v in raw.items()}
        excluded = self.config.excluded_fields
        return {
            name: getattr(instance, name)
            for name in descriptor.fields
            if name not in excluded or name == descriptor.primary_key
        }

    def _metadata(
        self,
        roots: list[Any],
        descriptors: list[TypeDescriptor],
        state: _WalkState,
        extracted_at: datetime,
        duration: float,
    ) -> ExtractionMetadata:
        root_models: list[str] = []
        for d in descriptors:
            if d.name not in root_models:
                root_models.append(d.name)
        type_counts: dict[str, int] = {}
        for record in state.records:
            type_counts[record.type] = type_counts.get(record.type, 0) + 1
        revisits = state.cycle_count + state.shared_count
        return ExtractionMetadata(
            extracted_at=extracted_at,
            root_model=", ".join(root_models),
            root_models=root_models,
            root_ids=[getattr(r, d.primary_key) for r, d in zip(roots, descriptors)],
            total_records=len(state.records),
            models_extracted=list(type_counts),
            type_counts=type_counts,
            max_depth_used=state.max_depth,
            max_depth_reached=state.deepest,
            circular_references_detected=revisits > 0,
            circular_reference_count=revisits,
            cycle_count=state.cycle_count,
            shared_reference_count=state.shared_count,
            skipped_records=len(state.errors),
            duration_seconds=round(duration, 6),
        )
