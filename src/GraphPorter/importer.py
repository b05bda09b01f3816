"""Re-import of extracted records in dependency order.

The import runs in phases:
- Grouping: records bucketed by type; unknown tags skipped or rejected
- Ordering: type-level dependency graph resolved to a creation order
- Existence: optional skip/update of rows that already exist
- Validation: every record built (never persisted); any failure aborts all
- Persistence: per-type batches, one savepoint per record, keys remapped

With ``use_transactions`` the persistence phase is a single transaction and
any failure rolls all of it back.
"""

from __future__ import annotations

import enum
import os
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.codec import Document, DocumentCodec
from GraphPorter.config import GraphConfig
from GraphPorter.dependencies import (
    DependencyGraph,
    DependencyGraphBuilder,
    TopologicalResolver,
)
from GraphPorter.errors import (
    ConfigurationError,
    ImportValidationError,
    MissingTypeError,
    PersistenceError,
    RecordError,
    ShapeError,
)
from GraphPorter.key_mapper import PrimaryKeyMapper
from GraphPorter.metrics import inc_counter, observe_histogram
from GraphPorter.progress import notify_progress
from GraphPorter.records import ImportResult, SerializedRecord
from GraphPorter.store import Finder, SqlAlchemyRecordStore

log = structlog.get_logger()


class ExistingRecordPolicy(str, enum.Enum):
    INSERT = "insert"
    SKIP = "skip"
    UPDATE = "update"


@dataclass
class ImportOptions:
    existing: ExistingRecordPolicy = ExistingRecordPolicy.INSERT
    # type name -> callable(session, record) returning the existing row or None
    custom_finders: dict[str, Finder] = field(default_factory=dict)
    batch_size: int | None = None
    # validate, then roll back without persisting
    dry_run: bool = False

    def __post_init__(self) -> None:
        self.existing = ExistingRecordPolicy(self.existing)


@dataclass
class _WorkItem:
    record: SerializedRecord
    existing: Any = None


def record_rollback(phase: str, reason: str, **fields: Any) -> None:
    inc_counter("importer.rollback")
    inc_counter(f"importer.rollback.{phase}")
    log.warning("importer.rollback", phase=phase, reason=reason, **fields)


def _batched(items: list[_WorkItem], size: int) -> Iterable[list[_WorkItem]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ImportOrchestrator:
    def __init__(
        self,
        catalog: AssociationCatalog,
        session: Session,
        config: GraphConfig | None = None,
        *,
        progress: Any = None,
    ):
        self.catalog = catalog
        self.registry = catalog.registry
        self.config = config or catalog.config
        self.session = session
        self.store = SqlAlchemyRecordStore(session, self.registry)
        self.progress = progress

    # --- entry points ---

    def import_records(
        self,
        records: Iterable[SerializedRecord | Mapping[str, Any]],
        options: ImportOptions | None = None,
    ) -> ImportResult:
        options = options or ImportOptions()
        batch_size = options.batch_size or self.config.batch_size
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")

        started = time.perf_counter()
        started_at = datetime.now(timezone.utc)
        record_list = [
            r if isinstance(r, SerializedRecord) else SerializedRecord.from_document(r)
            for r in records
        ]
        result = ImportResult()
        mapper = PrimaryKeyMapper(self.config.primary_key_strategy, self.registry)
        if self.config.progress_enabled:
            notify_progress(self.progress, "start_import", len(record_list))
        log.info(
            "importer.started",
            records=len(record_list),
            strategy=self.config.primary_key_strategy.value,
            transactional=self.config.use_transactions,
        )

        grouped = self._group(record_list, result)
        graph = DependencyGraphBuilder(self.catalog).build(grouped)
        order = self._creation_order(graph)
        result.insertion_order = order
        if graph.missing:
            log.info(
                "importer.dependencies.outside_document",
                missing={k: sorted(v) for k, v in graph.missing.items()},
            )

        work = self._existence_phase(grouped, order, options, result)

        if self.config.validate_records:
            self._validation_phase(work, order, mapper)

        if options.dry_run:
            self.store.rollback()
            result.metadata["dry_run"] = True
        else:
            self._persistence_phase(work, order, mapper, batch_size, result)

        duration = time.perf_counter() - started
        result.key_mappings = mapper.all_mappings()
        result.metadata.update(
            {
                "started_at": started_at.isoformat(),
                "duration_seconds": round(duration, 6),
                "total_records": len(record_list),
                "primary_key_strategy": self.config.primary_key_strategy.value,
                "type_counts": {name: len(items) for name, items in grouped.items()},
            }
        )

        inc_counter("importer.records.persisted", result.imported)
        inc_counter("importer.records.updated", result.updated)
        inc_counter("importer.records.skipped", result.skipped)
        if result.errors:
            inc_counter("importer.records.failed", len(result.errors))
        observe_histogram("importer.duration_ms", int(duration * 1000))
        if self.config.progress_enabled:
            notify_progress(self.progress, "complete_import", result.imported, duration)
        log.info(
            "importer.completed",
            imported=result.imported,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
            rolled_back=result.rolled_back,
            duration_ms=int(duration * 1000),
        )
        return result

    def import_document(
        self, document: Document | Mapping[str, Any], options: ImportOptions | None = None
    ) -> ImportResult:
        if isinstance(document, Document):
            records = document.records
        elif isinstance(document, Mapping) and isinstance(document.get("records"), list):
            records = [SerializedRecord.from_document(row) for row in document["records"]]
        else:
            raise ShapeError("Document must contain a 'records' array")
        return self.import_records(records, options)

    def import_file(
        self, path: str | os.PathLike, options: ImportOptions | None = None
    ) -> ImportResult:
        codec = DocumentCodec(self.config)
        result = self.import_records(codec.iter_records(path), options)
        result.metadata["source"] = os.fspath(path)
        return result

    # --- phases ---

    def _group(
        self, records: list[SerializedRecord], result: ImportResult
    ) -> dict[str, list[SerializedRecord]]:
        grouped: dict[str, list[SerializedRecord]] = {}
        seen: set[tuple[str, Any]] = set()
        for record in records:
            try:
                self.store.descriptor(record.type)
            except MissingTypeError as exc:
                if not self.config.skip_missing_models:
                    raise
                result.errors.append(
                    RecordError(
                        type_name=record.type,
                        original_key=record.original_key,
                        message=str(exc),
                        category="missing_type",
                    )
                )
                inc_counter("importer.records.unknown_type")
                log.warning(
                    "importer.record.unknown_type", model=record.type, id=record.original_key
                )
                continue

            identity = (record.type, record.original_key)
            if record.original_key is not None and identity in seen:
                result.errors.append(
                    RecordError(
                        type_name=record.type,
                        original_key=record.original_key,
                        message="Duplicate record in document",
                        category="duplicate",
                    )
                )
                log.warning("importer.record.duplicate", model=record.type, id=record.original_key)
                continue
            seen.add(identity)
            grouped.setdefault(record.type, []).append(record)
        return {name: self._parents_first(name, items) for name, items in grouped.items()}

    def _creation_order(self, graph: DependencyGraph) -> list[str]:
        order = TopologicalResolver().resolve(graph)
        # polymorphic holders go last so their keys can be remapped
        depended_on = {dep for deps in graph.dependencies.values() for dep in deps}
        deferred = []
        for name in order:
            descriptor = self.registry.get(name)
            if descriptor is not None and descriptor.polymorphic_keys and name not in depended_on:
                deferred.append(name)
        return [name for name in order if name not in deferred] + deferred

    def _parents_first(
        self, type_name: str, records: list[SerializedRecord]
    ) -> list[SerializedRecord]:
        """Order records of one type so optional self-references point backwards."""
        descriptor = self.registry.get(type_name)
        self_keys = [
            name for name, target in (descriptor.foreign_keys or {}).items() if target == type_name
        ]
        if not self_keys or len(records) < 2:
            return records
        by_key = {r.original_key: r for r in records if r.original_key is not None}
        placed: set[int] = set()
        ordered: list[SerializedRecord] = []

        def place(record: SerializedRecord, trail: set[int]) -> None:
            if id(record) in placed or id(record) in trail:
                return
            trail.add(id(record))
            for name in self_keys:
                parent = by_key.get(record.fields.get(name))
                if parent is not None and parent is not record:
                    place(parent, trail)
            placed.add(id(record))
            ordered.append(record)

        for record in records:
            place(record, set())
        return ordered

    def _existence_phase(
        self,
        grouped: dict[str, list[SerializedRecord]],
        order: list[str],
        options: ImportOptions,
        result: ImportResult,
    ) -> dict[str, list[_WorkItem]]:
        work: dict[str, list[_WorkItem]] = {}
        for type_name in order:
            finder = options.custom_finders.get(type_name)
            check = options.existing is not ExistingRecordPolicy.INSERT or finder is not None
            items: list[_WorkItem] = []
            for record in grouped.get(type_name, []):
                existing = self.store.find_existing(record, finder) if check else None
                if existing is None:
                    items.append(_WorkItem(record))
                elif options.existing is ExistingRecordPolicy.UPDATE:
                    items.append(_WorkItem(record, existing))
                else:
                    result.skipped += 1
                    log.debug("importer.record.exists", model=type_name, id=record.original_key)
            work[type_name] = items
        return work

    def _validation_phase(
        self,
        work: dict[str, list[_WorkItem]],
        order: list[str],
        mapper: PrimaryKeyMapper,
    ) -> None:
        # mapper is still empty here, so forward references are not resolved yet
        errors: list[RecordError] = []
        for type_name in order:
            for item in work.get(type_name, []):
                errors.extend(self.store.validate(item.record, mapper))
        if errors:
            inc_counter("importer.validation.failed", len(errors))
            log.warning(
                "importer.validation.failed",
                errors=len(errors),
                first=errors[0].to_dict(),
            )
            self.store.rollback()
            raise ImportValidationError(errors)

    def _persistence_phase(
        self,
        work: dict[str, list[_WorkItem]],
        order: list[str],
        mapper: PrimaryKeyMapper,
        batch_size: int,
        result: ImportResult,
    ) -> None:
        transactional = self.config.use_transactions
        failed = False
        unpersisted: set[tuple[str, Any]] = set()
        try:
            for type_name in order:
                items = work.get(type_name, [])
                done = 0
                for batch in _batched(items, batch_size):
                    for item in batch:
                        try:
                            self._persist_one(item, mapper, result, unpersisted)
                        except PersistenceError as exc:
                            unpersisted.add((exc.type_name, exc.original_key))
                            result.errors.append(exc.to_record_error())
                            log.warning(
                                "importer.record.failed",
                                model=exc.type_name,
                                id=exc.original_key,
                                error=str(exc),
                            )
                            if transactional:
                                failed = True
                                break
                    if failed:
                        break
                    if not transactional:
                        self.store.commit()
                    done += len(batch)
                    if self.config.progress_enabled:
                        notify_progress(
                            self.progress, "log_model_progress", type_name, done, len(items)
                        )
                if failed:
                    break
        except Exception:
            record_rollback("persistence", "unexpected error")
            self.store.rollback()
            raise

        if not transactional:
            return
        if failed:
            self.store.rollback()
            record_rollback("persistence", "record failed", errors=len(result.errors))
            result.rolled_back = True
            result.imported = 0
            result.updated = 0
            mapper.clear()
            return
        self.store.commit()

    def _persist_one(
        self,
        item: _WorkItem,
        mapper: PrimaryKeyMapper,
        result: ImportResult,
        unpersisted: set[tuple[str, Any]],
    ) -> None:
        record = item.record
        if not mapper.should_preserve_primary_key:
            # an original key is meaningless in the target once its record failed
            for _name, target, value in mapper.references(record.type, record.fields):
                if (target, value) in unpersisted:
                    raise PersistenceError(
                        f"unresolved reference {target}#{value}",
                        type_name=record.type,
                        original_key=record.original_key,
                    )
        if item.existing is not None:
            new_key = self.store.update(record, item.existing, mapper)
            result.updated += 1
        else:
            new_key = self.store.insert(record, mapper)
            result.imported += 1
        mapper.add_mapping(record.type, record.original_key, new_key)
        if self.config.progress_enabled:
            notify_progress(self.progress, "increment")


def finder_by_fields(model: type, *fields: str) -> Finder:
    """Finder that matches an existing row of ``model`` on natural-key fields."""

    def _find(session: Session, record: SerializedRecord) -> Any:
        stmt = select(model)
        for name in fields:
            stmt = stmt.where(getattr(model, name) == record.fields.get(name))
        return session.scalars(stmt.limit(1)).first()

    return _find
