"""Pre-flight reports: what an extraction would touch, and what a document holds.

``DryRunAnalyzer`` walks the schema at the type level from the root types and
samples the database for fan-out; it never loads the full graph.
``analyze_document`` inspects an already written document.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy import types as sa_types
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, object_session

from GraphPorter.catalog import AssociationCatalog, AssociationEdge
from GraphPorter.config import GraphConfig
from GraphPorter.dependencies import DependencyGraphBuilder, TopologicalResolver
from GraphPorter.errors import ConfigurationError, CycleError, ShapeError
from GraphPorter.records import SerializedRecord
from GraphPorter.schema import AssociationKind, TypeDescriptor, column_map

log = structlog.get_logger()

RECORDS_PER_SECOND = 1000
METADATA_OVERHEAD_BYTES = 2048


class DryRunReport(BaseModel):
    dry_run: bool = True
    analysis_time: float
    root_objects: dict[str, Any]
    extraction_scope: dict[str, Any]
    estimated_counts_by_model: dict[str, int]
    estimated_file_size: dict[str, Any]
    depth_analysis: dict[str, list[str]]
    relationship_analysis: dict[str, Any]
    performance_estimates: dict[str, Any]
    warnings: list[dict[str, str]] = Field(default_factory=list)
    recommendations: list[dict[str, str]] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024**3:
        return f"{size / 1024**2:.1f} MB"
    return f"{size / 1024**3:.1f} GB"


def _format_seconds(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f} seconds"
    if seconds < 3600:
        return f"{seconds / 60:.1f} minutes"
    return f"{seconds / 3600:.1f} hours"


def _column_size(column) -> int:
    col_type = column.type
    if isinstance(col_type, sa_types.JSON):
        return 500
    if isinstance(col_type, sa_types.String):
        return col_type.length or 255
    if isinstance(col_type, sa_types.Integer):
        return 8
    if isinstance(col_type, sa_types.Numeric):
        return 16
    if isinstance(col_type, sa_types.DateTime):
        return 25
    if isinstance(col_type, sa_types.Date):
        return 12
    if isinstance(col_type, sa_types.Boolean):
        return 5
    return 50


class _Analysis:
    def __init__(self) -> None:
        self.visited: set[str] = set()
        self.counts: dict[str, int] = {}
        self.relationships: dict[str, list[AssociationEdge]] = {}
        self.circular: list[dict[str, Any]] = []
        self.depths: dict[int, set[str]] = {}


class DryRunAnalyzer:
    def __init__(self, catalog: AssociationCatalog, config: GraphConfig | None = None):
        self.catalog = catalog
        self.config = config or catalog.config
        self._count_cache: dict[str, int] = {}

    def analyze(self, roots: Any, max_depth: int | None = None) -> DryRunReport:
        if roots is None:
            raise ShapeError("Root object cannot be None")
        root_list = list(roots) if isinstance(roots, (list, tuple)) else [roots]
        if not root_list:
            raise ShapeError("At least one root object is required")
        descriptors = [self.catalog.descriptor_for(r) for r in root_list]
        depth_limit = self.config.max_depth if max_depth is None else max_depth
        if depth_limit <= 0:
            raise ConfigurationError(f"max_depth must be positive, got {depth_limit}")
        session = object_session(root_list[0])

        started = time.perf_counter()
        analysis = _Analysis()
        for descriptor in descriptors:
            self._analyze_type(session, descriptor, analysis, 0, depth_limit, [descriptor.name])
            analysis.counts[descriptor.name] = analysis.counts.get(descriptor.name, 0) + 1
        elapsed = time.perf_counter() - started

        report = self._report(analysis, elapsed, root_list, descriptors, depth_limit)
        log.info(
            "analyzer.dry_run.completed",
            models=report.extraction_scope["total_models"],
            estimated_records=report.extraction_scope["total_estimated_records"],
        )
        return report

    def _analyze_type(
        self,
        session: Session | None,
        descriptor: TypeDescriptor,
        analysis: _Analysis,
        depth: int,
        max_depth: int,
        path: list[str],
    ) -> None:
        if depth > max_depth:
            return
        analysis.visited.add(descriptor.name)
        analysis.depths.setdefault(depth, set()).add(descriptor.name)
        edges = self.catalog.associations_of(descriptor.name)
        analysis.relationships[descriptor.name] = edges

        for edge in edges:
            target_name = edge.to_type
            if target_name is None:
                # polymorphic: concrete types are only known per row
                continue
            if target_name in path:
                analysis.circular.append(
                    {
                        "path": " -> ".join([*path, target_name]),
                        "relationship": edge.name,
                        "depth": depth,
                    }
                )
                if self.config.handle_circular_references:
                    continue
            target = self.catalog.registry.get(target_name)
            if target is None:
                continue
            estimate = self._estimate_relationship_count(session, descriptor, edge)
            analysis.counts[target_name] = analysis.counts.get(target_name, 0) + estimate
            self._analyze_type(
                session, target, analysis, depth + 1, max_depth, [*path, target_name]
            )

    def _row_count(self, session: Session, descriptor: TypeDescriptor) -> int:
        cached = self._count_cache.get(descriptor.name)
        if cached is None:
            cached = session.scalar(select(func.count()).select_from(descriptor.model)) or 0
            self._count_cache[descriptor.name] = cached
        return cached

    def _estimate_relationship_count(
        self, session: Session | None, descriptor: TypeDescriptor, edge: AssociationEdge
    ) -> int:
        if session is None or descriptor.model is None:
            return 0
        total = 0
        try:
            total = self._row_count(session, descriptor)
            if total == 0:
                return 0
            if edge.kind is AssociationKind.TO_ONE:
                return int(total * 0.9)
            sample = session.scalars(select(descriptor.model).limit(1)).first()
            if sample is None:
                return 0
            sample_count = len(self.catalog.related(sample, edge)[:100])
            return int(total * min(sample_count, 50) * 0.8)
        except SQLAlchemyError:
            log.debug("analyzer.estimate.failed", model=descriptor.name, association=edge.name)
            return max(total // 10, 1) if total > 0 else 0

    def _record_size(self, descriptor: TypeDescriptor) -> int:
        if descriptor.model is None:
            return 500
        columns = column_map(descriptor.model)
        base = sum(_column_size(c) for c in columns.values())
        return base + len(columns) * 20 + 50

    def _estimate_file_size(self, counts: dict[str, int]) -> int:
        total = 0
        for name, count in counts.items():
            if count == 0:
                continue
            descriptor = self.catalog.registry.get(name)
            per_record = self._record_size(descriptor) if descriptor else 500
            total += count * per_record
        return int(total + METADATA_OVERHEAD_BYTES + total * 0.1)

    def _report(
        self,
        analysis: _Analysis,
        elapsed: float,
        roots: list[Any],
        descriptors: list[TypeDescriptor],
        max_depth: int,
    ) -> DryRunReport:
        total_records = sum(analysis.counts.values())
        file_size = self._estimate_file_size(analysis.counts)
        extraction_seconds = round(total_records / RECORDS_PER_SECOND, 1)
        memory_mb = round(total_records * 1024 / (1024 * 1024), 1)
        root_models: list[str] = []
        for d in descriptors:
            if d.name not in root_models:
                root_models.append(d.name)

        return DryRunReport(
            analysis_time=round(elapsed, 3),
            root_objects={
                "models": root_models,
                "ids": [getattr(r, d.primary_key) for r, d in zip(roots, descriptors)],
                "count": len(roots),
            },
            extraction_scope={
                "max_depth": max_depth,
                "total_models": len(analysis.visited),
                "total_estimated_records": total_records,
                "models_involved": sorted(analysis.visited),
            },
            estimated_counts_by_model=dict(
                sorted(analysis.counts.items(), key=lambda kv: (-kv[1], kv[0]))
            ),
            estimated_file_size={
                "bytes": file_size,
                "human_readable": format_file_size(file_size),
            },
            depth_analysis={str(k): sorted(v) for k, v in sorted(analysis.depths.items())},
            relationship_analysis={
                "total_relationships": sum(len(e) for e in analysis.relationships.values()),
                "circular_references": list(analysis.circular),
                "circular_references_count": len(analysis.circular),
            },
            performance_estimates={
                "estimated_extraction_time_seconds": extraction_seconds,
                "estimated_extraction_time_human": _format_seconds(extraction_seconds),
                "estimated_memory_usage_mb": memory_mb,
                "estimated_memory_usage_human": f"{memory_mb} MB",
            },
            warnings=self._warnings(analysis, total_records, file_size),
            recommendations=self._recommendations(analysis, total_records, file_size, max_depth),
        )

    def _warnings(self, analysis: _Analysis, total: int, file_size: int) -> list[dict[str, str]]:
        warnings: list[dict[str, str]] = []
        if total > 100_000:
            warnings.append(
                {
                    "type": "large_dataset",
                    "message": f"Large dataset detected ({total:,} records). "
                    "Consider using filters or reducing max_depth.",
                    "severity": "high",
                }
            )
        elif total > 10_000:
            warnings.append(
                {
                    "type": "medium_dataset",
                    "message": f"Medium dataset detected ({total:,} records). "
                    "Monitor memory usage during extraction.",
                    "severity": "medium",
                }
            )
        if file_size > 1024**3:
            warnings.append(
                {
                    "type": "large_file",
                    "message": "Estimated file size is very large "
                    f"({format_file_size(file_size)}). "
                    "Consider splitting the extraction.",
                    "severity": "high",
                }
            )
        elif file_size > 100 * 1024**2:
            warnings.append(
                {
                    "type": "medium_file",
                    "message": f"Estimated file size is large ({format_file_size(file_size)}). "
                    "Ensure adequate disk space.",
                    "severity": "medium",
                }
            )
        if analysis.circular:
            warnings.append(
                {
                    "type": "circular_references",
                    "message": f"{len(analysis.circular)} circular reference(s) detected. "
                    "Enable handle_circular_references if needed.",
                    "severity": "medium",
                }
            )
        deepest = max(analysis.depths, default=0)
        if deepest > 5:
            warnings.append(
                {
                    "type": "deep_nesting",
                    "message": f"Deep relationship nesting detected ({deepest} levels). "
                    "This may impact performance.",
                    "severity": "medium",
                }
            )
        return warnings

    def _recommendations(
        self, analysis: _Analysis, total: int, file_size: int, max_depth: int
    ) -> list[dict[str, str]]:
        recs: list[dict[str, str]] = []
        if total > 50_000:
            recs.append(
                {
                    "type": "performance",
                    "message": "Consider streaming output for large datasets",
                    "action": "Enable stream_json (--stream)",
                }
            )
        if max_depth > 3 and max(analysis.depths, default=0) > 3:
            recs.append(
                {
                    "type": "depth",
                    "message": "Consider reducing max_depth to improve performance",
                    "action": f"Try max_depth: {max(max_depth - 1, 2)}",
                }
            )
        large = [name for name, count in analysis.counts.items() if count > total * 0.3]
        if large and total > 0:
            recs.append(
                {
                    "type": "filtering",
                    "message": f"Large model(s) detected: {', '.join(sorted(large))}",
                    "action": "Consider excluding these models or using custom filters",
                }
            )
        if total * 1024 / (1024 * 1024) > 1000:
            recs.append(
                {
                    "type": "memory",
                    "message": "High memory usage expected",
                    "action": "Ensure adequate RAM or use streaming extraction",
                }
            )
        return recs


def analyze_document(
    records: Iterable[SerializedRecord], catalog: AssociationCatalog
) -> dict[str, Any]:
    """Summarize a document: counts, unknown tags and the import order it implies."""
    type_counts: dict[str, int] = {}
    unknown: dict[str, int] = {}
    for record in records:
        if record.type in catalog.registry:
            type_counts[record.type] = type_counts.get(record.type, 0) + 1
        else:
            unknown[record.type] = unknown.get(record.type, 0) + 1

    graph = DependencyGraphBuilder(catalog).build(type_counts)
    resolver = TopologicalResolver()
    grouping = resolver.level_group(graph)
    try:
        insertion_order: list[str] | None = resolver.resolve(graph)
    except CycleError:
        insertion_order = None

    return {
        "total_records": sum(type_counts.values()) + sum(unknown.values()),
        "type_counts": dict(sorted(type_counts.items())),
        "unknown_types": dict(sorted(unknown.items())),
        "dependency_levels": grouping.levels,
        "insertion_order": insertion_order,
        "cycles": grouping.cycles,
        "missing_dependencies": {k: sorted(v) for k, v in sorted(graph.missing.items())},
        "self_references": sorted(graph.self_references),
    }
