"""Filtered, cached association queries over the schema table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import object_session

from GraphPorter.config import GraphConfig
from GraphPorter.errors import MissingTypeError, ShapeError
from GraphPorter.schema import AssociationKind, AssociationSpec, SchemaRegistry, TypeDescriptor

log = structlog.get_logger()


@dataclass(frozen=True)
class AssociationEdge:
    from_type: str
    name: str
    to_type: str | None
    kind: AssociationKind
    foreign_key: str | None = None
    polymorphic: bool = False
    optional: bool = False
    holds_key: bool = False
    type_field: str | None = None

    @classmethod
    def from_spec(cls, from_type: str, spec: AssociationSpec) -> AssociationEdge:
        return cls(
            from_type=from_type,
            name=spec.name,
            to_type=spec.target,
            kind=spec.kind,
            foreign_key=spec.foreign_key,
            polymorphic=spec.polymorphic,
            optional=spec.optional,
            holds_key=spec.holds_key,
            type_field=spec.type_field,
        )


class AssociationCatalog:
    """Answers "which associations does this type have" for one run.

    Results are cached per type; build a new catalog when the configuration
    changes.
    """

    def __init__(self, registry: SchemaRegistry, config: GraphConfig | None = None):
        self.registry = registry
        self.config = config or GraphConfig()
        self._cache: dict[str, list[AssociationEdge]] = {}

    def associations_of(self, type_name: str) -> list[AssociationEdge]:
        cached = self._cache.get(type_name)
        if cached is not None:
            return cached
        descriptor = self.registry.resolve_tag(type_name)
        edges: list[AssociationEdge] = []
        for spec in descriptor.associations:
            if not self.config.relationship_included(spec.name):
                continue
            if spec.polymorphic and spec.target is None:
                # concrete target is only known per instance
                edges.append(AssociationEdge.from_spec(type_name, spec))
                continue
            if spec.target not in self.registry:
                self._missing_target(type_name, spec.name, spec.target)
                continue
            if not self.config.model_included(spec.target):
                continue
            edges.append(AssociationEdge.from_spec(type_name, spec))
        self._cache[type_name] = edges
        return edges

    def _missing_target(self, type_name: str, name: str, target: str | None) -> None:
        if not self.config.skip_missing_models:
            raise MissingTypeError(
                f"{type_name}.{name} points to unknown type {target}", type_name=target
            )
        log.warning(
            "catalog.association.unresolved",
            model=type_name,
            association=name,
            target=target,
        )

    @staticmethod
    def is_dependency_relevant(edge: AssociationEdge) -> bool:
        return (
            edge.kind is AssociationKind.TO_ONE
            and edge.holds_key
            and not edge.optional
            and not edge.polymorphic
        )

    def dependency_edges(self, type_name: str) -> list[AssociationEdge]:
        return [e for e in self.associations_of(type_name) if self.is_dependency_relevant(e)]

    def descriptor_for(self, instance: Any) -> TypeDescriptor:
        if instance is None:
            raise ShapeError("Expected a mapped instance, got None")
        descriptor = self.registry.descriptor_for_model(type(instance))
        if descriptor is None:
            raise ShapeError(f"{type(instance).__name__} is not a mapped record type")
        return descriptor

    def related(self, instance: Any, edge: AssociationEdge) -> list[Any]:
        """Live instances reachable from ``instance`` through ``edge``."""
        model = type(instance)
        mapped = sa_inspect(model).relationships
        if edge.name in mapped:
            value = getattr(instance, edge.name)
            if value is None:
                return []
            if edge.kind is AssociationKind.TO_ONE:
                return [value]
            return list(value)

        session = object_session(instance)
        if session is None:
            raise ShapeError(
                f"{model.__name__} instance is detached; cannot resolve {edge.name!r}"
            )

        if edge.kind is AssociationKind.TO_ONE and edge.holds_key:
            key = getattr(instance, edge.foreign_key) if edge.foreign_key else None
            if key is None:
                return []
            target_name = edge.to_type
            if edge.polymorphic:
                target_name = getattr(instance, edge.type_field) if edge.type_field else None
                if not target_name:
                    return []
                if target_name not in self.registry:
                    self._missing_target(edge.from_type, edge.name, target_name)
                    return []
                if not self.config.model_included(target_name):
                    return []
            target = self.registry.resolve_tag(target_name)
            if target.model is None:
                return []
            found = session.get(target.model, key)
            return [found] if found is not None else []

        # declared inverse side: rows on the target that point back at us
        target = self.registry.resolve_tag(edge.to_type)
        if target.model is None or not edge.foreign_key:
            return []
        source = self.descriptor_for(instance)
        key = getattr(instance, source.primary_key)
        stmt = select(target.model).where(getattr(target.model, edge.foreign_key) == key)
        if edge.type_field:
            stmt = stmt.where(getattr(target.model, edge.type_field) == source.name)
        stmt = stmt.order_by(getattr(target.model, target.primary_key))
        rows = list(session.scalars(stmt))
        if edge.kind is AssociationKind.TO_ONE:
            return rows[:1]
        return rows
