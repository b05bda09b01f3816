"""Static schema table: one TypeDescriptor per record type.

Descriptors are built once, either by reflecting a SQLAlchemy declarative
base (``reflect_declarative``) or by declaring them directly. After that the
rest of the package only consults the table; nothing re-inspects the ORM to
discover associations.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import MANYTOONE, ONETOMANY, configure_mappers

from GraphPorter.errors import MissingTypeError, ShapeError

log = structlog.get_logger()


class AssociationKind(str, enum.Enum):
    TO_ONE = "to_one"
    TO_MANY = "to_many"
    TO_MANY_THROUGH = "to_many_through"


@dataclass(frozen=True)
class AssociationSpec:
    """Declared association of one type.

    ``target`` is None for a polymorphic to-one; the concrete type is then read
    from ``type_field`` on each instance. ``holds_key`` is True when the
    foreign key column lives on the declaring type (belongs-to).
    """

    name: str
    kind: AssociationKind
    target: str | None
    foreign_key: str | None = None
    polymorphic: bool = False
    optional: bool = False
    holds_key: bool = False
    type_field: str | None = None


@dataclass
class TypeDescriptor:
    name: str
    model: type | None = None
    primary_key: str = "id"
    fields: tuple[str, ...] = ()
    associations: list[AssociationSpec] = field(default_factory=list)
    # foreign key field -> target type name; None means "not declared"
    foreign_keys: dict[str, str] | None = None
    # polymorphic key field -> discriminator field
    polymorphic_keys: dict[str, str] = field(default_factory=dict)

    def association(self, name: str) -> AssociationSpec | None:
        for spec in self.associations:
            if spec.name == name:
                return spec
        return None


def _derive_foreign_keys(associations: Iterable[AssociationSpec]) -> dict[str, str]:
    out: dict[str, str] = {}
    for spec in associations:
        if spec.holds_key and not spec.polymorphic and spec.foreign_key and spec.target:
            out[spec.foreign_key] = spec.target
    return out


class SchemaRegistry:
    """Mapping from string type tags to descriptors, resolved once."""

    def __init__(self, descriptors: Iterable[TypeDescriptor] = ()):
        self._types: dict[str, TypeDescriptor] = {}
        self._by_model: dict[type, TypeDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: TypeDescriptor) -> TypeDescriptor:
        if descriptor.foreign_keys is None:
            descriptor.foreign_keys = _derive_foreign_keys(descriptor.associations)
        for spec in descriptor.associations:
            if spec.polymorphic and spec.holds_key and spec.foreign_key and spec.type_field:
                descriptor.polymorphic_keys.setdefault(spec.foreign_key, spec.type_field)
        self._types[descriptor.name] = descriptor
        if descriptor.model is not None:
            self._by_model[descriptor.model] = descriptor
        return descriptor

    def declare(
        self,
        name: str,
        *,
        fields: Iterable[str] = (),
        associations: Iterable[AssociationSpec] = (),
        primary_key: str = "id",
        model: type | None = None,
        foreign_keys: dict[str, str] | None = None,
    ) -> TypeDescriptor:
        """Declare a type without reflection (the model may be absent)."""
        assoc = list(associations)
        descriptor = TypeDescriptor(
            name=name,
            model=model,
            primary_key=primary_key,
            fields=tuple(fields),
            associations=assoc,
            foreign_keys=dict(foreign_keys) if foreign_keys is not None else None,
        )
        return self.register(descriptor)

    def add_association(self, type_name: str, spec: AssociationSpec) -> None:
        """Attach an association the ORM cannot express, e.g. a polymorphic to-one."""
        descriptor = self.resolve_tag(type_name)
        if descriptor.association(spec.name) is not None:
            raise ShapeError(f"{type_name} already declares association {spec.name!r}")
        descriptor.associations.append(spec)
        if descriptor.foreign_keys is None:
            descriptor.foreign_keys = {}
        if spec.polymorphic and spec.holds_key and spec.foreign_key and spec.type_field:
            descriptor.polymorphic_keys[spec.foreign_key] = spec.type_field
        elif spec.holds_key and spec.foreign_key and spec.target:
            descriptor.foreign_keys.setdefault(spec.foreign_key, spec.target)

    def resolve_tag(self, tag: Any) -> TypeDescriptor:
        if not isinstance(tag, str) or not tag:
            raise MissingTypeError(f"Invalid record type tag: {tag!r}", type_name=None)
        try:
            return self._types[tag]
        except KeyError:
            raise MissingTypeError(f"Unknown record type: {tag}", type_name=tag) from None

    def get(self, tag: str) -> TypeDescriptor | None:
        return self._types.get(tag)

    def descriptor_for_model(self, cls: type) -> TypeDescriptor | None:
        for klass in cls.__mro__:
            descriptor = self._by_model.get(klass)
            if descriptor is not None:
                return descriptor
        return None

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, tag: object) -> bool:
        return tag in self._types

    def __iter__(self):
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)


def _relationship_spec(mapper, rel) -> AssociationSpec:
    target = rel.mapper.class_.__name__
    info = rel.info or {}
    if rel.secondary is not None:
        return AssociationSpec(
            name=rel.key,
            kind=AssociationKind.TO_MANY_THROUGH,
            target=target,
            optional=True,
        )
    if rel.direction is MANYTOONE:
        local = list(rel.local_columns)
        fk = mapper.get_property_by_column(local[0]).key if local else None
        optional = info.get("optional", all(col.nullable for col in local))
        return AssociationSpec(
            name=rel.key,
            kind=AssociationKind.TO_ONE,
            target=target,
            foreign_key=fk,
            optional=bool(optional),
            holds_key=True,
        )
    fk = None
    remote = list(rel.remote_side)
    if rel.direction is ONETOMANY and remote:
        fk = rel.mapper.get_property_by_column(remote[0]).key
    return AssociationSpec(
        name=rel.key,
        kind=AssociationKind.TO_MANY if rel.uselist else AssociationKind.TO_ONE,
        target=target,
        foreign_key=fk,
        optional=bool(info.get("optional", True)),
        holds_key=False,
    )


def reflect_declarative(base: Any, registry: SchemaRegistry | None = None) -> SchemaRegistry:
    """Build descriptors for every class mapped on ``base``.

    Classes may add associations the ORM cannot express through a
    ``__graph_associations__`` sequence of AssociationSpec.
    """
    registry = registry if registry is not None else SchemaRegistry()
    configure_mappers()
    mappers = sorted(base.registry.mappers, key=lambda m: m.class_.__name__)

    table_to_type: dict[str, str] = {}
    for mapper in mappers:
        for table in mapper.tables:
            table_to_type.setdefault(table.name, mapper.class_.__name__)

    for mapper in mappers:
        cls = mapper.class_
        pk_columns = list(mapper.primary_key)
        if len(pk_columns) != 1:
            log.warning("schema.reflect.composite_key", model=cls.__name__)
            continue
        primary_key = mapper.get_property_by_column(pk_columns[0]).key

        fields = tuple(attr.key for attr in mapper.column_attrs)
        associations = [_relationship_spec(mapper, rel) for rel in mapper.relationships]
        extra = list(getattr(cls, "__graph_associations__", ()))

        foreign_keys: dict[str, str] = {}
        for attr in mapper.column_attrs:
            for column in attr.columns:
                for fk in column.foreign_keys:
                    target = table_to_type.get(fk.column.table.name)
                    if target is not None:
                        foreign_keys.setdefault(attr.key, target)
        foreign_keys.update(_derive_foreign_keys(associations))

        descriptor = TypeDescriptor(
            name=cls.__name__,
            model=cls,
            primary_key=primary_key,
            fields=fields,
            associations=associations,
            foreign_keys=foreign_keys,
        )
        registry.register(descriptor)
        for spec in extra:
            registry.add_association(cls.__name__, spec)

    log.debug("schema.reflect.complete", types=registry.names())
    return registry


def column_map(model: type) -> dict[str, Any]:
    """Attribute name -> Column for a mapped class."""
    return {attr.key: attr.columns[0] for attr in sa_inspect(model).column_attrs}
