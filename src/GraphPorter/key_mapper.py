"""Original-to-new primary key table used while re-importing records."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

from GraphPorter.config import PrimaryKeyStrategy
from GraphPorter.errors import KeyMappingError
from GraphPorter.schema import SchemaRegistry, TypeDescriptor


def _singularize(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith("ses") or word.endswith("xes"):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _camelize(word: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in word.split("_") if part)


def infer_target_type(field_name: str) -> str | None:
    """Guess the referenced type from a ``*_id`` field name."""
    if not field_name.endswith("_id") or field_name == "_id":
        return None
    return _camelize(_singularize(field_name[:-3]))


class PrimaryKeyMapper:
    """Write-once ``(type, original_key) -> new_key`` table for one import."""

    def __init__(
        self,
        strategy: PrimaryKeyStrategy | str = PrimaryKeyStrategy.GENERATE_NEW,
        registry: SchemaRegistry | None = None,
    ):
        self.strategy = PrimaryKeyStrategy(strategy)
        self._registry = registry
        self._mappings: dict[str, dict[Any, Any]] = {}

    @property
    def should_preserve_primary_key(self) -> bool:
        return self.strategy is PrimaryKeyStrategy.PRESERVE_ORIGINAL

    def add_mapping(self, type_name: str, original_key: Any, new_key: Any) -> None:
        if original_key is None:
            return
        table = self._mappings.setdefault(type_name, {})
        if original_key in table:
            if table[original_key] == new_key:
                return
            raise KeyMappingError(
                f"{type_name}#{original_key} is already mapped to {table[original_key]!r}, "
                f"refusing to remap to {new_key!r}"
            )
        table[original_key] = new_key

    def get_mapping(self, type_name: str, original_key: Any) -> Any:
        return self._mappings.get(type_name, {}).get(original_key)

    def _map(self, type_name: str | None, value: Any) -> Any:
        if value is None or not type_name:
            return value
        mapped = self.get_mapping(type_name, value)
        return value if mapped is None else mapped

    def _declared(self, record_type: str | None) -> TypeDescriptor | None:
        if self._registry is None or record_type is None:
            return None
        descriptor = self._registry.get(record_type)
        if descriptor is None or descriptor.foreign_keys is None:
            return None
        return descriptor

    def target_type_for(self, field_name: str, record_type: str | None = None) -> str | None:
        descriptor = self._declared(record_type)
        if descriptor is not None:
            return (descriptor.foreign_keys or {}).get(field_name)
        return infer_target_type(field_name)

    def map_foreign_key_field(
        self, field_name: str, value: Any, record_type: str | None = None
    ) -> Any:
        if value is None:
            return None
        return self._map(self.target_type_for(field_name, record_type), value)

    def references(
        self, record_type: str, fields: Mapping[str, Any]
    ) -> Iterator[tuple[str, str, Any]]:
        """Yield ``(field, target_type, original_key)`` for every set foreign key."""
        descriptor = self._declared(record_type)
        if descriptor is None:
            for name, value in fields.items():
                target = infer_target_type(name)
                if target and value is not None:
                    yield name, target, value
            return
        for name, target in (descriptor.foreign_keys or {}).items():
            if fields.get(name) is not None:
                yield name, target, fields[name]
        for name, type_field in descriptor.polymorphic_keys.items():
            if fields.get(name) is not None and fields.get(type_field):
                yield name, fields[type_field], fields[name]

    def rewrite_fields(self, record_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``fields`` with every foreign key remapped."""
        out = dict(fields)
        descriptor = self._declared(record_type)
        if descriptor is None:
            for name, value in fields.items():
                if name.endswith("_id"):
                    out[name] = self.map_foreign_key_field(name, value)
            return out

        for name, target in (descriptor.foreign_keys or {}).items():
            if name in out:
                out[name] = self._map(target, out[name])
        for name, type_field in descriptor.polymorphic_keys.items():
            if name in out:
                out[name] = self._map(out.get(type_field), out[name])
        return out

    def all_mappings(self) -> dict[str, dict[Any, Any]]:
        return {name: dict(table) for name, table in self._mappings.items()}

    def mapping_count(self) -> int:
        return sum(len(table) for table in self._mappings.values())

    def clear(self) -> None:
        self._mappings.clear()
