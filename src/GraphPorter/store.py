"""Persistence adapter between serialized records and a SQLAlchemy Session."""

from __future__ import annotations

import base64
import datetime as dt
import decimal
import uuid
from collections.abc import Callable
from typing import Any

import structlog
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, StatementError
from sqlalchemy.orm import Session

from GraphPorter.errors import (
    MissingTypeError,
    PersistenceError,
    RecordError,
    TransportError,
)
from GraphPorter.key_mapper import PrimaryKeyMapper
from GraphPorter.records import KEY_FIELD, SerializedRecord
from GraphPorter.schema import SchemaRegistry, TypeDescriptor, column_map

log = structlog.get_logger()

Finder = Callable[[Session, SerializedRecord], Any]

_VALIDATION_ERRORS = (TypeError, ValueError, ArithmeticError)


def _python_type(column) -> type | None:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def _coerce(column, value: Any) -> Any:
    """Decode the codec's string encodings back into the column's type."""
    if value is None:
        return None
    py_type = _python_type(column)
    if py_type is None or isinstance(value, py_type):
        return value
    if py_type is dt.datetime and isinstance(value, str):
        return dt.datetime.fromisoformat(value)
    if py_type is dt.date and isinstance(value, str):
        return dt.date.fromisoformat(value)
    if py_type is dt.time and isinstance(value, str):
        return dt.time.fromisoformat(value)
    if py_type is decimal.Decimal and isinstance(value, (str, int, float)):
        return decimal.Decimal(str(value))
    if py_type is uuid.UUID and isinstance(value, str):
        return uuid.UUID(value)
    if py_type is bytes and isinstance(value, str):
        return base64.b64decode(value, validate=True)
    return value


class SqlAlchemyRecordStore:
    def __init__(self, session: Session, registry: SchemaRegistry):
        self.session = session
        self.registry = registry
        self._columns: dict[str, dict[str, Any]] = {}

    def descriptor(self, type_name: str) -> TypeDescriptor:
        descriptor = self.registry.resolve_tag(type_name)
        if descriptor.model is None:
            raise MissingTypeError(
                f"{type_name} has no mapped class to import into", type_name=type_name
            )
        return descriptor

    def columns(self, type_name: str) -> dict[str, Any]:
        cols = self._columns.get(type_name)
        if cols is None:
            cols = column_map(self.descriptor(type_name).model)
            self._columns[type_name] = cols
        return cols

    def find_existing(self, record: SerializedRecord, finder: Finder | None = None) -> Any:
        descriptor = self.descriptor(record.type)
        try:
            if finder is not None:
                return finder(self.session, record)
            if record.original_key is None:
                return None
            with self.session.no_autoflush:
                return self.session.get(descriptor.model, record.original_key)
        except DBAPIError as exc:
            raise TransportError(
                f"Lookup of {record.type}#{record.original_key} failed: {exc.orig}"
            ) from exc

    def prepare_attributes(
        self, record: SerializedRecord, mapper: PrimaryKeyMapper
    ) -> dict[str, Any]:
        """Constructor kwargs for ``record``: keys remapped, values decoded.

        Unknown fields are passed through so the model constructor rejects them.
        """
        descriptor = self.descriptor(record.type)
        columns = self.columns(record.type)
        fields = mapper.rewrite_fields(record.type, record.fields)
        if KEY_FIELD not in columns:
            fields.pop(KEY_FIELD, None)

        pk = descriptor.primary_key
        if mapper.should_preserve_primary_key:
            fields[pk] = record.original_key
        else:
            fields.pop(pk, None)

        attrs: dict[str, Any] = {}
        for name, value in fields.items():
            column = columns.get(name)
            attrs[name] = _coerce(column, value) if column is not None else value
        return attrs

    def build(self, type_name: str, attrs: dict[str, Any]) -> Any:
        return self.descriptor(type_name).model(**attrs)

    def validate(self, record: SerializedRecord, mapper: PrimaryKeyMapper) -> list[RecordError]:
        """Construct without persisting; return every problem found."""
        try:
            attrs = self.prepare_attributes(record, mapper)
            self.build(record.type, attrs)
        except _VALIDATION_ERRORS as exc:
            return [
                RecordError(
                    type_name=record.type, original_key=record.original_key, message=str(exc)
                )
            ]

        errors: list[RecordError] = []
        pk = self.descriptor(record.type).primary_key
        for name, column in self.columns(record.type).items():
            if name == pk and not mapper.should_preserve_primary_key:
                continue
            if column.nullable or column.default is not None or column.server_default is not None:
                continue
            if attrs.get(name) is None:
                errors.append(
                    RecordError(
                        type_name=record.type,
                        original_key=record.original_key,
                        message=f"{name} can't be blank",
                        field=name,
                    )
                )
        return errors

    def insert(self, record: SerializedRecord, mapper: PrimaryKeyMapper) -> Any:
        """Persist ``record`` inside a savepoint and return its new key."""
        descriptor = self.descriptor(record.type)
        try:
            instance = self.build(record.type, self.prepare_attributes(record, mapper))
        except _VALIDATION_ERRORS as exc:
            raise self._failure(record, exc) from exc
        self._flush_in_savepoint(record, instance)
        return getattr(instance, descriptor.primary_key)

    def update(self, record: SerializedRecord, existing: Any, mapper: PrimaryKeyMapper) -> Any:
        descriptor = self.descriptor(record.type)
        try:
            attrs = self.prepare_attributes(record, mapper)
        except _VALIDATION_ERRORS as exc:
            raise self._failure(record, exc) from exc
        attrs.pop(descriptor.primary_key, None)
        for name, value in attrs.items():
            setattr(existing, name, value)
        self._flush_in_savepoint(record, existing)
        return getattr(existing, descriptor.primary_key)

    def _flush_in_savepoint(self, record: SerializedRecord, instance: Any) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(instance)
                self.session.flush()
        except (IntegrityError, DataError) as exc:
            raise self._failure(record, exc.orig) from exc
        except DBAPIError as exc:
            raise TransportError(
                f"Database error persisting {record.type}#{record.original_key}: {exc.orig}"
            ) from exc
        except (StatementError, *_VALIDATION_ERRORS) as exc:
            raise self._failure(record, exc) from exc

    @staticmethod
    def _failure(record: SerializedRecord, exc: BaseException) -> PersistenceError:
        return PersistenceError(str(exc), type_name=record.type, original_key=record.original_key)

    def commit(self) -> None:
        try:
            self.session.commit()
        except DBAPIError as exc:
            raise TransportError(f"Commit failed: {exc.orig}") from exc

    def rollback(self) -> None:
        self.session.rollback()
