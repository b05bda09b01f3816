"""orjson reader/writer for extraction documents.

Buffered mode writes one indented document. Streaming mode writes the same
logical document with one compact record per line, so a reader can decode it
record by record::

    {"metadata":{...},"records":[
    {"_model":"Order","id":1,...},
    {"_model":"User","id":7,...}
    ]}
"""

from __future__ import annotations

import base64
import decimal
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import orjson
import structlog

from GraphPorter.config import GraphConfig
from GraphPorter.errors import SerializationError, ShapeError, TransportError
from GraphPorter.records import ExtractionResult, SerializedRecord

log = structlog.get_logger()

_STREAM_HEAD = b'{"metadata":'
_STREAM_RECORDS = b',"records":['
_STREAM_TAIL = b"]}"

Source = str | os.PathLike | IO[bytes] | bytes


@dataclass
class Document:
    metadata: dict[str, Any] = field(default_factory=dict)
    records: list[SerializedRecord] = field(default_factory=list)

    def to_document(self) -> dict[str, Any]:
        return {
            "metadata": dict(self.metadata),
            "records": [r.to_document() for r in self.records],
        }


def _default(obj: Any) -> Any:
    if isinstance(obj, decimal.Decimal):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def _parts(result: Any) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    if isinstance(result, (ExtractionResult, Document)):
        doc = result.to_document()
        return doc["metadata"], doc["records"]
    if isinstance(result, Mapping) and "records" in result:
        rows = [
            r.to_document() if isinstance(r, SerializedRecord) else dict(r)
            for r in result["records"]
        ]
        return dict(result.get("metadata") or {}), rows
    raise ShapeError(f"Cannot encode {type(result).__name__} as an extraction document")


def _is_path(target: Any) -> bool:
    return isinstance(target, (str, os.PathLike))


class DocumentCodec:
    def __init__(self, config: GraphConfig | None = None, *, stream: bool | None = None):
        cfg = config or GraphConfig()
        self.stream = cfg.stream_json if stream is None else stream

    # --- encoding ---

    def _encode(self, obj: Any, *, indent: bool = False) -> bytes:
        option = orjson.OPT_INDENT_2 if indent else 0
        try:
            return orjson.dumps(obj, default=_default, option=option)
        except orjson.JSONEncodeError as exc:
            raise SerializationError(f"Cannot encode document: {exc}") from exc

    def _iter_chunks(self, result: Any) -> Iterator[bytes]:
        metadata, rows = _parts(result)
        if not self.stream:
            yield self._encode({"metadata": metadata, "records": rows}, indent=True)
            return
        yield _STREAM_HEAD + self._encode(metadata) + _STREAM_RECORDS + b"\n"
        for i, row in enumerate(rows):
            sep = b",\n" if i < len(rows) - 1 else b"\n"
            yield self._encode(row) + sep
        yield _STREAM_TAIL + b"\n"

    def dumps(self, result: Any) -> bytes:
        return b"".join(self._iter_chunks(result))

    def dump(self, result: Any, target: str | os.PathLike | IO[bytes]) -> None:
        if not _is_path(target):
            try:
                for chunk in self._iter_chunks(result):
                    target.write(chunk)
            except OSError as exc:
                raise TransportError(f"Cannot write document: {exc}") from exc
            return

        path = Path(target)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("wb") as fh:
                for chunk in self._iter_chunks(result):
                    fh.write(chunk)
        except OSError as exc:
            raise TransportError(f"Cannot write {path}: {exc}", path=str(path)) from exc
        log.info("codec.document.written", path=str(path), streaming=self.stream)

    # --- decoding ---

    def loads(self, data: bytes | str) -> Document:
        try:
            raw = orjson.loads(data)
        except orjson.JSONDecodeError as exc:
            raise ShapeError(f"Malformed JSON document: {exc}") from exc
        return self._document(raw)

    def _document(self, raw: Any) -> Document:
        if not isinstance(raw, Mapping):
            raise ShapeError("Document root must be an object")
        records = raw.get("records")
        if not isinstance(records, list):
            raise ShapeError("Document has no 'records' array")
        metadata = raw.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ShapeError("Document 'metadata' must be an object")
        return Document(
            metadata=dict(metadata),
            records=[SerializedRecord.from_document(row) for row in records],
        )

    def load(self, source: Source) -> Document:
        if isinstance(source, (bytes, bytearray)):
            return self.loads(bytes(source))
        metadata: dict[str, Any] = {}
        records = list(self._iter(source, metadata))
        return Document(metadata=metadata, records=records)

    def iter_records(self, source: Source) -> Iterator[SerializedRecord]:
        if isinstance(source, (bytes, bytearray)):
            yield from self.loads(bytes(source)).records
            return
        yield from self._iter(source, {})

    def read_metadata(self, source: str | os.PathLike) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        for _ in self._iter(source, metadata):
            break
        return metadata

    def _iter(self, source: Any, metadata: dict[str, Any]) -> Iterator[SerializedRecord]:
        if not _is_path(source):
            yield from self._iter_lines(source, metadata, path=None)
            return
        path = Path(source)
        try:
            fh = path.open("rb")
        except OSError as exc:
            raise TransportError(f"Cannot read {path}: {exc}", path=str(path)) from exc
        with fh:
            yield from self._iter_lines(fh, metadata, path=str(path))

    def _iter_lines(
        self, fh: IO[bytes], metadata: dict[str, Any], *, path: str | None
    ) -> Iterator[SerializedRecord]:
        try:
            first = fh.readline()
        except OSError as exc:
            raise TransportError(f"Cannot read document: {exc}", path=path) from exc
        head = first.strip()
        if not (head.startswith(_STREAM_HEAD) and head.endswith(_STREAM_RECORDS)):
            try:
                rest = fh.read()
            except OSError as exc:
                raise TransportError(f"Cannot read document: {exc}", path=path) from exc
            doc = self.loads(first + rest)
            metadata.update(doc.metadata)
            yield from doc.records
            return

        try:
            meta = orjson.loads(head[len(_STREAM_HEAD) : -len(_STREAM_RECORDS)])
        except orjson.JSONDecodeError as exc:
            raise ShapeError(f"Malformed document metadata: {exc}") from exc
        if not isinstance(meta, Mapping):
            raise ShapeError("Document 'metadata' must be an object")
        metadata.update(meta)

        closed = False
        for lineno, line in enumerate(fh, start=2):
            text = line.strip()
            if not text:
                continue
            if text == _STREAM_TAIL:
                closed = True
                break
            try:
                row = orjson.loads(text.rstrip(b","))
            except orjson.JSONDecodeError as exc:
                raise ShapeError(f"Malformed record on line {lineno}: {exc}") from exc
            yield SerializedRecord.from_document(row)
        if not closed:
            raise ShapeError("Document ended before the records array was closed")
