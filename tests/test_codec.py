import io
from decimal import Decimal

import orjson
import pytest

from GraphPorter.codec import Document, DocumentCodec
from GraphPorter.config import GraphConfig
from GraphPorter.errors import ShapeError, TransportError
from GraphPorter.records import SerializedRecord
from GraphPorter.walker import GraphWalker


def _document():
    return Document(
        metadata={"root_model": "Order", "total_records": 2},
        records=[
            SerializedRecord("Order", {"id": 1, "total": Decimal("9.99"), "user_id": 7}, 1),
            SerializedRecord("User", {"id": 7, "email": "a@example.com"}, 7),
        ],
    )


class TestEncoding:
    def test_buffered_document_shape(self):
        raw = orjson.loads(DocumentCodec(stream=False).dumps(_document()))
        assert raw["metadata"]["root_model"] == "Order"
        assert raw["records"][0] == {"_model": "Order", "id": 1, "total": "9.99", "user_id": 7}

    def test_type_tag_and_key_lead_each_row(self):
        raw = orjson.loads(DocumentCodec(stream=False).dumps(_document()))
        assert list(raw["records"][1])[:2] == ["_model", "id"]

    def test_streaming_writes_one_record_per_line(self):
        data = DocumentCodec(stream=True).dumps(_document())
        lines = data.decode().splitlines()
        assert lines[0].startswith('{"metadata":')
        assert lines[0].endswith('"records":[')
        assert lines[1].startswith('{"_model":"Order"')
        assert lines[1].endswith(",")
        assert lines[2].startswith('{"_model":"User"')
        assert lines[-1] == "]}"

    def test_streaming_output_is_one_valid_document(self):
        data = DocumentCodec(stream=True).dumps(_document())
        raw = orjson.loads(data)
        assert [r["_model"] for r in raw["records"]] == ["Order", "User"]

    def test_stream_mode_comes_from_config(self):
        assert DocumentCodec(GraphConfig(stream_json=True)).stream is True
        assert DocumentCodec(GraphConfig(stream_json=True), stream=False).stream is False

    def test_empty_records_stream(self):
        data = DocumentCodec(stream=True).dumps(Document(metadata={"a": 1}))
        assert orjson.loads(data) == {"metadata": {"a": 1}, "records": []}

    def test_binary_values_are_base64(self):
        doc = Document(
            records=[SerializedRecord("Photo", {"id": 1, "thumbnail": b"\xff\x00\x10"}, 1)]
        )
        raw = orjson.loads(DocumentCodec().dumps(doc))
        assert raw["records"][0]["thumbnail"] == "/wAQ"

    def test_dump_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "out.json"
        DocumentCodec().dump(_document(), path)
        assert path.exists()

    def test_dump_to_file_object(self):
        buf = io.BytesIO()
        DocumentCodec(stream=True).dump(_document(), buf)
        assert orjson.loads(buf.getvalue())["metadata"]["total_records"] == 2

    def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(TransportError) as exc:
            DocumentCodec().dump(_document(), blocker / "out.json")
        assert exc.value.path == str(blocker / "out.json")

    def test_extraction_result_encodes_dates_and_decimals(self, catalog, shop):
        result = GraphWalker(catalog).walk(shop["order"], max_depth=1)
        raw = orjson.loads(DocumentCodec().dumps(result))
        order = raw["records"][0]
        assert order["_model"] == "Order"
        assert order["total"] == "42.50"
        assert order["placed_on"] == "2024-05-01"
        assert raw["metadata"]["total_records"] == 7


class TestDecoding:
    @pytest.mark.parametrize("stream", [False, True])
    def test_load_reads_both_layouts(self, tmp_path, stream):
        path = tmp_path / "doc.json"
        DocumentCodec(stream=stream).dump(_document(), path)
        doc = DocumentCodec().load(path)
        assert doc.metadata["root_model"] == "Order"
        assert [(r.type, r.original_key) for r in doc.records] == [("Order", 1), ("User", 7)]
        assert doc.records[0].fields["total"] == "9.99"

    def test_iter_records_is_lazy_on_streams(self):
        data = DocumentCodec(stream=True).dumps(_document())
        # truncated after the first record: the first one still decodes
        head = b"\n".join(data.split(b"\n")[:2]) + b"\n"
        records = DocumentCodec().iter_records(io.BytesIO(head))
        assert next(records).type == "Order"
        with pytest.raises(ShapeError):
            next(records)

    def test_read_metadata_only(self, tmp_path):
        path = tmp_path / "doc.json"
        DocumentCodec(stream=True).dump(_document(), path)
        assert DocumentCodec().read_metadata(path)["total_records"] == 2

    def test_loads_bytes(self):
        doc = DocumentCodec().load(DocumentCodec(stream=False).dumps(_document()))
        assert len(doc.records) == 2

    @pytest.mark.parametrize(
        "payload",
        [
            b"{not json",
            b"[]",
            b'{"metadata": {}}',
            b'{"records": {}}',
            b'{"records": [{"id": 1}]}',
            b'{"records": [42]}',
            b'{"metadata": [1], "records": []}',
        ],
    )
    def test_malformed_documents(self, payload):
        with pytest.raises(ShapeError):
            DocumentCodec().loads(payload)

    def test_missing_file(self, tmp_path):
        with pytest.raises(TransportError) as exc:
            DocumentCodec().load(tmp_path / "absent.json")
        assert exc.value.path.endswith("absent.json")

    def test_unclosed_stream(self):
        data = b'{"metadata":{},"records":[\n{"_model":"User","id":1},\n'
        with pytest.raises(ShapeError):
            DocumentCodec().load(io.BytesIO(data))

    def test_bad_record_line(self):
        data = b'{"metadata":{},"records":[\n{"_model":"User",\n]}\n'
        with pytest.raises(ShapeError):
            DocumentCodec().load(io.BytesIO(data))
