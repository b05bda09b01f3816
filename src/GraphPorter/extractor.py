"""Extraction entry points: walk, then optionally write the document."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import IO, Any

import structlog

from GraphPorter.analyzer import DryRunAnalyzer, DryRunReport
from GraphPorter.catalog import AssociationCatalog
from GraphPorter.codec import DocumentCodec
from GraphPorter.config import GraphConfig
from GraphPorter.records import ExtractionResult
from GraphPorter.walker import GraphWalker, Serializer

log = structlog.get_logger()


class Extractor:
    def __init__(
        self,
        catalog: AssociationCatalog,
        config: GraphConfig | None = None,
        *,
        progress: Any = None,
    ):
        self.catalog = catalog
        self.config = config or catalog.config
        self.walker = GraphWalker(catalog, self.config, progress=progress)
        self.codec = DocumentCodec(self.config)

    def extract(
        self,
        roots: Any,
        *,
        max_depth: int | None = None,
        custom_serializers: Mapping[str, Serializer] | None = None,
        cancel_token: Any = None,
    ) -> ExtractionResult:
        return self.walker.walk(
            roots,
            max_depth=max_depth,
            custom_serializers=custom_serializers,
            cancel_token=cancel_token,
        )

    def extract_to_file(
        self, roots: Any, path: str | os.PathLike, **kwargs: Any
    ) -> ExtractionResult:
        result = self.extract(roots, **kwargs)
        self.codec.dump(result, path)
        log.info(
            "extractor.file.written",
            path=os.fspath(path),
            records=result.total_records,
        )
        return result

    def extract_to_stream(self, roots: Any, stream: IO[bytes], **kwargs: Any) -> ExtractionResult:
        result = self.extract(roots, **kwargs)
        self.codec.dump(result, stream)
        return result

    def dry_run(self, roots: Any, *, max_depth: int | None = None) -> DryRunReport:
        return DryRunAnalyzer(self.catalog, self.config).analyze(roots, max_depth=max_depth)
