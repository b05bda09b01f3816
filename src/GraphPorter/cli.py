"""Command line entry point.

Examples:
  graphporter extract Order 42 --models shop.models:Base -o order42.json
  graphporter import order42.json --models shop.models:Base --database-url sqlite:///copy.db
  graphporter analyze order42.json --models shop.models:Base
  graphporter dry-run Order 42 --models shop.models:Base --max-depth 3
"""

from __future__ import annotations

import functools
import importlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import orjson

from GraphPorter.analyzer import DryRunAnalyzer, analyze_document
from GraphPorter.catalog import AssociationCatalog
from GraphPorter.codec import DocumentCodec
from GraphPorter.config import GraphConfig, PrimaryKeyStrategy, Settings, load_settings
from GraphPorter.db import create_db_engine, make_sessionmaker
from GraphPorter.dependencies import DependencyGraphBuilder, TopologicalResolver
from GraphPorter.errors import ConfigurationError, GraphPorterError
from GraphPorter.extractor import Extractor
from GraphPorter.importer import ExistingRecordPolicy, ImportOptions, ImportOrchestrator
from GraphPorter.logging import redact_settings, setup_logging
from GraphPorter.progress import ProgressTracker
from GraphPorter.schema import SchemaRegistry, reflect_declarative
from GraphPorter.version import __version__


def _import_object(path: str) -> Any:
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Expected 'package.module:name', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import {module_name}: {exc}") from exc
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise ConfigurationError(f"{module_name} has no attribute {attr}") from exc
    return obj


def load_registry(settings: Settings) -> SchemaRegistry:
    if not settings.models_module:
        raise ConfigurationError(
            "No models configured; pass --models package.module:Base "
            "or set GRAPHPORTER_MODELS_MODULE"
        )
    return reflect_declarative(_import_object(settings.models_module))


def _parse_serializers(specs: tuple[str, ...]) -> dict[str, Callable[[Any], dict[str, Any]]]:
    out: dict[str, Callable[[Any], dict[str, Any]]] = {}
    for spec in specs:
        type_name, sep, target = spec.partition("=")
        if not sep:
            raise ConfigurationError(f"Expected Model=package.module:function, got {spec!r}")
        out[type_name.strip()] = _import_object(target.strip())
    return out


def _settings_from(options: dict[str, Any]) -> Settings:
    overrides: dict[str, Any] = {}
    for key in ("database_url", "models_module"):
        if options.get(key):
            overrides[key] = options[key]
    settings = load_settings(**overrides)
    setup_logging(settings)
    return settings


def _graph_config(settings: Settings, options: dict[str, Any]) -> GraphConfig:
    overrides: dict[str, Any] = {}
    for key in (
        "max_depth",
        "batch_size",
        "stream_json",
        "progress_enabled",
        "handle_circular_references",
        "skip_missing_models",
        "strict_serialization",
        "validate_records",
        "use_transactions",
        "primary_key_strategy",
    ):
        if options.get(key) is not None:
            overrides[key] = options[key]
    for key in (
        "included_models",
        "excluded_models",
        "included_relationships",
        "excluded_relationships",
        "excluded_fields",
    ):
        values = options.get(key)
        if values:
            overrides[key] = set(values)
    if options.get("serializers"):
        overrides["custom_serializers"] = _parse_serializers(options["serializers"])
    return settings.graph_config(**overrides)


def _reports_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except GraphPorterError as exc:
            raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    return wrapper


def _connection_options(fn):
    fn = click.option(
        "--models",
        "models_module",
        help="Declarative base to reflect, as package.module:Base.",
    )(fn)
    fn = click.option("--database-url", help="SQLAlchemy database URL.")(fn)
    return fn


def _extract_options(fn):
    for decorator in reversed(
        [
            click.option("--max-depth", type=int, help="Maximum relationship depth."),
            click.option("--include-models", "included_models", multiple=True),
            click.option("--exclude-models", "excluded_models", multiple=True),
            click.option("--include-relationships", "included_relationships", multiple=True),
            click.option("--exclude-relationships", "excluded_relationships", multiple=True),
            click.option("--exclude-fields", "excluded_fields", multiple=True),
            click.option(
                "--handle-circular/--no-handle-circular",
                "handle_circular_references",
                default=None,
                help="Count revisits of already extracted records.",
            ),
            click.option(
                "--skip-missing/--fail-on-missing",
                "skip_missing_models",
                default=None,
                help="Skip associations and records whose type is unknown.",
            ),
            click.option(
                "--strict-serialization/--lenient-serialization",
                "strict_serialization",
                default=None,
            ),
            click.option(
                "--serializer",
                "serializers",
                multiple=True,
                help="Custom serializer as Model=package.module:function.",
            ),
        ]
    ):
        fn = decorator(fn)
    return fn


def _common_options(fn):
    fn = click.option("--batch-size", type=int, help="Records per batch.")(fn)
    fn = click.option(
        "--progress/--no-progress", "progress_enabled", default=None, help="Log progress."
    )(fn)
    fn = click.option(
        "--stream/--no-stream", "stream_json", default=None, help="Line-per-record JSON."
    )(fn)
    return fn


def _print_graph(catalog: AssociationCatalog, types: list[str]) -> None:
    graph = DependencyGraphBuilder(catalog).build(types)
    grouping = TopologicalResolver().level_group(graph)
    click.echo("Dependency levels:")
    for i, level in enumerate(grouping.levels):
        click.echo(f"  {i}: {', '.join(level)}")
    for cycle in grouping.cycles:
        click.echo(f"  cycle: {' -> '.join([*cycle, cycle[0]])}")


def _load_root(session, registry: SchemaRegistry, model_name: str, key: str) -> Any:
    descriptor = registry.resolve_tag(model_name)
    if descriptor.model is None:
        raise ConfigurationError(f"{model_name} has no mapped class")
    column = getattr(descriptor.model, descriptor.primary_key).property.columns[0]
    try:
        py_type = column.type.python_type
    except NotImplementedError:
        py_type = str
    try:
        value = py_type(key) if py_type in (int, str) else key
    except ValueError as exc:
        raise click.BadParameter(f"{key!r} is not a valid {model_name} key") from exc
    root = session.get(descriptor.model, value)
    if root is None:
        raise click.ClickException(f"{model_name} with id {key} not found")
    return root


@click.group()
def cli() -> None:
    """Extract SQLAlchemy object graphs to JSON and import them elsewhere."""


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"graphporter {__version__}")


@cli.command()
@click.argument("model_name")
@click.argument("key")
@click.option("--output", "-o", required=True, type=click.Path(dir_okay=False))
@click.option("--show-graph", is_flag=True, help="Print the dependency levels.")
@_connection_options
@_extract_options
@_common_options
@_reports_errors
def extract(model_name: str, key: str, output: str, show_graph: bool, **options: Any) -> None:
    """Extract MODEL_NAME KEY and its associations to a JSON file."""
    settings = _settings_from(options)
    config = _graph_config(settings, options)
    registry = load_registry(settings)
    catalog = AssociationCatalog(registry, config)
    engine = create_db_engine(settings.database_url)
    try:
        with make_sessionmaker(engine)() as session:
            root = _load_root(session, registry, model_name, key)
            progress = ProgressTracker(enabled=config.progress_enabled)
            result = Extractor(catalog, config, progress=progress).extract_to_file(root, output)
    finally:
        engine.dispose()

    meta = result.metadata
    click.echo(f"Extracted {meta.total_records} record(s) to {output}")
    for type_name, count in meta.type_counts.items():
        click.echo(f"  {type_name}: {count}")
    if meta.circular_references_detected:
        click.echo(
            f"Revisits: {meta.cycle_count} cycle(s), {meta.shared_reference_count} shared"
        )
    if result.errors:
        click.echo(f"Skipped {len(result.errors)} record(s) that failed to serialize", err=True)
    if show_graph:
        _print_graph(catalog, meta.models_extracted)


@cli.command(name="import")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--primary-key-strategy",
    type=click.Choice([s.value for s in PrimaryKeyStrategy]),
    default=None,
)
@click.option(
    "--skip-validations/--validate",
    "skip_validations",
    default=None,
    help="Skip the validation pass.",
)
@click.option("--transactions/--no-transactions", "use_transactions", default=None)
@click.option(
    "--existing",
    type=click.Choice([p.value for p in ExistingRecordPolicy]),
    default=ExistingRecordPolicy.INSERT.value,
    show_default=True,
    help="What to do with records that already exist.",
)
@click.option(
    "--skip-missing/--fail-on-missing", "skip_missing_models", default=None
)
@click.option("--dry-run", is_flag=True, help="Validate without saving.")
@click.option("--show-graph", is_flag=True, help="Print the dependency levels.")
@_connection_options
@_common_options
@_reports_errors
def import_(
    file_path: str,
    skip_validations: bool | None,
    existing: str,
    dry_run: bool,
    show_graph: bool,
    **options: Any,
) -> None:
    """Import records from FILE_PATH."""
    if skip_validations is not None:
        options["validate_records"] = not skip_validations
    settings = _settings_from(options)
    config = _graph_config(settings, options)
    registry = load_registry(settings)
    catalog = AssociationCatalog(registry, config)
    engine = create_db_engine(settings.database_url)
    try:
        with make_sessionmaker(engine)() as session:
            orchestrator = ImportOrchestrator(
                catalog,
                session,
                config,
                progress=ProgressTracker(enabled=config.progress_enabled),
            )
            result = orchestrator.import_file(
                file_path, ImportOptions(existing=existing, dry_run=dry_run)
            )
    finally:
        engine.dispose()

    if show_graph:
        _print_graph(catalog, result.insertion_order)
    if dry_run:
        click.echo(f"Dry run: {result.metadata.get('total_records', 0)} record(s) validated")
        return
    click.echo(
        f"Imported {result.imported}, updated {result.updated}, skipped {result.skipped}"
    )
    click.echo(f"Insertion order: {' -> '.join(result.insertion_order)}")
    if result.rolled_back:
        click.echo("Import rolled back", err=True)
    for error in result.errors:
        click.echo(f"  {error.type_name}#{error.original_key}: {error.message}", err=True)
    if not result.success:
        raise SystemExit(1)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@_connection_options
@_reports_errors
def analyze(file_path: str, **options: Any) -> None:
    """Summarize an extraction document."""
    settings = _settings_from(options)
    document = DocumentCodec(stream=False).load(file_path)
    meta = document.metadata
    click.echo(f"File: {file_path}")
    click.echo(f"Root: {meta.get('root_model')} {meta.get('root_ids')}")
    click.echo(f"Extracted at: {meta.get('extracted_at')}")
    click.echo(f"Records: {len(document.records)}")

    if not settings.models_module:
        counts: dict[str, int] = {}
        for record in document.records:
            counts[record.type] = counts.get(record.type, 0) + 1
        for type_name, count in sorted(counts.items()):
            click.echo(f"  {type_name}: {count}")
        return

    catalog = AssociationCatalog(load_registry(settings), settings.graph_config())
    summary = analyze_document(document.records, catalog)
    for type_name, count in summary["type_counts"].items():
        click.echo(f"  {type_name}: {count}")
    for type_name, count in summary["unknown_types"].items():
        click.echo(f"  {type_name}: {count} (unknown type)")
    if summary["insertion_order"] is not None:
        click.echo(f"Insertion order: {' -> '.join(summary['insertion_order'])}")
    for cycle in summary["cycles"]:
        click.echo(f"Cycle: {' -> '.join([*cycle, cycle[0]])}")


@cli.command(name="dry-run")
@click.argument("model_name")
@click.argument("key")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the report as JSON.")
@_connection_options
@_extract_options
@_reports_errors
def dry_run(model_name: str, key: str, output: str | None, **options: Any) -> None:
    """Estimate what extracting MODEL_NAME KEY would produce."""
    settings = _settings_from(options)
    config = _graph_config(settings, options)
    registry = load_registry(settings)
    catalog = AssociationCatalog(registry, config)
    engine = create_db_engine(settings.database_url)
    try:
        with make_sessionmaker(engine)() as session:
            root = _load_root(session, registry, model_name, key)
            report = DryRunAnalyzer(catalog, config).analyze(root)
    finally:
        engine.dispose()

    scope = report.extraction_scope
    click.echo(f"Models involved: {', '.join(scope['models_involved'])}")
    click.echo(f"Estimated records: {scope['total_estimated_records']}")
    click.echo(f"Estimated file size: {report.estimated_file_size['human_readable']}")
    for warning in report.warnings:
        click.echo(f"Warning [{warning['severity']}]: {warning['message']}")
    for rec in report.recommendations:
        click.echo(f"Recommendation: {rec['message']} ({rec['action']})")
    if output:
        Path(output).write_bytes(orjson.dumps(report.to_dict(), option=orjson.OPT_INDENT_2))
        click.echo(f"Report saved to {output}")


@cli.command(name="show-config")
def show_config() -> None:
    """Print the effective settings with secrets redacted."""
    settings = load_settings()
    click.echo(orjson.dumps(redact_settings(settings), option=orjson.OPT_INDENT_2).decode())


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
