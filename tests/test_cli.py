import orjson
import pytest
from click.testing import CliRunner
from sqlalchemy import func, select

from GraphPorter.cli import cli
from GraphPorter.db import create_db_engine, make_sessionmaker
from support.shop import Base, Order, Product, seed_shop

MODELS = "support.shop:Base"


@pytest.fixture(autouse=True)
def _quiet_cwd(tmp_path, monkeypatch):
    # no config.toml or .env from the checkout, no console log handler
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GRAPHPORTER_LOGGING_CONSOLE", "NONE")


def _database(path, *, seed=False):
    url = f"sqlite:///{path}"
    engine = create_db_engine(url)
    Base.metadata.create_all(engine)
    if seed:
        with make_sessionmaker(engine)() as session:
            seed_shop(session)
    engine.dispose()
    return url


def _count(url, model):
    engine = create_db_engine(url)
    try:
        with make_sessionmaker(engine)() as session:
            return session.scalar(select(func.count()).select_from(model))
    finally:
        engine.dispose()


@pytest.fixture
def source_url(tmp_path):
    return _database(tmp_path / "source.db", seed=True)


@pytest.fixture
def target_url(tmp_path):
    return _database(tmp_path / "target.db")


@pytest.fixture
def exported(source_url, tmp_path):
    out = tmp_path / "order.json"
    result = CliRunner().invoke(
        cli,
        ["extract", "Order", "1", "-o", str(out), "--models", MODELS, "--database-url", source_url],
    )
    assert result.exit_code == 0, result.output
    return out


def test_version():
    result = CliRunner().invoke(cli, ["version"])
    assert result.exit_code == 0
    assert result.output.startswith("graphporter ")


def test_extract_reports_counts(exported):
    doc = orjson.loads(exported.read_bytes())
    assert len(doc["records"]) == 12
    assert doc["metadata"]["root_model"] == "Order"


def test_extract_with_options(source_url, tmp_path):
    out = tmp_path / "small.json"
    result = CliRunner().invoke(
        cli,
        [
            "extract",
            "Order",
            "1",
            "-o",
            str(out),
            "--models",
            MODELS,
            "--database-url",
            source_url,
            "--max-depth",
            "1",
            "--exclude-models",
            "HistoryRecord",
            "--stream",
            "--show-graph",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Extracted 6 record(s)" in result.output
    assert "Dependency levels:" in result.output
    assert out.read_bytes().startswith(b'{"metadata":')


def test_extract_missing_root(source_url, tmp_path):
    result = CliRunner().invoke(
        cli,
        [
            "extract",
            "Order",
            "999",
            "-o",
            str(tmp_path / "x.json"),
            "--models",
            MODELS,
            "--database-url",
            source_url,
        ],
    )
    assert result.exit_code == 1
    assert "not found" in result.output


def test_extract_without_models_is_a_configuration_error(source_url, tmp_path):
    result = CliRunner().invoke(
        cli,
        ["extract", "Order", "1", "-o", str(tmp_path / "x.json"), "--database-url", source_url],
    )
    assert result.exit_code == 1
    assert "ConfigurationError" in result.output


def test_import_round_trip(exported, target_url):
    result = CliRunner().invoke(
        cli, ["import", str(exported), "--models", MODELS, "--database-url", target_url]
    )
    assert result.exit_code == 0, result.output
    assert "Imported 12, updated 0, skipped 0" in result.output
    assert _count(target_url, Order) == 1
    assert _count(target_url, Product) == 2


def test_import_dry_run_writes_nothing(exported, target_url):
    result = CliRunner().invoke(
        cli,
        ["import", str(exported), "--models", MODELS, "--database-url", target_url, "--dry-run"],
    )
    assert result.exit_code == 0, result.output
    assert "Dry run: 12 record(s) validated" in result.output
    assert _count(target_url, Order) == 0


def test_import_validation_failure(exported, target_url):
    doc = orjson.loads(exported.read_bytes())
    for row in doc["records"]:
        if row["_model"] == "Order":
            row["state"] = "lost"
    exported.write_bytes(orjson.dumps(doc))
    result = CliRunner().invoke(
        cli, ["import", str(exported), "--models", MODELS, "--database-url", target_url]
    )
    assert result.exit_code == 1
    assert "ImportValidationError" in result.output
    assert _count(target_url, Order) == 0


def test_import_conflict_exits_non_zero(exported, source_url):
    # importing back into the source collides on every preserved key
    result = CliRunner().invoke(
        cli,
        [
            "import",
            str(exported),
            "--models",
            MODELS,
            "--database-url",
            source_url,
            "--primary-key-strategy",
            "preserve_original",
        ],
    )
    assert result.exit_code == 1
    assert "rolled back" in result.output


def test_analyze(exported):
    result = CliRunner().invoke(cli, ["analyze", str(exported), "--models", MODELS])
    assert result.exit_code == 0, result.output
    assert "Records: 12" in result.output
    assert "Product: 2" in result.output
    assert "Insertion order:" in result.output


def test_analyze_without_models(exported):
    result = CliRunner().invoke(cli, ["analyze", str(exported)])
    assert result.exit_code == 0, result.output
    assert "Category: 2" in result.output


def test_dry_run(source_url, tmp_path):
    report = tmp_path / "report.json"
    result = CliRunner().invoke(
        cli,
        [
            "dry-run",
            "Order",
            "1",
            "--models",
            MODELS,
            "--database-url",
            source_url,
            "-o",
            str(report),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Models involved:" in result.output
    assert orjson.loads(report.read_bytes())["dry_run"] is True


def test_show_config_redacts_password(monkeypatch):
    monkeypatch.setenv("GRAPHPORTER_DATABASE_URL", "postgresql://app:hunter2@db/shop")
    result = CliRunner().invoke(cli, ["show-config"])
    assert result.exit_code == 0, result.output
    assert "hunter2" not in result.output
    assert orjson.loads(result.output)["database_url"].startswith("postgresql://app:")
