# tests/conftest.py

from collections.abc import Iterator

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.config import GraphConfig
from GraphPorter.db import create_db_engine, make_sessionmaker
from GraphPorter.metrics import reset_counters
from GraphPorter.schema import SchemaRegistry, reflect_declarative
from support.shop import Base, seed_shop


def _memory_engine() -> Engine:
    # Each "sqlite://" engine owns its own StaticPool connection, so two of
    # them are two independent databases.
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _reset_metrics() -> Iterator[None]:
    reset_counters()
    yield None
    reset_counters()


@pytest.fixture
def engine() -> Iterator[Engine]:
    eng = _memory_engine()
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def target_engine() -> Iterator[Engine]:
    """Second, empty database used as the import destination."""
    eng = _memory_engine()
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    with make_sessionmaker(engine)() as s:
        yield s


@pytest.fixture
def target_session(target_engine: Engine) -> Iterator[Session]:
    with make_sessionmaker(target_engine)() as s:
        yield s


@pytest.fixture
def shop(session: Session) -> dict[str, object]:
    return seed_shop(session)


@pytest.fixture
def registry() -> SchemaRegistry:
    return reflect_declarative(Base)


@pytest.fixture
def config() -> GraphConfig:
    return GraphConfig(progress_enabled=False)


@pytest.fixture
def catalog(registry: SchemaRegistry, config: GraphConfig) -> AssociationCatalog:
    return AssociationCatalog(registry, config)
