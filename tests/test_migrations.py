"""The schema migration must build the same tables the ORM models describe."""

import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

import models.database  # noqa: F401
from database import Base

VERSIONS_DIR = Path(__file__).resolve().parents[1] / "alembic" / "versions"


def _load_migration():
    path = next(VERSIONS_DIR.glob("*_create_orchestration_tables.py"))
    module_spec = importlib.util.spec_from_file_location("create_orchestration_tables", path)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def migrated_engine():
    engine = create_engine("sqlite://")
    migration = _load_migration()
    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()
    yield engine, migration
    engine.dispose()


def test_upgrade_matches_models(migrated_engine) -> None:
    engine, _ = migrated_engine
    inspector = inspect(engine)

    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        columns = {column["name"] for column in inspector.get_columns(name)}
        assert columns == {column.name for column in table.columns}, name


def test_downgrade_drops_everything(migrated_engine) -> None:
    engine, migration = migrated_engine

    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.downgrade()

    assert inspect(engine).get_table_names() == []


def test_single_root_revision() -> None:
    migration = _load_migration()
    assert migration.down_revision is None
    assert migration.revision == "0a1b2c3d4e5f"
