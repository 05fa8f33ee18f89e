"""Tests for the Alembic schema migration."""

import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from meter_recharge.database import Base

MIGRATION = (
    Path(__file__).resolve().parent.parent
    / "src" / "meter_recharge" / "database" / "migrations" / "versions" / "001_initial.py"
)


@pytest.fixture
def migration():
    spec = importlib.util.spec_from_file_location("migration_001_initial", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def sync_engine(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrate.db'}")
    yield engine
    engine.dispose()


def run(engine, step):
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            step()


class TestInitialMigration:
    """The migration builds the same schema as the ORM models."""

    def test_upgrade_matches_models(self, migration, sync_engine):
        run(sync_engine, migration.upgrade)

        inspector = sa.inspect(sync_engine)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            columns = {column["name"] for column in inspector.get_columns(name)}
            assert columns == {column.name for column in table.columns}, name

    def test_reference_and_sale_id_are_unique(self, migration, sync_engine):
        run(sync_engine, migration.upgrade)
        insert = sa.text(
            "INSERT INTO transactions (id, reference, gateway, meter_id, amount_minor, sale_id, created_at, updated_at) "
            "VALUES (:id, :reference, 'paystack', '47001234567', 1000, :sale_id, '2026-01-01', '2026-01-01')"
        )

        with sync_engine.begin() as conn:
            conn.execute(insert, {"id": "1", "reference": "AG_1", "sale_id": "S1"})
        with pytest.raises(sa.exc.IntegrityError):
            with sync_engine.begin() as conn:
                conn.execute(insert, {"id": "2", "reference": "AG_2", "sale_id": "S1"})
        with pytest.raises(sa.exc.IntegrityError):
            with sync_engine.begin() as conn:
                conn.execute(insert, {"id": "3", "reference": "AG_1", "sale_id": "S3"})

    def test_downgrade_drops_everything(self, migration, sync_engine):
        run(sync_engine, migration.upgrade)
        run(sync_engine, migration.downgrade)

        assert sa.inspect(sync_engine).get_table_names() == []
