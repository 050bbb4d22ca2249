from __future__ import annotations

from pathlib import Path

import allure
from sqlalchemy import inspect, text

from workflow_pilot.orchestrator.repository import OrchestratorRepository
from workflow_pilot.storage.alembic_runner import current_revision, upgrade_head
from workflow_pilot.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Schema Migrations"),
]


def test_upgrade_head_creates_tables_and_stamps_revision(tmp_path: Path) -> None:
    db_path = tmp_path / "orchestrator.db"
    assert current_revision(db_path) is None

    upgrade_head(db_path)
    upgrade_head(db_path)

    assert current_revision(db_path) == "20261019_0001"
    engine = build_sqlite_engine(db_path=db_path)
    try:
        tables = set(inspect(engine).get_table_names())
        with engine.connect() as connection:
            journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()
    finally:
        engine.dispose()
    assert {"escalations", "decision_audit", "alembic_version"} <= tables
    assert journal_mode == "wal"


def test_repository_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "nested" / "orchestrator.db")
    try:
        repository.init_schema()
        repository.init_schema()
    finally:
        repository.close()

    assert current_revision(tmp_path / "nested" / "orchestrator.db") == "20261019_0001"
