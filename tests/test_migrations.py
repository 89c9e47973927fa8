"""Migration tests: render the tbm_ schema as offline SQL through env.py."""

import io
from argparse import Namespace
from pathlib import Path

from alembic import command
from alembic.config import Config

_MIGRATIONS = Path(__file__).parent.parent / "src" / "tbm_roi_engine" / "migrations"


def _render_upgrade(database_url: str) -> str:
    buffer = io.StringIO()
    config = Config(output_buffer=buffer, cmd_opts=Namespace(x=[f"database_url={database_url}"]))
    config.set_main_option("script_location", str(_MIGRATIONS))
    command.upgrade(config, "head", sql=True)
    return buffer.getvalue()


def test_offline_upgrade_uses_the_service_version_table() -> None:
    sql = _render_upgrade("postgresql://tbm@localhost/tbm")

    assert "CREATE TABLE tbm_alembic_version" in sql
    assert "INSERT INTO tbm_alembic_version (version_num) VALUES ('001_tbm_initial')" in sql


def test_offline_upgrade_creates_the_tbm_tables() -> None:
    sql = _render_upgrade("postgresql://tbm@localhost/tbm")

    for table in ("tbm_operational_inputs", "tbm_solutions", "tbm_roi_snapshots", "tbm_recomputation_runs"):
        assert f"CREATE TABLE {table}" in sql
