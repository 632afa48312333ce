from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect, text

from backend.app.db import Base
import backend.app.models  # noqa: F401


ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _load_script() -> ScriptDirectory:
    config = Config(str(ALEMBIC_INI))
    return ScriptDirectory.from_config(config)


def _config_for(database_url: str) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["ignore_env_url"] = True
    config.attributes["configure_logger"] = False
    return config


def test_alembic_single_head():
    script = _load_script()
    heads = script.get_heads()
    assert len(heads) == 1


def test_alembic_revision_graph_has_no_gaps():
    script = _load_script()
    head = script.get_heads()[0]
    assert script.get_revision(head) is not None
    assert [rev.revision for rev in script.walk_revisions()][-1] == script.get_bases()[0]


def test_upgrade_head_matches_models(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'alembic.db'}"
    command.upgrade(_config_for(database_url), "head")

    engine = create_engine(database_url, future=True)
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    with engine.connect() as conn:
        revision = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    mapping_uniques = {
        tuple(constraint["column_names"]) for constraint in inspector.get_unique_constraints("external_objects")
    }
    engine.dispose()

    assert set(Base.metadata.tables) <= tables
    assert revision == _load_script().get_heads()[0]
    assert ("integration_id", "object_type", "external_id") in mapping_uniques


def test_downgrade_removes_schema(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'roundtrip.db'}"
    config = _config_for(database_url)
    command.upgrade(config, "head")
    command.downgrade(config, "base")

    engine = create_engine(database_url, future=True)
    tables = set(inspect(engine).get_table_names())
    engine.dispose()

    assert tables <= {"alembic_version"}


def test_sqlite_bootstrap_creates_tables(tmp_path):
    db_path = tmp_path / "bootstrap.db"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    engine.dispose()
    assert {"tickets", "external_objects", "sync_cursors", "sync_runs"} <= tables
