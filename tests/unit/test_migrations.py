"""Unit tests for the alembic migrations."""
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from bridge.core.config import settings

ROOT = Path(__file__).resolve().parents[2]


def _config() -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.attributes["configure_logger"] = False
    return config


class TestMigrations:
    """Schema migrations against a scratch SQLite file."""

    def test_upgrade_and_downgrade(self, tmp_path, monkeypatch):
        """Test the initial migration creates and drops the conversation tables."""
        database_file = tmp_path / "migrated.db"
        monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{database_file}")
        config = _config()

        command.upgrade(config, "head")

        engine = create_engine(f"sqlite:///{database_file}")
        inspector = inspect(engine)
        assert {"conversations", "conversation_events"} <= set(inspector.get_table_names())
        columns = {column["name"] for column in inspector.get_columns("conversation_events")}
        assert {"conversation_id", "seq", "kind", "payload", "created_at"} <= columns
        unique = {c["name"] for c in inspector.get_unique_constraints("conversation_events")}
        assert "uq_conversation_events_seq" in unique

        command.downgrade(config, "base")

        assert "conversations" not in set(inspect(engine).get_table_names())
        engine.dispose()
