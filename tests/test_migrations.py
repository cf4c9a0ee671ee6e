"""Checks the schema migration issues the expected DDL."""

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa

VERSIONS = Path(__file__).resolve().parent.parent / "migrations" / "versions"


@pytest.fixture()
def migration(monkeypatch):
    path = next(VERSIONS.glob("*_create_crates_and_doc_embeddings.py"))
    spec = importlib.util.spec_from_file_location("create_crates_migration", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    monkeypatch.setattr(module, "op", MagicMock())
    return module


def _columns(create_table_call):
    return {item.name: item for item in create_table_call.args[1:] if isinstance(item, sa.Column)}


class TestCreateCratesMigration:

    def test_is_the_root_revision(self, migration):
        assert migration.down_revision is None

    def test_upgrade_enables_pgvector_first(self, migration):
        migration.upgrade()

        first = migration.op.method_calls[0]
        assert first[0] == "execute"
        assert "CREATE EXTENSION IF NOT EXISTS vector" in first.args[0]

    def test_upgrade_creates_both_tables(self, migration):
        migration.upgrade()

        tables = {c.args[0]: c for c in migration.op.create_table.call_args_list}
        assert set(tables) == {"crates", "doc_embeddings"}

        crates = _columns(tables["crates"])
        assert {"id", "name", "version", "last_updated", "total_docs", "total_tokens"} <= set(crates)
        assert crates["version"].nullable is True

        chunks = _columns(tables["doc_embeddings"])
        assert {"crate_id", "crate_name", "doc_path", "content", "embedding", "token_count", "created_at"} <= set(chunks)

    def test_chunks_cascade_with_their_crate(self, migration):
        migration.upgrade()

        doc_embeddings = next(
            c for c in migration.op.create_table.call_args_list if c.args[0] == "doc_embeddings"
        )
        foreign_keys = [item for item in doc_embeddings.args[1:] if isinstance(item, sa.ForeignKeyConstraint)]
        assert len(foreign_keys) == 1
        assert foreign_keys[0].ondelete == "CASCADE"

    def test_downgrade_drops_tables(self, migration):
        migration.downgrade()

        dropped = [c.args[0] for c in migration.op.drop_table.call_args_list]
        assert dropped == ["doc_embeddings", "crates"]
