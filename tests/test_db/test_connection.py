"""Tests for get_connection() pragmas and the atomic() savepoint helper."""

from __future__ import annotations

import pytest

from portfolio_scorer.db.connection import atomic, get_connection
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.models.portfolio import User


def _users(conn) -> list[str]:
    return [r["id"] for r in conn.execute("SELECT id FROM users ORDER BY id;")]


class TestGetConnection:
    def test_file_database_created_with_pragmas(self, tmp_path):
        db_path = tmp_path / "nested" / "scorer.db"
        with get_connection(str(db_path)) as conn:
            assert conn.execute("PRAGMA foreign_keys;").fetchone()[0] == 1
            assert conn.execute("PRAGMA journal_mode;").fetchone()[0] == "wal"
        assert db_path.exists()


class TestAtomic:
    def test_commits_on_success(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        with atomic(in_memory_db):
            repo.upsert_user(User(id="u1"))
            repo.upsert_user(User(id="u2"))
        assert _users(in_memory_db) == ["u1", "u2"]

    def test_rolls_back_everything_on_error(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        with pytest.raises(RuntimeError):
            with atomic(in_memory_db):
                repo.upsert_user(User(id="u1"))
                raise RuntimeError("boom")
        assert _users(in_memory_db) == []

    def test_nested_rollback_keeps_outer_work(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        with atomic(in_memory_db):
            repo.upsert_user(User(id="outer"))
            with pytest.raises(ValueError):
                with atomic(in_memory_db):
                    repo.upsert_user(User(id="inner"))
                    raise ValueError("inner failure")
        assert _users(in_memory_db) == ["outer"]
