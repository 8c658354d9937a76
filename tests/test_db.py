"""Tests for engine helpers."""

from __future__ import annotations

import pytest

from p2p_desk.db import engine as db_engine


class TestEngineHelpers:
    def test_psycopg_driver_rewrite(self):
        assert db_engine._ensure_psycopg_driver("postgresql://u:p@h/db") == "postgresql+psycopg://u:p@h/db"
        assert db_engine._ensure_psycopg_driver("sqlite://") == "sqlite://"

    def test_uninitialised_engine_raises(self, monkeypatch):
        monkeypatch.setattr(db_engine, "_engine", None)
        monkeypatch.setattr(db_engine, "_SessionLocal", None)
        with pytest.raises(RuntimeError):
            db_engine.get_engine()
        with pytest.raises(RuntimeError):
            db_engine.get_session_factory()

    def test_init_engine_builds_session_factory(self, monkeypatch):
        monkeypatch.setattr(db_engine, "_engine", None)
        monkeypatch.setattr(db_engine, "_SessionLocal", None)
        engine = db_engine.init_engine("sqlite://")
        assert db_engine.get_engine() is engine
        assert db_engine.get_session_factory().kw["bind"] is engine
        engine.dispose()
