"""Database layer — engine, session, ORM base."""

from p2p_desk.db.base import Base
from p2p_desk.db.engine import create_tables, get_engine, get_session_factory, init_engine

__all__ = ["Base", "create_tables", "get_engine", "get_session_factory", "init_engine"]
