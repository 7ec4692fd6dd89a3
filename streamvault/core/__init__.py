"""Core module exports"""
from .config import settings, Settings
from .database import build_engine, build_session_factory, session_scope, init_db
from .logging import configure_logging

__all__ = [
    "settings",
    "Settings",
    "build_engine",
    "build_session_factory",
    "session_scope",
    "init_db",
    "configure_logging",
]
