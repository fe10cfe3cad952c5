"""Database engine and session management."""

from typing import Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from server.config import Settings
from server.db.models import Base


# One engine per database URL so a test overriding Settings gets its own database.
_engines: Dict[str, Engine] = {}
_factories: Dict[str, sessionmaker] = {}


def get_engine(settings: Settings) -> Engine:
    url = settings.database_url
    engine = _engines.get(url)
    if engine is None:
        if url.startswith("sqlite"):
            # The run loop writes from worker threads (asyncio.to_thread).
            engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(url, pool_pre_ping=True)
        _engines[url] = engine
    return engine


def get_session_factory(settings: Settings) -> sessionmaker:
    url = settings.database_url
    factory = _factories.get(url)
    if factory is None:
        factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(settings),
        )
        _factories[url] = factory
    return factory


def reset_engine() -> None:
    """Dispose cached engines and session factories. Use between tests for isolation."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
    _factories.clear()


def init_db(settings: Settings) -> None:
    """Create all tables. Startup fails loudly if the database is unreachable."""
    engine = get_engine(settings)
    Base.metadata.create_all(bind=engine)
