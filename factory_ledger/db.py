from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from factory_ledger.config import settings


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite opens transactions lazily and breaks SAVEPOINT; take over BEGIN ourselves.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN')


def build_engine(url: str) -> Engine:
    if url.startswith('sqlite'):
        kwargs: dict = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in url or url in {'sqlite://', 'sqlite+pysqlite://'}:
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.database_url_normalized)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
