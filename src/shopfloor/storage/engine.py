"""Database setup: engine construction, sessions and schema creation.

SQLite is the default backend. Any SQLAlchemy URL can be given instead.
"""

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shopfloor.storage.schema import Base, ShopfloorMetaRow

SCHEMA_VERSION = "1"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


def _sqlite_url(db_path: str) -> str:
    return "sqlite://" if db_path == ":memory:" else f"sqlite:///{db_path}"


def create_shopfloor_engine(
    db_path: str = ":memory:",
    *,
    url: str | None = None,
) -> Engine:
    """Build the engine for a shop database.

    Args:
        db_path: SQLite file, or ``":memory:"``. Ignored when *url* is set.
        url: Any SQLAlchemy URL, e.g. ``"postgresql://user@host/shop"``.

    On SQLite, list queries read from a worker thread, so the driver's
    same-thread check is off and an in-memory database lives on one shared
    connection (every new in-memory connection is a separate, empty
    database). Each connection gets the pragmas above, and the driver's own
    transaction handling is switched off in favour of an explicit
    ``BEGIN``. Without that, ``Session.begin_nested()`` savepoints do not
    roll back correctly under pysqlite.
    """
    sa_url = make_url(url if url is not None else _sqlite_url(db_path))
    if sa_url.get_backend_name() != "sqlite":
        return create_engine(sa_url, echo=False)

    options: dict = {"connect_args": {"check_same_thread": False}}
    if sa_url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    engine = create_engine(sa_url, echo=False, **options)

    @event.listens_for(engine, "connect")
    def _configure(dbapi_conn, _record):  # type: ignore[no-untyped-def]
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Rows handed to callers must stay readable after commit.
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables and stamp the schema version. Safe to re-run."""
    Base.metadata.create_all(engine)
    with create_session_factory(engine)() as session:
        if session.get(ShopfloorMetaRow, "schema_version") is None:
            session.add(ShopfloorMetaRow(key="schema_version", value=SCHEMA_VERSION))
            session.commit()
