import logging
import os
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

from ..config import get_int, load_environment

load_environment()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./karaoke.db")

# Hosting providers may hand out postgres://, SQLAlchemy expects postgresql://
if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

OVERLAP_CONSTRAINT_NAME = "bookings_no_active_overlap"


def _sanitize_postgres_url(url: str) -> str:
    """Percent-encode user/password to avoid DSN parsing issues with special chars."""
    parsed = urlsplit(url)
    if not parsed.scheme.startswith("postgresql"):
        return url
    if "@" not in parsed.netloc:
        return url

    userinfo, hostinfo = parsed.netloc.rsplit("@", 1)
    has_password = ":" in userinfo
    username, password = userinfo.split(":", 1) if has_password else (userinfo, "")

    safe_username = quote(unquote(username), safe="")
    safe_password = quote(unquote(password), safe="")
    safe_userinfo = f"{safe_username}:{safe_password}" if has_password else safe_username
    safe_netloc = f"{safe_userinfo}@{hostinfo}"
    return urlunsplit((parsed.scheme, safe_netloc, parsed.path, parsed.query, parsed.fragment))


def enable_sqlite_foreign_keys(target: Engine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""

    @event.listens_for(target, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def enable_sqlite_immediate_transactions(target: Engine) -> None:
    """
    Take SQLite's write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, so two sessions could both
    read a free slot before either inserts. BEGIN IMMEDIATE makes the second
    session wait at the start of its transaction instead.
    """

    @event.listens_for(target, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


DATABASE_URL = _sanitize_postgres_url(DATABASE_URL)

engine_kwargs = {}
if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    # Bounded pool: once exhausted, callers wait for a connection.
    engine_kwargs["pool_size"] = get_int("DB_POOL_SIZE", 10)
    engine_kwargs["max_overflow"] = 0
    engine_kwargs["pool_pre_ping"] = True

engine = create_engine(DATABASE_URL, **engine_kwargs)
if engine.dialect.name == "sqlite":
    enable_sqlite_foreign_keys(engine)
    enable_sqlite_immediate_transactions(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def install_overlap_constraint(target: Engine) -> bool:
    """
    Push the "no overlapping active bookings per room" rule into PostgreSQL.

    Other dialects have no exclusion constraints; there the row lock taken by
    the booking repository is the only guard. Returns True when the constraint
    exists after the call.
    """
    if target.dialect.name != "postgresql":
        return False

    with target.begin() as conn:
        exists = conn.execute(
            text("SELECT 1 FROM pg_constraint WHERE conname = :name"),
            {"name": OVERLAP_CONSTRAINT_NAME},
        ).first()
        if exists:
            return True
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
        conn.execute(
            text(
                f"ALTER TABLE bookings ADD CONSTRAINT {OVERLAP_CONSTRAINT_NAME} "
                "EXCLUDE USING gist ("
                "room_id WITH =, "
                "tsrange(start_time, end_time, '[)') WITH &&"
                ") WHERE (status IN ('pending', 'confirmed'))"
            )
        )
    logger.info("Created exclusion constraint %s", OVERLAP_CONSTRAINT_NAME)
    return True


def init_db(target: Engine = engine) -> None:
    # Table classes register on Base when models is imported.
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=target)
    install_overlap_constraint(target)
