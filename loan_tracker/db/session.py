import math
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}") from exc


LOAN_TRACKER_DB_URL = _require_env("LOAN_TRACKER_DB_URL")
DB_TIMEOUT_SECONDS = _float_env("LOAN_TRACKER_DB_TIMEOUT_SECONDS", 10.0)


def server_connect_args(db_url: str, timeout_seconds: float) -> dict:
    """Driver arguments bounding connect, statement and lock waits on a server database."""
    backend = make_url(db_url).get_backend_name()
    seconds = max(1, int(math.ceil(timeout_seconds)))
    millis = max(1, int(timeout_seconds * 1000))
    if backend == "postgresql":
        return {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={millis} -c lock_timeout={millis}",
        }
    if backend in {"mysql", "mariadb"}:
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    if backend == "mssql":
        # pyodbc: login timeout; the query timeout is set per connection below.
        return {"timeout": seconds}
    return {}


def _bound_mssql_queries(engine: Engine, timeout_seconds: float) -> None:
    seconds = max(1, int(math.ceil(timeout_seconds)))

    @event.listens_for(engine, "connect")
    def _set_query_timeout(dbapi_connection, _record):
        dbapi_connection.timeout = seconds


def build_engine(db_url: str, timeout_seconds: float = DB_TIMEOUT_SECONDS) -> Engine:
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite:"):
            # In-memory databases live and die with a single connection.
            return create_engine(
                db_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                future=True,
            )
        return create_engine(db_url, connect_args=connect_args, future=True)

    engine = create_engine(
        db_url,
        connect_args=server_connect_args(db_url, timeout_seconds),
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        future=True,
    )
    if engine.dialect.name == "mssql":
        _bound_mssql_queries(engine, timeout_seconds)
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_loans = build_engine(LOAN_TRACKER_DB_URL)

SessionLocal = build_sessionmaker(engine_loans)


def init_db(engine: Engine = engine_loans) -> None:
    from loan_tracker.db.base import Base
    from loan_tracker.models import loan_models  # noqa: F401  registers the tables

    Base.metadata.create_all(bind=engine)
