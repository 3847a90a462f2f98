"""Database engine initialization and connection management."""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from core.exceptions import ConfigurationError

from .schema import Base

# Both support the partial unique indexes on active rides.
SUPPORTED_BACKENDS = ("sqlite", "postgresql")


def _connect_args(url: str, lock_timeout_seconds: float) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # Busy timeout bounds how long a writer waits for a contended lock.
        return {"check_same_thread": False, "timeout": lock_timeout_seconds}
    lock_timeout_ms = int(lock_timeout_seconds * 1000)
    return {"options": f"-c lock_timeout={lock_timeout_ms}"}


def _ensure_sqlite_dir(url: str) -> None:
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    db_path = url[len(prefix) :]
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def create_db_engine(url: str, lock_timeout_seconds: float = 5.0, echo: bool = False) -> Engine:
    if not url.startswith(SUPPORTED_BACKENDS):
        raise ConfigurationError(
            "Unsupported database backend", {"backend": url.split("://", 1)[0]}
        )
    _ensure_sqlite_dir(url)
    return create_engine(
        url,
        echo=echo,
        connect_args=_connect_args(url, lock_timeout_seconds),
    )


def init_database(
    url: str, lock_timeout_seconds: float = 5.0, echo: bool = False
) -> sessionmaker[Any]:
    """Create the schema if needed and return a session factory."""
    engine = create_db_engine(url, lock_timeout_seconds, echo)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)
