# services/api/tradein_admin/db.py

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


def build_engine(url: str, *, timeout_s: int = 5) -> Engine:
    """
    Every connection is bounded by timeout_s: connect timeout, pool checkout
    timeout and (on Postgres) a server-side statement timeout.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"timeout": timeout_s, "check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # one shared connection, otherwise each checkout sees an empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=timeout_s,
        connect_args={
            "connect_timeout": timeout_s,
            "options": f"-c statement_timeout={int(timeout_s) * 1000}",
        },
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
