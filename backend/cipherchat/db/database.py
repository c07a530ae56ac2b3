from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..core.config import get_settings


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are handed across the request threadpool and the sweep thread
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(get_settings().DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def rebind(url: str):
    """Point the module-level engine and session factory at ``url``."""
    global engine
    engine = make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine
