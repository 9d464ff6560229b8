from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from paygate.config import settings

Base = declarative_base()

engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def configure_engine(db_url: str):
    """
    (Re)bind the module engine and session factory to ``db_url``.
    """
    global engine
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    if engine is not None:
        engine.dispose()
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    SessionLocal.configure(bind=engine)
    return engine


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


configure_engine(settings.db_url)
