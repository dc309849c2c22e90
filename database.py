"""
Database setup
==============

Engine, session factory and declarative base shared by all models, plus the
``get_db`` dependency that hands every request its own session.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import get_settings

settings = get_settings()

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Yield a database session for the duration of one request.

    The session is closed on every exit path, so the number of live
    connections never exceeds the number of requests in flight.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
