"""Database engine, session factory, and declarative base."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Yield a database session for the duration of one request.

    The session is always closed, and rolled back first if the request
    failed before committing.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        logger.debug("Rolling back session after request failure")
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """
    Return the session factory for long-lived endpoints (WebSockets).

    Such endpoints open a short session per database check instead of
    holding one pooled connection for the whole connection lifetime.
    """
    return SessionLocal
