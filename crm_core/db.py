"""
Database connection and setup
SQLAlchemy engine for the durable cache tier
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from crm_core.models import Base
from config.settings import settings

logger = logging.getLogger("db")


def make_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create an engine for the given URL (defaults to settings.database_url)
    """
    url = database_url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Store calls run on a worker pool
    return create_engine(url, connect_args=connect_args, echo=False)


def make_session_factory(engine: Engine) -> sessionmaker:
    """
    Session factory bound to an engine
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize database - create all tables
    Safe to call multiple times (won't recreate existing tables)
    """
    Base.metadata.create_all(bind=engine)
    logger.info(f"Cache database initialized at: {engine.url}")
