"""
Helmet Guard - Database Connection
Engine and session factory construction
"""

import logging
from typing import Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_db_connection(url: str, echo: bool = False) -> Tuple[Engine, sessionmaker]:
    """
    Create an engine and session factory for the given database URL.
    Args:
        url:  SQLAlchemy URL, e.g. 'postgresql://user:pw@host/helmet_db' or 'sqlite:///helmet.db'.
        echo: Log emitted SQL.
    Returns:
        (engine, session factory) tuple.
    """
    kwargs = {'echo': echo}

    if url.startswith('sqlite'):
        # Sessions are opened from worker, timer and notification threads
        kwargs['connect_args'] = {'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool

    engine = create_engine(url, **kwargs)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    logger.debug(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine, session_factory
