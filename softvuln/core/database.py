"""
Database engine and session factory
softvuln/core/database.py
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from softvuln.core.config import get_database_config

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url: str = None, **overrides) -> Engine:
    """Create an engine from settings, optionally for a different URL"""
    config = get_database_config()
    if url:
        config = {'url': url, 'echo': config['echo']}
    config.update(overrides)
    return create_engine(config.pop('url'), **config)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """Create all tables known to the models package"""
    # Register the models on Base.metadata
    import softvuln.models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info(f"Database schema ready on {target.url.render_as_string(hide_password=True)}")
