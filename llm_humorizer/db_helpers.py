"""Database session helper utilities.

`session_scope(engine)` centralizes creation/cleanup of `sqlmodel.Session`
instances. Uncommitted work is rolled back when an exception escapes.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlmodel import Session
import logging

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(engine) -> Iterator[Session]:
    """Yield a short-lived SQLModel `Session` bound to `engine`."""
    sess = Session(engine)
    logger.debug("Opening DB session %s", sess)
    try:
        yield sess
    except Exception:
        sess.rollback()
        raise
    finally:
        try:
            sess.close()
            logger.debug("Closed DB session %s", sess)
        except Exception as e:
            logger.exception("Failed to close DB session: %s", e)
