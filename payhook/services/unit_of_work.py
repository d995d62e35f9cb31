"""Transaction scope helper.

Every step of the pipeline receives the session explicitly; this context
manager guarantees a commit or a rollback on every exit path.
"""

from contextlib import contextmanager

from payhook.extensions import db


@contextmanager
def unit_of_work(session=None):
    """Yield a session and commit on clean exit, roll back on any exception.

    Usage:
        with unit_of_work() as session:
            session.add(obj)
    """
    session = session or db.session
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
