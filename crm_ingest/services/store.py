from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_ingest.errors import StoreError


@contextmanager
def store_errors(db: Session, error: str):
    """Roll back and surface any store failure as a retryable 500."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(error, details=str(exc)) from exc
