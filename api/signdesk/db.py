
from sqlmodel import SQLModel, create_engine, Session
from .config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)


def init_db():
    from .models import User, Envelope, Signer, Field, AuditLog, EnvelopeTemplate  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


def new_session() -> Session:
    """Standalone session for the worker and the cron entry points."""
    return Session(engine)
