"""SQLAlchemy database models for the structured store."""
import datetime

from sqlalchemy import (Boolean, Column, DateTime, String, Text, create_engine,
                        event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class DBNote(Base):
    """Database model for a note.

    Timestamps are stored as naive UTC; tags and metadata as JSON text.
    """
    __tablename__ = "notes"
    id = Column(String(255), primary_key=True, index=True)
    title = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    tags = Column(Text, nullable=False, default="[]")
    notebook_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    is_pinned = Column(Boolean, default=False, nullable=False)
    is_trashed = Column(Boolean, default=False, nullable=False, index=True)
    revision = Column(String(64), nullable=False)
    metadata_json = Column(Text, nullable=False, default="{}")

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}', rev='{self.revision}')>"


class DBNotebook(Base):
    """Database model for a notebook."""
    __tablename__ = "notebooks"
    id = Column(String(255), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    color = Column(String(50), nullable=False, default="default")
    parent_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    is_trashed = Column(Boolean, default=False, nullable=False)
    revision = Column(String(64), nullable=False)
    metadata_json = Column(Text, nullable=False, default="{}")

    def __repr__(self) -> str:
        return f"<Notebook(id='{self.id}', name='{self.name}', rev='{self.revision}')>"


class DBSetting(Base):
    """Key-value setting, keyed by category and key."""
    __tablename__ = "settings"
    category = Column(String(100), primary_key=True)
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Setting(category='{self.category}', key='{self.key}')>"


def init_db(db_url: str) -> Engine:
    """Create the engine and tables with hardened SQLite configuration.

    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - QueuePool with pre-ping to detect stale connections
    """
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    engine = create_engine(
        db_url,
        connect_args=connect_args,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            # Fail fast on a locked database; the retry layer waits instead
            cursor.execute("PRAGMA busy_timeout=2000")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, expire_on_commit=False)
