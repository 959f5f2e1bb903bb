"""Database helpers for the product inspection API.

Utilities provided:
- initialize the SQLite engine
- create sessions
- a generic record store (create/get/query/update/remove)
- log history entries

The default local SQLite file is `database/database.db` (configurable via
the `SQLITE_FILE` environment variable). The module ensures the parent
directory exists before creating the SQLAlchemy engine so the database can
be created on first use.

Copyright (c) Bryn Gwalad 2025
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime

from dotenv import load_dotenv
from sqlmodel import Session, SQLModel, create_engine, select

# Load environment variables from .env if present
load_dotenv()

# Import models (absolute import so this works when scripts run from
# different CWDs).
from api.models import History

# Default SQLite file location. Honor the SQLITE_FILE env var when set.
sqlite_file_name = os.getenv("SQLITE_FILE", "database/database.db")
sqlite_url = f"sqlite:///{sqlite_file_name}"

# Ensure parent directory exists before creating the engine
Path(sqlite_file_name).parent.mkdir(parents=True, exist_ok=True)

# check_same_thread is disabled because export endpoints hand work to threads
engine = create_engine(sqlite_url, echo=False, connect_args={"check_same_thread": False})

# Ensure tables exist on import: tests and scripts that import the package
# and call endpoints directly expect the tables to already exist.
SQLModel.metadata.create_all(engine)


class RecordNotFound(LookupError):
    """Raised by RecordStore.update/remove when the id does not exist."""

    def __init__(self, model: type, record_id: Any):
        super().__init__(f"{model.__name__} {record_id} not found")
        self.model = model
        self.record_id = record_id


def init_db() -> None:
    """Create database tables from SQLModel metadata."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    return Session(engine)


class RecordStore:
    """Generic create/query/update/remove over SQLModel tables.

    Every write commits immediately. Models with an ``updated_at`` column get
    it refreshed on update.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, model: type, fields: Dict[str, Any]):
        record = model(**fields)
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def get(self, model: type, record_id: Any):
        return self.session.get(model, record_id)

    def query(self, model: type, filters: Optional[Dict[str, Any]] = None, order_by: Any = None) -> List[Any]:
        """Return rows of ``model`` matching every equality filter.

        Without ``order_by`` rows come back in insertion (primary key) order.
        """
        q = select(model)
        for name, value in (filters or {}).items():
            q = q.where(getattr(model, name) == value)
        q = q.order_by(order_by if order_by is not None else model.id)
        return list(self.session.exec(q).all())

    def update(self, model: type, record_id: Any, fields: Dict[str, Any]):
        record = self.session.get(model, record_id)
        if record is None:
            raise RecordNotFound(model, record_id)
        for name, value in fields.items():
            setattr(record, name, value)
        if hasattr(model, "updated_at") and "updated_at" not in fields:
            record.updated_at = datetime.utcnow()
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def remove(self, model: type, record_id: Any) -> None:
        record = self.session.get(model, record_id)
        if record is None:
            raise RecordNotFound(model, record_id)
        self.session.delete(record)
        self.session.commit()


def log_history(table_operation: str, table_modified: str, user_id: str, modified_id: Optional[int] = None, session: Optional[Session] = None) -> None:
    """Create a History entry. If a Session is provided it will be used,
    otherwise a short-lived one will be created.

    The `id` is composed as: <table_modified>:<table_operation>:<user_id>:<modified_id>:<YYYYmmddTHHMMSSffffff>
    """
    ts = datetime.utcnow()
    key = f"{table_modified}:{table_operation}:{user_id}:{modified_id}:{ts.strftime('%Y%m%dT%H%M%S%f')}"
    entry = History(id=key, table_operation=table_operation, table_modified=table_modified, timestamp=ts, user_id=user_id, modified_id=modified_id)
    own_session = False
    if session is None:
        session = get_session()
        own_session = True
    try:
        session.add(entry)
        session.commit()
    finally:
        if own_session:
            session.close()
