"""Storage handle, ORM records and storage-access helpers for the Petstore API."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, create_engine, delete, event, func, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, joinedload, mapped_column, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


class RecordNotFoundError(LookupError):
    """A write statement matched no row."""

    def __init__(self, table: str, record_id: int) -> None:
        self.table = table
        self.record_id = record_id
        super().__init__(f"No row in {table} with id {record_id}")


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


class CategoryRecord(Base):
    """ORM model for ``categories``."""

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    pets: Mapped[List["PetRecord"]] = relationship(back_populates="category", order_by="PetRecord.id")


class PetRecord(Base):
    """ORM model for ``pets``."""

    __tablename__ = "pets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    category: Mapped[Optional[CategoryRecord]] = relationship(back_populates="pets")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Explicitly constructed storage handle.

    Owns the SQLAlchemy engine and session factory. Open it once at process
    start with :meth:`create_all` and close it with :meth:`dispose`.
    """

    def __init__(self, database_url: str) -> None:
        self.url = database_url
        options: Dict[str, Any] = {"future": True, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            options["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                options["poolclass"] = StaticPool
        self.engine: Engine = create_engine(database_url, **options)
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def create_all(self) -> None:
        """Create missing tables."""

        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""

        self.engine.dispose()

    def ping(self) -> bool:
        """Return whether the database answers a trivial query."""

        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a unit of work."""

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise


def _execute_write(session: Session, stmt: Any, table: str, record_id: int) -> None:
    """Run an UPDATE/DELETE that must hit exactly the row ``record_id``."""

    try:
        result = session.execute(stmt)
        if result.rowcount == 0:
            raise RecordNotFoundError(table, record_id)
        session.commit()
    except (SQLAlchemyError, RecordNotFoundError):
        session.rollback()
        raise


# Categories


def list_categories(session: Session) -> List[CategoryRecord]:
    """Return every category ordered by name."""

    return list(session.execute(select(CategoryRecord).order_by(CategoryRecord.name.asc())).scalars().all())


def get_category(session: Session, category_id: int, with_pets: bool = False) -> Optional[CategoryRecord]:
    """Fetch a category, optionally with its pets attached."""

    stmt = select(CategoryRecord).where(CategoryRecord.id == category_id).execution_options(populate_existing=True)
    if with_pets:
        stmt = stmt.options(selectinload(CategoryRecord.pets))
    return session.execute(stmt).scalars().first()


def find_category_by_name(session: Session, name: str, exclude_id: Optional[int] = None) -> Optional[CategoryRecord]:
    """Return a category whose name matches exactly, ignoring ``exclude_id``."""

    stmt = select(CategoryRecord).where(CategoryRecord.name == name)
    if exclude_id is not None:
        stmt = stmt.where(CategoryRecord.id != exclude_id)
    return session.execute(stmt).scalars().first()


def count_category_pets(session: Session, category_id: int) -> int:
    """Return how many pets reference ``category_id``."""

    stmt = select(func.count()).select_from(PetRecord).where(PetRecord.category_id == category_id)
    return int(session.execute(stmt).scalar_one())


def insert_category(session: Session, name: str) -> CategoryRecord:
    """Persist a new category."""

    record = CategoryRecord(name=name)
    session.add(record)
    _commit(session)
    return record


def update_category(session: Session, category_id: int, name: str) -> None:
    """Rename a category, raising :class:`RecordNotFoundError` if it vanished."""

    stmt = update(CategoryRecord).where(CategoryRecord.id == category_id).values(name=name)
    _execute_write(session, stmt, CategoryRecord.__tablename__, category_id)


def delete_category(session: Session, category_id: int) -> None:
    """Delete a category, raising :class:`RecordNotFoundError` if it vanished."""

    stmt = delete(CategoryRecord).where(CategoryRecord.id == category_id)
    _execute_write(session, stmt, CategoryRecord.__tablename__, category_id)


# Pets


def get_pet(session: Session, pet_id: int, with_category: bool = False) -> Optional[PetRecord]:
    """Fetch a pet, optionally joined with its category."""

    stmt = select(PetRecord).where(PetRecord.id == pet_id).execution_options(populate_existing=True)
    if with_category:
        stmt = stmt.options(joinedload(PetRecord.category))
    return session.execute(stmt).scalars().first()


def list_pets(session: Session, status: Optional[str] = None, with_category: bool = True) -> List[PetRecord]:
    """Return pets newest-first, optionally filtered by status."""

    stmt = select(PetRecord).order_by(PetRecord.created_at.desc(), PetRecord.id.desc())
    if status is not None:
        stmt = stmt.where(PetRecord.status == status)
    if with_category:
        stmt = stmt.options(joinedload(PetRecord.category))
    return list(session.execute(stmt).scalars().unique().all())


def insert_pet(session: Session, name: str, status: str, category_id: Optional[int]) -> PetRecord:
    """Persist a new pet."""

    record = PetRecord(name=name, status=status, category_id=category_id)
    session.add(record)
    _commit(session)
    return record


def update_pet(session: Session, pet_id: int, values: Dict[str, Any]) -> None:
    """Apply ``values`` to a pet, raising :class:`RecordNotFoundError` if it vanished."""

    stmt = update(PetRecord).where(PetRecord.id == pet_id).values(**values, updated_at=_utcnow())
    _execute_write(session, stmt, PetRecord.__tablename__, pet_id)


def delete_pet(session: Session, pet_id: int) -> None:
    """Delete a pet, raising :class:`RecordNotFoundError` if it vanished."""

    stmt = delete(PetRecord).where(PetRecord.id == pet_id)
    _execute_write(session, stmt, PetRecord.__tablename__, pet_id)
