"""
Database access for the CMS backend.

Three layers live here:

* ``create_db_engine`` builds a SQLAlchemy engine. SQLite (the default) gets
  foreign keys, WAL and ``BEGIN IMMEDIATE`` transactions so a
  read-then-write unit of work holds the write lock from its first statement.
* ``SqlDatastore`` issues raw statements against tables whose names are only
  known at runtime (the monthly audit shards).
* ``SqlDbClient`` is the ORM-backed client for users and token revocations.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Protocol

from sqlalchemy import Column, DateTime, String, create_engine, delete, event, inspect, select, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from cms_backend.clock import as_utc
from cms_backend.errors import ConflictError, DatastoreError, ReferentialError

logger = logging.getLogger(__name__)

IN_MEMORY_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for ``database_url``.

    In-memory SQLite uses a single shared connection so every session sees the
    same database.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    in_memory = url.database in (None, "", ":memory:")
    kwargs: dict[str, Any] = {
        "future": True,
        "connect_args": {"check_same_thread": False},
    }
    if in_memory:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    _configure_sqlite(engine, wal=not in_memory)
    return engine


def _configure_sqlite(engine: Engine, *, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" hook below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        if wal:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.execute("PRAGMA temp_store = MEMORY")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def wrap_db_error(exc: SQLAlchemyError) -> DatastoreError:
    """Translate a SQLAlchemy failure into the datastore error taxonomy."""
    detail = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, IntegrityError) and "foreign key" in detail.lower():
        return ReferentialError(detail)
    return DatastoreError(detail)


class SqlDatastore:
    """
    Raw-statement access to the relational datastore.

    Each call runs in its own transaction unless the datastore was obtained from
    ``transaction()``, in which case every call shares that connection and
    commits (or rolls back) together.
    """

    def __init__(self, engine: Engine, connection: Optional[Connection] = None):
        self.engine = engine
        self._connection = connection

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def quote(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(name)

    @contextmanager
    def transaction(self) -> Iterator["SqlDatastore"]:
        if self._connection is not None:
            yield self
            return
        try:
            with self.engine.begin() as conn:
                yield SqlDatastore(self.engine, conn)
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        if self._connection is not None:
            yield self._connection
        else:
            with self.engine.begin() as conn:
                yield conn

    def execute(self, statement: str, params: Optional[dict] = None) -> int:
        try:
            with self._connect() as conn:
                return conn.execute(text(statement), params or {}).rowcount
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc

    def query_one(self, statement: str, params: Optional[dict] = None) -> Optional[dict]:
        try:
            with self._connect() as conn:
                row = conn.execute(text(statement), params or {}).mappings().first()
                return dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc

    def query_many(self, statement: str, params: Optional[dict] = None) -> list[dict]:
        try:
            with self._connect() as conn:
                rows = conn.execute(text(statement), params or {}).mappings().all()
                return [dict(row) for row in rows]
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc

    def drop_table(self, name: str) -> None:
        self.execute(f"DROP TABLE IF EXISTS {self.quote(name)}")

    def table_exists(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                return inspect(conn).has_table(name)
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc

    def list_tables(self, prefix: str = "") -> list[str]:
        try:
            with self._connect() as conn:
                names = inspect(conn).get_table_names()
        except SQLAlchemyError as exc:
            raise wrap_db_error(exc) from exc
        return sorted(name for name in names if name.startswith(prefix))


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"

    @classmethod
    def parse(cls, value: str) -> Optional["UserRole"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class User:
    id: str
    email: str
    role: str
    google_id: Optional[str] = None
    full_name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get_role(self) -> Optional[UserRole]:
        return UserRole.parse(self.role)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "full_name": self.full_name,
        }


class DbClient(Protocol):
    """Interface for user and session bookkeeping."""

    def create_user(
        self,
        email: str,
        role: UserRole,
        *,
        google_id: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        ...

    def link_google_id(self, user_id: str, google_id: str) -> None:
        ...

    def add_revocation(
        self, jti: str, user_id: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        ...

    def is_revoked(self, jti: str) -> bool:
        ...

    def purge_expired_revocations(self, now: datetime) -> int:
        ...


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any engine (SQLite in dev/tests,
    Postgres in larger deployments).
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_user(self, row: "UserRow") -> User:
        return User(
            id=row.id,
            email=row.email,
            role=row.role,
            google_id=row.google_id,
            full_name=row.full_name,
            created_at=as_utc(row.created_at),
        )

    def create_user(
        self,
        email: str,
        role: UserRole,
        *,
        google_id: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> User:
        with self.Session() as session:
            row = UserRow(
                id=str(uuid.uuid4()),
                email=email,
                role=UserRole(role).value,
                google_id=google_id,
                full_name=full_name,
                created_at=datetime.now(timezone.utc),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"User with email '{email}' already exists") from exc
            return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            return self._to_user(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.google_id == google_id)
            ).scalar_one_or_none()
            return self._to_user(row) if row else None

    def link_google_id(self, user_id: str, google_id: str) -> None:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return
            row.google_id = google_id
            session.commit()

    def add_revocation(
        self, jti: str, user_id: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self.Session() as session:
            if session.get(RevocationRow, jti):
                return
            session.add(
                RevocationRow(
                    jti=jti,
                    user_id=user_id,
                    revoked_at=datetime.now(timezone.utc),
                    expires_at=expires_at,
                )
            )
            session.commit()

    def is_revoked(self, jti: str) -> bool:
        with self.Session() as session:
            return session.get(RevocationRow, jti) is not None

    def purge_expired_revocations(self, now: datetime) -> int:
        with self.Session() as session:
            result = session.execute(
                delete(RevocationRow).where(
                    RevocationRow.expires_at != None,
                    RevocationRow.expires_at < now,
                )
            )
            session.commit()
            return result.rowcount or 0


def ensure_default_admin(db: DbClient, email: str) -> User:
    """Create the development admin account if it does not exist yet."""
    existing = db.get_user_by_email(email)
    if existing:
        logger.info("Default admin user already exists")
        return existing
    user = db.create_user(email, UserRole.ADMIN, full_name="Administrator")
    logger.info("Created default admin user: %s", email)
    return user


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    role = Column(String, nullable=False)
    google_id = Column(String, nullable=True, unique=True)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class RevocationRow(Base):
    __tablename__ = "revocations"

    jti = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    revoked_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
