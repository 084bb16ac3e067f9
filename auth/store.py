"""
auth/store.py -- SQLAlchemy Core persistence layer for session authentication.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_identity / _row_to_credential / _row_to_attempt are the mappers.
Services and routes never touch SQL directly.

Each method is its own round trip and its own transaction. Nothing here
composes writes across tables; SessionService tolerates the gaps (an identity
with no renewal credential is recoverable by logging in again).

Security:
  All queries use bound parameters. No f-strings in SQL.
  renewal_credentials.secret_hash is UNIQUE so lookup-by-hash is an index hit.
  identities.email is UNIQUE; a concurrent first login for the same email
  surfaces as IdentityConflictError, which the caller retries once.

Timestamps are stored as fixed-width UTC strings (_TS_FORMAT) so lexical order
equals chronological order and window queries work on any backend.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import IdentityConflictError, InternalError
from auth.models import AttemptRecord, Identity, RenewalCredential

logger = logging.getLogger("bazaar.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'bazaar_auth.db'}"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("display_name", String(255)),
    Column("avatar_url", Text),
    Column("bio", Text),
    Column("karma", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_renewal_credentials = Table(
    "renewal_credentials",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), ForeignKey("identities.id"), nullable=False, index=True),
    Column("secret_hash", String(60), nullable=False, unique=True),  # bcrypt output
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL until revoked; never reset
    Column("created_at", String(32), nullable=False),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("identity_id", String(36), ForeignKey("identities.id")),
    Column("succeeded", Boolean, nullable=False),
    Column("origin_address", String(64), nullable=False),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("ix_login_attempts_email_created", "email", "created_at"),
    Index("ix_login_attempts_origin_created", "origin_address", "created_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Trim and lower-case an email so the UNIQUE index is case-insensitive in practice."""
    return email.strip().lower()


def _to_db(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Identity, RenewalCredential and AttemptRecord rows.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        identity = store.create_identity("a@x.com")
        store.find_identity_by_email("A@X.com")  # same row
        store.close()

    Every failure from the database is re-raised as InternalError (or
    IdentityConflictError for the email uniqueness race) so callers only
    handle the auth error taxonomy.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], datetime] = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        _metadata.create_all(self.engine)

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Database error while trying to %s: %s", action, exc)
            raise InternalError(f"Failed to {action}") from exc

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def find_identity_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email (normalized). Returns None if not found."""
        with self._translate_errors("find identity by email"), self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(_identities.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_identity_by_id(self, identity_id: str) -> Identity | None:
        with self._translate_errors("find identity by id"), self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def create_identity(self, email: str, display_name: str | None = None) -> Identity:
        """Insert a new identity and return it.

        Raises IdentityConflictError if the email already exists -- the
        signal that a concurrent request created the record first.
        """
        identity = Identity(
            id=_new_id(),
            email=normalize_email(email),
            display_name=display_name,
            created_at=self._clock(),
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _identities.insert().values(
                        id=identity.id,
                        email=identity.email,
                        display_name=identity.display_name,
                        karma=identity.karma,
                        created_at=_to_db(identity.created_at),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise IdentityConflictError(
                "Identity already exists for this email",
                details={"email": identity.email},
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Database error while creating identity: %s", exc)
            raise InternalError("Failed to create identity") from exc
        return identity

    # ------------------------------------------------------------------
    # Renewal credentials
    # ------------------------------------------------------------------

    def create_renewal_credential(self, identity_id: str, secret_hash: str, expires_at: datetime) -> str:
        """Persist a renewal credential hash and return its id."""
        credential_id = _new_id()
        with self._translate_errors("create renewal credential"), self.engine.connect() as conn:
            conn.execute(
                _renewal_credentials.insert().values(
                    id=credential_id,
                    identity_id=identity_id,
                    secret_hash=secret_hash,
                    expires_at=_to_db(expires_at),
                    created_at=_to_db(self._clock()),
                )
            )
            conn.commit()
        return credential_id

    def find_renewal_credential_by_hash(self, secret_hash: str) -> RenewalCredential | None:
        """Look up a renewal credential by its hash, revoked or not. O(1) via UNIQUE index."""
        with self._translate_errors("find renewal credential"), self.engine.connect() as conn:
            row = conn.execute(
                _renewal_credentials.select().where(_renewal_credentials.c.secret_hash == secret_hash)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def revoke_renewal_credential(self, credential_id: str) -> bool:
        """Stamp revoked_at on one credential.

        Only touches rows still active, so an earlier revocation time is never
        overwritten. Returns True if a row changed.
        """
        with self._translate_errors("revoke renewal credential"), self.engine.connect() as conn:
            result = conn.execute(
                _renewal_credentials.update()
                .where(
                    (_renewal_credentials.c.id == credential_id) & (_renewal_credentials.c.revoked_at.is_(None))
                )
                .values(revoked_at=_to_db(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_renewal_credentials(self, identity_id: str) -> int:
        """Revoke every non-revoked credential owned by an identity. Returns the count."""
        with self._translate_errors("revoke renewal credentials"), self.engine.connect() as conn:
            result = conn.execute(
                _renewal_credentials.update()
                .where(
                    (_renewal_credentials.c.identity_id == identity_id)
                    & (_renewal_credentials.c.revoked_at.is_(None))
                )
                .values(revoked_at=_to_db(self._clock()))
            )
            conn.commit()
        return result.rowcount

    def list_active_renewal_credentials(self, identity_id: str) -> list[RenewalCredential]:
        """Return unrevoked, unexpired credentials for an identity (newest first)."""
        with self._translate_errors("list renewal credentials"), self.engine.connect() as conn:
            rows = conn.execute(
                _renewal_credentials.select()
                .where(
                    (_renewal_credentials.c.identity_id == identity_id)
                    & (_renewal_credentials.c.revoked_at.is_(None))
                    & (_renewal_credentials.c.expires_at > _to_db(self._clock()))
                )
                .order_by(_renewal_credentials.c.created_at.desc())
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    # ------------------------------------------------------------------
    # Attempt history
    # ------------------------------------------------------------------

    def record_attempt(
        self,
        email: str,
        succeeded: bool,
        origin_address: str,
        user_agent: str | None = None,
    ) -> AttemptRecord:
        """Append one login attempt, linking it to the identity when one exists."""
        email = normalize_email(email)
        with self._translate_errors("record login attempt"), self.engine.connect() as conn:
            identity_id = conn.execute(
                select(_identities.c.id).where(_identities.c.email == email)
            ).scalar_one_or_none()
            record = AttemptRecord(
                id=_new_id(),
                email=email,
                identity_id=identity_id,
                succeeded=succeeded,
                origin_address=origin_address,
                user_agent=user_agent,
                created_at=self._clock(),
            )
            conn.execute(
                _login_attempts.insert().values(
                    id=record.id,
                    email=record.email,
                    identity_id=record.identity_id,
                    succeeded=record.succeeded,
                    origin_address=record.origin_address,
                    user_agent=record.user_agent,
                    created_at=_to_db(record.created_at),
                )
            )
            conn.commit()
        return record

    def count_attempts_since(
        self,
        since: datetime,
        *,
        email: str | None = None,
        origin_address: str | None = None,
        succeeded: bool | None = None,
    ) -> int:
        """Count attempts created at or after `since`, filtered by email, origin and outcome."""
        query = (
            select(func.count())
            .select_from(_login_attempts)
            .where(_attempt_filter(since, email, origin_address, succeeded))
        )
        with self._translate_errors("count login attempts"), self.engine.connect() as conn:
            result = conn.execute(query).scalar()
        return result or 0

    def earliest_attempt_since(
        self,
        since: datetime,
        *,
        email: str | None = None,
        origin_address: str | None = None,
        succeeded: bool | None = None,
    ) -> datetime | None:
        """Return the created_at of the oldest matching attempt in the window, if any."""
        query = select(func.min(_login_attempts.c.created_at)).where(
            _attempt_filter(since, email, origin_address, succeeded)
        )
        with self._translate_errors("query login attempts"), self.engine.connect() as conn:
            result = conn.execute(query).scalar()
        return _from_db(result)

    def list_attempts(self, email: str) -> list[AttemptRecord]:
        """Return every attempt for an email, oldest first."""
        with self._translate_errors("list login attempts"), self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(_login_attempts.c.email == normalize_email(email))
                .order_by(_login_attempts.c.created_at)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


def _attempt_filter(
    since: datetime,
    email: str | None,
    origin_address: str | None,
    succeeded: bool | None,
):
    clause = _login_attempts.c.created_at >= _to_db(since)
    if email is not None:
        clause = clause & (_login_attempts.c.email == normalize_email(email))
    if origin_address is not None:
        clause = clause & (_login_attempts.c.origin_address == origin_address)
    if succeeded is not None:
        clause = clause & (_login_attempts.c.succeeded == succeeded)
    return clause


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        bio=row.bio,
        karma=row.karma,
        created_at=_from_db(row.created_at),
    )


def _row_to_credential(row) -> RenewalCredential:
    return RenewalCredential(
        id=row.id,
        identity_id=row.identity_id,
        secret_hash=row.secret_hash,
        expires_at=_from_db(row.expires_at),
        revoked_at=_from_db(row.revoked_at),
        created_at=_from_db(row.created_at),
    )


def _row_to_attempt(row) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        email=row.email,
        identity_id=row.identity_id,
        succeeded=bool(row.succeeded),
        origin_address=row.origin_address,
        user_agent=row.user_agent,
        created_at=_from_db(row.created_at),
    )
