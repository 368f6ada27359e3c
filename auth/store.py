"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; the _row_to_* functions are the mappers.
Service code never touches SQL directly.

Transactions:
  transaction() wraps engine.begin(): commit on clean exit, rollback on any
  exception. Store failures are translated on the way out so callers only
  ever see core errors:
    IntegrityError                  -> ConflictError  (uniqueness violation)
    OperationalError, lock or busy  -> TransientError (lock wait, busy DB)
    pool timeout                    -> TransientError
    any other OperationalError      -> FatalError     (missing table, bad URL)

  Every read/write method takes an optional conn. Without one it opens its
  own short transaction; with one it joins the caller's, which is how the
  services compose read-then-conditional-write sequences atomically.

  for_update=True renders SELECT ... FOR UPDATE on databases with row locks
  (PostgreSQL). SQLite has no row locks, so on SQLite every transaction opens
  with BEGIN IMMEDIATE and holds the database write lock from its first read.
  pysqlite would otherwise defer BEGIN until the first write, leaving the
  reads that establish a precondition outside the transaction.

  Admin writes additionally carry the precondition in the UPDATE itself
  (max_role, status != deleted), and the SMS attempt increment is bounded by
  the ceiling in SQL, so a stale read can never widen what a write may touch.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexical order equals chronological order in SQL comparisons.

Layer rule: no imports from notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import MAX_ROLE, Account, AccountStatus, Credential, EmailVerification, PasswordReset, PhoneVerification
from core.errors import ConflictError, FatalError, TransientError

logger = logging.getLogger("keyward.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "account",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("firstname", String(100), nullable=False),
    Column("lastname", String(100), nullable=False),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("phone", String(32), unique=True),  # NULL allowed; NULLs never collide
    Column("phone_verified", Integer, nullable=False, server_default="0"),
    Column("account_role", Integer, nullable=False, server_default="1"),
    Column("account_status", String(16), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_credentials = Table(
    "account_credential",
    _metadata,
    Column("account_id", Integer, ForeignKey("account.id"), primary_key=True),  # 1:1 with account
    Column("salted_hash", Text, nullable=False),
    Column("salt", Text, nullable=False),
)

_email_verifications = Table(
    "email_verification",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("token", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_phone_verifications = Table(
    "phone_verification",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False, index=True),
    Column("phone", String(32), nullable=False),
    Column("code", String(6), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_reset",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("account.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_ACCOUNT_FIELDS = {
    "firstname",
    "lastname",
    "username",
    "email",
    "email_verified",
    "phone",
    "phone_verified",
    "account_role",
    "account_status",
}
_BOOL_FIELDS = {"email_verified", "phone_verified"}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    WAL keeps other processes' reads going while a transaction holds the
    write lock. PRAGMAs are
    per-connection in SQLite, so they are set on connect, not once.
    """
    # Take transaction control away from pysqlite; _begin_immediate issues BEGIN.
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _begin_immediate(conn: Connection) -> None:
    """Acquire the SQLite write lock at BEGIN, before the first read of the transaction."""
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# Substrings of driver messages for lock waits, busy databases, and dropped
# connections. Anything else from the driver is a configuration fault.
_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "lock timeout",
    "could not obtain lock",
    "deadlock detected",
    "could not connect",
    "server closed the connection",
)


def _is_transient(exc: OperationalError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts, credentials, and verification records.

    Usage:
        store = AccountStore("sqlite:///keyward.db")
        with store.transaction() as conn:
            account_id = store.insert_account(account, conn)
            store.insert_credential(Credential(account_id, digest, salt), conn)
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        if db_url.startswith("sqlite"):
            self.engine: Engine = create_engine(
                db_url,
                connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            )
            event.listen(self.engine, "connect", _configure_sqlite)
            event.listen(self.engine, "begin", _begin_immediate)
        else:
            self.engine = create_engine(db_url, pool_timeout=timeout_seconds, pool_pre_ping=True)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside BEGIN ... COMMIT; roll back on any exception."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            logger.info("Uniqueness violation, transaction rolled back")
            raise ConflictError("Username, email, or phone already exists.") from exc
        except PoolTimeoutError as exc:
            logger.warning("Connection pool exhausted, transaction rolled back")
            raise TransientError() from exc
        except OperationalError as exc:
            if _is_transient(exc):
                logger.warning("Store busy, transaction rolled back: %s", exc.orig)
                raise TransientError() from exc
            logger.error("Store failure, transaction rolled back: %s", exc.orig)
            raise FatalError("Account store is misconfigured or unavailable.") from exc

    @contextmanager
    def _use(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        """Return True if at least one account record exists (any status)."""
        with self._use(None) as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def insert_account(self, account: Account, conn: Optional[Connection] = None) -> int:
        """Insert an account and return its id. Duplicate username/email/phone -> ConflictError."""
        now = _now_iso()
        with self._use(conn) as c:
            result = c.execute(
                _accounts.insert().values(
                    firstname=account.firstname,
                    lastname=account.lastname,
                    username=account.username,
                    email=account.email,
                    email_verified=1 if account.email_verified else 0,
                    phone=account.phone,
                    phone_verified=1 if account.phone_verified else 0,
                    account_role=int(account.role),
                    account_status=account.status,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_account(
        self,
        account_id: int,
        conn: Optional[Connection] = None,
        for_update: bool = False,
    ) -> Account | None:
        query = _accounts.select().where(_accounts.c.id == account_id)
        if for_update:
            query = query.with_for_update()
        with self._use(conn) as c:
            row = c.execute(query).first()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str, conn: Optional[Connection] = None) -> Account | None:
        """Look up an account by exact email. Returns None if not found."""
        with self._use(conn) as c:
            row = c.execute(_accounts.select().where(_accounts.c.email == email)).first()
        return _row_to_account(row) if row is not None else None

    def get_account_by_username(self, username: str, conn: Optional[Connection] = None) -> Account | None:
        with self._use(conn) as c:
            row = c.execute(_accounts.select().where(_accounts.c.username == username)).first()
        return _row_to_account(row) if row is not None else None

    def update_account(
        self,
        account_id: int,
        conn: Optional[Connection] = None,
        max_role: Optional[int] = None,
        **fields: Any,
    ) -> bool:
        """Update columns on a live (not deleted) account.

        Only names in _ACCOUNT_FIELDS are accepted; anything else raises
        ValueError before any SQL runs. Returns False if the account does not
        exist or is deleted -- the status guard is part of the WHERE clause, so
        a concurrent delete that commits first makes this a no-op. With
        max_role, an account whose stored role is above it is left untouched
        and False is returned as well.
        """
        unknown = set(fields) - _ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        values = {k: (1 if v else 0) if k in _BOOL_FIELDS else v for k, v in fields.items()}
        values["updated_at"] = _now_iso()
        with self._use(conn) as c:
            result = c.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.account_status != AccountStatus.deleted.value)
                    & (_accounts.c.account_role <= (MAX_ROLE if max_role is None else max_role))
                )
                .values(**values)
            )
        return result.rowcount > 0

    def mark_deleted(
        self, account_id: int, conn: Optional[Connection] = None, max_role: Optional[int] = None
    ) -> bool:
        """Soft delete. Returns False if the account is missing, already deleted, or above max_role."""
        return self.update_account(account_id, conn, max_role=max_role, account_status=AccountStatus.deleted.value)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def insert_credential(self, credential: Credential, conn: Optional[Connection] = None) -> None:
        with self._use(conn) as c:
            c.execute(
                _credentials.insert().values(
                    account_id=credential.account_id,
                    salted_hash=credential.salted_hash,
                    salt=credential.salt,
                )
            )

    def get_credential(self, account_id: int, conn: Optional[Connection] = None) -> Credential | None:
        with self._use(conn) as c:
            row = c.execute(_credentials.select().where(_credentials.c.account_id == account_id)).first()
        if row is None:
            return None
        return Credential(account_id=row.account_id, salted_hash=row.salted_hash, salt=row.salt)

    def replace_credential(self, credential: Credential, conn: Optional[Connection] = None) -> None:
        """Overwrite digest and salt together; insert if the account has no credential yet."""
        with self._use(conn) as c:
            result = c.execute(
                _credentials.update()
                .where(_credentials.c.account_id == credential.account_id)
                .values(salted_hash=credential.salted_hash, salt=credential.salt)
            )
            if result.rowcount == 0:
                self.insert_credential(credential, c)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def insert_email_verification(self, record: EmailVerification, conn: Optional[Connection] = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _email_verifications.insert().values(
                    account_id=record.account_id,
                    email=record.email,
                    token=record.token,
                    expires_at=_iso(record.expires_at),
                    verified=0,
                    created_at=_iso(record.created_at) if record.created_at else _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def expire_pending_email_verifications(
        self, account_id: int, now: datetime, conn: Optional[Connection] = None
    ) -> int:
        """Invalidate every unconsumed, unexpired token for the account by moving its expiry to now."""
        stamp = _iso(now)
        t = _email_verifications
        with self._use(conn) as c:
            result = c.execute(
                t.update()
                .where((t.c.account_id == account_id) & (t.c.verified == 0) & (t.c.expires_at > stamp))
                .values(expires_at=stamp)
            )
        return result.rowcount

    def get_email_verification_by_token(
        self, token: str, conn: Optional[Connection] = None, for_update: bool = False
    ) -> EmailVerification | None:
        query = _email_verifications.select().where(_email_verifications.c.token == token)
        if for_update:
            query = query.with_for_update()
        with self._use(conn) as c:
            row = c.execute(query).first()
        return _row_to_email_verification(row) if row is not None else None

    def consume_email_verification(self, record_id: int, now: datetime, conn: Optional[Connection] = None) -> bool:
        """Flip verified 0 -> 1. Returns False if another caller consumed it first."""
        t = _email_verifications
        with self._use(conn) as c:
            result = c.execute(
                t.update().where((t.c.id == record_id) & (t.c.verified == 0)).values(verified=1, verified_at=_iso(now))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Phone verification
    # ------------------------------------------------------------------

    def insert_phone_verification(self, record: PhoneVerification, conn: Optional[Connection] = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _phone_verifications.insert().values(
                    account_id=record.account_id,
                    phone=record.phone,
                    code=record.code,
                    expires_at=_iso(record.expires_at),
                    attempts=0,
                    verified=0,
                    created_at=_iso(record.created_at) if record.created_at else _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def expire_pending_phone_verifications(
        self, account_id: int, now: datetime, conn: Optional[Connection] = None
    ) -> int:
        stamp = _iso(now)
        t = _phone_verifications
        with self._use(conn) as c:
            result = c.execute(
                t.update()
                .where((t.c.account_id == account_id) & (t.c.verified == 0) & (t.c.expires_at > stamp))
                .values(expires_at=stamp)
            )
        return result.rowcount

    def get_latest_phone_verification(
        self, account_id: int, conn: Optional[Connection] = None, for_update: bool = False
    ) -> PhoneVerification | None:
        """Return the most recently issued code for the account, verified or not."""
        t = _phone_verifications
        query = t.select().where(t.c.account_id == account_id).order_by(t.c.id.desc()).limit(1)
        if for_update:
            query = query.with_for_update()
        with self._use(conn) as c:
            row = c.execute(query).first()
        return _row_to_phone_verification(row) if row is not None else None

    def increment_phone_attempts(
        self, record_id: int, max_attempts: int, conn: Optional[Connection] = None
    ) -> bool:
        """attempts = attempts + 1, computed by the database and capped at max_attempts.

        Returns False when the record is already at the ceiling; the counter
        never passes it, however many failures race.
        """
        t = _phone_verifications
        with self._use(conn) as c:
            result = c.execute(
                t.update()
                .where((t.c.id == record_id) & (t.c.attempts < max_attempts))
                .values(attempts=t.c.attempts + 1)
            )
        return result.rowcount > 0

    def consume_phone_verification(
        self, record_id: int, max_attempts: int, now: datetime, conn: Optional[Connection] = None
    ) -> bool:
        """Mark verified unless already verified or locked out by a concurrent failure."""
        t = _phone_verifications
        with self._use(conn) as c:
            result = c.execute(
                t.update()
                .where((t.c.id == record_id) & (t.c.verified == 0) & (t.c.attempts < max_attempts))
                .values(verified=1, verified_at=_iso(now))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def insert_password_reset(self, record: PasswordReset, conn: Optional[Connection] = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _password_resets.insert().values(
                    account_id=record.account_id,
                    token_hash=record.token_hash,
                    expires_at=_iso(record.expires_at),
                    used=0,
                    created_at=_iso(record.created_at) if record.created_at else _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def expire_pending_password_resets(self, account_id: int, now: datetime, conn: Optional[Connection] = None) -> int:
        stamp = _iso(now)
        t = _password_resets
        with self._use(conn) as c:
            result = c.execute(
                t.update()
                .where((t.c.account_id == account_id) & (t.c.used == 0) & (t.c.expires_at > stamp))
                .values(expires_at=stamp)
            )
        return result.rowcount

    def get_password_reset_by_hash(
        self, token_hash: str, conn: Optional[Connection] = None, for_update: bool = False
    ) -> PasswordReset | None:
        query = _password_resets.select().where(_password_resets.c.token_hash == token_hash)
        if for_update:
            query = query.with_for_update()
        with self._use(conn) as c:
            row = c.execute(query).first()
        return _row_to_password_reset(row) if row is not None else None

    def consume_password_reset(self, record_id: int, now: datetime, conn: Optional[Connection] = None) -> bool:
        t = _password_resets
        with self._use(conn) as c:
            result = c.execute(
                t.update().where((t.c.id == record_id) & (t.c.used == 0)).values(used=1, used_at=_iso(now))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        firstname=row.firstname,
        lastname=row.lastname,
        username=row.username,
        email=row.email,
        email_verified=bool(row.email_verified),
        phone=row.phone,
        phone_verified=bool(row.phone_verified),
        role=row.account_role,
        status=row.account_status,
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_email_verification(row) -> EmailVerification:
    return EmailVerification(
        id=row.id,
        account_id=row.account_id,
        email=row.email,
        token=row.token,
        expires_at=_parse(row.expires_at),
        verified=bool(row.verified),
        verified_at=_parse(row.verified_at),
        created_at=_parse(row.created_at),
    )


def _row_to_phone_verification(row) -> PhoneVerification:
    return PhoneVerification(
        id=row.id,
        account_id=row.account_id,
        phone=row.phone,
        code=row.code,
        expires_at=_parse(row.expires_at),
        attempts=row.attempts,
        verified=bool(row.verified),
        verified_at=_parse(row.verified_at),
        created_at=_parse(row.created_at),
    )


def _row_to_password_reset(row) -> PasswordReset:
    return PasswordReset(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        used=bool(row.used),
        used_at=_parse(row.used_at),
        created_at=_parse(row.created_at),
    )
