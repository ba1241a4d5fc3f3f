"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account is the mapper.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Single-use guarantees live here, not in the callers. Refresh rotation and
  token consumption are conditional UPDATEs whose WHERE clause compares
  against the old hash and the expiry; the caller learns whether it won from
  rowcount. A read-then-write sequence would let two concurrent requests
  presenting the same token both succeed.

  Expiries are stored as REAL epoch seconds so the "not yet expired" guard is
  a plain numeric comparison on every backend. The caller passes "now" in;
  the store never reads the wall clock for expiry decisions.

DB URL: DATABASE_URL, default sqlite file next to this module.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import Boolean, Column, Float, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import Account
from core.clock import from_epoch, to_epoch, utc_now

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authcore.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for provider-only accounts
    Column("role", String(20), nullable=False, server_default="student"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("is_email_verified", Boolean, nullable=False, server_default="0"),
    Column("verification_token_hash", String(64), index=True),
    Column("verification_expires_at", Float),
    Column("reset_token_hash", String(64), index=True),
    Column("reset_expires_at", Float),
    Column("refresh_token_hash", String(64), index=True),
    Column("refresh_expires_at", Float),
    Column("provider", String(30)),  # "google", "linkedin"
    Column("provider_id", Text),
    Column("profile_image", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    # UNIQUE(provider, provider_id) is enforced in code: SQLite treats two
    # NULLs as distinct, so a SQL constraint would not cover unlinked rows.
)

# Columns callers may pass to update_account(). Token columns are excluded on
# purpose -- they have dedicated paired setters below.
_UPDATABLE_FIELDS = frozenset(
    {"full_name", "hashed_password", "role", "is_active", "profile_image", "is_email_verified"}
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new connection.

    WAL lets readers proceed while a writer holds the lock. busy_timeout makes
    a second concurrent writer wait instead of failing with "database is
    locked" -- the conditional UPDATE then runs against the committed state.
    """
    dbapi_conn.execute("PRAGMA busy_timeout=5000")
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return utc_now().isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore()
        account_id = store.create_account(Account(email="a@b.co", full_name="Ada"))
        account = store.get_by_email("a@b.co")
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The session service turns that into ConflictError -- the pre-insert
        lookup alone cannot close the race between two concurrent signups.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    full_name=account.full_name,
                    hashed_password=account.hashed_password,
                    role=account.role,
                    is_active=account.is_active,
                    is_email_verified=account.is_email_verified,
                    verification_token_hash=account.verification_token_hash,
                    verification_expires_at=_epoch_or_none(account.verification_expires_at),
                    provider=account.provider,
                    provider_id=account.provider_id,
                    profile_image=account.profile_image,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email. Emails are stored lowercased."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_provider(self, provider: str, provider_id: str) -> Account | None:
        """Look up an account by its linked (provider, provider_id) pair."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.provider == provider) & (_accounts.c.provider_id == provider_id)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def link_provider(self, account_id: int, provider: str, provider_id: str) -> None:
        """Associate a provider identity with an existing account.

        A provider only hands out identities for verified emails, so linking
        also marks the email verified.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(provider=provider, provider_id=provider_id, is_email_verified=True, updated_at=_now_iso())
            )
            conn.commit()

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing account.

        Accepted fields: see _UPDATABLE_FIELDS. Unknown keys raise ValueError
        rather than being silently ignored.

        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Refresh token pair
    # ------------------------------------------------------------------

    def set_refresh_token(self, account_id: int, token_hash: str, expires_at: datetime) -> None:
        """Overwrite the account's refresh pair (login, verify, provider callback).

        Single-session model: whatever pair was stored before is gone, which
        ends any other session for the same account.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(refresh_token_hash=token_hash, refresh_expires_at=to_epoch(expires_at))
            )
            conn.commit()

    def rotate_refresh_token(
        self,
        account_id: int,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Replace the refresh pair only if old_hash is current and unexpired.

        One UPDATE statement: the database serializes concurrent attempts, so
        at most one caller presenting old_hash sees rowcount == 1. Every other
        caller sees 0 because the stored hash no longer equals old_hash.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.refresh_token_hash == old_hash)
                    & (_accounts.c.refresh_expires_at > to_epoch(now))
                )
                .values(refresh_token_hash=new_hash, refresh_expires_at=to_epoch(new_expires_at))
            )
            conn.commit()
        return result.rowcount == 1

    def clear_refresh_token(self, account_id: int) -> None:
        """Drop the refresh pair. Idempotent."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(refresh_token_hash=None, refresh_expires_at=None)
            )
            conn.commit()

    def get_by_refresh_hash(self, token_hash: str) -> Account | None:
        """Find the account currently holding token_hash (expired or not)."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # Email verification token pair
    # ------------------------------------------------------------------

    def set_verification_token(self, account_id: int, token_hash: str, expires_at: datetime) -> bool:
        """Store a verification pair on an account that is still unverified.

        Returns False when the account is missing or already verified, so a
        resend racing a successful verification cannot re-arm a token.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.is_email_verified.is_(False)))
                .values(
                    verification_token_hash=token_hash,
                    verification_expires_at=to_epoch(expires_at),
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount == 1

    def get_by_verification_hash(self, token_hash: str, now: datetime) -> Account | None:
        """Find the account holding an unexpired verification token."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.verification_token_hash == token_hash)
                    & (_accounts.c.verification_expires_at > to_epoch(now))
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def consume_verification_token(self, account_id: int, token_hash: str, now: datetime) -> bool:
        """Mark verified and clear the verification pair in one conditional UPDATE.

        Returns True for exactly one caller per token.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.verification_token_hash == token_hash)
                    & (_accounts.c.verification_expires_at > to_epoch(now))
                )
                .values(
                    is_email_verified=True,
                    verification_token_hash=None,
                    verification_expires_at=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Password reset token pair
    # ------------------------------------------------------------------

    def set_reset_token(self, account_id: int, token_hash: str, expires_at: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(reset_token_hash=token_hash, reset_expires_at=to_epoch(expires_at))
            )
            conn.commit()

    def get_by_reset_hash(self, token_hash: str, now: datetime) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.reset_token_hash == token_hash) & (_accounts.c.reset_expires_at > to_epoch(now))
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def consume_reset_token(self, account_id: int, token_hash: str, new_password_hash: str, now: datetime) -> bool:
        """Set the new password, clear the reset pair and end the session, atomically."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.reset_token_hash == token_hash)
                    & (_accounts.c.reset_expires_at > to_epoch(now))
                )
                .values(
                    hashed_password=new_password_hash,
                    reset_token_hash=None,
                    reset_expires_at=None,
                    refresh_token_hash=None,
                    refresh_expires_at=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount == 1

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(_accounts.select().limit(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _epoch_or_none(moment: datetime | None) -> float | None:
    return to_epoch(moment) if moment is not None else None


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        verification_token_hash=row.verification_token_hash,
        verification_expires_at=from_epoch(row.verification_expires_at),
        reset_token_hash=row.reset_token_hash,
        reset_expires_at=from_epoch(row.reset_expires_at),
        refresh_token_hash=row.refresh_token_hash,
        refresh_expires_at=from_epoch(row.refresh_expires_at),
        provider=row.provider,
        provider_id=row.provider_id,
        profile_image=row.profile_image,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
