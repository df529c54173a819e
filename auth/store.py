"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and the audit log.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_event are the mappers.
Service and route code never touches SQL directly.

Credential rules live here, not in hooks:
  create() and update_password() always hash before writing, so a raw
  password can never reach the users table. Every read filters active = 1;
  deactivated accounts are invisible to login, session validation, and
  token consumption alike.

Atomicity:
  Each per-user read-modify-write (failed-login counting, lock/unlock,
  action-token consumption + password replacement) runs inside one
  engine.begin() transaction and uses a conditional UPDATE ... WHERE, so two
  concurrent requests cannot under-count attempts or resurrect a consumed
  token. rowcount tells the caller whether it won.

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision) so that string comparison in SQL orders chronologically.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmail
from auth.models import ActionKind, EventKind, Role, SecurityEvent, User
from auth.passwords import hash_password, verify_password
from core.config import get_settings

logger = logging.getLogger("storefront.auth.store")

# Tolerates rounding between the JWT iat claim (whole seconds) and the
# password change timestamp.
PASSWORD_CHANGE_SKEW = timedelta(seconds=1)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # lowercase
    Column("password_hash", Text, nullable=False),
    Column("password_changed_at", String(32)),
    Column("role", String(10), nullable=False, server_default="user"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("verification_token_hash", String(64), index=True),  # sha256 hex
    Column("verification_expires", String(32)),
    Column("password_reset_token_hash", String(64), index=True),  # sha256 hex
    Column("password_reset_expires", String(32)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("account_locked", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("last_login_ip", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
)

_security_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("source_ip", String(45)),
    Column("detail", Text),
)

Index("ix_security_events_user_created", _security_events.c.user_id, _security_events.c.created_at)

# Hash / expiry column pair for each action token kind.
_TOKEN_COLUMNS: dict[ActionKind, tuple[str, str]] = {
    ActionKind.password_reset: ("password_reset_token_hash", "password_reset_expires"),
    ActionKind.email_verification: ("verification_token_hash", "verification_expires"),
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User accounts and their SecurityEvent audit log.

    Usage:
        store = UserStore()
        user = store.create("Alice", "alice@example.com", "Str0ng!Pass")
        store.verify_password(user, "Str0ng!Pass")  # True
        store.close()
    """

    def __init__(self, db_url: str | None = None, clock: Callable[[], datetime] = _utcnow) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.clock = clock

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().limit(1)).fetchone()
        return row is not None

    def create(self, name: str, email: str, password: str, role: Role = Role.user) -> User:
        """Hash the password and insert a new account. Returns the stored User.

        Raises DuplicateEmail when the normalized email is taken. The up-front
        lookup gives the common case a clean error; the UNIQUE index catches
        the race where two signups for the same email interleave.
        """
        email = normalize_email(email)
        if self._email_taken(email):
            raise DuplicateEmail()
        password_hash = hash_password(password)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        name=name.strip(),
                        email=email,
                        password_hash=password_hash,
                        role=Role(role).value,
                        created_at=_ts(self.clock()),
                    )
                )
                user_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateEmail() from exc
        logger.info("Created user id=%s role=%s", user_id, Role(role).value)
        return self.find_by_id(user_id)

    def _email_taken(self, email: str) -> bool:
        # Deactivated accounts still own their address.
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return row is not None

    def find_by_email(self, email: str) -> User | None:
        """Look up an active user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == normalize_email(email)) & (_users.c.active == 1))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: int) -> User | None:
        """Look up an active user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where((_users.c.id == user_id) & (_users.c.active == 1))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all active users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.active == 1).order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def deactivate(self, user_id: int) -> bool:
        """Soft-delete an account. Returns True if an active row was deactivated."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where((_users.c.id == user_id) & (_users.c.active == 1)).values(active=0)
            )
        return result.rowcount > 0

    def update_email(self, user_id: int, new_email: str) -> User:
        """Change the email address, dropping verification state with it."""
        new_email = normalize_email(new_email)
        if self._email_taken(new_email):
            raise DuplicateEmail()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.active == 1))
                    .values(
                        email=new_email,
                        email_verified=0,
                        verification_token_hash=None,
                        verification_expires=None,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmail() from exc
        return self.find_by_id(user_id)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_password(self, user: User, candidate: str) -> bool:
        """Constant-time bcrypt comparison. Returns False on mismatch, never raises."""
        return verify_password(candidate, user.password_hash)

    def update_password(self, user: User, new_password: str) -> User:
        """Hash and store a new password, advancing password_changed_at.

        Session tokens issued before the returned user's password_changed_at
        are rejected by session validation from now on.
        """
        password_hash = hash_password(new_password)
        with self.engine.begin() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user.id)).fetchone()
            changed_at = self._next_password_change(_parse_ts(row.password_changed_at) if row else None)
            conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(password_hash=password_hash, password_changed_at=_ts(changed_at))
            )
        return self.find_by_id(user.id)

    def _next_password_change(self, previous: datetime | None) -> datetime:
        changed_at = self.clock() - PASSWORD_CHANGE_SKEW
        if previous is not None and changed_at <= previous:
            changed_at = previous + timedelta(microseconds=1)
        return changed_at

    def record_login(self, user_id: int, source_ip: str | None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(last_login=_ts(self.clock()), last_login_ip=source_ip)
            )

    # ------------------------------------------------------------------
    # Lockout primitives (driven by auth/lockout.py)
    # ------------------------------------------------------------------

    def register_failed_login(self, user_id: int, max_attempts: int, lock_until: datetime) -> tuple[User, bool]:
        """Increment login_attempts and lock once the threshold is reached.

        Returns (user, newly_locked). Both statements run in one transaction;
        the increment is done in SQL so concurrent failures are all counted.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=_users.c.login_attempts + 1)
            )
            locked = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.login_attempts >= max_attempts)
                    & (_users.c.account_locked == 0)
                )
                .values(account_locked=1, lock_until=_ts(lock_until))
            )
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row), locked.rowcount > 0

    def clear_lock(self, user_id: int) -> bool:
        """Lift a lock and zero the counter. Returns True only for the caller that lifted it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.account_locked == 1))
                .values(account_locked=0, lock_until=None, login_attempts=0)
            )
        return result.rowcount > 0

    def reset_login_attempts(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(login_attempts=0))

    # ------------------------------------------------------------------
    # Action tokens (driven by auth/tokens.py)
    # ------------------------------------------------------------------

    def set_action_token(self, user_id: int, kind: ActionKind, token_hash: str, expires_at: datetime) -> None:
        """Store the hash of a freshly issued action token, replacing any earlier one."""
        hash_col, expires_col = _TOKEN_COLUMNS[kind]
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.active == 1))
                .values({hash_col: token_hash, expires_col: _ts(expires_at)})
            )

    def find_by_action_token(self, kind: ActionKind, token_hash: str) -> User | None:
        """Return the active user holding a live (non-expired) token with this hash."""
        hash_col, expires_col = _TOKEN_COLUMNS[kind]
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c[hash_col] == token_hash)
                    & (_users.c[expires_col] > _ts(self.clock()))
                    & (_users.c.active == 1)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def consume_action_token(
        self,
        kind: ActionKind,
        token_hash: str,
        new_password: str | None = None,
        **changes,
    ) -> User | None:
        """Atomically clear a live token and apply changes. Returns the owner, or None.

        When new_password is given it is hashed first, then the token
        clear, the password replacement, password_changed_at, and the lockout
        reset all land in a single conditional UPDATE: either everything
        applies or nothing does. A second consumer of the same token matches
        zero rows and gets None.
        """
        hash_col, expires_col = _TOKEN_COLUMNS[kind]
        values = {hash_col: None, expires_col: None, **changes}
        password_hash = hash_password(new_password) if new_password is not None else None
        with self.engine.begin() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c[hash_col] == token_hash)
                    & (_users.c[expires_col] > _ts(self.clock()))
                    & (_users.c.active == 1)
                )
            ).fetchone()
            if row is None:
                return None
            if password_hash is not None:
                values.update(
                    password_hash=password_hash,
                    password_changed_at=_ts(self._next_password_change(_parse_ts(row.password_changed_at))),
                    login_attempts=0,
                    account_locked=0,
                    lock_until=None,
                )
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == row.id)
                    & (_users.c[hash_col] == token_hash)
                    & (_users.c[expires_col] > _ts(self.clock()))
                )
                .values(values)
            )
            if result.rowcount == 0:
                return None
            user_id = row.id
        return self.find_by_id(user_id)

    def purge_expired_action_tokens(self) -> int:
        """Clear hashes whose expiry has passed. Returns the number of tokens cleared.

        Not required for correctness -- expired hashes never match a lookup.
        """
        now = _ts(self.clock())
        cleared = 0
        with self.engine.begin() as conn:
            for hash_col, expires_col in _TOKEN_COLUMNS.values():
                result = conn.execute(
                    _users.update()
                    .where((_users.c[hash_col].is_not(None)) & (_users.c[expires_col] <= now))
                    .values({hash_col: None, expires_col: None})
                )
                cleared += result.rowcount
        return cleared

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_event(self, user_id: int, security_event: SecurityEvent) -> int:
        """Append one SecurityEvent for the user. Returns the event ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _security_events.insert().values(
                    user_id=user_id,
                    kind=EventKind(security_event.kind).value,
                    created_at=_ts(security_event.timestamp),
                    source_ip=security_event.source_ip,
                    detail=security_event.detail,
                )
            )
            return result.inserted_primary_key[0]

    def list_events(self, user_id: int, limit: int = 50) -> list[SecurityEvent]:
        """Return the user's most recent security events, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _security_events.select()
                .where(_security_events.c.user_id == user_id)
                .order_by(_security_events.c.created_at.desc(), _security_events.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        password_changed_at=_parse_ts(row.password_changed_at),
        role=Role(row.role),
        email_verified=bool(row.email_verified),
        verification_token_hash=row.verification_token_hash,
        verification_expires=_parse_ts(row.verification_expires),
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires=_parse_ts(row.password_reset_expires),
        login_attempts=row.login_attempts,
        account_locked=bool(row.account_locked),
        lock_until=_parse_ts(row.lock_until),
        last_login=_parse_ts(row.last_login),
        last_login_ip=row.last_login_ip,
        created_at=_parse_ts(row.created_at),
        active=bool(row.active),
    )


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        user_id=row.user_id,
        kind=EventKind(row.kind),
        timestamp=_parse_ts(row.created_at),
        source_ip=row.source_ip,
        detail=row.detail,
    )
